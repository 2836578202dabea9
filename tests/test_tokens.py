"""Tests for access token signing and verification."""

import base64
import json

import pytest

from validauth.service.tokens import TokenIssuer


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_claims_carry_identity_and_role(self, token_issuer, clock):
        issued = token_issuer.issue("id-1", "a@x.com", "ROLE_USER")
        claims = token_issuer.decode(issued.token)

        assert claims["sub"] == "id-1"
        assert claims["email"] == "a@x.com"
        assert claims["role"] == "ROLE_USER"
        assert claims["token_type"] == "access"
        assert claims["iat"] == int(clock.now.timestamp())
        assert claims["exp"] == int(clock.now.timestamp()) + 15 * 60

    def test_expiry_matches_ttl(self, token_issuer, clock):
        issued = token_issuer.issue("id-1", "a@x.com", "ROLE_USER")
        assert issued.issued_at == clock.now
        assert (issued.expires_at - issued.issued_at).total_seconds() == 15 * 60

    def test_each_token_has_unique_jti(self, token_issuer):
        first = token_issuer.decode(token_issuer.issue("id-1", "a@x.com", "R").token)
        second = token_issuer.decode(token_issuer.issue("id-1", "a@x.com", "R").token)
        assert first["jti"] != second["jti"]

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenIssuer(secret="", issuer="i", audience="a")


class TestDecode:
    def test_expired_token_rejected(self, token_issuer, clock):
        token = token_issuer.issue("id-1", "a@x.com", "ROLE_USER").token
        clock.advance(minutes=15)
        assert token_issuer.decode(token) is None

    def test_tampered_payload_rejected(self, token_issuer):
        token = token_issuer.issue("id-1", "a@x.com", "ROLE_USER").token
        header, _, signature = token.split(".")
        forged = _segment(
            {
                "iss": "validauth",
                "aud": "validauth-clients",
                "sub": "id-1",
                "email": "a@x.com",
                "role": "ROLE_ADMIN",
                "token_type": "access",
                "exp": 9999999999,
            }
        )
        assert token_issuer.decode(f"{header}.{forged}.{signature}") is None

    def test_other_secret_rejected(self, token_issuer, clock):
        other = TokenIssuer(
            secret="another-secret-value",
            issuer="validauth",
            audience="validauth-clients",
            clock=clock,
        )
        assert token_issuer.decode(other.issue("id-1", "a@x.com", "R").token) is None

    def test_wrong_audience_rejected(self, token_issuer, clock):
        other = TokenIssuer(
            secret="Test-Secret-Key_for-Automation-Only-987654321!",
            issuer="validauth",
            audience="someone-else",
            clock=clock,
        )
        assert token_issuer.decode(other.issue("id-1", "a@x.com", "R").token) is None

    def test_none_algorithm_rejected(self, token_issuer):
        token = token_issuer.issue("id-1", "a@x.com", "R").token
        _, payload, signature = token.split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        assert token_issuer.decode(f"{header}.{payload}.{signature}") is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed_tokens_rejected(self, token_issuer, garbage):
        assert token_issuer.decode(garbage) is None
