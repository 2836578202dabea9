"""Tests for the structlog processors."""

import structlog

from validauth.logging import (
    _add_correlation_id,
    _configure_structlog,
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
)


def test_redacts_sensitive_keys():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "alice@example.com",
            "otp": "123456",
            "refresh_token": "abcd",
            "identity_id": "id-1",
        },
    )
    assert event["event"] == "login_failed"
    assert event["email"] == "al***om"
    assert event["otp"] == "12***56"
    assert event["refresh_token"] == "***"
    assert event["identity_id"] == "id-1"


def test_correlation_id_attached_when_set():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
        cid = set_correlation_id()
        assert get_correlation_id() == cid
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
        assert set_correlation_id("req-1") == "req-1"
    finally:
        correlation_id_var.reset(token)


def test_non_string_sensitive_values_pass_through():
    event = _redact_pii(None, "info", {"event": "x", "failed_attempts": 2, "token_count": 3})
    assert event["token_count"] == 3


def test_console_flag_selects_renderer():
    try:
        _configure_structlog("DEBUG", console=True)
        assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)
    finally:
        _configure_structlog("INFO")
    assert isinstance(
        structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer
    )
