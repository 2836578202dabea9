from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError


class PasswordVerifier(Protocol):
    def hash(self, plain: str) -> str: ...

    def matches(self, plain: str, verifier: str) -> bool: ...


class Argon2PasswordVerifier:
    """argon2id hashing; a malformed stored hash counts as a mismatch."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, plain: str) -> str:
        return self._pwd_hasher.hash(plain)

    def matches(self, plain: str, verifier: str) -> bool:
        try:
            return self._pwd_hasher.verify(verifier, plain)
        except (InvalidHash, VerificationError):
            return False


__all__ = ["PasswordVerifier", "Argon2PasswordVerifier"]
