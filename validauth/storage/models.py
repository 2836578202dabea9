from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityState(str, Enum):
    """Lifecycle state derived from the identity flags."""

    PENDING = "pending"
    ACTIVE = "active"
    LOCKED = "locked"
    DISABLED = "disabled"


@dataclass
class Role:
    id: str
    name: str

    @classmethod
    def new(cls, name: str) -> "Role":
        return cls(id=str(uuid.uuid4()), name=name)


@dataclass
class Identity:
    id: str
    username: str
    email: str
    password_hash: str
    role: str
    active: bool = False
    enabled: bool = True
    failed_attempts: int = 0
    locked: bool = False
    locked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        role: str,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email.lower(),
            password_hash=password_hash,
            role=role,
        )

    def reset_lockout(self) -> None:
        self.failed_attempts = 0
        self.locked = False
        self.locked_at = None

    def lock(self, now: datetime) -> None:
        self.locked = True
        self.locked_at = now


@dataclass
class RefreshToken:
    token: str
    identity_id: str
    expiry_date: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expiry_date <= now


@dataclass
class IssuedAccessToken:
    token: str
    issued_at: datetime
    expires_at: datetime
