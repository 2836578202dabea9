from __future__ import annotations

import math
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from validauth.logging import get_logger
from validauth.storage.models import Identity, utcnow

logger = get_logger(__name__)


class LockoutRepository(Protocol):
    def find_by_email(self, email: str) -> Optional[Identity]: ...

    def increment_failed_attempts(
        self, identity_id: str, max_attempts: int, now: datetime
    ) -> Optional[Identity]: ...

    def reset_failed_attempts(self, identity_id: str) -> Optional[Identity]: ...


class AccountLockoutGuard:
    """Counts consecutive login failures and adjudicates temporary locks.

    Counter changes are delegated to single atomic store operations, so two
    failures racing on the same account both land. After each write the
    caller's ``Identity`` is refreshed from the stored record.
    """

    def __init__(
        self,
        store: LockoutRepository,
        *,
        max_attempts: int = 5,
        duration_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.duration = timedelta(minutes=duration_minutes)
        self._clock = clock

    @staticmethod
    def _sync(target: Identity, source: Optional[Identity]) -> Identity:
        if source is None:
            return target
        for f in fields(Identity):
            setattr(target, f.name, getattr(source, f.name))
        return target

    def record_failure(self, identity: Identity) -> Identity:
        now = self._clock()
        was_locked = identity.locked
        updated = self.store.increment_failed_attempts(identity.id, self.max_attempts, now)
        self._sync(identity, updated)
        if identity.locked and not was_locked:
            logger.warning(
                "account_locked",
                identity_id=identity.id,
                failed_attempts=identity.failed_attempts,
                duration_minutes=int(self.duration.total_seconds() // 60),
            )
        return identity

    def record_success(self, identity: Identity) -> Identity:
        if identity.failed_attempts == 0 and not identity.locked:
            return identity
        return self._sync(identity, self.store.reset_failed_attempts(identity.id))

    def is_locked(self, identity: Identity) -> bool:
        if not identity.locked:
            return False
        if identity.locked_at is None or self._clock() >= identity.locked_at + self.duration:
            self._sync(identity, self.store.reset_failed_attempts(identity.id))
            logger.info("account_lock_expired", identity_id=identity.id)
            return False
        return True

    def remaining_lock_minutes(self, identity: Identity) -> int:
        if not identity.locked or identity.locked_at is None:
            return 0
        remaining = identity.locked_at + self.duration - self._clock()
        return max(0, math.ceil(remaining / timedelta(minutes=1)))

    def remaining_attempts(self, identity: Identity) -> int:
        return max(0, self.max_attempts - identity.failed_attempts)

    def unlock(self, email: str) -> Optional[Identity]:
        """Administrative override; no-op when no identity matches ``email``."""
        identity = self.store.find_by_email(email)
        if identity is None:
            return None
        self._sync(identity, self.store.reset_failed_attempts(identity.id))
        logger.info("account_unlocked", identity_id=identity.id)
        return identity


__all__ = ["AccountLockoutGuard", "LockoutRepository"]
