from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from validauth.logging import get_logger
from validauth.service.errors import ExpiredError
from validauth.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)


class RefreshTokenRepository(Protocol):
    def replace_refresh_token(
        self,
        identity_id: str,
        token: str,
        expiry_date: datetime,
        *,
        replacing: Optional[str] = None,
    ) -> Optional[RefreshToken]: ...

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> None: ...

    def delete_refresh_tokens_for(self, identity_id: str) -> int: ...


class RefreshTokenStore:
    """Keeps at most one live opaque refresh token per identity."""

    def __init__(
        self,
        store: RefreshTokenRepository,
        *,
        ttl_minutes: int = 7 * 24 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    @staticmethod
    def _new_token_value() -> str:
        return secrets.token_urlsafe(32)

    def issue_for(
        self, identity_id: str, *, replacing: Optional[str] = None
    ) -> Optional[RefreshToken]:
        """Replace every token of ``identity_id`` with a fresh one.

        With ``replacing`` the swap only happens while that token is still the
        live one; ``None`` means another call rotated it first.
        """
        record = self.store.replace_refresh_token(
            identity_id,
            self._new_token_value(),
            self._clock() + self.ttl,
            replacing=replacing,
        )
        if record is None:
            logger.info("refresh_token_already_rotated", identity_id=identity_id)
        return record

    def find_by_token(self, token: str) -> Optional[RefreshToken]:
        return self.store.find_refresh_token(token)

    def verify_not_expired(self, record: RefreshToken) -> RefreshToken:
        if record.is_expired(self._clock()):
            self.store.delete_refresh_token(record.token)
            logger.info("refresh_token_expired", identity_id=record.identity_id)
            raise ExpiredError("Refresh token has expired. Please log in again.")
        return record

    def delete_all_for(self, identity_id: str) -> int:
        return self.store.delete_refresh_tokens_for(identity_id)


__all__ = ["RefreshTokenStore", "RefreshTokenRepository"]
