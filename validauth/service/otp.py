from __future__ import annotations

import secrets
import string
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple

from validauth.storage.models import utcnow
from validauth.storage.redis_cache import RedisCache


def generate_otp(length: int = 6) -> str:
    """Return a numeric one-time code drawn from the OS CSPRNG."""
    if length <= 0:
        raise ValueError("otp length must be positive")
    return "".join(secrets.choice(string.digits) for _ in range(length))


_otp_key = RedisCache.otp_key


class OtpStore(Protocol):
    async def put(self, email: str, otp: str, ttl: timedelta) -> None: ...

    async def get(self, email: str) -> Optional[str]: ...

    async def delete(self, email: str) -> None: ...

    async def exists(self, email: str) -> bool: ...


class InMemoryOtpStore:
    """Process-local pending codes; expired entries are evicted on read."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    async def put(self, email: str, otp: str, ttl: timedelta) -> None:
        with self._lock:
            self._entries[_otp_key(email)] = (otp, self._clock() + ttl)

    async def get(self, email: str) -> Optional[str]:
        key = _otp_key(email)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            otp, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return otp

    async def delete(self, email: str) -> None:
        with self._lock:
            self._entries.pop(_otp_key(email), None)

    async def exists(self, email: str) -> bool:
        return await self.get(email) is not None


class RedisOtpStore:
    """Pending codes in Redis; ``SET ... EX`` handles eviction."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def put(self, email: str, otp: str, ttl: timedelta) -> None:
        await self.cache.set_otp(email, otp, ttl)

    async def get(self, email: str) -> Optional[str]:
        return await self.cache.get_otp(email)

    async def delete(self, email: str) -> None:
        await self.cache.delete_otp(email)

    async def exists(self, email: str) -> bool:
        return await self.cache.otp_exists(email)


__all__ = ["OtpStore", "InMemoryOtpStore", "RedisOtpStore", "generate_otp"]
