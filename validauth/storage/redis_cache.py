from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from validauth.logging import get_logger
from validauth.storage.errors import StorageUnavailable


class RedisCache:
    """Thin Redis wrapper for pending activation codes."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.logger = get_logger(__name__)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def otp_key(email: str) -> str:
        return f"otp:{email.strip().lower()}"

    @staticmethod
    def _ttl_seconds(ttl: timedelta) -> int:
        # Redis rejects a zero or negative EX
        return max(1, int(ttl.total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, op: str, coro):
        try:
            return await coro
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.error("redis_unavailable", op=op, error=str(exc))
            raise StorageUnavailable("otp cache unavailable", {"op": op}) from exc

    async def set_otp(self, email: str, otp: str, ttl: timedelta) -> None:
        await self._call(
            "set", self.client.set(self.otp_key(email), otp, ex=self._ttl_seconds(ttl))
        )

    async def get_otp(self, email: str) -> Optional[str]:
        return await self._call("get", self.client.get(self.otp_key(email)))

    async def delete_otp(self, email: str) -> None:
        await self._call("delete", self.client.delete(self.otp_key(email)))

    async def otp_exists(self, email: str) -> bool:
        count = await self._call("exists", self.client.exists(self.otp_key(email)))
        return bool(count)

    async def close(self) -> None:
        await self.client.aclose()
