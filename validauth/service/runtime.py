from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from validauth.config import Settings, get_settings, reset_settings_cache
from validauth.logging import get_logger
from validauth.service.email import EmailService
from validauth.service.lifecycle import IdentityLifecycle
from validauth.service.lockout import AccountLockoutGuard
from validauth.service.notifier import NotificationDispatcher
from validauth.service.otp import InMemoryOtpStore, RedisOtpStore
from validauth.service.passwords import Argon2PasswordVerifier
from validauth.service.refresh import RefreshTokenStore
from validauth.service.tokens import TokenIssuer
from validauth.storage.memory import MemoryStore
from validauth.storage.models import utcnow
from validauth.storage.postgres import PostgresStore
from validauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Wires one set of lifecycle collaborators for the process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.storage_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        if self.settings.seed_default_role:
            self.store.ensure_role(self.settings.default_role)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.storage_timeout_seconds,
            )
            try:
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if self.cache is not None:
            self.otp_store = RedisOtpStore(self.cache)
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for pending activation codes; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )
            self.otp_store = InMemoryOtpStore(clock=clock)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.notifier = NotificationDispatcher(
            self.email,
            workers=self.settings.notifier_workers,
            queue_capacity=self.settings.notifier_queue_capacity,
        )
        self.lockout = AccountLockoutGuard(
            self.store,
            max_attempts=self.settings.lockout_max_attempts,
            duration_minutes=self.settings.lockout_duration_minutes,
            clock=clock,
        )
        self.tokens = TokenIssuer(
            secret=self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_minutes=self.settings.access_token_ttl_minutes,
            clock=clock,
        )
        self.refresh_tokens = RefreshTokenStore(
            self.store,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            clock=clock,
        )
        self.lifecycle = IdentityLifecycle(
            store=self.store,
            otp_store=self.otp_store,
            lockout=self.lockout,
            tokens=self.tokens,
            refresh_tokens=self.refresh_tokens,
            passwords=Argon2PasswordVerifier(),
            notifier=self.notifier,
            default_role=self.settings.default_role,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
            otp_length=self.settings.otp_length,
            rotate_refresh_tokens=self.settings.refresh_token_rotation,
        )
        logger.info(
            "runtime_init_completed",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    def close(self) -> None:
        """Release pools and worker threads."""
        self.notifier.shutdown(wait=False)
        if isinstance(self.store, PostgresStore):
            self.store.close()
        if self.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(self.cache.close())
            except RuntimeError:
                asyncio.run(self.cache.close())


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
