from __future__ import annotations

import functools
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from validauth.logging import get_logger
from validauth.schemas import (
    AccessClaims,
    AuthResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResendOtpRequest,
    StatusResponse,
    UserResponse,
    VerifyOtpRequest,
)
from validauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ExpiredError,
    InvalidCredentialsError,
    InvalidOtpError,
    NotFoundError,
    NotVerifiedError,
    StorageUnavailableError,
    ValidationError,
)
from validauth.service.lockout import AccountLockoutGuard
from validauth.service.notifier import Notifier
from validauth.service.otp import OtpStore, generate_otp
from validauth.service.passwords import PasswordVerifier
from validauth.service.refresh import RefreshTokenRepository, RefreshTokenStore
from validauth.service.tokens import TokenIssuer
from validauth.storage.errors import ConstraintViolation, StorageUnavailable
from validauth.storage.models import Identity, IdentityState, Role

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
LOCKED_ON_FAILURE_MESSAGE = (
    "Invalid email or password. Account has been locked due to multiple failed attempts."
)

T = TypeVar("T")


class IdentityRepository(Protocol):
    def find_by_email(self, email: str) -> Optional[Identity]: ...

    def find_by_username(self, username: str) -> Optional[Identity]: ...

    def find_by_id(self, identity_id: str) -> Optional[Identity]: ...

    def save(self, identity: Identity) -> Identity: ...

    def increment_failed_attempts(
        self, identity_id: str, max_attempts: int, now: datetime
    ) -> Optional[Identity]: ...

    def reset_failed_attempts(self, identity_id: str) -> Optional[Identity]: ...

    def mark_active(self, identity_id: str) -> Optional[Identity]: ...

    def set_enabled(self, identity_id: str, enabled: bool) -> Optional[Identity]: ...


class RoleRepository(Protocol):
    def find_role_by_name(self, name: str) -> Optional[Role]: ...

    def ensure_role(self, name: str) -> Role: ...


class IdentityStore(IdentityRepository, RoleRepository, RefreshTokenRepository, Protocol):
    """What both ``MemoryStore`` and ``PostgresStore`` provide."""


def _conflict_message(exc: ConstraintViolation) -> str:
    field = exc.detail.get("field")
    if field:
        return f"{str(field).capitalize()} already exists"
    return exc.message


def translate_storage_errors(
    func: Callable[..., Awaitable[T]]
) -> Callable[..., Awaitable[T]]:
    """Surface storage-layer failures as service errors."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except ConstraintViolation as exc:
            raise ConflictError(_conflict_message(exc), detail=exc.detail) from exc
        except StorageUnavailable as exc:
            logger.error(
                "storage_unavailable", operation=func.__name__, error=exc.message
            )
            raise StorageUnavailableError(
                "Service temporarily unavailable. Please try again.", detail=exc.detail
            ) from exc

    return wrapper


class IdentityLifecycle:
    """Registration, activation, login and session operations for identities.

    Every collaborator is injected; the lifecycle keeps no state of its own
    between calls.
    """

    def __init__(
        self,
        *,
        store: IdentityStore,
        otp_store: OtpStore,
        lockout: AccountLockoutGuard,
        tokens: TokenIssuer,
        refresh_tokens: RefreshTokenStore,
        passwords: PasswordVerifier,
        notifier: Notifier,
        default_role: str = "ROLE_USER",
        otp_ttl_minutes: int = 5,
        otp_length: int = 6,
        rotate_refresh_tokens: bool = True,
    ) -> None:
        self.store = store
        self.otp_store = otp_store
        self.lockout = lockout
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.passwords = passwords
        self.notifier = notifier
        self.default_role = default_role
        self.otp_ttl = timedelta(minutes=otp_ttl_minutes)
        self.otp_length = otp_length
        self.rotate_refresh_tokens = rotate_refresh_tokens

    def _notify(self, kind: str, send: Callable[[], Any]) -> None:
        # Delivery problems never fail the calling operation
        try:
            send()
        except Exception as exc:
            logger.error("notification_handoff_failed", kind=kind, error=str(exc))

    def _issue_session(self, identity: Identity, message: str) -> AuthResponse:
        access = self.tokens.issue(identity.id, identity.email, identity.role)
        refresh = self.refresh_tokens.issue_for(identity.id)
        return AuthResponse(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_at=access.expires_at,
            identity_id=identity.id,
            username=identity.username,
            email=identity.email,
            role=identity.role,
            message=message,
        )

    async def _send_new_otp(self, identity: Identity) -> None:
        otp = generate_otp(self.otp_length)
        await self.otp_store.put(identity.email, otp, self.otp_ttl)
        self._notify("otp", lambda: self.notifier.notify_otp(identity.email, otp))

    @translate_storage_errors
    async def register(self, body: RegisterRequest) -> UserResponse:
        if body.password != body.confirm_password:
            raise ValidationError(
                "Passwords do not match", detail={"field": "confirm_password"}
            )
        if self.store.find_by_username(body.username):
            raise ConflictError("Username already exists", detail={"field": "username"})
        if self.store.find_by_email(body.email):
            raise ConflictError("Email already exists", detail={"field": "email"})
        role = self.store.find_role_by_name(self.default_role)
        if role is None:
            logger.error("default_role_missing", role=self.default_role)
            raise ConfigurationError(
                f"Default role {self.default_role} is not configured",
                detail={"role": self.default_role},
            )

        identity = self.store.save(
            Identity.new(
                username=body.username,
                email=body.email,
                password_hash=self.passwords.hash(body.password),
                role=role.name,
            )
        )
        await self._send_new_otp(identity)
        logger.info("identity_registered", identity_id=identity.id, role=identity.role)
        return UserResponse(
            identity_id=identity.id,
            username=identity.username,
            email=identity.email,
            message="Registration successful. Please check your email for the verification code.",
        )

    @translate_storage_errors
    async def activate(self, body: VerifyOtpRequest) -> AuthResponse:
        identity = self.store.find_by_email(body.email)
        if identity is None:
            raise ConflictError("User not found")
        if identity.active:
            raise ConflictError("Account already verified")

        pending = await self.otp_store.get(identity.email)
        if pending is None:
            raise ExpiredError("OTP has expired or was not requested. Please request a new one.")
        if not hmac.compare_digest(pending.encode("utf-8"), body.otp.encode("utf-8")):
            logger.info("activation_failed", identity_id=identity.id, reason="otp_mismatch")
            raise InvalidOtpError("Invalid OTP")

        activated = self.store.mark_active(identity.id)
        if activated is None:
            raise ConflictError("Account already verified")
        identity = activated
        await self.otp_store.delete(identity.email)
        response = self._issue_session(identity, "Account verified successfully")
        self._notify(
            "welcome",
            lambda: self.notifier.notify_welcome(identity.email, identity.username),
        )
        logger.info("identity_activated", identity_id=identity.id)
        return response

    @translate_storage_errors
    async def resend_otp(self, body: ResendOtpRequest) -> UserResponse:
        identity = self.store.find_by_email(body.email)
        if identity is None:
            raise ConflictError("User not found")
        if identity.active:
            raise ConflictError("Account already verified")
        await self._send_new_otp(identity)
        logger.info("otp_resent", identity_id=identity.id)
        return UserResponse(
            identity_id=identity.id,
            username=identity.username,
            email=identity.email,
            message="A new verification code has been sent to your email.",
        )

    @translate_storage_errors
    async def login(self, body: LoginRequest) -> AuthResponse:
        identity = self.store.find_by_email(body.email)
        if identity is None:
            logger.info("login_failed", reason="unknown_identity")
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        # Fixed order: lock, then activation, then enabled flag, then password
        if self.lockout.is_locked(identity):
            remaining = self.lockout.remaining_lock_minutes(identity)
            logger.info("login_failed", identity_id=identity.id, reason="locked")
            raise AccountLockedError(
                f"Account is locked due to multiple failed login attempts. "
                f"Try again in {remaining} minutes.",
                detail={"remaining_minutes": remaining},
            )
        if not identity.active:
            logger.info("login_failed", identity_id=identity.id, reason="not_verified")
            raise NotVerifiedError("Please verify your email before logging in")
        if not identity.enabled:
            logger.info("login_failed", identity_id=identity.id, reason="disabled")
            raise AccountDisabledError("Account is disabled. Please contact support.")

        if not self.passwords.matches(body.password, identity.password_hash):
            self.lockout.record_failure(identity)
            logger.info(
                "login_failed",
                identity_id=identity.id,
                reason="bad_password",
                failed_attempts=identity.failed_attempts,
            )
            if identity.locked:
                raise AccountLockedError(
                    LOCKED_ON_FAILURE_MESSAGE,
                    detail={
                        "remaining_minutes": self.lockout.remaining_lock_minutes(identity)
                    },
                )
            remaining = self.lockout.remaining_attempts(identity)
            raise InvalidCredentialsError(
                f"{INVALID_CREDENTIALS_MESSAGE}. {remaining} attempts remaining.",
                detail={"remaining_attempts": remaining},
            )

        self.lockout.record_success(identity)
        response = self._issue_session(identity, "Login successful")
        logger.info("login_succeeded", identity_id=identity.id)
        return response

    @translate_storage_errors
    async def refresh(self, body: RefreshRequest) -> AuthResponse:
        record = self.refresh_tokens.find_by_token(body.refresh_token)
        if record is None:
            raise NotFoundError("Refresh token not found")
        record = self.refresh_tokens.verify_not_expired(record)

        identity = self.store.find_by_id(record.identity_id)
        if identity is None:
            raise NotFoundError("Refresh token not found")

        access = self.tokens.issue(identity.id, identity.email, identity.role)
        if self.rotate_refresh_tokens:
            try:
                rotated = self.refresh_tokens.issue_for(identity.id, replacing=record.token)
            except ConstraintViolation as exc:
                raise NotFoundError("Refresh token not found") from exc
            if rotated is None:
                raise NotFoundError("Refresh token has already been used")
            record = rotated
        logger.info(
            "session_refreshed", identity_id=identity.id, rotated=self.rotate_refresh_tokens
        )
        return AuthResponse(
            access_token=access.token,
            refresh_token=record.token,
            expires_at=access.expires_at,
            identity_id=identity.id,
            username=identity.username,
            email=identity.email,
            role=identity.role,
            message="Token refreshed successfully",
        )

    @translate_storage_errors
    async def logout(self, identity_id: str) -> StatusResponse:
        revoked = self.refresh_tokens.delete_all_for(identity_id)
        logger.info("logged_out", identity_id=identity_id, sessions_revoked=revoked)
        return StatusResponse(message="Logged out successfully")

    @translate_storage_errors
    async def unlock(self, email: str) -> StatusResponse:
        identity = self.lockout.unlock(email)
        if identity is None:
            return StatusResponse(message="No matching account")
        return StatusResponse(message="Account unlocked")

    @translate_storage_errors
    async def set_enabled(self, email: str, enabled: bool) -> StatusResponse:
        identity = self.store.find_by_email(email)
        if identity is None:
            raise ConflictError("User not found")
        updated = self.store.set_enabled(identity.id, enabled)
        if updated is None:
            raise ConflictError("User not found")
        identity = updated
        if not enabled:
            revoked = self.refresh_tokens.delete_all_for(identity.id)
            logger.info("identity_disabled", identity_id=identity.id, sessions_revoked=revoked)
            return StatusResponse(message="Account disabled")
        logger.info("identity_enabled", identity_id=identity.id)
        return StatusResponse(message="Account enabled")

    async def authenticate(self, access_token: str) -> AccessClaims:
        claims = self.tokens.decode(access_token)
        if claims is None:
            raise AuthenticationError("Invalid or expired access token")
        try:
            return AccessClaims(
                identity_id=claims["sub"],
                email=claims["email"],
                role=claims["role"],
                jti=claims["jti"],
                issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthenticationError("Invalid or expired access token") from exc

    @translate_storage_errors
    async def get_identity_state(self, email: str) -> IdentityState:
        identity = self.store.find_by_email(email)
        if identity is None:
            raise NotFoundError("User not found")
        if not identity.enabled:
            return IdentityState.DISABLED
        if not identity.active:
            return IdentityState.PENDING
        if self.lockout.is_locked(identity):
            return IdentityState.LOCKED
        return IdentityState.ACTIVE


__all__ = [
    "IdentityLifecycle",
    "IdentityRepository",
    "IdentityStore",
    "RoleRepository",
    "translate_storage_errors",
]
