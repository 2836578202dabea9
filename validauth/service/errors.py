from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for lifecycle exceptions handed to the transport layer.

    Each subclass carries a stable machine-readable ``error_code`` plus an
    HTTP-style ``status_code``:
    - validation_error (400)
    - unauthorized / invalid_credentials / invalid_otp / expired (401)
    - not_verified / account_disabled (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - configuration_error (500)
    - storage_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.error_code, "message": self.message, "details": self.detail}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Bearer token missing, invalid or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password (401)."""
    error_code = "invalid_credentials"


class InvalidOtpError(AuthenticationError):
    """Activation code does not match (401)."""
    error_code = "invalid_otp"


class ExpiredError(AuthenticationError):
    """Activation code or refresh token expired (401)."""
    error_code = "expired"


class NotVerifiedError(ServiceError):
    """Account has not completed activation (403)."""
    status_code = 403
    error_code = "not_verified"


class AccountDisabledError(ServiceError):
    """Account disabled by an administrator (403)."""
    status_code = 403
    error_code = "account_disabled"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"


class ConfigurationError(ServiceError):
    """Required reference data is missing (500)."""
    status_code = 500
    error_code = "configuration_error"


class StorageUnavailableError(ServiceError):
    """Backing store timed out or is unreachable (503)."""
    status_code = 503
    error_code = "storage_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidOtpError",
    "ExpiredError",
    "NotVerifiedError",
    "AccountDisabledError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "ConfigurationError",
    "StorageUnavailableError",
]
