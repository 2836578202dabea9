from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9!#$%&'*+/=?^_`{|}~.-]+$")
_USERNAME = re.compile(r"^[A-Za-z0-9_.-]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    if len(domain.split(".")) < 2 or any(not part for part in domain.split(".")):
        raise ValueError("invalid email address format")
    return normalized


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    email: str
    password: str = Field(min_length=1, max_length=256)
    confirm_password: str = Field(max_length=256)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = value.strip()
        if not value or not _USERNAME.match(value):
            raise ValueError("username may contain letters, digits, '.', '_' and '-'")
        return value

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(BaseModel):
    email: str
    otp: str = Field(min_length=1, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)


class ResendOtpRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class UserResponse(BaseModel):
    identity_id: str
    username: str
    email: str
    message: str


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    identity_id: str
    username: str
    email: str
    role: str
    message: Optional[str] = None


class StatusResponse(BaseModel):
    message: str


class AccessClaims(BaseModel):
    identity_id: str
    email: str
    role: str
    jti: str
    issued_at: datetime
    expires_at: datetime
