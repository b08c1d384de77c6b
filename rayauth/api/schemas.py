from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "bad_request",
    "unauthorized",
    "forbidden",
    "account_locked",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
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
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not 3 <= len(value) <= 64:
        raise ValueError("username must be between 3 and 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, digits, dots, underscores and hyphens")
    return value


def _validate_basic_password(value: str) -> str:
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_password_strength(value: str) -> str:
    """Reset and change require 8+ characters with an uppercase letter and a digit."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain at least one uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain at least one digit")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_basic_password(value)


class RegisterRequest(BaseModel):
    email: str
    password: str
    username: Optional[str] = Field(default=None, max_length=64)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    role: Optional[str] = Field(default=None, max_length=32)
    tenant_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_basic_password(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)


class BootstrapRequest(BaseModel):
    activation_code: str = Field(..., max_length=64)
    tenant_name: str = Field(..., min_length=2, max_length=200)
    tenant_code: Optional[str] = Field(default=None, max_length=50)
    email: str
    password: str
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    timezone: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_bootstrap_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_basic_password(value)


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., max_length=64)


class VerifyCodeResponse(BaseModel):
    valid: bool
    message: str


class OtpSendRequest(BaseModel):
    contact: str = Field(..., min_length=3, max_length=254)

    @field_validator("contact")
    @classmethod
    def _strip_contact(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("contact is required")
        return value


class OtpSendResponse(BaseModel):
    success: bool
    message: str
    contact: str
    expires_in: int
    code: Optional[str] = None


class OtpVerifyRequest(OtpSendRequest):
    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128)


class RevokeOthersRequest(BaseModel):
    current_session_id: str = Field(..., max_length=128)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserSummary(BaseModel):
    id: str
    email: str
    username: str
    role: str
    tenant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    oauth_provider: Optional[str] = None


class TenantSummary(BaseModel):
    id: str
    tenant_code: str
    name: str


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    user: UserSummary
    is_new_user: Optional[bool] = None
    tenant: Optional[TenantSummary] = None
    message: Optional[str] = None


class TokenRefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str


class ProfileResponse(UserSummary):
    phone: Optional[str] = None
    status: str
    email_verified: bool = False
    last_login: Optional[datetime] = None


class SessionResponse(BaseModel):
    id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    last_activity: datetime
    created_at: datetime
    is_active: bool


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SessionStatsResponse(BaseModel):
    total_active: int
    total_expired: int
    unique_users: int


class MessageResponse(BaseModel):
    message: str
    revoked_sessions: Optional[int] = None
    revoked_count: Optional[int] = None


class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str
