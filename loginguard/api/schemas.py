from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_PASSWORD_LENGTH = 128
MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode string using NFKC.

    This handles:
    - Combining diacritics
    - Compatibility characters
    - Zero-width characters
    """
    # U+200B ZERO WIDTH SPACE, U+200C ZERO WIDTH NON-JOINER,
    # U+200D ZERO WIDTH JOINER, U+FEFF ZERO WIDTH NO-BREAK SPACE
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    # RTL/LTR override characters, U+202A-U+202E and U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "session_expired",
    "concurrent_session",
    "forbidden",
    "password_expired",
    "not_found",
    "rate_limited",
    "validation_error",
    "verification_failed",
    "conflict",
    "account_locked",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


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


class _EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    verification_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)


class LoginRequest(_EmailModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    verification_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    remember_me: bool = False


class TwoFactorLoginRequest(BaseModel):
    continuation: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=10)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class PasswordForgotRequest(_EmailModel):
    pass


class PasswordResetConfirm(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=10, description="Current TOTP code")


class PasswordStatusResponse(BaseModel):
    expired: bool = False
    warning: bool = False
    days_until_expiry: Optional[int] = None
    last_changed_at: Optional[datetime] = None
    message: Optional[str] = None


class LoginResponse(BaseModel):
    outcome: str
    message: str
    user_id: Optional[str] = None
    two_factor_required: bool = False
    continuation: Optional[str] = None
    access_token: Optional[str] = None
    session_token: Optional[str] = None
    token_type: Optional[str] = None
    password_status: Optional[PasswordStatusResponse] = None


class UserProfileResponse(BaseModel):
    id: str
    email: str
    two_factor_enabled: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    password_status: PasswordStatusResponse


class TwoFactorSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str


class TwoFactorStatusResponse(BaseModel):
    enabled: bool


class MessageResponse(BaseModel):
    message: str


class AuditEventResponse(BaseModel):
    id: Optional[int] = None
    action: str
    detail: Optional[str] = None
    score: Optional[float] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime


class AuditListResponse(BaseModel):
    items: List[AuditEventResponse]
