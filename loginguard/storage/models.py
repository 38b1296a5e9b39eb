from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    failed_count: int = 0
    lockout_end: Optional[datetime] = None
    two_factor_enabled: bool = False
    # Encrypted at rest by the store; plaintext on the returned object
    two_factor_secret: Optional[str] = None
    current_session_token: Optional[str] = None
    password_last_changed_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordHistoryEntry:
    user_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class AuditEvent:
    action: str
    user_id: Optional[str] = None
    detail: Optional[str] = None
    score: Optional[float] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


# Columns callers may change through ``update_user``
USER_MUTABLE_FIELDS = frozenset(
    {
        "password_hash",
        "failed_count",
        "lockout_end",
        "two_factor_enabled",
        "two_factor_secret",
        "current_session_token",
        "password_last_changed_at",
        "password_reset_token_hash",
        "password_reset_expires_at",
        "last_login_at",
    }
)
