from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from loginguard.logging import get_logger
from loginguard.storage.models import AuditEvent, utcnow

logger = get_logger(__name__)


class AuditAction:
    """Action labels written to the audit trail; each names one outcome kind."""

    LOGIN_SUCCESS = "Login Success"
    LOGIN_FAILED = "Login Failed"
    LOGIN_FAILED_UNKNOWN_EMAIL = "Login Failed - Unknown Email"
    LOGIN_FAILED_LOCKED = "Login Failed - Account Locked"
    LOGIN_FAILED_HUMAN_CHECK = "Login Failed - Human Verification"
    ACCOUNT_LOCKED = "Account Locked"
    ACCOUNT_RECOVERED = "Account Recovered"
    TWO_FACTOR_REQUIRED = "Login - 2FA Required"
    TWO_FACTOR_SUCCESS = "Login - 2FA Success"
    TWO_FACTOR_FAILED = "Login - 2FA Failed"
    TWO_FACTOR_LOCKOUT = "Login - 2FA Lockout"
    TWO_FACTOR_EXPIRED = "Login - 2FA Expired"
    TWO_FACTOR_ENABLED = "2FA Enabled"
    TWO_FACTOR_DISABLED = "2FA Disabled"
    LOGOUT = "Logout"
    CONCURRENT_SESSION = "Session Terminated - Concurrent Login"
    SESSION_EXPIRED = "Session Expired - Unauthorized Access"
    REGISTRATION_SUCCESS = "Registration Success"
    REGISTRATION_FAILED = "Registration Failed"
    DUPLICATE_REGISTRATION = "Security Alert: Duplicate Registration Attempt"
    PASSWORD_CHANGED = "Password Changed"
    PASSWORD_CHANGE_FAILED = "Password Change Failed"
    PASSWORD_RESET = "Password Reset"
    PASSWORD_RESET_FAILED = "Password Reset Failed"
    PASSWORD_RESET_REQUESTED = "Password Reset Requested"

    @staticmethod
    def human_verification(outcome: str, action: str) -> str:
        return f"Human Verification {outcome} - {action.upper()}"


class AuditTrail:
    """Append-only security event log.

    ``log`` is fire-and-forget: a failing sink is reported through the
    application logger and never raised, because an audit outage must not
    block the flow it is observing.
    """

    def __init__(self, store, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock or utcnow

    def _normalize_user_id(self, user_id: Optional[str]) -> Optional[str]:
        # Emails, placeholders and ids of deleted users become anonymous events
        if not user_id:
            return None
        candidate = str(user_id).strip()
        if not candidate or candidate.lower() == "unknown" or "@" in candidate:
            return None
        if self.store.get_user(candidate) is None:
            return None
        return candidate

    def log(
        self,
        user_id: Optional[str],
        action: str,
        detail: Optional[str] = None,
        score: Optional[float] = None,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            event = AuditEvent(
                user_id=self._normalize_user_id(user_id),
                action=action,
                detail=detail,
                score=score,
                ip=ip,
                user_agent=user_agent,
                timestamp=self._clock(),
            )
            self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def list_user_events(self, user_id: str, limit: int = 50) -> List[AuditEvent]:
        """Newest-first history for one user."""
        return self.store.list_audit_events(user_id, limit=limit)
