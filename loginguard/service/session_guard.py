from __future__ import annotations

import hashlib
import hmac
from enum import Enum
from typing import Optional

from loginguard.logging import get_logger
from loginguard.service.audit import AuditAction, AuditTrail
from loginguard.service.errors import ConcurrentSessionError, SessionExpiredError
from loginguard.storage.models import User

logger = get_logger(__name__)

CONCURRENT_SESSION_MESSAGE = (
    "You have been logged out because your account was accessed from another "
    "device or browser."
)
SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."


def session_fingerprint(session_token: str) -> str:
    """Digest of a session token, safe to embed in an identity token."""
    return hashlib.sha256(session_token.encode()).hexdigest()


class SessionCheck(str, Enum):
    OK = "ok"
    MISMATCH = "mismatch"
    ENDED = "ended"


class SessionGuard:
    """Enforces one live session per user on every authenticated request.

    Only the most recently issued session token is stored per user, so a newer
    sign-in silently displaces the older one; the displaced client finds out
    here, on its next request. A request is tied to a sign-in either by the
    session token it presents or by the ``sid`` fingerprint carried in its
    identity token, and both are checked when both are present. Logout and
    password reset clear the stored token, which ends every earlier sign-in.
    """

    def __init__(self, audit: AuditTrail) -> None:
        self.audit = audit

    def check(
        self,
        user: User,
        presented_token: Optional[str],
        session_id: Optional[str] = None,
    ) -> SessionCheck:
        if not presented_token and not session_id:
            # Identity not derived from any sign-in
            return SessionCheck.OK
        current = user.current_session_token
        if not current:
            return SessionCheck.ENDED
        if presented_token and not hmac.compare_digest(
            current.encode(), presented_token.encode()
        ):
            return SessionCheck.MISMATCH
        if session_id and not hmac.compare_digest(
            session_fingerprint(current), session_id
        ):
            return SessionCheck.MISMATCH
        return SessionCheck.OK

    def enforce(
        self,
        user: User,
        presented_token: Optional[str],
        *,
        session_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Raise when the request belongs to a displaced or ended sign-in."""
        result = self.check(user, presented_token, session_id)
        if result is SessionCheck.OK:
            return
        if result is SessionCheck.ENDED:
            logger.info("ended_session_presented", user_id=user.id, ip=ip)
            self.audit.log(
                user.id,
                AuditAction.SESSION_EXPIRED,
                "Session was ended by logout or password reset",
                ip=ip,
                user_agent=user_agent,
            )
            raise SessionExpiredError(SESSION_EXPIRED_MESSAGE)
        logger.warning("concurrent_session_detected", user_id=user.id, ip=ip)
        self.audit.log(
            user.id,
            AuditAction.CONCURRENT_SESSION,
            "Presented session token no longer matches the active session",
            ip=ip,
            user_agent=user_agent,
        )
        raise ConcurrentSessionError(CONCURRENT_SESSION_MESSAGE)
