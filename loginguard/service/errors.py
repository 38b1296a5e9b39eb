from __future__ import annotations

from typing import Optional

# Client redirect hints; the two must never be conflated
CONCURRENT_SESSION_REDIRECT = "/login?concurrent=1"
SESSION_EXPIRED_REDIRECT = "/login?sessionExpired=true"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - verification_failed (400)
    - unauthorized / session_expired / concurrent_session (401)
    - forbidden / password_expired (403)
    - conflict (409)
    - account_locked (423)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class HumanVerificationError(ServiceError):
    """The human-verification gate rejected the request (400)."""
    status_code = 400
    error_code = "verification_failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Identity token expired or unreadable; routine re-authentication (401)."""
    error_code = "session_expired"
    redirect = SESSION_EXPIRED_REDIRECT


class ConcurrentSessionError(AuthenticationError):
    """Presented session token was displaced by a newer sign-in (401)."""
    error_code = "concurrent_session"
    redirect = CONCURRENT_SESSION_REDIRECT


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PasswordExpiredError(ForbiddenError):
    """Password is past its maximum age and must be changed first (403)."""
    error_code = "password_expired"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Too many failed attempts; the account is temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"


__all__ = [
    "CONCURRENT_SESSION_REDIRECT",
    "SESSION_EXPIRED_REDIRECT",
    "ServiceError",
    "ValidationError",
    "HumanVerificationError",
    "AuthenticationError",
    "SessionExpiredError",
    "ConcurrentSessionError",
    "ForbiddenError",
    "PasswordExpiredError",
    "ConflictError",
    "AccountLockedError",
]
