from __future__ import annotations

import asyncio
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from urllib.parse import urlencode

from loginguard.config import Settings
from loginguard.logging import get_logger
from loginguard.service import totp
from loginguard.service.audit import AuditAction, AuditTrail
from loginguard.service.credentials import CredentialStore
from loginguard.service.email import EmailService
from loginguard.service.errors import (
    ConflictError,
    HumanVerificationError,
    ValidationError,
)
from loginguard.service.human_verification import HumanVerificationGate
from loginguard.service.login import LoginStateMachine
from loginguard.service.password_policy import PasswordLifecyclePolicy, PasswordStatus
from loginguard.storage.models import AuditEvent, User, utcnow

logger = get_logger(__name__)

REGISTER_ACTION = "register"
RESET_REQUESTED_MESSAGE = (
    "If an account exists with that email, a password reset link has been sent."
)
INVALID_RESET_MESSAGE = "This password reset link is invalid or has expired."
WEAK_PASSWORD_MESSAGE = (
    "Password must be at least 12 characters long and include uppercase, "
    "lowercase, numeric and special characters."
)
MIN_PASSWORD_LENGTH = 12

_PASSWORD_CLASSES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"\d"),
    re.compile(r"[^A-Za-z0-9]"),
)


def validate_password_strength(password: str, confirm_password: Optional[str] = None) -> None:
    """Raise ``ValidationError`` unless the password is strong and confirmed."""
    if len(password or "") < MIN_PASSWORD_LENGTH or not all(
        pattern.search(password) for pattern in _PASSWORD_CLASSES
    ):
        raise ValidationError(WEAK_PASSWORD_MESSAGE, detail={"field": "password"})
    if confirm_password is not None and not hmac.compare_digest(
        password.encode(), confirm_password.encode()
    ):
        raise ValidationError(
            "Passwords do not match.", detail={"field": "confirm_password"}
        )


def _digest_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class Registration:
    user: User
    session_token: str
    trust_score: Optional[float] = None


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_uri: str


class AccountService:
    """Account workflows that sit around the login state machine.

    Registration, password change/reset, logout and two-factor enrolment all
    funnel their password writes through ``PasswordLifecyclePolicy`` and their
    session writes through ``LoginStateMachine.new_session`` so the history
    and single-session rules hold on every path.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        gate: HumanVerificationGate,
        audit: AuditTrail,
        policy: PasswordLifecyclePolicy,
        login: LoginStateMachine,
        email: EmailService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.gate = gate
        self.audit = audit
        self.policy = policy
        self.login = login
        self.email = email
        self.reset_ttl = timedelta(minutes=settings.password_reset_token_ttl_minutes)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    # -- registration ------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        confirm_password: str,
        verification_token: Optional[str],
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Registration:
        verification = await self.gate.verify(
            verification_token,
            REGISTER_ACTION,
            email,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        score = verification.trust_score
        if not verification.valid:
            self.audit.log(
                None,
                AuditAction.REGISTRATION_FAILED,
                f"ErrorCode: {verification.error_code}",
                score,
                ip=client_ip,
                user_agent=user_agent,
            )
            raise HumanVerificationError(
                verification.message, detail={"error_code": verification.error_code}
            )

        validate_password_strength(password, confirm_password)

        existing = self.credentials.find_by_email(email)
        if existing is not None:
            logger.warning("duplicate_registration_attempt", user_id=existing.id)
            self.audit.log(
                existing.id,
                AuditAction.DUPLICATE_REGISTRATION,
                "Registration attempted with an already registered email",
                score,
                ip=client_ip,
                user_agent=user_agent,
            )
            raise ConflictError("Registration could not be completed.")

        user = self.credentials.create(email)
        user = self.policy.apply_change(user, password)
        session_token = self.login.new_session(user)
        user.current_session_token = session_token
        self.audit.log(
            user.id,
            AuditAction.REGISTRATION_SUCCESS,
            None,
            score,
            ip=client_ip,
            user_agent=user_agent,
        )
        logger.info("user_registered", user_id=user.id)
        return Registration(user=user, session_token=session_token, trust_score=score)

    # -- password change ---------------------------------------------------

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        confirm_password: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        if not self.credentials.verify_password(user, current_password):
            self.audit.log(
                user.id,
                AuditAction.PASSWORD_CHANGE_FAILED,
                "Current password incorrect",
                ip=client_ip,
                user_agent=user_agent,
            )
            raise ValidationError(
                "Current password is incorrect.", detail={"field": "current_password"}
            )
        validate_password_strength(new_password, confirm_password)

        check = self.policy.check_change(user, new_password)
        if not check.allowed:
            self.audit.log(
                user.id,
                AuditAction.PASSWORD_CHANGE_FAILED,
                f"Rejected: {check.reason}",
                ip=client_ip,
                user_agent=user_agent,
            )
            detail = {"reason": check.reason}
            if check.wait_hours is not None:
                detail["wait_hours"] = check.wait_hours
            raise ValidationError(check.message or "Password change rejected.", detail=detail)

        updated = self.policy.apply_change(user, new_password)
        self.audit.log(
            user.id, AuditAction.PASSWORD_CHANGED, None, ip=client_ip, user_agent=user_agent
        )
        return updated

    # -- password reset ----------------------------------------------------

    def build_reset_link(self, user_id: str, token: str) -> str:
        base = self.settings.app_base_url.rstrip("/")
        return f"{base}/reset-password?{urlencode({'userId': user_id, 'token': token})}"

    async def request_password_reset(
        self,
        email: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Issue a single-use reset link; the reply never says whether the email exists."""
        user = self.credentials.find_by_email(email)
        if user is None:
            self.audit.log(
                None,
                AuditAction.PASSWORD_RESET_REQUESTED,
                "No matching account",
                ip=client_ip,
                user_agent=user_agent,
            )
            return RESET_REQUESTED_MESSAGE

        token = secrets.token_urlsafe(32)
        user.password_reset_token_hash = _digest_token(token)
        user.password_reset_expires_at = self._now() + self.reset_ttl
        self.credentials.update(user, "password_reset_token_hash", "password_reset_expires_at")

        sent = await asyncio.to_thread(
            self.email.send_password_reset, user.email, self.build_reset_link(user.id, token)
        )
        if not sent:
            logger.warning("password_reset_email_failed", user_id=user.id)
        self.audit.log(
            user.id,
            AuditAction.PASSWORD_RESET_REQUESTED,
            None if sent else "Email delivery failed",
            ip=client_ip,
            user_agent=user_agent,
        )
        return RESET_REQUESTED_MESSAGE

    async def complete_password_reset(
        self,
        user_id: str,
        token: str,
        new_password: str,
        confirm_password: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = self.credentials.find_by_id(user_id) if user_id else None
        if user is None or not self._reset_token_valid(user, token):
            self.audit.log(
                user.id if user else None,
                AuditAction.PASSWORD_RESET_FAILED,
                "Invalid or expired reset token",
                ip=client_ip,
                user_agent=user_agent,
            )
            raise ValidationError(INVALID_RESET_MESSAGE)

        validate_password_strength(new_password, confirm_password)
        check = self.policy.check_change(user, new_password, reset=True)
        if not check.allowed:
            self.audit.log(
                user.id,
                AuditAction.PASSWORD_RESET_FAILED,
                f"Rejected: {check.reason}",
                ip=client_ip,
                user_agent=user_agent,
            )
            raise ValidationError(check.message or "Password reset rejected.", detail={"reason": check.reason})

        updated = self.policy.apply_change(user, new_password, reset=True)
        self.audit.log(
            user.id, AuditAction.PASSWORD_RESET, None, ip=client_ip, user_agent=user_agent
        )
        return updated

    def _reset_token_valid(self, user: User, token: str) -> bool:
        expires_at = user.password_reset_expires_at
        stored_digest = user.password_reset_token_hash
        if not token or not stored_digest or expires_at is None:
            return False
        if expires_at <= self._now():
            # Stale token: drop it so it cannot linger
            user.password_reset_token_hash = None
            user.password_reset_expires_at = None
            self.credentials.update(user, "password_reset_token_hash", "password_reset_expires_at")
            return False
        return hmac.compare_digest(stored_digest, _digest_token(token))

    # -- sessions ----------------------------------------------------------

    async def logout(
        self,
        user: User,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        user.current_session_token = None
        self.credentials.update(user, "current_session_token")
        self.audit.log(user.id, AuditAction.LOGOUT, None, ip=client_ip, user_agent=user_agent)
        logger.info("user_logged_out", user_id=user.id)

    def password_status(self, user: User) -> PasswordStatus:
        return self.policy.evaluate_expiry(user, self._now())

    def audit_events(self, user: User, limit: int = 50) -> List[AuditEvent]:
        return self.audit.list_user_events(user.id, limit=limit)

    # -- two-factor enrolment ----------------------------------------------

    async def setup_two_factor(self, user: User) -> TwoFactorSetup:
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled.")
        secret = totp.generate_secret()
        user.two_factor_secret = secret
        self.credentials.update(user, "two_factor_secret")
        return TwoFactorSetup(
            secret=secret,
            otpauth_uri=totp.provisioning_uri(secret, user.email, self.settings.two_factor_issuer),
        )

    async def enable_two_factor(
        self,
        user: User,
        code: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled.")
        if not user.two_factor_secret:
            raise ValidationError("Start two-factor setup before enabling it.")
        if not totp.verify_code(user.two_factor_secret, code, now=self._now().timestamp()):
            raise ValidationError("Invalid authenticator code.", detail={"field": "code"})
        user.two_factor_enabled = True
        updated = self.credentials.update(user, "two_factor_enabled")
        self.audit.log(
            user.id, AuditAction.TWO_FACTOR_ENABLED, None, ip=client_ip, user_agent=user_agent
        )
        return updated

    async def disable_two_factor(
        self,
        user: User,
        code: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        if not user.two_factor_enabled:
            raise ValidationError("Two-factor authentication is not enabled.")
        if not totp.verify_code(user.two_factor_secret, code, now=self._now().timestamp()):
            raise ValidationError("Invalid authenticator code.", detail={"field": "code"})
        user.two_factor_enabled = False
        user.two_factor_secret = None
        updated = self.credentials.update(user, "two_factor_enabled", "two_factor_secret")
        self.audit.log(
            user.id, AuditAction.TWO_FACTOR_DISABLED, None, ip=client_ip, user_agent=user_agent
        )
        return updated
