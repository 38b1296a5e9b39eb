from __future__ import annotations

import hashlib
import math
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loginguard.config import Settings
from loginguard.logging import get_logger
from loginguard.service import totp
from loginguard.service.audit import AuditAction, AuditTrail
from loginguard.service.credentials import CredentialStore
from loginguard.service.human_verification import HumanVerificationGate
from loginguard.service.password_policy import PasswordLifecyclePolicy, PasswordStatus
from loginguard.storage.models import User, utcnow

logger = get_logger(__name__)

LOGIN_ACTION = "login"
INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."
TWO_FACTOR_EXPIRED_MESSAGE = "Your verification session has expired. Please sign in again."


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    HUMAN_CHECK_FAILED = "human_check_failed"
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED_OUT = "locked_out"
    INVALID_CODE = "invalid_code"
    EXPIRED = "expired"


@dataclass
class LoginAttemptContext:
    email: str
    password: str
    verification_token: Optional[str] = None
    remember_me: bool = False
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class LoginResult:
    outcome: LoginOutcome
    message: str
    user_id: Optional[str] = None
    session_token: Optional[str] = None
    continuation: Optional[str] = None
    trust_score: Optional[float] = None
    remaining_attempts: Optional[int] = None
    lockout_remaining: Optional[timedelta] = None
    password_status: Optional[PasswordStatus] = None
    remember_me: bool = False
    verification_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is LoginOutcome.SUCCESS


def _lockout_message(remaining: timedelta) -> str:
    minutes = max(1, math.ceil(remaining.total_seconds() / 60))
    return (
        "Account is locked due to multiple failed attempts. "
        f"Please try again in {minutes} minutes."
    )


def _attempts_message(remaining: int) -> str:
    return (
        f"{INVALID_CREDENTIALS_MESSAGE} {remaining} attempt(s) remaining before account lockout."
    )


def _continuation_key(continuation: str) -> str:
    return hashlib.sha256(continuation.encode()).hexdigest()


class LoginStateMachine:
    """Decides the outcome of one login attempt.

    Stages run in a fixed order: human check, credential lookup, lockout
    check, password check, then either a suspended two-factor continuation or
    session issuance. Every terminal outcome writes exactly one audit event
    whose label names the outcome, and carries the attempt's trust score.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        gate: HumanVerificationGate,
        audit: AuditTrail,
        policy: PasswordLifecyclePolicy,
        *,
        cache: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.gate = gate
        self.audit = audit
        self.policy = policy
        self.cache = cache
        self.max_failed_attempts = settings.max_failed_attempts
        self.lockout_duration = timedelta(minutes=settings.lockout_minutes)
        self.two_factor_ttl = timedelta(minutes=settings.two_factor_ttl_minutes)
        self._clock = clock or utcnow
        # In-memory fallback for suspended logins when Redis is unavailable
        self._state_lock = threading.Lock()
        self._pending: Dict[str, Dict[str, Any]] = {}

    def _now(self) -> datetime:
        return self._clock()

    # -- main flow ---------------------------------------------------------

    async def login(self, ctx: LoginAttemptContext) -> LoginResult:
        verification = await self.gate.verify(
            ctx.verification_token,
            LOGIN_ACTION,
            ctx.email,
            client_ip=ctx.client_ip,
            user_agent=ctx.user_agent,
        )
        score = verification.trust_score
        if not verification.valid:
            # No user lookup before the human check passes
            self._log(
                None,
                AuditAction.LOGIN_FAILED_HUMAN_CHECK,
                f"ErrorCode: {verification.error_code}",
                score,
                ctx,
            )
            return LoginResult(
                outcome=LoginOutcome.HUMAN_CHECK_FAILED,
                message=verification.message,
                trust_score=score,
                verification_error=verification.error_code,
            )

        user = self.credentials.find_by_email(ctx.email)
        if user is None:
            # Same argon2 cost and the reply a first wrong password gets
            self.credentials.verify_dummy(ctx.password)
            self._log(None, AuditAction.LOGIN_FAILED_UNKNOWN_EMAIL, None, score, ctx)
            remaining = self.max_failed_attempts - 1
            return LoginResult(
                outcome=LoginOutcome.INVALID_CREDENTIALS,
                message=_attempts_message(remaining),
                trust_score=score,
                remaining_attempts=remaining,
            )

        now = self._now()
        locked = self._check_lockout(user, now, score, ctx)
        if locked is not None:
            return locked

        if not self.credentials.verify_password(user, ctx.password):
            return self._register_failure(
                user,
                now,
                score,
                ctx,
                failed_action=AuditAction.LOGIN_FAILED,
                locked_action=AuditAction.ACCOUNT_LOCKED,
                outcome=LoginOutcome.INVALID_CREDENTIALS,
            )

        if self.credentials.get_failed_count(user):
            user = self.credentials.reset_failed_count(user)

        if user.two_factor_enabled:
            continuation = await self._suspend(user, score, ctx)
            self._log(user.id, AuditAction.TWO_FACTOR_REQUIRED, None, score, ctx)
            return LoginResult(
                outcome=LoginOutcome.TWO_FACTOR_REQUIRED,
                message="Enter the code from your authenticator app.",
                user_id=user.id,
                continuation=continuation,
                trust_score=score,
                remember_me=ctx.remember_me,
            )

        return self._issue_session(
            user, score, ctx, action=AuditAction.LOGIN_SUCCESS
        )

    async def complete_two_factor(
        self,
        continuation: str,
        code: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        """Resume a suspended login with the authenticator code."""
        pending = await self._load_pending(continuation)
        user = self.credentials.find_by_id(pending["user_id"]) if pending else None
        if pending is None or user is None:
            ctx = LoginAttemptContext(email="", password="", client_ip=client_ip, user_agent=user_agent)
            self._log(None, AuditAction.TWO_FACTOR_EXPIRED, None, None, ctx)
            return LoginResult(outcome=LoginOutcome.EXPIRED, message=TWO_FACTOR_EXPIRED_MESSAGE)

        score = pending.get("trust_score")
        ctx = LoginAttemptContext(
            email=user.email,
            password="",
            remember_me=bool(pending.get("remember_me")),
            client_ip=client_ip or pending.get("client_ip"),
            user_agent=user_agent,
        )
        now = self._now()
        locked = self._check_lockout(user, now, score, ctx)
        if locked is not None:
            await self._discard_pending(continuation)
            return locked

        if not totp.verify_code(user.two_factor_secret, code, now=now.timestamp()):
            result = self._register_failure(
                user,
                now,
                score,
                ctx,
                failed_action=AuditAction.TWO_FACTOR_FAILED,
                locked_action=AuditAction.TWO_FACTOR_LOCKOUT,
                outcome=LoginOutcome.INVALID_CODE,
                failed_message="Invalid authenticator code.",
            )
            if result.outcome is LoginOutcome.LOCKED_OUT:
                await self._discard_pending(continuation)
            return result

        # Pop before issuing so a continuation completes at most once
        if await self._discard_pending(continuation) is None:
            self._log(user.id, AuditAction.TWO_FACTOR_EXPIRED, None, score, ctx)
            return LoginResult(outcome=LoginOutcome.EXPIRED, message=TWO_FACTOR_EXPIRED_MESSAGE)
        if self.credentials.get_failed_count(user):
            user = self.credentials.reset_failed_count(user)
        return self._issue_session(user, score, ctx, action=AuditAction.TWO_FACTOR_SUCCESS)

    # -- stages ------------------------------------------------------------

    def _check_lockout(
        self, user: User, now: datetime, score: Optional[float], ctx: LoginAttemptContext
    ) -> Optional[LoginResult]:
        lockout_end = self.credentials.get_lockout_end(user)
        if lockout_end is None:
            return None
        if lockout_end > now:
            remaining = lockout_end - now
            self._log(
                user.id,
                AuditAction.LOGIN_FAILED_LOCKED,
                f"Lockout ends at {lockout_end.isoformat()}",
                score,
                ctx,
            )
            return LoginResult(
                outcome=LoginOutcome.LOCKED_OUT,
                message=_lockout_message(remaining),
                user_id=user.id,
                trust_score=score,
                remaining_attempts=0,
                lockout_remaining=remaining,
            )
        # Lockout elapsed: recover now, on this attempt, not via a sweeper
        user.lockout_end = None
        user.failed_count = 0
        self.credentials.update(user, "lockout_end", "failed_count")
        logger.info("account_recovered", user_id=user.id)
        self._log(user.id, AuditAction.ACCOUNT_RECOVERED, "Lockout period elapsed", score, ctx)
        return None

    def _register_failure(
        self,
        user: User,
        now: datetime,
        score: Optional[float],
        ctx: LoginAttemptContext,
        *,
        failed_action: str,
        locked_action: str,
        outcome: LoginOutcome,
        failed_message: str = INVALID_CREDENTIALS_MESSAGE,
    ) -> LoginResult:
        count = self.credentials.increment_failed_count(user)
        if count >= self.max_failed_attempts:
            lockout_end = now + self.lockout_duration
            self.credentials.set_lockout_end(user, lockout_end)
            logger.warning("account_locked", user_id=user.id, failed_count=count)
            self._log(user.id, locked_action, f"Failed attempts: {count}", score, ctx)
            return LoginResult(
                outcome=LoginOutcome.LOCKED_OUT,
                message=_lockout_message(self.lockout_duration),
                user_id=user.id,
                trust_score=score,
                remaining_attempts=0,
                lockout_remaining=self.lockout_duration,
            )
        remaining = self.max_failed_attempts - count
        self._log(
            user.id,
            failed_action,
            f"Failed attempts: {count}/{self.max_failed_attempts}",
            score,
            ctx,
        )
        if failed_message == INVALID_CREDENTIALS_MESSAGE:
            message = _attempts_message(remaining)
        else:
            message = f"{failed_message} {remaining} attempt(s) remaining before account lockout."
        return LoginResult(
            outcome=outcome,
            message=message,
            user_id=user.id,
            trust_score=score,
            remaining_attempts=remaining,
        )

    def _issue_session(
        self,
        user: User,
        score: Optional[float],
        ctx: LoginAttemptContext,
        *,
        action: str,
    ) -> LoginResult:
        session_token = self.new_session(user)
        self._log(user.id, action, None, score, ctx)
        logger.info("session_issued", user_id=user.id, remember_me=ctx.remember_me)
        status = self.policy.evaluate_expiry(user)
        return LoginResult(
            outcome=LoginOutcome.SUCCESS,
            message=status.message or "Signed in.",
            user_id=user.id,
            session_token=session_token,
            trust_score=score,
            password_status=status,
            remember_me=ctx.remember_me,
        )

    def new_session(self, user: User) -> str:
        """Write a fresh session token; any earlier session stops matching."""
        session_token = secrets.token_urlsafe(32)
        user.current_session_token = session_token
        user.last_login_at = self._now()
        self.credentials.update(user, "current_session_token", "last_login_at")
        return session_token

    # -- suspended logins --------------------------------------------------

    async def _suspend(
        self, user: User, score: Optional[float], ctx: LoginAttemptContext
    ) -> str:
        continuation = secrets.token_urlsafe(32)
        expires_at = self._now() + self.two_factor_ttl
        payload = {
            "user_id": user.id,
            "trust_score": score,
            "remember_me": ctx.remember_me,
            "client_ip": ctx.client_ip,
            "expires_at": expires_at.isoformat(),
        }
        if self.cache:
            await self.cache.set_pending_two_factor(continuation, payload, expires_at)
        else:
            with self._state_lock:
                self._pending[_continuation_key(continuation)] = payload
        return continuation

    def _is_live(self, payload: Optional[Dict[str, Any]]) -> bool:
        if not payload:
            return False
        try:
            expires_at = datetime.fromisoformat(payload["expires_at"])
        except (KeyError, TypeError, ValueError):
            return False
        return expires_at > self._now()

    async def _load_pending(self, continuation: str) -> Optional[Dict[str, Any]]:
        if not continuation:
            return None
        if self.cache:
            payload = await self.cache.get_pending_two_factor(continuation)
        else:
            with self._state_lock:
                payload = self._pending.get(_continuation_key(continuation))
        if not self._is_live(payload):
            await self._discard_pending(continuation)
            return None
        return payload

    async def _discard_pending(self, continuation: str) -> Optional[Dict[str, Any]]:
        if self.cache:
            return await self.cache.pop_pending_two_factor(continuation)
        with self._state_lock:
            return self._pending.pop(_continuation_key(continuation), None)

    # -- audit -------------------------------------------------------------

    def _log(
        self,
        user_id: Optional[str],
        action: str,
        detail: Optional[str],
        score: Optional[float],
        ctx: LoginAttemptContext,
    ) -> None:
        self.audit.log(
            user_id, action, detail, score, ip=ctx.client_ip, user_agent=ctx.user_agent
        )
