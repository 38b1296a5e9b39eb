from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from loginguard.config import Settings
from loginguard.logging import get_logger
from loginguard.service.credentials import CredentialStore
from loginguard.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass
class PolicyCheck:
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    wait_hours: Optional[int] = None


@dataclass
class PasswordStatus:
    """Advisory age state surfaced at login and on the profile."""

    expired: bool = False
    warning: bool = False
    days_until_expiry: Optional[int] = None
    last_changed_at: Optional[datetime] = None
    message: Optional[str] = None


class PasswordLifecyclePolicy:
    """Minimum/maximum password age and reuse rules.

    Both age rules measure from ``password_last_changed_at``. A user with no
    timestamp has nothing to age and is never considered expired.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.history_count = settings.password_history_count
        self.min_age = timedelta(hours=settings.password_min_age_hours)
        self.max_age = timedelta(days=settings.password_max_age_days)
        self.warning_window = timedelta(days=settings.password_expiry_warning_days)
        self.enforce_min_age_on_reset = settings.enforce_min_age_on_reset
        self._clock = clock or utcnow

    def check_minimum_age(self, user: User, now: Optional[datetime] = None) -> PolicyCheck:
        last_changed = user.password_last_changed_at
        if last_changed is None or not self.min_age:
            return PolicyCheck(allowed=True)
        elapsed = (now or self._clock()) - last_changed
        if elapsed >= self.min_age:
            return PolicyCheck(allowed=True)
        wait_hours = max(1, math.ceil((self.min_age - elapsed).total_seconds() / 3600))
        return PolicyCheck(
            allowed=False,
            reason="min_age",
            message=(
                "You cannot change your password yet. "
                f"Please wait {wait_hours} more hour(s)."
            ),
            wait_hours=wait_hours,
        )

    def evaluate_expiry(self, user: User, now: Optional[datetime] = None) -> PasswordStatus:
        last_changed = user.password_last_changed_at
        if last_changed is None:
            return PasswordStatus()
        elapsed = (now or self._clock()) - last_changed
        if elapsed >= self.max_age:
            return PasswordStatus(
                expired=True,
                days_until_expiry=0,
                last_changed_at=last_changed,
                message="Your password has expired. You must change it now.",
            )
        remaining = self.max_age - elapsed
        days = math.ceil(remaining.total_seconds() / 86400)
        if remaining <= self.warning_window:
            return PasswordStatus(
                warning=True,
                days_until_expiry=days,
                last_changed_at=last_changed,
                message=f"Your password will expire in {days} day(s).",
            )
        return PasswordStatus(days_until_expiry=days, last_changed_at=last_changed)

    def check_reuse(self, user: User, new_password: str) -> PolicyCheck:
        """Compare against the newest N history hashes, newest first."""
        for entry in self.credentials.password_history(user, self.history_count):
            if self.credentials.verify_hash(entry.password_hash, new_password):
                return PolicyCheck(
                    allowed=False,
                    reason="reuse",
                    message=(
                        f"You cannot reuse any of your last {self.history_count} passwords."
                    ),
                )
        return PolicyCheck(allowed=True)

    def check_change(self, user: User, new_password: str, *, reset: bool = False) -> PolicyCheck:
        """Run the checks that apply to a change (or, with ``reset``, a token reset)."""
        if not reset or self.enforce_min_age_on_reset:
            age = self.check_minimum_age(user)
            if not age.allowed:
                return age
        return self.check_reuse(user, new_password)

    def apply_change(self, user: User, new_password: str, *, reset: bool = False) -> User:
        """Store the new hash: history append, timestamp, then trim, atomically.

        A reset also clears the outstanding reset token and the current
        session token so neither can be replayed.
        """
        new_hash = self.credentials.hash_password(user, new_password)
        updated = self.credentials.record_password_change(
            user,
            new_hash,
            changed_at=self._clock(),
            history_limit=self.history_count,
            clear_reset_token=reset,
            clear_session=reset,
        )
        logger.info("password_changed", user_id=user.id, reset=reset)
        return updated
