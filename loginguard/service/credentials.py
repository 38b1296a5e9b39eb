from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from loginguard.logging import get_logger
from loginguard.storage.models import PasswordHistoryEntry, User, utcnow

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, email: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def increment_failed_count(self, user_id: str) -> int: ...

    def record_password_change(
        self,
        user_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        history_limit: int,
        clear_reset_token: bool = False,
        clear_session: bool = False,
    ) -> User: ...

    def list_password_history(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[PasswordHistoryEntry]: ...

    def delete_user(self, user_id: str) -> bool: ...


class CredentialStore:
    """Narrow user/credential contract the authentication core depends on.

    Field writes go through ``update`` with explicit field names so two
    requests touching different columns of the same user never clobber each
    other.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._clock = clock or utcnow
        # Verified against for unknown emails so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash("loginguard-timing-parity")

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def create(self, email: str) -> User:
        return self.store.create_user(email)

    def update(self, user: User, *fields: str) -> User:
        """Persist the named fields of ``user`` and return the stored record."""
        updated = self.store.update_user(
            user.id, **{name: getattr(user, name) for name in fields}
        )
        return updated or user

    # -- lockout -----------------------------------------------------------

    def get_lockout_end(self, user: User) -> Optional[datetime]:
        return user.lockout_end

    def is_locked_out(self, user: User, now: Optional[datetime] = None) -> bool:
        lockout_end = self.get_lockout_end(user)
        return lockout_end is not None and lockout_end > (now or self._clock())

    def set_lockout_end(self, user: User, lockout_end: Optional[datetime]) -> User:
        user.lockout_end = lockout_end
        return self.update(user, "lockout_end")

    def get_failed_count(self, user: User) -> int:
        return user.failed_count

    def increment_failed_count(self, user: User) -> int:
        user.failed_count = self.store.increment_failed_count(user.id)
        return user.failed_count

    def reset_failed_count(self, user: User) -> User:
        user.failed_count = 0
        return self.update(user, "failed_count")

    # -- passwords ---------------------------------------------------------

    def hash_password(self, user: Optional[User], plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify_hash(self, stored_hash: Optional[str], plaintext: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def verify_password(self, user: User, plaintext: str) -> bool:
        if not user.password_hash:
            logger.warning("password_record_missing", user_id=user.id)
            self.verify_dummy(plaintext)
            return False
        return self.verify_hash(user.password_hash, plaintext)

    def verify_dummy(self, plaintext: str) -> None:
        self.verify_hash(self._dummy_hash, plaintext)

    def password_history(self, user: User, limit: int) -> List[PasswordHistoryEntry]:
        return self.store.list_password_history(user.id, limit=limit)

    def record_password_change(
        self,
        user: User,
        password_hash: str,
        *,
        changed_at: datetime,
        history_limit: int,
        clear_reset_token: bool = False,
        clear_session: bool = False,
    ) -> User:
        return self.store.record_password_change(
            user.id,
            password_hash,
            changed_at=changed_at,
            history_limit=history_limit,
            clear_reset_token=clear_reset_token,
            clear_session=clear_session,
        )
