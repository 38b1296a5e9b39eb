from __future__ import annotations

import json
import threading
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from loginguard.logging import get_logger
from loginguard.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_fields,
    generate_uuid,
    normalize_email,
    validate_user_fields,
)
from loginguard.storage.errors import ConstraintViolation
from loginguard.storage.models import AuditEvent, PasswordHistoryEntry, User, utcnow

_DATETIME_FIELDS = (
    "lockout_end",
    "password_last_changed_at",
    "password_reset_expires_at",
    "last_login_at",
    "created_at",
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    When ``fs_root`` is given the state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on
    start, so a development server keeps its users across restarts.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.audit_events: List[AuditEvent] = []
        self._history_seq = 1
        self._audit_seq = 1
        # RLock for all data operations; nested acquisitions happen within
        # compound operations such as record_password_change
        self._data_lock = threading.RLock()
        self._cipher = build_secret_cipher(mfa_encryption_key)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def verify_connection(self) -> None:
        """Nothing to reach; the data lives in this process."""
        return None

    # -- users -------------------------------------------------------------

    def _public(self, user: User) -> User:
        # Callers get a detached copy with the secret decrypted
        return replace(user, two_factor_secret=decrypt_secret(self._cipher, user.two_factor_secret))

    def create_user(self, email: str) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=generate_uuid(), email=normalized)
            self.users[user.id] = user
            self._persist_state()
            return self._public(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._public(user) if user else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public(user) if user else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        """Assign only the named columns; concurrent writers win per field."""
        validate_user_fields(fields)
        stored = encrypt_fields(self._cipher, fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in stored.items():
                setattr(user, name, value)
            self._persist_state()
            return self._public(user)

    def increment_failed_count(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.failed_count += 1
            self._persist_state()
            return user.failed_count

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.password_history.pop(user_id, None)
            self._persist_state()
            return True

    # -- password history --------------------------------------------------

    def record_password_change(
        self,
        user_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        history_limit: int,
        clear_reset_token: bool = False,
        clear_session: bool = False,
    ) -> User:
        """Append to history, stamp the user, then trim history to ``history_limit``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for password change", {"user_id": user_id}
                )
            entries = self.password_history.setdefault(user_id, [])
            entries.append(
                PasswordHistoryEntry(
                    user_id=user_id,
                    password_hash=password_hash,
                    created_at=changed_at,
                    id=self._history_seq,
                )
            )
            self._history_seq += 1
            user.password_hash = password_hash
            user.password_last_changed_at = changed_at
            if clear_reset_token:
                user.password_reset_token_hash = None
                user.password_reset_expires_at = None
            if clear_session:
                user.current_session_token = None
            entries.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
            del entries[history_limit:]
            self._persist_state()
            return self._public(user)

    def list_password_history(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            entries = sorted(
                self.password_history.get(user_id, []),
                key=lambda e: (e.created_at, e.id or 0),
                reverse=True,
            )
            if limit is not None:
                entries = entries[:limit]
            return [replace(e) for e in entries]

    # -- audit -------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            stored = replace(event, id=self._audit_seq)
            self._audit_seq += 1
            self.audit_events.append(stored)
            self._persist_state()
            return replace(stored)

    def list_audit_events(self, user_id: str, limit: int = 50) -> List[AuditEvent]:
        with self._data_lock:
            events = [e for e in self.audit_events if e.user_id == user_id]
            events.sort(key=lambda e: (e.timestamp, e.id or 0), reverse=True)
            return [replace(e) for e in events[:limit]]

    # -- snapshot persistence ---------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "password_history": [
                self._serialize_history(entry)
                for entries in self.password_history.values()
                for entry in entries
            ],
            "audit_events": [self._serialize_audit(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = PasswordHistoryEntry(
                user_id=raw["user_id"],
                password_hash=raw["password_hash"],
                created_at=datetime.fromisoformat(raw["created_at"]),
                id=raw.get("id"),
            )
            self.password_history.setdefault(entry.user_id, []).append(entry)
        self.audit_events = [self._deserialize_audit(e) for e in data.get("audit_events", [])]
        self._history_seq = 1 + max(
            (e.id or 0 for entries in self.password_history.values() for e in entries),
            default=0,
        )
        self._audit_seq = 1 + max((e.id or 0 for e in self.audit_events), default=0)
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            audit_events=len(self.audit_events),
        )
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        data = asdict(user)
        for name in _DATETIME_FIELDS:
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return data

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        values = dict(data)
        for name in _DATETIME_FIELDS:
            if values.get(name):
                values[name] = datetime.fromisoformat(values[name])
        if values.get("created_at") is None:
            values["created_at"] = utcnow()
        return User(**values)

    @staticmethod
    def _serialize_history(entry: PasswordHistoryEntry) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "password_hash": entry.password_hash,
            "created_at": entry.created_at.isoformat(),
        }

    @staticmethod
    def _serialize_audit(event: AuditEvent) -> dict:
        data = asdict(event)
        data["timestamp"] = event.timestamp.isoformat()
        return data

    @staticmethod
    def _deserialize_audit(data: dict) -> AuditEvent:
        values = dict(data)
        values["timestamp"] = datetime.fromisoformat(values["timestamp"])
        return AuditEvent(**values)
