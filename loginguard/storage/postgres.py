from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from loginguard.logging import get_logger
from loginguard.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_fields,
    ensure_aware,
    generate_uuid,
    normalize_email,
    parse_ip_address,
    parse_user_id,
    validate_user_fields,
)
from loginguard.storage.errors import ConstraintViolation
from loginguard.storage.models import AuditEvent, PasswordHistoryEntry, User


class PostgresStore:
    """Postgres-backed store for users, password history and the audit trail."""

    def __init__(self, dsn: str, *, mfa_encryption_key: str | None = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(mfa_encryption_key)
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        required_tables = ["app_user", "password_history", "audit_event"]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            failed_count=row.get("failed_count") or 0,
            lockout_end=ensure_aware(row.get("lockout_end")),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=decrypt_secret(self._cipher, row.get("two_factor_secret")),
            current_session_token=row.get("current_session_token"),
            password_last_changed_at=ensure_aware(row.get("password_last_changed_at")),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_expires_at=ensure_aware(row.get("password_reset_expires_at")),
            last_login_at=ensure_aware(row.get("last_login_at")),
            created_at=ensure_aware(row.get("created_at")),
        )

    # -- users -------------------------------------------------------------

    def create_user(self, email: str) -> User:
        user_id = generate_uuid()
        normalized = normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_user (id, email) VALUES (%s, %s) RETURNING *",
                    (user_id, normalized),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        # Ids arrive from clients; a malformed one names no user
        parsed = parse_user_id(user_id)
        if parsed is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (parsed,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        """Write only the named columns so concurrent writers win per field."""
        validate_user_fields(fields)
        parsed = parse_user_id(user_id)
        if parsed is None:
            return None
        if not fields:
            return self.get_user(parsed)
        stored = encrypt_fields(self._cipher, fields)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in stored
        )
        query = sql.SQL(
            "UPDATE app_user SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments)
        with self._connect() as conn:
            row = conn.execute(query, (*stored.values(), parsed)).fetchone()
        return self._row_to_user(row) if row else None

    def increment_failed_count(self, user_id: str) -> int:
        parsed = parse_user_id(user_id)
        if parsed is None:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET failed_count = failed_count + 1, updated_at = now()
                WHERE id = %s
                RETURNING failed_count
                """,
                (parsed,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["failed_count"])

    def delete_user(self, user_id: str) -> bool:
        parsed = parse_user_id(user_id)
        if parsed is None:
            return False
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM password_history WHERE user_id = %s", (parsed,))
            # Audit rows are kept; the FK is ON DELETE SET NULL
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (parsed,)
            ).fetchone()
        return row is not None

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
        """Append to history, stamp the user, then trim, in one transaction."""
        parsed = parse_user_id(user_id)
        if parsed is None:
            raise ConstraintViolation(
                "user not found for password change", {"user_id": user_id}
            )
        assignments = ["password_hash = %s", "password_last_changed_at = %s"]
        params: list[Any] = [password_hash, changed_at]
        if clear_reset_token:
            assignments += ["password_reset_token_hash = NULL", "password_reset_expires_at = NULL"]
        if clear_session:
            assignments.append("current_session_token = NULL")
        with self._connect() as conn, conn.transaction():
            try:
                conn.execute(
                    """
                    INSERT INTO password_history (user_id, password_hash, created_at)
                    VALUES (%s, %s, %s)
                    """,
                    (parsed, password_hash, changed_at),
                )
            except errors.ForeignKeyViolation:
                raise ConstraintViolation(
                    "user not found for password change", {"user_id": user_id}
                )
            row = conn.execute(
                "UPDATE app_user SET "
                + ", ".join(assignments)
                + ", updated_at = now() WHERE id = %s RETURNING *",
                (*params, parsed),
            ).fetchone()
            conn.execute(
                """
                DELETE FROM password_history
                WHERE user_id = %s AND id NOT IN (
                    SELECT id FROM password_history WHERE user_id = %s
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s
                )
                """,
                (parsed, parsed, history_limit),
            )
        return self._row_to_user(row)

    def list_password_history(
        self, user_id: str, limit: Optional[int] = None
    ) -> List[PasswordHistoryEntry]:
        parsed = parse_user_id(user_id)
        if parsed is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM password_history WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (parsed, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                id=row["id"],
                user_id=str(row["user_id"]),
                password_hash=row["password_hash"],
                created_at=ensure_aware(row["created_at"]),
            )
            for row in rows
        ]

    # -- audit -------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_event (user_id, action, detail, score, ip, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    event.user_id,
                    event.action,
                    event.detail,
                    event.score,
                    parse_ip_address(event.ip),
                    event.user_agent,
                    event.timestamp,
                ),
            ).fetchone()
        event.id = row["id"] if row else None
        return event

    def list_audit_events(self, user_id: str, limit: int = 50) -> List[AuditEvent]:
        parsed = parse_user_id(user_id)
        if parsed is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_event WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (parsed, limit),
            ).fetchall()
        return [
            AuditEvent(
                id=row["id"],
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                action=row["action"],
                detail=row.get("detail"),
                score=row.get("score"),
                ip=str(row["ip"]) if row.get("ip") else None,
                user_agent=row.get("user_agent"),
                timestamp=ensure_aware(row["created_at"]),
            )
            for row in rows
        ]
