import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from loginguard.service.audit import AuditAction, AuditTrail
from loginguard.storage.common import build_secret_cipher, encrypt_secret
from loginguard.storage.errors import ConstraintViolation
from loginguard.storage.postgres import PostgresStore

USER_ID = "6f1c2a8e-3b4d-4c5e-9f60-718293a4b5c6"
CHANGED_AT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays scripted result rows, one list per ``execute`` call."""

    def __init__(self, *responses, fail_with=None):
        self.responses = list(responses)
        self.fail_with = fail_with
        self.executed = []
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, query, params=None):
        self.executed.append((" ".join(str(query).split()), params))
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise exc
        return FakeResult(self.responses.pop(0) if self.responses else [])


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def connection(self):
        return self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store._cipher = build_secret_cipher("unit-test-mfa-key")
    return store


def _user_row(**overrides):
    row = {
        "id": uuid.UUID(USER_ID),
        "email": "rae@example.com",
        "password_hash": "hash",
        "failed_count": 0,
        "current_session_token": None,
        "created_at": datetime(2024, 1, 1),
    }
    row.update(overrides)
    return row


class TestMalformedIds:
    @pytest.mark.parametrize("raw", ["abc", "", "1; DROP TABLE app_user", None])
    def test_lookups_never_reach_the_database(self, raw):
        store = _store(DummyPool())

        assert store.get_user(raw) is None
        assert store.update_user(raw, failed_count=1) is None
        assert store.delete_user(raw) is False
        assert store.list_password_history(raw) == []
        assert store.list_audit_events(raw) == []

    def test_writes_raise_constraint_violation(self):
        store = _store(DummyPool())

        with pytest.raises(ConstraintViolation):
            store.increment_failed_count("abc")
        with pytest.raises(ConstraintViolation):
            store.record_password_change(
                "abc", "hash", changed_at=CHANGED_AT, history_limit=5
            )

    def test_id_is_canonicalized_before_querying(self):
        conn = FakeConnection([_user_row()])
        store = _store(FakePool(conn))

        user = store.get_user(f"  {USER_ID.upper()} ")

        assert user.id == USER_ID
        assert conn.executed[0][1] == (USER_ID,)

    def test_audit_event_kept_with_null_user(self, clock):
        conn = FakeConnection([{"id": 7}])
        audit = AuditTrail(_store(FakePool(conn)), clock=clock)

        audit.log("abc", AuditAction.PASSWORD_RESET_FAILED, "Invalid token")

        sql_text, params = conn.executed[-1]
        assert sql_text.startswith("INSERT INTO audit_event")
        assert params[0] is None
        assert params[1] == AuditAction.PASSWORD_RESET_FAILED


class TestRecordPasswordChange:
    def test_append_stamp_trim_in_one_transaction(self):
        conn = FakeConnection([], [_user_row(password_hash="new-hash")], [])
        store = _store(FakePool(conn))

        user = store.record_password_change(
            USER_ID, "new-hash", changed_at=CHANGED_AT, history_limit=5
        )

        assert conn.transactions == 1
        statements = [sql_text for sql_text, _ in conn.executed]
        assert statements[0].startswith("INSERT INTO password_history")
        assert statements[1].startswith("UPDATE app_user SET password_hash = %s")
        assert statements[2].startswith("DELETE FROM password_history")
        assert conn.executed[0][1] == (USER_ID, "new-hash", CHANGED_AT)
        assert conn.executed[2][1] == (USER_ID, USER_ID, 5)
        assert "current_session_token" not in statements[1]
        assert user.password_hash == "new-hash"

    def test_reset_clears_token_and_session(self):
        conn = FakeConnection([], [_user_row()], [])
        store = _store(FakePool(conn))

        store.record_password_change(
            USER_ID,
            "new-hash",
            changed_at=CHANGED_AT,
            history_limit=5,
            clear_reset_token=True,
            clear_session=True,
        )

        update_sql = conn.executed[1][0]
        assert "password_reset_token_hash = NULL" in update_sql
        assert "current_session_token = NULL" in update_sql

    def test_missing_user_maps_to_constraint_violation(self):
        conn = FakeConnection(fail_with=errors.ForeignKeyViolation("fk"))
        store = _store(FakePool(conn))

        with pytest.raises(ConstraintViolation):
            store.record_password_change(
                USER_ID, "hash", changed_at=CHANGED_AT, history_limit=5
            )
        assert len(conn.executed) == 1


class TestUserRows:
    def test_increment_returns_counter_from_update(self):
        conn = FakeConnection([{"failed_count": 3}])
        store = _store(FakePool(conn))

        assert store.increment_failed_count(USER_ID) == 3
        assert "failed_count = failed_count + 1" in conn.executed[0][0]

    def test_increment_for_vanished_user(self):
        store = _store(FakePool(FakeConnection([])))

        with pytest.raises(ConstraintViolation):
            store.increment_failed_count(USER_ID)

    def test_secret_decrypted_and_times_made_aware(self):
        cipher = build_secret_cipher("unit-test-mfa-key")
        row = _user_row(two_factor_secret=encrypt_secret(cipher, "JBSWY3DPEHPK3PXP"))
        store = _store(FakePool(FakeConnection([row])))

        user = store.get_user(USER_ID)

        assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
        assert user.created_at.tzinfo is not None

    def test_update_encrypts_secret_before_writing(self):
        conn = FakeConnection([_user_row()])
        store = _store(FakePool(conn))

        store.update_user(USER_ID, two_factor_secret="JBSWY3DPEHPK3PXP")

        params = conn.executed[0][1]
        assert params[-1] == USER_ID
        assert params[0] != "JBSWY3DPEHPK3PXP"
