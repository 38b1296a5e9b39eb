from datetime import timedelta

import pytest

from loginguard.service.audit import AuditAction


class TestUserIdNormalization:
    @pytest.mark.parametrize("raw", [None, "", "unknown", "UNKNOWN", "someone@example.com", "missing-id"])
    def test_anonymous_forms_become_null(self, audit, store, raw):
        audit.log(raw, AuditAction.LOGIN_FAILED)

        assert store.audit_events[-1].user_id is None

    def test_known_user_is_kept(self, audit, store, credentials):
        user = credentials.create("dana@example.com")

        audit.log(user.id, AuditAction.LOGOUT, ip="192.0.2.1", user_agent="pytest")

        event = store.audit_events[-1]
        assert event.user_id == user.id
        assert event.ip == "192.0.2.1"
        assert event.user_agent == "pytest"


class TestAuditTrail:
    def test_events_listed_newest_first(self, audit, credentials, clock):
        user = credentials.create("erin@example.com")
        audit.log(user.id, AuditAction.LOGIN_SUCCESS, score=0.9)
        clock.advance(minutes=1)
        audit.log(user.id, AuditAction.LOGOUT)

        events = audit.list_user_events(user.id)

        assert [e.action for e in events] == [AuditAction.LOGOUT, AuditAction.LOGIN_SUCCESS]
        assert events[1].score == pytest.approx(0.9)
        assert events[0].timestamp - events[1].timestamp == timedelta(minutes=1)

    def test_limit_applies(self, audit, credentials):
        user = credentials.create("fay@example.com")
        for _ in range(5):
            audit.log(user.id, AuditAction.LOGIN_FAILED)

        assert len(audit.list_user_events(user.id, limit=3)) == 3

    def test_sink_failure_is_swallowed(self, audit, monkeypatch):
        def _boom(event):
            raise RuntimeError("disk full")

        monkeypatch.setattr(audit.store, "append_audit_event", _boom)

        audit.log(None, AuditAction.LOGIN_FAILED)

    def test_human_verification_label(self):
        assert AuditAction.human_verification("Passed", "login") == "Human Verification Passed - LOGIN"
