"""Tests for the login state machine: stage order, lockout, 2FA and audit."""

from datetime import timedelta

import httpx
import pytest

from loginguard.config import Settings
from loginguard.service import totp
from loginguard.service.audit import AuditAction
from loginguard.service.human_verification import HumanVerificationGate
from loginguard.service.login import LoginAttemptContext, LoginOutcome, LoginStateMachine
from loginguard.service.password_policy import PasswordLifecyclePolicy

PASSWORD = "Correct-Horse-42!"
TOTP_SECRET = "JBSWY3DPEHPK3PXP"


def _verifier(score):
    def handler(request):
        return httpx.Response(
            200,
            json={
                "success": True,
                "score": score,
                "action": "login",
                "challenge_ts": "2024-03-01T12:00:00Z",
                "hostname": "example.com",
            },
        )

    return httpx.MockTransport(handler)


def _gated_settings():
    return Settings(
        jwt_secret="unit-test-jwt-secret-" + "x" * 32,
        human_verification_enabled=True,
        human_verification_site_key="site-key",
        human_verification_secret_key="secret-key",
        redis_url=None,
    )


def _wrong_code(secret, timestamp):
    valid = {totp.generate_code(secret, timestamp + step * 30) for step in (-1, 0, 1)}
    return next(code for code in ("000000", "111111", "222222", "333333") if code not in valid)


@pytest.fixture
def policy(settings, credentials, clock):
    return PasswordLifecyclePolicy(settings, credentials, clock=clock)


@pytest.fixture
def user(credentials, policy):
    created = credentials.create("Alice@Example.com")
    return policy.apply_change(created, PASSWORD)


def _machine(settings, credentials, audit, policy, clock, *, score=None):
    if score is None:
        gate = HumanVerificationGate(settings, audit)
    else:
        settings = _gated_settings()
        gate = HumanVerificationGate(settings, audit, transport=_verifier(score))
    return LoginStateMachine(settings, credentials, gate, audit, policy, clock=clock)


@pytest.fixture
def machine(settings, credentials, audit, policy, clock):
    return _machine(settings, credentials, audit, policy, clock)


def _ctx(password=PASSWORD, email="alice@example.com", **kwargs):
    kwargs.setdefault("verification_token", "client-token")
    return LoginAttemptContext(email=email, password=password, **kwargs)


def _actions(store, *, skip_verifier=True):
    return [
        e.action
        for e in store.audit_events
        if not (skip_verifier and e.action.startswith("Human Verification"))
    ]


class TestSuccessfulLogin:
    async def test_success_with_trusted_score(self, settings, credentials, audit, policy, clock, store, user):
        """Trusted request with the right password gets a session and one audit entry."""
        machine = _machine(settings, credentials, audit, policy, clock, score=0.9)

        result = await machine.login(_ctx())

        assert result.outcome is LoginOutcome.SUCCESS
        assert result.succeeded
        assert result.session_token
        assert result.trust_score == pytest.approx(0.9)
        successes = [e for e in store.audit_events if e.action == AuditAction.LOGIN_SUCCESS]
        assert len(successes) == 1
        assert successes[0].score == pytest.approx(0.9)
        assert successes[0].user_id == user.id

    async def test_session_token_is_written_with_last_login(self, machine, credentials, clock, user):
        result = await machine.login(_ctx())

        stored = credentials.find_by_id(user.id)
        assert stored.current_session_token == result.session_token
        assert stored.last_login_at == clock.now

    async def test_each_login_replaces_the_session_token(self, machine, credentials, user):
        first = await machine.login(_ctx())
        second = await machine.login(_ctx())

        assert first.session_token != second.session_token
        assert credentials.find_by_id(user.id).current_session_token == second.session_token

    async def test_email_lookup_is_case_insensitive(self, machine, user):
        result = await machine.login(_ctx(email="ALICE@example.COM"))

        assert result.outcome is LoginOutcome.SUCCESS

    async def test_password_status_attached(self, machine, credentials, clock, user):
        user.password_last_changed_at = clock.now - timedelta(days=80)
        credentials.update(user, "password_last_changed_at")

        result = await machine.login(_ctx())

        assert result.password_status.warning is True
        assert result.password_status.days_until_expiry == 10
        assert result.message == "Your password will expire in 10 day(s)."

    async def test_success_resets_failure_counter(self, machine, credentials, user):
        await machine.login(_ctx(password="wrong"))
        assert credentials.find_by_id(user.id).failed_count == 1

        await machine.login(_ctx())

        assert credentials.find_by_id(user.id).failed_count == 0


class TestHumanCheck:
    async def test_low_score_aborts_before_lookup(self, settings, credentials, audit, policy, clock, store, user):
        machine = _machine(settings, credentials, audit, policy, clock, score=0.3)

        result = await machine.login(_ctx())

        assert result.outcome is LoginOutcome.HUMAN_CHECK_FAILED
        assert result.message == "Suspicious activity detected (Score: 0.30). Please try again."
        assert _actions(store) == [AuditAction.LOGIN_FAILED_HUMAN_CHECK]
        assert store.audit_events[-1].score == pytest.approx(0.3)
        assert credentials.find_by_id(user.id).failed_count == 0

    async def test_failure_is_identical_for_unknown_email(self, settings, credentials, audit, policy, clock, user):
        machine = _machine(settings, credentials, audit, policy, clock, score=0.3)

        known = await machine.login(_ctx())
        unknown = await machine.login(_ctx(email="nobody@example.com"))

        assert known.outcome is unknown.outcome
        assert known.message == unknown.message
        assert known.user_id is None and unknown.user_id is None


class TestCredentialChecks:
    async def test_unknown_email_is_generic(self, machine, store, user):
        result = await machine.login(_ctx(email="nobody@example.com"))

        assert result.outcome is LoginOutcome.INVALID_CREDENTIALS
        assert result.message.startswith("Invalid email or password.")
        assert _actions(store) == [AuditAction.LOGIN_FAILED_UNKNOWN_EMAIL]
        assert store.audit_events[-1].user_id is None

    async def test_unknown_email_runs_a_dummy_hash_check(self, machine, credentials, monkeypatch):
        calls = []
        monkeypatch.setattr(credentials, "verify_dummy", lambda plaintext: calls.append(plaintext))

        await machine.login(_ctx(email="nobody@example.com", password="guess"))

        assert calls == ["guess"]

    async def test_unknown_email_reply_matches_first_wrong_password(self, machine, user):
        wrong = await machine.login(_ctx(password="wrong"))
        unknown = await machine.login(_ctx(email="nobody@example.com", password="wrong"))

        assert unknown.outcome is wrong.outcome
        assert unknown.message == wrong.message
        assert unknown.remaining_attempts == wrong.remaining_attempts == 2

    async def test_wrong_password_reports_remaining_attempts(self, machine, store, user):
        first = await machine.login(_ctx(password="wrong"))
        second = await machine.login(_ctx(password="wrong"))

        assert first.outcome is LoginOutcome.INVALID_CREDENTIALS
        assert first.message == (
            "Invalid email or password. 2 attempt(s) remaining before account lockout."
        )
        assert first.remaining_attempts == 2
        assert second.remaining_attempts == 1
        assert _actions(store) == [AuditAction.LOGIN_FAILED, AuditAction.LOGIN_FAILED]

    async def test_trust_score_attached_to_failures(self, settings, credentials, audit, policy, clock, store, user):
        machine = _machine(settings, credentials, audit, policy, clock, score=0.8)

        await machine.login(_ctx(password="wrong"))

        failed = [e for e in store.audit_events if e.action == AuditAction.LOGIN_FAILED]
        assert failed[0].score == pytest.approx(0.8)


class TestLockout:
    async def _lock(self, machine):
        results = []
        for _ in range(3):
            results.append(await machine.login(_ctx(password="wrong")))
        return results

    async def test_third_failure_locks_account(self, machine, credentials, clock, store, user):
        results = await self._lock(machine)

        assert results[-1].outcome is LoginOutcome.LOCKED_OUT
        assert results[-1].message == (
            "Account is locked due to multiple failed attempts. Please try again in 15 minutes."
        )
        stored = credentials.find_by_id(user.id)
        assert stored.lockout_end == clock.now + timedelta(minutes=15)
        assert _actions(store)[-1] == AuditAction.ACCOUNT_LOCKED

    async def test_attempt_during_lockout_is_rejected_without_counting(self, machine, credentials, clock, store, user):
        await self._lock(machine)
        clock.advance(minutes=5, seconds=30)

        result = await machine.login(_ctx())

        assert result.outcome is LoginOutcome.LOCKED_OUT
        assert result.message.endswith("Please try again in 10 minutes.")
        assert credentials.find_by_id(user.id).failed_count == 3
        assert _actions(store)[-1] == AuditAction.LOGIN_FAILED_LOCKED

    async def test_lockout_recovers_once_on_next_attempt(self, machine, credentials, clock, store, user):
        await self._lock(machine)
        clock.advance(minutes=15, seconds=1)

        result = await machine.login(_ctx())
        again = await machine.login(_ctx())

        assert result.outcome is LoginOutcome.SUCCESS
        assert again.outcome is LoginOutcome.SUCCESS
        assert _actions(store).count(AuditAction.ACCOUNT_RECOVERED) == 1
        stored = credentials.find_by_id(user.id)
        assert stored.lockout_end is None
        assert stored.failed_count == 0

    async def test_expired_lockout_with_wrong_password_starts_fresh_count(self, machine, clock, user):
        await self._lock(machine)
        clock.advance(minutes=16)

        result = await machine.login(_ctx(password="wrong"))

        assert result.outcome is LoginOutcome.INVALID_CREDENTIALS
        assert result.remaining_attempts == 2


class TestTerminalAudit:
    @pytest.mark.parametrize(
        "password,expected",
        [
            (PASSWORD, AuditAction.LOGIN_SUCCESS),
            ("wrong", AuditAction.LOGIN_FAILED),
        ],
    )
    async def test_exactly_one_terminal_event_per_attempt(self, machine, store, user, password, expected):
        await machine.login(_ctx(password=password))

        assert _actions(store) == [expected]


class TestTwoFactor:
    @pytest.fixture
    def two_factor_user(self, credentials, user):
        user.two_factor_secret = TOTP_SECRET
        user.two_factor_enabled = True
        return credentials.update(user, "two_factor_secret", "two_factor_enabled")

    async def test_password_success_suspends_login(self, machine, credentials, store, two_factor_user):
        result = await machine.login(_ctx())

        assert result.outcome is LoginOutcome.TWO_FACTOR_REQUIRED
        assert result.continuation
        assert result.session_token is None
        assert credentials.find_by_id(two_factor_user.id).current_session_token is None
        assert _actions(store) == [AuditAction.TWO_FACTOR_REQUIRED]

    async def test_correct_code_issues_session_once(self, machine, credentials, clock, store, two_factor_user):
        pending = await machine.login(_ctx())
        code = totp.generate_code(TOTP_SECRET, clock.now.timestamp())

        result = await machine.complete_two_factor(pending.continuation, code)
        replay = await machine.complete_two_factor(pending.continuation, code)

        assert result.outcome is LoginOutcome.SUCCESS
        assert credentials.find_by_id(two_factor_user.id).current_session_token == result.session_token
        assert AuditAction.TWO_FACTOR_SUCCESS in _actions(store)
        assert replay.outcome is LoginOutcome.EXPIRED

    async def test_wrong_code_counts_toward_lockout(self, machine, credentials, clock, store, two_factor_user):
        pending = await machine.login(_ctx())
        wrong = _wrong_code(TOTP_SECRET, clock.now.timestamp())

        first = await machine.complete_two_factor(pending.continuation, wrong)
        await machine.complete_two_factor(pending.continuation, wrong)
        third = await machine.complete_two_factor(pending.continuation, wrong)

        assert first.outcome is LoginOutcome.INVALID_CODE
        assert first.remaining_attempts == 2
        assert third.outcome is LoginOutcome.LOCKED_OUT
        assert _actions(store)[-1] == AuditAction.TWO_FACTOR_LOCKOUT
        assert credentials.find_by_id(two_factor_user.id).lockout_end is not None

        code = totp.generate_code(TOTP_SECRET, clock.now.timestamp())
        after = await machine.complete_two_factor(pending.continuation, code)
        assert after.outcome is LoginOutcome.EXPIRED

    async def test_continuation_expires(self, machine, clock, two_factor_user):
        pending = await machine.login(_ctx())
        clock.advance(minutes=5, seconds=1)
        code = totp.generate_code(TOTP_SECRET, clock.now.timestamp())

        result = await machine.complete_two_factor(pending.continuation, code)

        assert result.outcome is LoginOutcome.EXPIRED

    async def test_unknown_continuation_is_expired(self, machine, store):
        result = await machine.complete_two_factor("not-a-continuation", "123456")

        assert result.outcome is LoginOutcome.EXPIRED
        assert _actions(store) == [AuditAction.TWO_FACTOR_EXPIRED]

    async def test_remember_me_survives_suspension(self, machine, clock, two_factor_user):
        pending = await machine.login(_ctx(remember_me=True))
        code = totp.generate_code(TOTP_SECRET, clock.now.timestamp())

        result = await machine.complete_two_factor(pending.continuation, code)

        assert result.remember_me is True
