"""Tests for account workflows around the login state machine."""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from loginguard.service import totp
from loginguard.service.accounts import (
    RESET_REQUESTED_MESSAGE,
    AccountService,
    validate_password_strength,
)
from loginguard.service.audit import AuditAction
from loginguard.service.errors import ConflictError, ValidationError
from loginguard.service.human_verification import HumanVerificationGate
from loginguard.service.login import LoginStateMachine
from loginguard.service.password_policy import PasswordLifecyclePolicy

PASSWORD = "Initial-Passw0rd!"


class FakeEmail:
    def __init__(self, succeed=True):
        self.sent = []
        self.succeed = succeed

    def send_password_reset(self, to_email, reset_link):
        self.sent.append((to_email, reset_link))
        return self.succeed


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def service(settings, credentials, audit, clock, email):
    gate = HumanVerificationGate(settings, audit)
    policy = PasswordLifecyclePolicy(settings, credentials, clock=clock)
    login = LoginStateMachine(settings, credentials, gate, audit, policy, clock=clock)
    return AccountService(
        settings, credentials, gate, audit, policy, login, email, clock=clock
    )


def _actions(store):
    return [e.action for e in store.audit_events if not e.action.startswith("Human Verification")]


async def _register(service, email="gil@example.com"):
    return await service.register(email, PASSWORD, PASSWORD, "token")


class TestPasswordStrength:
    @pytest.mark.parametrize(
        "password",
        ["short-1A!", "alllowercase-1!", "ALLUPPERCASE-1!", "NoDigitsHere-!!", "NoSpecial12345"],
    )
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            validate_password_strength(password)

    def test_confirmation_must_match(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_password_strength(PASSWORD, PASSWORD + "x")
        assert excinfo.value.detail == {"field": "confirm_password"}

    def test_strong_password_accepted(self):
        validate_password_strength(PASSWORD, PASSWORD)


class TestRegistration:
    async def test_register_seeds_history_and_signs_in(self, service, credentials, store):
        registration = await _register(service)

        user = credentials.find_by_id(registration.user.id)
        assert user.current_session_token == registration.session_token
        assert user.password_last_changed_at is not None
        assert len(credentials.password_history(user, 10)) == 1
        assert _actions(store) == [AuditAction.REGISTRATION_SUCCESS]

    async def test_duplicate_registration_alerts_owner(self, service, store):
        first = await _register(service)

        with pytest.raises(ConflictError):
            await _register(service, email="GIL@example.com")

        event = store.audit_events[-1]
        assert event.action == AuditAction.DUPLICATE_REGISTRATION
        assert event.user_id == first.user.id

    async def test_weak_password_creates_nothing(self, service, credentials):
        with pytest.raises(ValidationError):
            await service.register("weak@example.com", "weak", "weak", "token")

        assert credentials.find_by_email("weak@example.com") is None


class TestPasswordChange:
    async def test_change_blocked_by_min_age(self, service):
        registration = await _register(service)

        with pytest.raises(ValidationError) as excinfo:
            await service.change_password(registration.user, PASSWORD, "Another-Passw0rd!")

        assert excinfo.value.detail["reason"] == "min_age"
        assert excinfo.value.detail["wait_hours"] == 24

    async def test_wrong_current_password(self, service, store):
        registration = await _register(service)

        with pytest.raises(ValidationError):
            await service.change_password(registration.user, "nope", "Another-Passw0rd!")

        assert _actions(store)[-1] == AuditAction.PASSWORD_CHANGE_FAILED

    async def test_change_after_min_age(self, service, credentials, clock, store):
        registration = await _register(service)
        clock.advance(hours=25)

        updated = await service.change_password(
            registration.user, PASSWORD, "Another-Passw0rd!", "Another-Passw0rd!"
        )

        assert credentials.verify_password(updated, "Another-Passw0rd!")
        # The session that made the change stays valid
        assert updated.current_session_token == registration.session_token
        assert _actions(store)[-1] == AuditAction.PASSWORD_CHANGED

    async def test_reuse_rejected(self, service, clock):
        registration = await _register(service)
        clock.advance(hours=25)

        with pytest.raises(ValidationError) as excinfo:
            await service.change_password(registration.user, PASSWORD, PASSWORD)

        assert excinfo.value.message == "You cannot reuse any of your last 2 passwords."


class TestPasswordReset:
    def _token_from(self, link):
        query = parse_qs(urlparse(link).query)
        return query["userId"][0], query["token"][0]

    async def test_unknown_email_gets_same_answer(self, service, email):
        message = await service.request_password_reset("ghost@example.com")

        assert message == RESET_REQUESTED_MESSAGE
        assert email.sent == []

    async def test_request_stores_only_digest(self, service, credentials, email, clock):
        registration = await _register(service)

        message = await service.request_password_reset("gil@example.com")

        assert message == RESET_REQUESTED_MESSAGE
        to_email, link = email.sent[0]
        assert to_email == "gil@example.com"
        assert link.startswith("http://localhost:8000/reset-password?")
        user_id, token = self._token_from(link)
        assert user_id == registration.user.id
        stored = credentials.find_by_id(user_id)
        assert stored.password_reset_token_hash != token
        assert stored.password_reset_expires_at == clock.now + timedelta(minutes=60)

    async def test_reset_completes_and_is_single_use(self, service, credentials, email, store):
        await _register(service)
        await service.request_password_reset("gil@example.com")
        user_id, token = self._token_from(email.sent[0][1])

        updated = await service.complete_password_reset(user_id, token, "Reset-Passw0rd!!")

        assert credentials.verify_password(updated, "Reset-Passw0rd!!")
        assert updated.current_session_token is None
        assert updated.password_reset_token_hash is None
        assert _actions(store)[-1] == AuditAction.PASSWORD_RESET
        with pytest.raises(ValidationError):
            await service.complete_password_reset(user_id, token, "Again-Passw0rd!!")

    async def test_expired_token_rejected(self, service, email, clock, store):
        await _register(service)
        await service.request_password_reset("gil@example.com")
        user_id, token = self._token_from(email.sent[0][1])
        clock.advance(minutes=61)

        with pytest.raises(ValidationError):
            await service.complete_password_reset(user_id, token, "Reset-Passw0rd!!")

        assert _actions(store)[-1] == AuditAction.PASSWORD_RESET_FAILED

    async def test_wrong_token_rejected(self, service, email):
        await _register(service)
        await service.request_password_reset("gil@example.com")
        user_id, _ = self._token_from(email.sent[0][1])

        with pytest.raises(ValidationError):
            await service.complete_password_reset(user_id, "forged", "Reset-Passw0rd!!")

    async def test_reset_rejects_reused_password(self, service, email):
        await _register(service)
        await service.request_password_reset("gil@example.com")
        user_id, token = self._token_from(email.sent[0][1])

        with pytest.raises(ValidationError) as excinfo:
            await service.complete_password_reset(user_id, token, PASSWORD)

        assert excinfo.value.detail == {"reason": "reuse"}


class TestLogoutAndTwoFactor:
    async def test_logout_clears_session(self, service, credentials, store):
        registration = await _register(service)

        await service.logout(registration.user)

        assert credentials.find_by_id(registration.user.id).current_session_token is None
        assert _actions(store)[-1] == AuditAction.LOGOUT

    async def test_enable_and_disable_two_factor(self, service, credentials, clock, store):
        registration = await _register(service)
        setup = await service.setup_two_factor(registration.user)
        assert setup.otpauth_uri.startswith("otpauth://totp/")

        user = credentials.find_by_id(registration.user.id)
        code = totp.generate_code(setup.secret, clock.now.timestamp())
        enabled = await service.enable_two_factor(user, code)
        assert enabled.two_factor_enabled is True
        assert _actions(store)[-1] == AuditAction.TWO_FACTOR_ENABLED

        disabled = await service.disable_two_factor(enabled, code)
        assert disabled.two_factor_enabled is False
        assert disabled.two_factor_secret is None
        assert _actions(store)[-1] == AuditAction.TWO_FACTOR_DISABLED

    async def test_enable_requires_setup(self, service):
        registration = await _register(service)

        with pytest.raises(ValidationError):
            await service.enable_two_factor(registration.user, "123456")
