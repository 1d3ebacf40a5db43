"""Service-level tests for registration, login, MFA login and password flows."""

import time
from datetime import timedelta

import pytest

from autovault.service.auth import (
    INVALID_CREDENTIALS,
    LOGIN_EXPIRED,
    LOGIN_INACTIVE,
    LOGIN_INVALID,
    LOGIN_LOCKED,
    LOGIN_MFA_REQUIRED,
    LOGIN_OTP_UNDELIVERED,
)
from autovault.service.errors import AuthenticationError, ConflictError, ValidationError
from autovault.service.lockout import is_locked
from autovault.service.mfa import generate_totp
from autovault.service.passwords import MSG_REUSED
from autovault.storage.models import MFA_EMAIL, AuditQuery, RequestContext, utcnow

from conftest import STRONG_PASSWORD

CTX = RequestContext(ip="10.0.0.1", user_agent="pytest", method="POST", endpoint="/test")


def _audit_actions(runtime):
    runtime.tasks.drain()
    page = runtime.store.query_audit_events(AuditQuery(), page=1, limit=100)
    return [event.action for event in page.items]


class Outbox:
    """Captures outgoing mail by replacing the EmailService send helpers."""

    def __init__(self, runtime, monkeypatch):
        self.sent = []
        for name in (
            "send_login_otp",
            "send_email_verification",
            "send_password_reset",
            "send_new_device_notice",
        ):
            monkeypatch.setattr(runtime.email, name, self._recorder(name))

    def _recorder(self, name):
        def _record(*args):
            self.sent.append((name, args))
            return True

        return _record

    def last(self, name):
        return [args for kind, args in self.sent if kind == name][-1]


@pytest.fixture
def outbox(runtime, monkeypatch):
    return Outbox(runtime, monkeypatch)


class TestRegister:
    def test_weak_password_lists_reasons(self, runtime):
        with pytest.raises(ValidationError) as excinfo:
            runtime.auth.register("alice", "a@x.com", "abcdefgh")
        assert len(excinfo.value.detail["errors"]) == 2

    def test_duplicate_identity(self, make_account):
        make_account()
        with pytest.raises(ConflictError):
            make_account(username="alice2")

    def test_verification_email_is_detached(self, runtime, make_account, outbox):
        account = make_account()
        runtime.tasks.drain()
        to, username, token = outbox.last("send_email_verification")
        assert to == account.email and token
        assert "USER_REGISTERED" in _audit_actions(runtime)


class TestLogin:
    async def test_unknown_and_wrong_password_look_alike(self, runtime, make_account):
        make_account()
        unknown = await runtime.auth.login("nobody", STRONG_PASSWORD, CTX)
        wrong = await runtime.auth.login("alice", "Wrong1234", CTX)
        assert unknown.status == wrong.status == LOGIN_INVALID
        assert unknown.message == wrong.message == INVALID_CREDENTIALS

    async def test_login_by_email_any_case(self, runtime, make_account):
        make_account()
        outcome = await runtime.auth.login("ALICE@example.com", STRONG_PASSWORD, CTX)
        assert outcome.ok
        assert await runtime.auth.authenticate(outcome.token.token) is not None

    async def test_five_failures_lock_until_expiry(self, runtime, make_account):
        account = make_account()
        for attempt in range(1, 6):
            outcome = await runtime.auth.login("alice", "Wrong1234", CTX)
            expected = LOGIN_LOCKED if attempt == 5 else LOGIN_INVALID
            assert outcome.status == expected
        locked = runtime.store.get_account(account.id)
        assert is_locked(locked)
        assert not is_locked(locked, locked.locked_until + timedelta(seconds=1))

        outcome = await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        assert outcome.status == LOGIN_LOCKED
        assert "ACCOUNT LOCKED" in outcome.message

        actions = _audit_actions(runtime)
        assert actions.count("LOGIN_FAILED") == 5
        assert "ACCOUNT_LOCKED" in actions
        assert "LOGIN_BLOCKED" in actions

    async def test_lock_lifts_after_expiry(self, runtime, make_account):
        account = make_account()
        runtime.store.lock_account(account.id, utcnow() - timedelta(seconds=1))
        outcome = await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        assert outcome.ok
        refreshed = runtime.store.get_account(account.id)
        assert refreshed.failed_login_attempts == 0
        assert refreshed.locked_until is None

    async def test_inactive_account(self, runtime, make_account):
        account = make_account()
        runtime.store.set_account_status(account.id, "suspended")
        outcome = await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        assert outcome.status == LOGIN_INACTIVE
        assert "suspended" in outcome.message

    async def test_new_ip_triggers_notice(self, runtime, make_account, outbox):
        make_account()
        await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        await runtime.auth.login(
            "alice", STRONG_PASSWORD, RequestContext(ip="10.9.9.9", user_agent="other")
        )
        runtime.tasks.drain()
        assert outbox.last("send_new_device_notice")[2] == "10.9.9.9"


class TestTotpLogin:
    def _enable_totp(self, runtime, account):
        setup = runtime.auth.begin_mfa_setup(account)
        runtime.auth.confirm_mfa_setup(account, generate_totp(setup.secret, time.time()))
        return setup

    async def test_password_then_code(self, runtime, make_account):
        account = make_account()
        setup = self._enable_totp(runtime, account)
        first = await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        assert first.status == LOGIN_MFA_REQUIRED
        assert first.token is None
        outcome = await runtime.auth.verify_mfa_login(
            account.id, generate_totp(setup.secret, time.time()), CTX
        )
        assert outcome.ok and outcome.mfa_kind == "totp"
        assert "MFA_LOGIN_SUCCESS" in _audit_actions(runtime)

    async def test_pending_marker_required(self, runtime, make_account):
        account = make_account()
        setup = self._enable_totp(runtime, account)
        outcome = await runtime.auth.verify_mfa_login(
            account.id, generate_totp(setup.secret, time.time()), CTX
        )
        assert outcome.status == LOGIN_EXPIRED

    async def test_backup_code_once(self, runtime, make_account):
        account = make_account()
        setup = self._enable_totp(runtime, account)
        await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        outcome = await runtime.auth.verify_mfa_login(account.id, setup.backup_codes[0], CTX)
        assert outcome.ok
        assert outcome.remaining_backup_codes == 7
        assert "7 backup codes remaining" in outcome.message

        await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        again = await runtime.auth.verify_mfa_login(account.id, setup.backup_codes[0], CTX)
        assert again.status == LOGIN_INVALID

    async def test_five_bad_codes_lock(self, runtime, make_account):
        account = make_account()
        self._enable_totp(runtime, account)
        await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        for _ in range(4):
            outcome = await runtime.auth.verify_mfa_login(account.id, "ZZZZZZZZ", CTX)
            assert outcome.status == LOGIN_INVALID
        outcome = await runtime.auth.verify_mfa_login(account.id, "ZZZZZZZZ", CTX)
        assert outcome.status == LOGIN_LOCKED
        locked = runtime.store.get_account(account.id)
        assert locked.locked_until - utcnow() > timedelta(minutes=29)
        assert "MFA_LOGIN_LOCKED" in _audit_actions(runtime)


class TestEmailOtpLogin:
    async def test_code_is_mailed_and_single_use(self, runtime, make_account, outbox):
        account = make_account()
        runtime.auth.enable_email_mfa(account, STRONG_PASSWORD)
        first = await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        assert first.status == LOGIN_MFA_REQUIRED and first.mfa_method == MFA_EMAIL
        code = outbox.last("send_login_otp")[2]
        outcome = await runtime.auth.verify_mfa_login(account.id, code, CTX)
        assert outcome.ok
        assert runtime.store.get_account(account.id).otp_hash is None

    async def test_delivery_failure_is_reported(self, runtime, make_account, monkeypatch):
        account = make_account()
        runtime.auth.enable_email_mfa(account, STRONG_PASSWORD)
        monkeypatch.setattr(runtime.email, "send_login_otp", lambda *args: False)
        outcome = await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        assert outcome.status == LOGIN_OTP_UNDELIVERED


class TestMfaManagement:
    def test_disable_requires_password(self, runtime, make_account):
        account = make_account()
        runtime.auth.enable_email_mfa(account, STRONG_PASSWORD)
        account = runtime.store.get_account(account.id)
        with pytest.raises(AuthenticationError):
            runtime.auth.disable_mfa(account, "Wrong1234")
        updated = runtime.auth.disable_mfa(account, STRONG_PASSWORD)
        assert not updated.mfa_enabled and updated.mfa_method == "none"

    def test_backup_codes_need_totp(self, runtime, make_account):
        account = make_account()
        with pytest.raises(ValidationError):
            runtime.auth.regenerate_backup_codes(account, STRONG_PASSWORD)


class TestPasswords:
    def test_history_window(self, runtime, make_account):
        """The original password is refused until five newer ones exist."""
        account = make_account(password="Original1x")
        account = runtime.auth.change_password(account, "Original1x", "Second22x")
        with pytest.raises(ValidationError) as excinfo:
            runtime.auth.change_password(account, "Second22x", "Original1x")
        assert MSG_REUSED in excinfo.value.detail["errors"]

        current = "Second22x"
        for candidate in ("Third333x", "Fourth44x", "Fifth555x", "Sixth666x"):
            account = runtime.auth.change_password(account, current, candidate)
            current = candidate
        account = runtime.auth.change_password(account, current, "Original1x")
        assert runtime.hashing.verify("Original1x", account.password_hash)

    def test_wrong_current_password(self, runtime, make_account):
        account = make_account()
        with pytest.raises(AuthenticationError):
            runtime.auth.change_password(account, "Nope12345", "Brandnew1x")

    async def test_change_invalidates_existing_tokens(self, runtime, make_account):
        account = make_account()
        outcome = await runtime.auth.login("alice", STRONG_PASSWORD, CTX)
        updated = runtime.auth.change_password(account, STRONG_PASSWORD, "Brandnew1x")
        assert await runtime.auth.authenticate(outcome.token.token) is None
        fresh = runtime.sessions.issue(updated)
        assert await runtime.auth.authenticate(fresh.token) is not None

    def test_reset_flow(self, runtime, make_account, outbox):
        account = make_account()
        message = runtime.auth.request_password_reset("alice@example.com", CTX)
        assert message == runtime.auth.request_password_reset("ghost@example.com", CTX)
        runtime.tasks.drain()
        to, token = outbox.last("send_password_reset")
        assert to == account.email
        runtime.auth.reset_password(token, "Brandnew1x", CTX)
        with pytest.raises(ValidationError):
            runtime.auth.reset_password(token, "Another1x", CTX)
        assert "PASSWORD_RESET" in _audit_actions(runtime)

    def test_rejected_password_keeps_reset_link(self, runtime, make_account, outbox):
        make_account()
        runtime.auth.request_password_reset("alice@example.com", CTX)
        runtime.tasks.drain()
        _, token = outbox.last("send_password_reset")

        with pytest.raises(ValidationError) as excinfo:
            runtime.auth.reset_password(token, "weak", CTX)
        assert excinfo.value.message == "Password does not meet requirements"

        updated = runtime.auth.reset_password(token, "Brandnew9Pass", CTX)
        assert runtime.hashing.verify("Brandnew9Pass", updated.password_hash)
        with pytest.raises(ValidationError) as excinfo:
            runtime.auth.reset_password(token, "Another9Pass", CTX)
        assert excinfo.value.message == "Invalid or expired reset token"


class TestEmailVerification:
    def test_verify_once(self, runtime, make_account, outbox):
        account = make_account()
        runtime.tasks.drain()
        token = outbox.last("send_email_verification")[2]
        assert runtime.auth.verify_email(token) == "Email verified successfully"
        assert runtime.store.get_account(account.id).email_verified
        with pytest.raises(ValidationError):
            runtime.auth.verify_email(token)

    def test_resend_is_non_enumerating(self, runtime, make_account):
        make_account()
        assert runtime.auth.resend_verification("alice@example.com") == (
            runtime.auth.resend_verification("ghost@example.com")
        )
