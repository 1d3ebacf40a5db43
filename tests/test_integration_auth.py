"""Integration tests for the account and MFA endpoints.

Covers the complete flows over HTTP:
- Registration and login
- Lockout after repeated failures
- Malicious payload ladder
- TOTP, backup code and emailed code login
- Password change, history and reset
- Email verification and logout
"""

import time

import pytest
from fastapi.testclient import TestClient

from autovault import app as app_module
from autovault.service.mfa import generate_totp
from autovault.service.runtime import reset_runtime_for_tests
from autovault.storage.models import AuditQuery


def _register(client, username="alice", email="a@x.com", password="Abcdef12"):
    return client.post(
        "/api/user/register",
        json={"username": username, "email": email, "password": password},
    )


def _login(client, identity="alice", password="Abcdef12"):
    return client.post("/api/user/login", json={"identity": identity, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _events(runtime, action=None):
    runtime.tasks.drain()
    return runtime.store.query_audit_events(AuditQuery(action=action), page=1, limit=100).items


@pytest.fixture
def mailbox(runtime, monkeypatch):
    """Collect outgoing mail keyed by helper name."""
    sent = {}

    def _capture(name):
        def _send(*args):
            sent.setdefault(name, []).append(args)
            return True

        return _send

    for name in ("send_login_otp", "send_email_verification", "send_password_reset"):
        monkeypatch.setattr(runtime.email, name, _capture(name))
    return sent


class TestRegistration:
    """Tests for account creation."""

    def test_register_returns_public_view(self, client):
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["username"] == "alice"
        assert user["email"] == "a@x.com"
        assert "password_hash" not in user

    def test_register_duplicate_is_conflict(self, client):
        _register(client)
        response = _register(client, username="alice2")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "User already exists"

    def test_register_weak_password_lists_reasons(self, client):
        response = _register(client, password="abcdefgh")
        assert response.status_code == 400
        errors = response.json()["error"]["details"]["errors"]
        assert len(errors) == 2

    def test_register_invalid_email_uses_envelope(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["request_id"]


class TestLoginFlow:
    """Tests for password login and the lockout ladder."""

    def test_login_sets_cookie_and_token(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token"]
        assert data["user"]["username"] == "alice"
        assert response.cookies.get("token") == data["token"]

        me = client.get("/api/user/me", headers=_bearer(data["token"]))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "a@x.com"

    def test_unknown_and_wrong_password_match(self, client):
        _register(client)
        wrong = _login(client, password="Wrong1234")
        unknown = _login(client, identity="nobody")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_fifth_failure_locks_account(self, client, runtime):
        assert _register(client).status_code == 201
        for _ in range(4):
            response = _login(client, password="WrongPass1")
            assert response.status_code == 401

        fifth = _login(client, password="WrongPass1")
        assert fifth.status_code == 403
        assert fifth.json()["securityStatus"] == "BLOCKED"
        assert fifth.json()["success"] is False

        sixth = _login(client, password="Abcdef12")
        assert sixth.status_code == 403
        assert "ACCOUNT LOCKED" in sixth.json()["message"]
        assert len(_events(runtime, "ACCOUNT_LOCKED")) == 1

    def test_me_requires_session(self, client):
        response = client.get("/api/user/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestMaliciousPayloads:
    """Tests for the payload guard in front of every API route."""

    def test_anonymous_script_body_warns(self, client, runtime):
        raw = "<script>alert(1)</script>"
        response = client.post("/api/user/register", json={"comment": raw})
        assert response.status_code == 400
        body = response.json()
        assert body["securityStatus"] == "WARNING"
        assert "1/5" in body["message"]

        events = _events(runtime)
        assert [event.action for event in events] == ["MALICIOUS_PAYLOAD_DETECTED"]
        assert events[0].actor_name == "GUEST"
        assert events[0].detail["payload"]["body"] == {"comment": raw}

    def test_security_response_allows_ui_origin(self, client):
        origin = "http://localhost:5173"
        response = client.post(
            "/api/user/register",
            json={"comment": "<script>alert(1)</script>"},
            headers={"Origin": origin},
        )
        assert response.status_code == 400
        assert response.json()["securityStatus"] == "WARNING"
        assert response.headers["access-control-allow-origin"] == origin
        assert response.headers["access-control-allow-credentials"] == "true"

    def test_guest_cookie_uses_configured_samesite(self, monkeypatch):
        monkeypatch.setenv("SESSION_COOKIE_SAMESITE", "strict")
        reset_runtime_for_tests()
        client = TestClient(app_module.app)
        response = client.get("/api/user/me", params={"q": "<script>x</script>"})
        assert response.status_code == 400
        guest_cookie = response.headers["set-cookie"].lower()
        assert guest_cookie.startswith("av_guest=")
        assert "samesite=strict" in guest_cookie

    def test_guest_blocked_on_fifth_attempt(self, client):
        for attempt in range(1, 5):
            response = client.get("/api/user/me", params={"q": "<script>x</script>"})
            assert response.status_code == 400
            assert f"{attempt}/5" in response.json()["message"]
        blocked = client.get("/api/user/me", params={"q": "<script>x</script>"})
        assert blocked.status_code == 403
        assert blocked.json()["securityStatus"] == "BLOCKED"

        clean = client.post("/api/user/forgot-password", json={"email": "a@x.com"})
        assert clean.status_code == 403

    def test_authenticated_user_locked_on_third(self, client, runtime):
        _register(client)
        token = _login(client).json()["data"]["token"]
        for attempt in (1, 2):
            response = client.post(
                "/api/user/verify-email",
                json={"token": "javascript:alert(1)"},
                headers=_bearer(token),
            )
            assert response.status_code == 400
            assert f"{attempt}/3" in response.json()["message"]

        blocked = client.post(
            "/api/user/verify-email",
            json={"token": "javascript:alert(1)"},
            headers=_bearer(token),
        )
        assert blocked.status_code == 403
        assert blocked.json()["securityStatus"] == "BLOCKED"
        assert _login(client).status_code == 403
        assert len(_events(runtime, "ACCOUNT_BLOCKED")) == 1


class TestTotpLogin:
    """Tests for authenticator app enrollment and login."""

    def _enroll(self, client):
        _register(client)
        token = _login(client).json()["data"]["token"]
        setup = client.post("/api/mfa/setup", headers=_bearer(token)).json()["data"]
        assert setup["qrCode"].startswith("data:image/png;base64,")
        assert len(setup["backupCodes"]) == 8
        assert setup["manualEntrySecret"] == setup["secret"]
        confirm = client.post(
            "/api/mfa/verify-setup",
            json={"code": generate_totp(setup["secret"], time.time())},
            headers=_bearer(token),
        )
        assert confirm.status_code == 200
        client.cookies.clear()
        return setup

    def test_login_requires_second_factor(self, client):
        setup = self._enroll(client)
        first = _login(client)
        assert first.status_code == 200
        data = first.json()["data"]
        assert data["requiresTwoFactor"] is True
        assert data["mfaMethod"] == "totp"
        assert "token" not in data

        second = client.post(
            "/api/mfa/verify-login",
            json={"userId": data["userId"], "code": generate_totp(setup["secret"], time.time())},
        )
        assert second.status_code == 200
        assert second.json()["data"]["mfaType"] == "totp"
        assert second.json()["data"]["token"]

    def test_backup_code_is_single_use(self, client):
        setup = self._enroll(client)
        user_id = _login(client).json()["data"]["userId"]
        used = client.post(
            "/api/mfa/verify-login", json={"userId": user_id, "code": setup["backupCodes"][0]}
        )
        assert used.status_code == 200
        assert used.json()["data"]["remainingBackupCodes"] == 7
        assert used.json()["data"]["warning"]

        client.cookies.clear()
        _login(client)
        reused = client.post(
            "/api/mfa/verify-login", json={"userId": user_id, "code": setup["backupCodes"][0]}
        )
        assert reused.status_code == 400

    def test_verify_login_without_pending_step(self, client):
        self._enroll(client)
        response = client.post("/api/mfa/verify-login", json={"userId": "unknown", "code": "123456"})
        assert response.status_code == 401


class TestEmailOtpLogin:
    def test_emailed_code_completes_login(self, client, mailbox):
        _register(client)
        token = _login(client).json()["data"]["token"]
        enabled = client.post(
            "/api/mfa/email/enable", json={"password": "Abcdef12"}, headers=_bearer(token)
        )
        assert enabled.status_code == 200
        client.cookies.clear()

        data = _login(client).json()["data"]
        assert data["mfaMethod"] == "email"
        code = mailbox["send_login_otp"][-1][2]
        response = client.post("/api/mfa/verify-login", json={"userId": data["userId"], "code": code})
        assert response.status_code == 200
        assert response.json()["data"]["mfaType"] == "email"

    def test_enable_requires_password(self, client):
        _register(client)
        token = _login(client).json()["data"]["token"]
        response = client.post(
            "/api/mfa/email/enable", json={"password": "Wrong1234"}, headers=_bearer(token)
        )
        assert response.status_code == 401


class TestPasswordFlows:
    """Tests for password change, history and reset."""

    def test_change_rotates_token(self, client):
        _register(client)
        old = _login(client).json()["data"]["token"]
        response = client.post(
            "/api/user/password",
            json={"currentPassword": "Abcdef12", "newPassword": "Newpass123"},
            headers=_bearer(old),
        )
        assert response.status_code == 200
        new = response.json()["data"]["token"]
        client.cookies.clear()
        assert client.get("/api/user/me", headers=_bearer(old)).status_code == 401
        assert client.get("/api/user/me", headers=_bearer(new)).status_code == 200

    def test_recent_password_is_rejected(self, client):
        _register(client)
        token = _login(client).json()["data"]["token"]
        changed = client.post(
            "/api/user/password",
            json={"currentPassword": "Abcdef12", "newPassword": "Newpass123"},
            headers=_bearer(token),
        )
        token = changed.json()["data"]["token"]
        response = client.post(
            "/api/user/password",
            json={"currentPassword": "Newpass123", "newPassword": "Abcdef12"},
            headers=_bearer(token),
        )
        assert response.status_code == 400
        assert "used recently" in response.json()["error"]["details"]["errors"][0]

    def test_forgot_and_reset(self, client, runtime, mailbox):
        _register(client)
        known = client.post("/api/user/forgot-password", json={"email": "a@x.com"})
        unknown = client.post("/api/user/forgot-password", json={"email": "b@x.com"})
        assert known.json()["data"] == unknown.json()["data"]

        runtime.tasks.drain()
        reset_token = mailbox["send_password_reset"][-1][1]
        response = client.post(
            "/api/user/reset-password", json={"token": reset_token, "newPassword": "Resetme123"}
        )
        assert response.status_code == 200
        assert _login(client, password="Resetme123").status_code == 200

        again = client.post(
            "/api/user/reset-password", json={"token": reset_token, "newPassword": "Other1234"}
        )
        assert again.status_code == 400

    def test_forgot_password_rate_limited(self, client):
        for _ in range(5):
            assert client.post(
                "/api/user/forgot-password", json={"email": "a@x.com"}
            ).status_code == 200
        limited = client.post("/api/user/forgot-password", json={"email": "a@x.com"})
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"


class TestVerificationAndLogout:
    def test_verify_email_link(self, client, runtime, mailbox):
        _register(client)
        runtime.tasks.drain()
        link_token = mailbox["send_email_verification"][-1][2]
        response = client.post("/api/user/verify-email", json={"token": link_token})
        assert response.status_code == 200
        token = _login(client).json()["data"]["token"]
        assert client.get("/api/user/me", headers=_bearer(token)).json()["data"]["email_verified"]

    def test_logout_revokes_token(self, client, runtime):
        _register(client)
        token = _login(client).json()["data"]["token"]
        response = client.post("/api/user/logout", headers=_bearer(token))
        assert response.status_code == 200
        client.cookies.clear()
        assert client.get("/api/user/me", headers=_bearer(token)).status_code == 401
        assert _events(runtime, "LOGOUT")


class TestHealth:
    def test_healthz_reports_memory_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert response.headers["X-Request-ID"]
