"""Integration tests for the admin audit and account status endpoints."""

import pytest

from autovault.storage.models import ROLE_ADMIN, AuditQuery

from conftest import STRONG_PASSWORD


def _token(client, identity):
    response = client.post(
        "/api/user/login", json={"identity": identity, "password": STRONG_PASSWORD}
    )
    assert response.status_code == 200
    client.cookies.clear()
    return response.json()["data"]["token"]


@pytest.fixture
def admin_headers(client, make_account):
    make_account(username="root", email="root@example.com", role=ROLE_ADMIN)
    return {"Authorization": f"Bearer {_token(client, 'root')}"}


@pytest.fixture
def member(make_account):
    return make_account()


class TestAccess:
    def test_regular_user_is_forbidden(self, client, member):
        headers = {"Authorization": f"Bearer {_token(client, 'alice')}"}
        response = client.get("/api/admin/audit/logs", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_is_unauthorized(self, client):
        assert client.get("/api/admin/audit/stats").status_code == 401


class TestAuditLogs:
    def test_filter_by_action(self, client, runtime, admin_headers, member):
        client.post("/api/user/login", json={"identity": "alice", "password": "Nope12345"})
        runtime.tasks.drain()
        response = client.get(
            "/api/admin/audit/logs",
            params={"action": "LOGIN_FAILED", "userId": member.id},
            headers=admin_headers,
        )
        assert response.status_code == 200
        page = response.json()["data"]
        assert page["total"] == 1
        assert page["data"][0]["action"] == "LOGIN_FAILED"
        assert page["data"][0]["status"] == "failure"
        assert page["data"][0]["user_id"] == member.id

    def test_newest_first_with_paging(self, client, runtime, admin_headers, member):
        runtime.tasks.drain()
        response = client.get(
            "/api/admin/audit/logs", params={"limit": 1, "page": 1}, headers=admin_headers
        )
        page = response.json()["data"]
        assert page["limit"] == 1
        assert page["totalPages"] == page["total"]
        assert page["currentPage"] == 1
        assert page["count"] == 1
        assert len(page["data"]) == 1
        assert page["data"][0]["action"] == "USER_REGISTERED"
        assert page["data"][0]["username"] == "alice"

    def test_limit_is_bounded(self, client, admin_headers):
        response = client.get(
            "/api/admin/audit/logs", params={"limit": 500}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"]["field"] == "limit"

    def test_inverted_date_range(self, client, admin_headers):
        response = client.get(
            "/api/admin/audit/logs",
            params={"startDate": "2030-01-02T00:00:00Z", "endDate": "2030-01-01T00:00:00Z"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_stats_count_today(self, client, runtime, admin_headers, member):
        client.post("/api/user/login", json={"identity": "alice", "password": "Nope12345"})
        runtime.tasks.drain()
        response = client.get("/api/admin/audit/stats", headers=admin_headers)
        assert response.status_code == 200
        stats = response.json()["data"]
        assert stats["totalToday"] >= 4
        assert stats["failuresToday"] == 1
        assert {"action", "count"} <= set(stats["topActions"][0])


class TestAccountStatus:
    def test_suspend_blocks_login(self, client, runtime, admin_headers, member):
        response = client.patch(
            f"/api/admin/users/{member.id}/status",
            json={"status": "suspended"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "suspended"

        login = client.post(
            "/api/user/login", json={"identity": "alice", "password": STRONG_PASSWORD}
        )
        assert login.status_code == 403
        assert "suspended" in login.json()["error"]["message"]

        runtime.tasks.drain()
        events = runtime.audit.query(
            AuditQuery(action="ACCOUNT_STATUS_CHANGED"), page=1, limit=10
        ).items
        assert events[0].detail["to"] == "suspended"

    def test_unknown_status_rejected(self, client, admin_headers, member):
        response = client.patch(
            f"/api/admin/users/{member.id}/status",
            json={"status": "banished"},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_unknown_account(self, client, admin_headers):
        response = client.patch(
            "/api/admin/users/missing/status",
            json={"status": "disabled"},
            headers=admin_headers,
        )
        assert response.status_code == 404

    def test_cannot_change_own_status(self, client, runtime, admin_headers):
        admin = runtime.store.find_by_identity("root")
        response = client.patch(
            f"/api/admin/users/{admin.id}/status",
            json={"status": "disabled"},
            headers=admin_headers,
        )
        assert response.status_code == 400
