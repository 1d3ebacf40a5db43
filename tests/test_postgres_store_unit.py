import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from autovault.storage.models import AuditQuery
from autovault.storage.postgres import PostgresStore


NOW = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


def _account_row(**overrides):
    row = {
        "id": "7f1b8c6e-0000-4000-8000-000000000001",
        "username": "alice",
        "email": "alice@example.com",
        "password_hash": "$argon2id$stub",
        "role": "normal",
        "status": "active",
        "password_history": json.dumps(["$argon2id$stub"]),
        "password_changed_at": NOW,
        "failed_login_attempts": 2,
        "locked_until": None,
        "mfa_enabled": False,
        "mfa_method": "none",
        "email_verified": False,
        "last_login_at": None,
        "last_login_ip": None,
        "otp_hash": None,
        "otp_expires_at": None,
        "otp_attempts": 0,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


class RecordingCursor:
    def __init__(self, rows):
        self._rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class RecordingConnection:
    def __init__(self, results):
        self.results = results
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((sql, params))
        return RecordingCursor(self.results.pop(0) if self.results else [])


class StubPool:
    """Hands out one recording connection; no database is touched."""

    def __init__(self, *results):
        self.conn = RecordingConnection(list(results))

    @contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, *results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = StubPool(*results)
    store.fs_root = tmp_path
    return store


def test_row_to_account_decodes_history(tmp_path: Path):
    store = _store(tmp_path, [_account_row()])
    account = store.get_account("7f1b8c6e-0000-4000-8000-000000000001")
    assert account.username == "alice"
    assert account.password_history == ["$argon2id$stub"]
    assert account.failed_login_attempts == 2


def test_update_returning_missing_row(tmp_path: Path):
    store = _store(tmp_path, [])
    with pytest.raises(KeyError):
        store.clear_failed_attempts("missing")


def test_failed_attempt_passes_lock_parameters(tmp_path: Path):
    store = _store(tmp_path, [_account_row(failed_login_attempts=5)])
    store.record_failed_attempt(
        "7f1b8c6e-0000-4000-8000-000000000001",
        threshold=5,
        lock_duration=timedelta(minutes=60),
        now=NOW,
    )
    sql, params = store.pool.conn.statements[0]
    assert "FOR UPDATE" in sql
    assert params["threshold"] == 5
    assert params["lock_until"] == NOW + timedelta(minutes=60)


def test_audit_where_combines_filters():
    where, params = PostgresStore._audit_where(
        AuditQuery(action="LOGIN_FAILED", outcome="failure", search="ali")
    )
    assert where == "WHERE action = %s AND outcome = %s AND (actor_name ILIKE %s OR action ILIKE %s)"
    assert params == ["LOGIN_FAILED", "failure", "%ali%", "%ali%"]


def test_audit_where_empty():
    assert PostgresStore._audit_where(AuditQuery()) == ("", [])


def test_query_audit_events_pages(tmp_path: Path):
    event_row = {
        "id": "7f1b8c6e-0000-4000-8000-0000000000aa",
        "action": "LOGOUT",
        "outcome": "success",
        "actor_id": None,
        "actor_name": None,
        "detail": "{}",
        "ip": None,
        "user_agent": None,
        "method": None,
        "endpoint": None,
        "created_at": NOW,
    }
    store = _store(tmp_path, [{"total": 41}], [event_row])
    page = store.query_audit_events(AuditQuery(action="LOGOUT"), page=3, limit=20)
    assert page.total == 41
    assert page.total_pages == 3
    assert page.items[0].detail == {}
    _, params = store.pool.conn.statements[1]
    assert params == ["LOGOUT", 20, 40]


@pytest.mark.parametrize("account_id", ["abc", "", "7f1b8c6e-zzzz", "1; DROP TABLE account"])
def test_get_account_skips_query_for_malformed_id(tmp_path: Path, account_id):
    store = _store(tmp_path, [_account_row()])
    assert store.get_account(account_id) is None
    assert store.pool.conn.statements == []


def test_get_account_canonicalizes_id(tmp_path: Path):
    store = _store(tmp_path, [_account_row()])
    store.get_account("7F1B8C6E-0000-4000-8000-000000000001")
    _, params = store.pool.conn.statements[0]
    assert params == ("7f1b8c6e-0000-4000-8000-000000000001",)


def test_audit_where_malformed_actor_matches_nothing():
    where, params = PostgresStore._audit_where(AuditQuery(actor_id="abc", action="LOGOUT"))
    assert where == "WHERE action = %s AND FALSE"
    assert params == ["LOGOUT"]


def test_find_verification_token_reads_without_delete(tmp_path: Path):
    token_row = {
        "token_hash": "h1",
        "account_id": "7f1b8c6e-0000-4000-8000-000000000001",
        "kind": "password_reset",
        "expires_at": NOW,
        "created_at": NOW,
    }
    store = _store(tmp_path, [token_row])
    token = store.find_verification_token("h1", "password_reset")
    assert token.account_id == "7f1b8c6e-0000-4000-8000-000000000001"
    sql, _ = store.pool.conn.statements[0]
    assert sql.lstrip().startswith("SELECT")
