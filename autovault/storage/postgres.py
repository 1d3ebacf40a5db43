from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from autovault.logging import get_logger
from autovault.storage.errors import ConstraintViolation
from autovault.storage.models import (
    PASSWORD_HISTORY_SIZE,
    Account,
    AuditEvent,
    AuditPage,
    AuditQuery,
    BackupCode,
    MFASecretRecord,
    VerificationToken,
    utcnow,
)


def _uuid_or_none(value: Optional[str]) -> Optional[str]:
    """Canonical form of an account id, or None when it cannot be a UUID."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'normal',
    status TEXT NOT NULL DEFAULT 'active',
    password_history JSONB NOT NULL DEFAULT '[]'::jsonb,
    password_changed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
    locked_until TIMESTAMPTZ,
    mfa_enabled BOOLEAN NOT NULL DEFAULT false,
    mfa_method TEXT NOT NULL DEFAULT 'none',
    email_verified BOOLEAN NOT NULL DEFAULT false,
    last_login_at TIMESTAMPTZ,
    last_login_ip TEXT,
    otp_hash TEXT,
    otp_expires_at TIMESTAMPTZ,
    otp_attempts INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT mfa_enabled_has_method CHECK (NOT mfa_enabled OR mfa_method <> 'none')
);
CREATE TABLE IF NOT EXISTS mfa_secret (
    account_id UUID PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
    encrypted_secret TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS mfa_backup_code (
    account_id UUID NOT NULL REFERENCES mfa_secret(account_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    encrypted_code TEXT NOT NULL,
    used BOOLEAN NOT NULL DEFAULT false,
    used_at TIMESTAMPTZ,
    PRIMARY KEY (account_id, position)
);
CREATE TABLE IF NOT EXISTS verification_token (
    token_hash TEXT PRIMARY KEY,
    account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS audit_event (
    id UUID PRIMARY KEY,
    action TEXT NOT NULL,
    outcome TEXT NOT NULL,
    actor_id UUID,
    actor_name TEXT,
    detail JSONB NOT NULL DEFAULT '{}'::jsonb,
    ip TEXT,
    user_agent TEXT,
    method TEXT,
    endpoint TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS audit_event_created_idx ON audit_event (created_at DESC);
CREATE INDEX IF NOT EXISTS audit_event_actor_idx ON audit_event (actor_id, created_at DESC);
CREATE INDEX IF NOT EXISTS audit_event_action_idx ON audit_event (action);
"""


class PostgresStore:
    """Postgres-backed account store.

    Counter and flag changes are single ``UPDATE ... RETURNING`` statements
    whose new values are computed from the row's current values, so
    concurrent requests cannot lose an update.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def check_health(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_account(row: Dict[str, Any]) -> Account:
        history = row.get("password_history") or []
        if isinstance(history, str):
            history = json.loads(history)
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role", "normal"),
            status=row.get("status", "active"),
            password_history=list(history),
            password_changed_at=row.get("password_changed_at") or utcnow(),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_method=row.get("mfa_method", "none"),
            email_verified=bool(row.get("email_verified", False)),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            otp_hash=row.get("otp_hash"),
            otp_expires_at=row.get("otp_expires_at"),
            otp_attempts=int(row.get("otp_attempts") or 0),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_event(row: Dict[str, Any]) -> AuditEvent:
        detail = row.get("detail") or {}
        if isinstance(detail, str):
            detail = json.loads(detail)
        return AuditEvent(
            id=str(row["id"]),
            action=row["action"],
            outcome=row["outcome"],
            actor_id=str(row["actor_id"]) if row.get("actor_id") else None,
            actor_name=row.get("actor_name"),
            detail=detail,
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            method=row.get("method"),
            endpoint=row.get("endpoint"),
            created_at=row["created_at"],
        )

    # accounts
    def create_account(
        self, username: str, email: str, password_hash: str, role: str = "normal"
    ) -> Account:
        account = Account.new(username, email, password_hash, role)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, username, email, password_hash, role,
                                         password_history, password_changed_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                    """,
                    (
                        account.id,
                        account.username,
                        account.email,
                        account.password_hash,
                        account.role,
                        json.dumps(account.password_history),
                        account.password_changed_at,
                        account.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        key = _uuid_or_none(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (key,)).fetchone()
        return self._row_to_account(row) if row else None

    def find_by_identity(self, identity: str) -> Optional[Account]:
        needle = identity.strip()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s OR username = %s LIMIT 1",
                (needle.lower(), needle),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def _update_returning(self, sql: str, params: Any) -> Account:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            raise KeyError("account not found")
        return self._row_to_account(row)

    def record_failed_attempt(
        self,
        account_id: str,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Account:
        now = now or utcnow()
        # An expired lock restarts the count at this attempt.
        return self._update_returning(
            """
            WITH cur AS (
                SELECT id,
                       CASE WHEN locked_until IS NOT NULL AND locked_until <= %(now)s
                            THEN 1 ELSE failed_login_attempts + 1 END AS attempts,
                       CASE WHEN locked_until IS NOT NULL AND locked_until > %(now)s
                            THEN locked_until ELSE NULL END AS active_lock
                FROM account WHERE id = %(id)s FOR UPDATE
            )
            UPDATE account a SET
                failed_login_attempts = cur.attempts,
                locked_until = CASE
                    WHEN cur.active_lock IS NOT NULL THEN cur.active_lock
                    WHEN cur.attempts >= %(threshold)s THEN %(lock_until)s
                    ELSE NULL END
            FROM cur WHERE a.id = cur.id
            RETURNING a.*
            """,
            {
                "now": now,
                "threshold": threshold,
                "lock_until": now + lock_duration,
                "id": account_id,
            },
        )

    def clear_failed_attempts(self, account_id: str) -> Account:
        return self._update_returning(
            """
            UPDATE account SET failed_login_attempts = 0, locked_until = NULL
            WHERE id = %s RETURNING *
            """,
            (account_id,),
        )

    def record_success(
        self, account_id: str, *, ip: Optional[str] = None, now: Optional[datetime] = None
    ) -> Account:
        return self._update_returning(
            """
            UPDATE account SET failed_login_attempts = 0, locked_until = NULL,
                               otp_attempts = 0, last_login_at = %s, last_login_ip = %s
            WHERE id = %s RETURNING *
            """,
            (now or utcnow(), ip, account_id),
        )

    def lock_account(
        self, account_id: str, until: datetime, *, increment_failures: bool = False
    ) -> Account:
        return self._update_returning(
            """
            UPDATE account SET locked_until = %s,
                               failed_login_attempts = failed_login_attempts + %s
            WHERE id = %s RETURNING *
            """,
            (until, 1 if increment_failures else 0, account_id),
        )

    def record_mfa_failure(
        self,
        account_id: str,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Account:
        now = now or utcnow()
        return self._update_returning(
            """
            UPDATE account SET
                locked_until = CASE WHEN otp_attempts + 1 >= %(threshold)s
                                    THEN %(lock_until)s ELSE locked_until END,
                otp_attempts = CASE WHEN otp_attempts + 1 >= %(threshold)s
                                    THEN 0 ELSE otp_attempts + 1 END
            WHERE id = %(id)s RETURNING *
            """,
            {"threshold": threshold, "lock_until": now + lock_duration, "id": account_id},
        )

    def set_email_otp(self, account_id: str, otp_hash: str, expires_at: datetime) -> Account:
        return self._update_returning(
            """
            UPDATE account SET otp_hash = %s, otp_expires_at = %s, otp_attempts = 0
            WHERE id = %s RETURNING *
            """,
            (otp_hash, expires_at, account_id),
        )

    def clear_email_otp(self, account_id: str) -> Account:
        return self._update_returning(
            "UPDATE account SET otp_hash = NULL, otp_expires_at = NULL WHERE id = %s RETURNING *",
            (account_id,),
        )

    def set_mfa_flags(self, account_id: str, *, enabled: bool, method: str) -> Account:
        return self._update_returning(
            "UPDATE account SET mfa_enabled = %s, mfa_method = %s WHERE id = %s RETURNING *",
            (enabled, method, account_id),
        )

    def set_account_status(self, account_id: str, status: str) -> Account:
        return self._update_returning(
            "UPDATE account SET status = %s WHERE id = %s RETURNING *",
            (status, account_id),
        )

    def set_role(self, account_id: str, role: str) -> Account:
        return self._update_returning(
            "UPDATE account SET role = %s WHERE id = %s RETURNING *",
            (role, account_id),
        )

    def mark_email_verified(self, account_id: str) -> Account:
        return self._update_returning(
            "UPDATE account SET email_verified = true WHERE id = %s RETURNING *",
            (account_id,),
        )

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        history_size: int = PASSWORD_HISTORY_SIZE,
        now: Optional[datetime] = None,
    ) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_history FROM account WHERE id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if not row:
                raise KeyError(account_id)
            history = row["password_history"] or []
            if isinstance(history, str):
                history = json.loads(history)
            history = (list(history) + [password_hash])[-history_size:]
            updated = conn.execute(
                """
                UPDATE account SET password_hash = %s, password_history = %s::jsonb,
                                   password_changed_at = %s
                WHERE id = %s RETURNING *
                """,
                (password_hash, json.dumps(history), now or utcnow(), account_id),
            ).fetchone()
        return self._row_to_account(updated)

    # mfa secrets
    def save_mfa_secret(self, record: MFASecretRecord) -> MFASecretRecord:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "DELETE FROM mfa_secret WHERE account_id = %s", (record.account_id,)
                )
                conn.execute(
                    """
                    INSERT INTO mfa_secret (account_id, encrypted_secret, created_at)
                    VALUES (%s, %s, %s)
                    """,
                    (record.account_id, record.encrypted_secret, record.created_at),
                )
                self._insert_backup_codes(conn, record.account_id, record.backup_codes)
        return record

    @staticmethod
    def _insert_backup_codes(conn, account_id: str, codes: List[BackupCode]) -> None:
        with conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO mfa_backup_code (account_id, position, encrypted_code, used, used_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                [
                    (account_id, position, code.encrypted_code, code.used, code.used_at)
                    for position, code in enumerate(codes)
                ],
            )

    def get_mfa_secret(self, account_id: str) -> Optional[MFASecretRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_secret WHERE account_id = %s", (account_id,)
            ).fetchone()
            if not row:
                return None
            codes = conn.execute(
                """
                SELECT encrypted_code, used, used_at FROM mfa_backup_code
                WHERE account_id = %s ORDER BY position
                """,
                (account_id,),
            ).fetchall()
        return MFASecretRecord(
            account_id=str(row["account_id"]),
            encrypted_secret=row["encrypted_secret"],
            backup_codes=[
                BackupCode(
                    encrypted_code=code["encrypted_code"],
                    used=bool(code["used"]),
                    used_at=code.get("used_at"),
                )
                for code in codes
            ],
            created_at=row.get("created_at") or utcnow(),
        )

    def delete_mfa_secret(self, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM mfa_secret WHERE account_id = %s", (account_id,))
            return cur.rowcount > 0

    def consume_backup_code(
        self, account_id: str, index: int, *, now: Optional[datetime] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_backup_code SET used = true, used_at = %s
                WHERE account_id = %s AND position = %s AND used = false
                RETURNING position
                """,
                (now or utcnow(), account_id, index),
            ).fetchone()
        return row is not None

    def replace_backup_codes(self, account_id: str, codes: List[BackupCode]) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                exists = conn.execute(
                    "SELECT 1 FROM mfa_secret WHERE account_id = %s FOR UPDATE",
                    (account_id,),
                ).fetchone()
                if not exists:
                    return False
                conn.execute(
                    "DELETE FROM mfa_backup_code WHERE account_id = %s", (account_id,)
                )
                self._insert_backup_codes(conn, account_id, codes)
        return True

    # verification tokens
    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM verification_token WHERE account_id = %s AND kind = %s",
                (token.account_id, token.kind),
            )
            conn.execute(
                """
                INSERT INTO verification_token (token_hash, account_id, kind, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    token.token_hash,
                    token.account_id,
                    token.kind,
                    token.expires_at,
                    token.created_at,
                ),
            )
        return token

    def find_verification_token(
        self, token_hash: str, kind: str
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_token WHERE token_hash = %s AND kind = %s",
                (token_hash, kind),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def consume_verification_token(
        self, token_hash: str, kind: str
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM verification_token WHERE token_hash = %s AND kind = %s
                RETURNING *
                """,
                (token_hash, kind),
            ).fetchone()
        return self._row_to_token(row) if row else None

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> VerificationToken:
        return VerificationToken(
            token_hash=row["token_hash"],
            account_id=str(row["account_id"]),
            kind=row["kind"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, action, outcome, actor_id, actor_name, detail,
                                         ip, user_agent, method, endpoint, created_at)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.action,
                    event.outcome,
                    event.actor_id,
                    event.actor_name,
                    json.dumps(event.detail, default=str),
                    event.ip,
                    event.user_agent,
                    event.method,
                    event.endpoint,
                    event.created_at,
                ),
            )
        return event

    @staticmethod
    def _audit_where(query: AuditQuery) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.action:
            clauses.append("action = %s")
            params.append(query.action)
        if query.actor_id:
            actor = _uuid_or_none(query.actor_id)
            if actor is None:
                clauses.append("FALSE")
            else:
                clauses.append("actor_id = %s")
                params.append(actor)
        if query.outcome:
            clauses.append("outcome = %s")
            params.append(query.outcome)
        if query.start:
            clauses.append("created_at >= %s")
            params.append(query.start)
        if query.end:
            clauses.append("created_at <= %s")
            params.append(query.end)
        if query.search:
            pattern = f"%{query.search}%"
            clauses.append("(actor_name ILIKE %s OR action ILIKE %s)")
            params.extend([pattern, pattern])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query_audit_events(self, query: AuditQuery, *, page: int, limit: int) -> AuditPage:
        where, params = self._audit_where(query)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_event {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        return AuditPage(
            items=[self._row_to_event(row) for row in rows],
            total=int(total_row["total"]) if total_row else 0,
            page=page,
            limit=limit,
        )

    def audit_stats(self, since: datetime, *, top: int = 5) -> Dict[str, Any]:
        with self._connect() as conn:
            outcome_rows = conn.execute(
                """
                SELECT outcome, COUNT(*) AS count FROM audit_event
                WHERE created_at >= %s GROUP BY outcome
                """,
                (since,),
            ).fetchall()
            action_rows = conn.execute(
                """
                SELECT action, COUNT(*) AS count FROM audit_event
                WHERE created_at >= %s GROUP BY action ORDER BY count DESC LIMIT %s
                """,
                (since, top),
            ).fetchall()
        outcomes = {row["outcome"]: int(row["count"]) for row in outcome_rows}
        return {
            "total": sum(outcomes.values()),
            "success": outcomes.get("success", 0),
            "failure": outcomes.get("failure", 0),
            "top_actions": [
                {"action": row["action"], "count": int(row["count"])} for row in action_rows
            ],
        }

    def purge_audit_events(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM audit_event WHERE created_at < %s", (before,))
            return cur.rowcount

    def close(self) -> None:
        self.pool.close()
