from __future__ import annotations

import copy
import json
import threading
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

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


class MemoryStore:
    """In-process account store with a JSON snapshot on disk.

    Every mutator runs under one re-entrant lock, so read-modify-write
    sequences such as the failed-attempt counter and backup-code
    consumption are atomic within the process. Callers receive copies;
    mutating a returned object never changes stored state.
    """

    def __init__(self, fs_root: str = "/tmp/autovault", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.mfa_secrets: Dict[str, MFASecretRecord] = {}
        self.verification_tokens: Dict[str, VerificationToken] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can re-acquire inside a mutator
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._persist = persist
        if persist and not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def check_health(self) -> None:
        self._state_path()

    # accounts
    def create_account(
        self, username: str, email: str, password_hash: str, role: str = "normal"
    ) -> Account:
        account = Account.new(username, email, password_hash, role)
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.email == account.email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == account.username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            self.accounts[account.id] = account
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def find_by_identity(self, identity: str) -> Optional[Account]:
        """Look an account up by email (case-insensitive) or exact username."""
        needle = identity.strip()
        lowered = needle.lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == lowered or account.username == needle:
                    return copy.deepcopy(account)
        return None

    def _mutate(self, account_id: str, mutator) -> Account:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise KeyError(account_id)
            mutator(account)
            self._persist_state()
            return copy.deepcopy(account)

    def record_failed_attempt(
        self,
        account_id: str,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Account:
        now = now or utcnow()

        def apply(account: Account) -> None:
            if account.locked_until and account.locked_until <= now:
                account.failed_login_attempts = 0
                account.locked_until = None
            account.failed_login_attempts += 1
            if account.failed_login_attempts >= threshold and account.locked_until is None:
                account.locked_until = now + lock_duration

        return self._mutate(account_id, apply)

    def clear_failed_attempts(self, account_id: str) -> Account:
        def apply(account: Account) -> None:
            account.failed_login_attempts = 0
            account.locked_until = None

        return self._mutate(account_id, apply)

    def record_success(
        self, account_id: str, *, ip: Optional[str] = None, now: Optional[datetime] = None
    ) -> Account:
        now = now or utcnow()

        def apply(account: Account) -> None:
            account.failed_login_attempts = 0
            account.locked_until = None
            account.otp_attempts = 0
            account.last_login_at = now
            account.last_login_ip = ip

        return self._mutate(account_id, apply)

    def lock_account(
        self, account_id: str, until: datetime, *, increment_failures: bool = False
    ) -> Account:
        def apply(account: Account) -> None:
            account.locked_until = until
            if increment_failures:
                account.failed_login_attempts += 1

        return self._mutate(account_id, apply)

    def record_mfa_failure(
        self,
        account_id: str,
        *,
        threshold: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Account:
        now = now or utcnow()

        def apply(account: Account) -> None:
            account.otp_attempts += 1
            if account.otp_attempts >= threshold:
                account.locked_until = now + lock_duration
                account.otp_attempts = 0

        return self._mutate(account_id, apply)

    def set_email_otp(self, account_id: str, otp_hash: str, expires_at: datetime) -> Account:
        def apply(account: Account) -> None:
            account.otp_hash = otp_hash
            account.otp_expires_at = expires_at
            account.otp_attempts = 0

        return self._mutate(account_id, apply)

    def clear_email_otp(self, account_id: str) -> Account:
        def apply(account: Account) -> None:
            account.otp_hash = None
            account.otp_expires_at = None

        return self._mutate(account_id, apply)

    def set_mfa_flags(self, account_id: str, *, enabled: bool, method: str) -> Account:
        def apply(account: Account) -> None:
            account.mfa_enabled = enabled
            account.mfa_method = method

        return self._mutate(account_id, apply)

    def set_account_status(self, account_id: str, status: str) -> Account:
        return self._mutate(account_id, lambda account: setattr(account, "status", status))

    def set_role(self, account_id: str, role: str) -> Account:
        return self._mutate(account_id, lambda account: setattr(account, "role", role))

    def mark_email_verified(self, account_id: str) -> Account:
        return self._mutate(
            account_id, lambda account: setattr(account, "email_verified", True)
        )

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        history_size: int = PASSWORD_HISTORY_SIZE,
        now: Optional[datetime] = None,
    ) -> Account:
        now = now or utcnow()

        def apply(account: Account) -> None:
            account.password_hash = password_hash
            account.password_history = (account.password_history + [password_hash])[
                -history_size:
            ]
            account.password_changed_at = now

        return self._mutate(account_id, apply)

    # mfa secrets
    def save_mfa_secret(self, record: MFASecretRecord) -> MFASecretRecord:
        with self._data_lock:
            # Setup replaces any prior record wholesale
            self.mfa_secrets[record.account_id] = copy.deepcopy(record)
            self._persist_state()
            return copy.deepcopy(record)

    def get_mfa_secret(self, account_id: str) -> Optional[MFASecretRecord]:
        with self._data_lock:
            record = self.mfa_secrets.get(account_id)
            return copy.deepcopy(record) if record else None

    def delete_mfa_secret(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.mfa_secrets.pop(account_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    def consume_backup_code(
        self, account_id: str, index: int, *, now: Optional[datetime] = None
    ) -> bool:
        """Mark one backup code used if it is still unused."""
        with self._data_lock:
            record = self.mfa_secrets.get(account_id)
            if record is None or index < 0 or index >= len(record.backup_codes):
                return False
            code = record.backup_codes[index]
            if code.used:
                return False
            code.used = True
            code.used_at = now or utcnow()
            self._persist_state()
            return True

    def replace_backup_codes(self, account_id: str, codes: List[BackupCode]) -> bool:
        with self._data_lock:
            record = self.mfa_secrets.get(account_id)
            if record is None:
                return False
            record.backup_codes = copy.deepcopy(codes)
            self._persist_state()
            return True

    # verification tokens
    def create_verification_token(self, token: VerificationToken) -> VerificationToken:
        with self._data_lock:
            # One live token per account and kind
            for key, existing in list(self.verification_tokens.items()):
                if existing.account_id == token.account_id and existing.kind == token.kind:
                    del self.verification_tokens[key]
            self.verification_tokens[token.token_hash] = copy.deepcopy(token)
            self._persist_state()
            return token

    def find_verification_token(
        self, token_hash: str, kind: str
    ) -> Optional[VerificationToken]:
        with self._data_lock:
            token = self.verification_tokens.get(token_hash)
            if token is None or token.kind != kind:
                return None
            return copy.deepcopy(token)

    def consume_verification_token(
        self, token_hash: str, kind: str
    ) -> Optional[VerificationToken]:
        """Remove and return the token; expiry is checked by the caller."""
        with self._data_lock:
            token = self.verification_tokens.get(token_hash)
            if token is None or token.kind != kind:
                return None
            del self.verification_tokens[token_hash]
            self._persist_state()
            return token

    def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [
                key
                for key, token in self.verification_tokens.items()
                if token.is_expired(now)
            ]
            for key in expired:
                del self.verification_tokens[key]
            if expired:
                self._persist_state()
            return len(expired)

    # audit
    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._data_lock:
            self.audit_events.append(copy.deepcopy(event))
            self._persist_state()
            return event

    def query_audit_events(self, query: AuditQuery, *, page: int, limit: int) -> AuditPage:
        with self._data_lock:
            matched = [event for event in self.audit_events if query.matches(event)]
        matched.sort(key=lambda event: event.created_at, reverse=True)
        offset = (page - 1) * limit
        items = [copy.deepcopy(event) for event in matched[offset : offset + limit]]
        return AuditPage(items=items, total=len(matched), page=page, limit=limit)

    def audit_stats(self, since: datetime, *, top: int = 5) -> Dict[str, Any]:
        with self._data_lock:
            recent = [event for event in self.audit_events if event.created_at >= since]
        outcomes = Counter(event.outcome for event in recent)
        actions = Counter(event.action for event in recent)
        return {
            "total": len(recent),
            "success": outcomes.get("success", 0),
            "failure": outcomes.get("failure", 0),
            "top_actions": [
                {"action": action, "count": count}
                for action, count in actions.most_common(top)
            ],
        }

    def purge_audit_events(self, before: datetime) -> int:
        with self._data_lock:
            kept = [event for event in self.audit_events if event.created_at >= before]
            removed = len(self.audit_events) - len(kept)
            if removed:
                self.audit_events = kept
                self._persist_state()
            return removed

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> Dict[str, Any]:
        return {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "password_hash": account.password_hash,
            "role": account.role,
            "status": account.status,
            "password_history": list(account.password_history),
            "password_changed_at": self._serialize_datetime(account.password_changed_at),
            "failed_login_attempts": account.failed_login_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "mfa_enabled": account.mfa_enabled,
            "mfa_method": account.mfa_method,
            "email_verified": account.email_verified,
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "last_login_ip": account.last_login_ip,
            "otp_hash": account.otp_hash,
            "otp_expires_at": self._serialize_datetime(account.otp_expires_at),
            "otp_attempts": account.otp_attempts,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: Dict[str, Any]) -> Account:
        datetime_fields = {
            "password_changed_at",
            "locked_until",
            "last_login_at",
            "otp_expires_at",
            "created_at",
        }
        kwargs = {
            key: self._deserialize_datetime(value) if key in datetime_fields else value
            for key, value in data.items()
        }
        return Account(**kwargs)

    def _serialize_mfa_secret(self, record: MFASecretRecord) -> Dict[str, Any]:
        return {
            "account_id": record.account_id,
            "encrypted_secret": record.encrypted_secret,
            "backup_codes": [
                {
                    "encrypted_code": code.encrypted_code,
                    "used": code.used,
                    "used_at": self._serialize_datetime(code.used_at),
                }
                for code in record.backup_codes
            ],
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_mfa_secret(self, data: Dict[str, Any]) -> MFASecretRecord:
        return MFASecretRecord(
            account_id=data["account_id"],
            encrypted_secret=data["encrypted_secret"],
            backup_codes=[
                BackupCode(
                    encrypted_code=code["encrypted_code"],
                    used=bool(code.get("used", False)),
                    used_at=self._deserialize_datetime(code.get("used_at")),
                )
                for code in data.get("backup_codes", [])
            ],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_token(self, token: VerificationToken) -> Dict[str, Any]:
        return {
            "token_hash": token.token_hash,
            "account_id": token.account_id,
            "kind": token.kind,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_token(self, data: Dict[str, Any]) -> VerificationToken:
        return VerificationToken(
            token_hash=data["token_hash"],
            account_id=data["account_id"],
            kind=data["kind"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> Dict[str, Any]:
        return {
            "id": event.id,
            "action": event.action,
            "outcome": event.outcome,
            "actor_id": event.actor_id,
            "actor_name": event.actor_name,
            "detail": event.detail,
            "ip": event.ip,
            "user_agent": event.user_agent,
            "method": event.method,
            "endpoint": event.endpoint,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: Dict[str, Any]) -> AuditEvent:
        kwargs = dict(data)
        kwargs["created_at"] = self._deserialize_datetime(data.get("created_at")) or utcnow()
        return AuditEvent(**kwargs)

    def _persist_state(self) -> None:
        if not self._persist:
            return
        with self._data_lock:
            state = {
                "accounts": [self._serialize_account(a) for a in self.accounts.values()],
                "mfa_secrets": [
                    self._serialize_mfa_secret(r) for r in self.mfa_secrets.values()
                ],
                "verification_tokens": [
                    self._serialize_token(t) for t in self.verification_tokens.values()
                ],
                "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2, default=str))
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.mfa_secrets = {
            r["account_id"]: self._deserialize_mfa_secret(r)
            for r in data.get("mfa_secrets", [])
        }
        self.verification_tokens = {
            t["token_hash"]: self._deserialize_token(t)
            for t in data.get("verification_tokens", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True
