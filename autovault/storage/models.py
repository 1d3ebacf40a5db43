from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ROLE_NORMAL = "normal"
ROLE_ADMIN = "admin"
ROLES = {ROLE_NORMAL, ROLE_ADMIN}

STATUS_ACTIVE = "active"
ACCOUNT_STATUSES = {STATUS_ACTIVE, "disabled", "suspended"}

MFA_NONE = "none"
MFA_EMAIL = "email"
MFA_TOTP = "totp"
MFA_METHODS = {MFA_NONE, MFA_EMAIL, MFA_TOTP}

TOKEN_EMAIL_VERIFICATION = "email_verification"
TOKEN_PASSWORD_RESET = "password_reset"
TOKEN_KINDS = {TOKEN_EMAIL_VERIFICATION, TOKEN_PASSWORD_RESET}

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_WARNING = "warning"
AUDIT_OUTCOMES = {OUTCOME_SUCCESS, OUTCOME_FAILURE, OUTCOME_WARNING}

PASSWORD_HISTORY_SIZE = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: str
    role: str = ROLE_NORMAL
    status: str = STATUS_ACTIVE
    # Most recent last; includes the current hash.
    password_history: List[str] = field(default_factory=list)
    password_changed_at: datetime = field(default_factory=utcnow)
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_method: str = MFA_NONE
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    otp_hash: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        role: str = ROLE_NORMAL,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email.strip().lower(),
            password_hash=password_hash,
            role=role,
            password_history=[password_hash],
            password_changed_at=now,
            created_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def public_view(self) -> Dict[str, Any]:
        """Fields that are safe to hand back to the account owner."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "email_verified": self.email_verified,
            "mfa_enabled": self.mfa_enabled,
            "mfa_method": self.mfa_method,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }


@dataclass
class BackupCode:
    encrypted_code: str
    used: bool = False
    used_at: Optional[datetime] = None


@dataclass
class MFASecretRecord:
    account_id: str
    encrypted_secret: str
    backup_codes: List[BackupCode] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def remaining_backup_codes(self) -> int:
        return sum(1 for code in self.backup_codes if not code.used)


@dataclass
class VerificationToken:
    token_hash: str
    account_id: str
    kind: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None


@dataclass
class AuditEvent:
    id: str
    action: str
    outcome: str
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        action: str,
        outcome: str,
        *,
        actor_id: Optional[str] = None,
        actor_name: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> "AuditEvent":
        ctx = context or RequestContext()
        return cls(
            id=str(uuid.uuid4()),
            action=action,
            outcome=outcome,
            actor_id=actor_id,
            actor_name=actor_name,
            detail=detail or {},
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            method=ctx.method,
            endpoint=ctx.endpoint,
        )


@dataclass
class AuditQuery:
    action: Optional[str] = None
    actor_id: Optional[str] = None
    outcome: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: Optional[str] = None

    def matches(self, event: AuditEvent) -> bool:
        if self.action and event.action != self.action:
            return False
        if self.actor_id and event.actor_id != self.actor_id:
            return False
        if self.outcome and event.outcome != self.outcome:
            return False
        if self.start and event.created_at < self.start:
            return False
        if self.end and event.created_at > self.end:
            return False
        if self.search:
            needle = self.search.lower()
            haystacks = [event.action.lower(), (event.actor_name or "").lower()]
            if not any(needle in hay for hay in haystacks):
                return False
        return True


@dataclass
class AuditPage:
    items: List[AuditEvent]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)
