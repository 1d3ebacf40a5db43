from __future__ import annotations

import base64
import hashlib
import hmac
import math
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from autovault.logging import get_logger
from autovault.service.audit import AuditTrail
from autovault.service.errors import SECURITY_BLOCKED, SECURITY_WARNING
from autovault.service.lockout import is_locked, minutes_remaining
from autovault.service.sessions import SessionIssuer
from autovault.storage.expiring import ExpiringStore
from autovault.storage.models import (
    OUTCOME_FAILURE,
    OUTCOME_WARNING,
    Account,
    RequestContext,
    utcnow,
)

logger = get_logger(__name__)

GUEST_COOKIE_NAME = "av_guest"

MALICIOUS_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"<script.*?>",
        r"javascript:",
        r"onerror\s*=",
        r"onload\s*=",
        r"onclick\s*=",
        r"onmouseover\s*=",
        r"eval\(.*?\)",
        r"base64\s*,",
        r"alert\(.*?\)",
        r"prompt\(.*?\)",
        r"confirm\(.*?\)",
        r"document\.cookie",
        r"document\.location",
        r"window\.location",
        r"iframe.*src",
        r"svg.*?onload",
    )
)


def contains_malicious_content(value: Any, *, depth: int = 0, max_depth: int = 32) -> bool:
    """Recursively scan strings inside dicts and lists.

    Dict keys are scanned as well as values.
    """
    if depth > max_depth:
        return False
    if isinstance(value, str):
        return any(pattern.search(value) for pattern in MALICIOUS_PATTERNS)
    if isinstance(value, dict):
        return any(
            contains_malicious_content(key, depth=depth + 1)
            or contains_malicious_content(item, depth=depth + 1)
            for key, item in value.items()
        )
    if isinstance(value, (list, tuple, set)):
        return any(contains_malicious_content(item, depth=depth + 1) for item in value)
    return False


def _marker_signature(secret: str, marker: str) -> str:
    digest = hmac.new(secret.encode(), marker.encode(), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest[:18]).decode().rstrip("=")


def sign_guest_marker(secret: str, marker: str) -> str:
    return f"{marker}.{_marker_signature(secret, marker)}"


def read_guest_marker(secret: str, cookie_value: Optional[str]) -> Optional[str]:
    """Return the marker id when the cookie carries a valid signature."""
    if not cookie_value or "." not in cookie_value:
        return None
    marker, signature = cookie_value.rsplit(".", 1)
    if not marker or not hmac.compare_digest(_marker_signature(secret, marker), signature):
        return None
    return marker


@dataclass
class GuardRequest:
    path: str
    method: str
    body: Any = None
    query: Dict[str, Any] = field(default_factory=dict)
    path_params: Iterable[str] = field(default_factory=list)
    context: RequestContext = field(default_factory=RequestContext)
    account: Optional[Account] = None
    token: Optional[str] = None
    guest_marker: Optional[str] = None


@dataclass
class GuardVerdict:
    allowed: bool
    security_status: Optional[str] = None
    message: Optional[str] = None
    status_code: int = 200
    guest_cookie: Optional[str] = None

    @classmethod
    def allow(cls) -> "GuardVerdict":
        return cls(allowed=True)

    @classmethod
    def warning(cls, message: str, guest_cookie: Optional[str] = None) -> "GuardVerdict":
        return cls(
            allowed=False,
            security_status=SECURITY_WARNING,
            message=message,
            status_code=400,
            guest_cookie=guest_cookie,
        )

    @classmethod
    def blocked(cls, message: str, guest_cookie: Optional[str] = None) -> "GuardVerdict":
        return cls(
            allowed=False,
            security_status=SECURITY_BLOCKED,
            message=message,
            status_code=403,
            guest_cookie=guest_cookie,
        )


class AbuseGuard:
    """Lock check and malicious-content ladder applied to every request.

    Actors are keyed by account id when authenticated, otherwise by a signed
    anonymous marker cookie. Raw client IPs are never used as a key.
    """

    def __init__(
        self,
        *,
        store,
        counters: ExpiringStore,
        audit: AuditTrail,
        sessions: SessionIssuer,
        secret: str,
        user_limit: int = 3,
        guest_limit: int = 5,
        block_duration: timedelta = timedelta(minutes=20),
        window: timedelta = timedelta(minutes=60),
        bypass_paths: FrozenSet[str] = frozenset(),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.counters = counters
        self.audit = audit
        self.sessions = sessions
        self._secret = secret
        self.user_limit = user_limit
        self.guest_limit = guest_limit
        self.block_duration = block_duration
        self.window = window
        self.bypass_paths = bypass_paths
        self._clock = clock

    @property
    def block_minutes(self) -> int:
        return int(self.block_duration.total_seconds() // 60)

    def read_marker(self, cookie_value: Optional[str]) -> Optional[str]:
        return read_guest_marker(self._secret, cookie_value)

    async def _lock_check(self, req: GuardRequest, now: datetime) -> Optional[GuardVerdict]:
        if req.path in self.bypass_paths:
            return None
        if req.account is not None:
            if is_locked(req.account, now):
                minutes = minutes_remaining(req.account, now)
                return GuardVerdict.blocked(
                    "🚫 ACCOUNT LOCKED: Your account has been temporarily locked for "
                    f"{minutes} more minutes due to repeated malicious payload attempts."
                )
            return None
        if req.guest_marker and await self.counters.exists(
            f"abuse:guest:block:{req.guest_marker}"
        ):
            remaining = await self.counters.ttl(f"abuse:guest:block:{req.guest_marker}")
            minutes = max(1, math.ceil(remaining / 60))
            return GuardVerdict.blocked(
                "🚫 ACCESS BLOCKED: This session is temporarily blocked for "
                f"{minutes} more minutes due to repeated malicious payload attempts."
            )
        return None

    def _scan(self, req: GuardRequest) -> bool:
        return (
            contains_malicious_content(req.body)
            or contains_malicious_content(req.query)
            or contains_malicious_content(list(req.path_params))
        )

    async def inspect(self, req: GuardRequest) -> GuardVerdict:
        now = self._clock()
        locked = await self._lock_check(req, now)
        if locked is not None:
            return locked
        if not self._scan(req):
            return GuardVerdict.allow()

        account = req.account
        self.audit.record(
            "MALICIOUS_PAYLOAD_DETECTED",
            outcome=OUTCOME_WARNING,
            actor_id=account.id if account else None,
            actor_name=account.username if account else "GUEST",
            detail={
                "ip": req.context.ip,
                "url": req.path,
                "method": req.method,
                "payload": {
                    "body": req.body,
                    "query": req.query,
                    "params": list(req.path_params),
                },
            },
            context=req.context,
        )
        if account is not None:
            return await self._escalate_account(req, account, now)
        return await self._escalate_guest(req)

    async def _escalate_account(
        self, req: GuardRequest, account: Account, now: datetime
    ) -> GuardVerdict:
        key = f"abuse:user:{account.id}"
        count = await self.counters.increment(key, int(self.window.total_seconds()))
        logger.warning(
            "malicious_payload_detected",
            account_id=account.id,
            count=count,
            limit=self.user_limit,
            path=req.path,
        )
        if count < self.user_limit:
            return GuardVerdict.warning(
                f"⚠️ SECURITY WARNING: Malicious pattern detected ({count}/{self.user_limit}). "
                "Continued attempts will lead to an immediate account lock."
            )

        self.store.lock_account(account.id, now + self.block_duration, increment_failures=True)
        await self.counters.clear(key)
        if req.token:
            await self.sessions.revoke(req.token)
        self.audit.record(
            "ACCOUNT_BLOCKED",
            outcome=OUTCOME_FAILURE,
            actor_id=account.id,
            actor_name=account.username,
            detail={"reason": "malicious_payload", "minutes": self.block_minutes},
            context=req.context,
        )
        logger.warning("account_blocked", account_id=account.id, minutes=self.block_minutes)
        return GuardVerdict.blocked(
            f"🚫 ACCOUNT BLOCKED: Your account has been locked for {self.block_minutes} "
            "minutes due to persistent malicious activity."
        )

    async def _escalate_guest(self, req: GuardRequest) -> GuardVerdict:
        marker = req.guest_marker
        cookie = None
        if marker is None:
            marker = secrets.token_urlsafe(16)
            cookie = sign_guest_marker(self._secret, marker)
        key = f"abuse:guest:{marker}"
        count = await self.counters.increment(key, int(self.window.total_seconds()))
        logger.warning(
            "malicious_payload_detected",
            actor="guest",
            count=count,
            limit=self.guest_limit,
            path=req.path,
        )
        if count < self.guest_limit:
            return GuardVerdict.warning(
                f"⚠️ SECURITY WARNING: Malicious pattern detected ({count}/{self.guest_limit}). "
                "Guest attempts are strictly monitored.",
                guest_cookie=cookie,
            )

        await self.counters.set(
            f"abuse:guest:block:{marker}", "1", int(self.block_duration.total_seconds())
        )
        await self.counters.clear(key)
        logger.warning("guest_blocked", minutes=self.block_minutes)
        return GuardVerdict.blocked(
            f"🚫 ACCESS BLOCKED: Too many malicious requests from this session. "
            f"Try again in {self.block_minutes} minutes.",
            guest_cookie=cookie,
        )
