from __future__ import annotations

import asyncio
import math
import threading
import time
from datetime import timedelta
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from redis.exceptions import RedisError

from autovault.config import get_settings, reset_settings_cache
from autovault.logging import get_logger
from autovault.service.abuse_guard import AbuseGuard
from autovault.service.audit import AuditTrail
from autovault.service.auth import AuthService
from autovault.service.email import EmailService
from autovault.service.lockout import LockoutPolicy
from autovault.service.mfa import MFACipher, MFAEngine
from autovault.service.passwords import PasswordHashing, PasswordPolicy
from autovault.service.sessions import SessionIssuer
from autovault.service.tasks import TaskRunner
from autovault.storage.expiring import MemoryExpiringStore
from autovault.storage.memory import MemoryStore
from autovault.storage.postgres import PostgresStore
from autovault.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Lock checks never block the routes a locked account needs to leave.
LOCK_BYPASS_PATHS = frozenset({"/api/user/login", "/api/user/logout"})


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Return ``url`` with any password replaced by ``***`` for log output."""
    if not url:
        return url
    try:
        parts = urlsplit(url)
        password = parts.password
    except ValueError:
        return "<unparseable url>"
    if not password:
        return url
    credentials, _, host = parts.netloc.rpartition("@")
    user = credentials.split(":", 1)[0]
    return urlunsplit(parts._replace(netloc=f"{user}:***@{host}"))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = self._open_store()
        self.cache: Optional[RedisCache] = self._connect_cache()
        self.expiring = self.cache if self.cache is not None else MemoryExpiringStore()

        self.tasks = TaskRunner()
        self.audit = AuditTrail(
            self.store, self.tasks, retention_days=self.settings.audit_retention_days
        )
        self.hashing = PasswordHashing()
        self.passwords = PasswordPolicy(self.hashing)
        self.lockout = LockoutPolicy.from_settings(self.settings)
        self.sessions = SessionIssuer(
            secret=self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            denylist=self.expiring,
            ttl=timedelta(days=self.settings.session_ttl_days),
            cookie_name=self.settings.session_cookie_name,
            cookie_samesite=self.settings.session_cookie_samesite,
            cookie_secure=self.settings.is_production,
        )
        self.mfa = MFAEngine(
            self.store,
            MFACipher(self.settings.mfa_secret_key or self.settings.jwt_secret),
            issuer=self.settings.mfa_issuer,
            email_otp_ttl=timedelta(minutes=self.settings.email_otp_ttl_minutes),
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(
            self.store,
            hashing=self.hashing,
            policy=self.passwords,
            sessions=self.sessions,
            mfa=self.mfa,
            audit=self.audit,
            email=self.email,
            tasks=self.tasks,
            pending=self.expiring,
            lockout=self.lockout,
            pending_ttl=timedelta(minutes=self.settings.mfa_pending_minutes),
        )
        self.guard = AbuseGuard(
            store=self.store,
            counters=self.expiring,
            audit=self.audit,
            sessions=self.sessions,
            secret=self.settings.jwt_secret,
            user_limit=self.settings.abuse_user_limit,
            guest_limit=self.settings.abuse_guest_limit,
            block_duration=timedelta(minutes=self.settings.abuse_block_minutes),
            window=timedelta(minutes=self.settings.abuse_window_minutes),
            bypass_paths=LOCK_BYPASS_PATHS,
        )
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            environment=self.settings.environment,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    def _open_store(self):
        backend = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(
                    fs_root=self.settings.shared_fs_root, persist=not self.settings.test_mode
                )
            else:
                store = PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=backend,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=backend)
        return store

    def _connect_cache(self) -> Optional[RedisCache]:
        """Connect to Redis, or fall back to in-process state where allowed.

        Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV a missing Redis is
        fatal, since the denylist and abuse counters must be shared.
        """
        failure: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
            except (RedisError, OSError, ValueError) as exc:
                failure = exc
            else:
                return cache

        if self.settings.test_mode:
            mode = "TEST_MODE"
        elif self.settings.allow_redis_fallback_dev:
            mode = "ALLOW_REDIS_FALLBACK_DEV"
        else:
            raise RuntimeError(
                "Redis is unreachable and no fallback is enabled; start Redis or set "
                "TEST_MODE=true or ALLOW_REDIS_FALLBACK_DEV=true"
            ) from failure
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(failure) if failure else "redis_url_missing",
            mode=mode,
            message="session denylist, abuse counters and rate limits are process-local",
        )
        return None

    async def run_maintenance(self) -> Dict[str, int]:
        """Sweep the denylist, expired one-time tokens and old audit events."""
        swept = await self.sessions.sweep()
        tokens = self.store.purge_expired_tokens()
        audit = self.audit.purge_expired()
        logger.info(
            "maintenance_completed",
            denylist_swept=swept,
            tokens_purged=tokens,
            audit_purged=audit,
        )
        return {"denylist": swept, "tokens": tokens, "audit": audit}

    def close(self) -> None:
        self.tasks.shutdown(wait=True)
        if hasattr(self.store, "close"):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.tasks.shutdown(wait=True)
            if runtime.cache is not None:
                try:
                    _close_cache(runtime.cache)
                except (OSError, RuntimeError) as exc:
                    logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by Redis, or by process memory without it.

    A non-positive ``limit`` disables the check. With ``return_remaining``
    the result is ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            fallback_seconds=60,
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )

    per_second = limit / window_seconds
    now = time.monotonic()
    with runtime._local_rate_limit_lock:
        available, stamped = runtime._local_rate_limits.get(key, (float(limit), now))
        available = min(float(limit), available + (now - stamped) * per_second)
        allowed = available >= cost
        if allowed:
            available -= cost
            runtime._local_rate_limits[key] = (available, now)
    retry_after = 0 if allowed else math.ceil((cost - available) / per_second)
    if return_remaining:
        return allowed, int(available), retry_after
    return allowed
