from __future__ import annotations

import asyncio
import contextlib
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import parse_qsl

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from autovault.api.error_handling import register_exception_handlers, security_response
from autovault.api.routes import router
from autovault.config import get_settings
from autovault.logging import get_logger, set_correlation_id
from autovault.service.abuse_guard import GUEST_COOKIE_NAME, GuardRequest
from autovault.storage.models import RequestContext

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: int) -> None:
    """Background loop sweeping expired denylist entries, tokens and audit events."""
    from autovault.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await get_runtime().run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("maintenance_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the maintenance loop on startup; stop it and release resources on shutdown."""
    global _maintenance_task
    from autovault.service.runtime import get_runtime

    runtime = get_runtime()
    _maintenance_task = asyncio.create_task(
        _run_maintenance(runtime.settings.maintenance_interval_minutes * 60)
    )

    yield

    if _maintenance_task:
        _maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _maintenance_task
    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AutoVault Auth", version=__version__, lifespan=lifespan)


def _decode_body(raw: bytes, content_type: str) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    if "application/json" in content_type:
        try:
            return json.loads(text)
        except ValueError:
            return text
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=True))
    return text


@app.middleware("http")
async def guard_payloads(request: Request, call_next):
    """Lock check and malicious-payload ladder for every API request."""
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    from autovault.service.runtime import get_runtime

    runtime = get_runtime()
    token = runtime.sessions.extract_token(
        request.headers.get("authorization"),
        request.cookies.get(runtime.settings.session_cookie_name),
    )
    account = await runtime.auth.authenticate(token) if token else None
    raw = await request.body()
    verdict = await runtime.guard.inspect(
        GuardRequest(
            path=request.url.path,
            method=request.method,
            body=_decode_body(raw, request.headers.get("content-type", "")),
            query=dict(request.query_params),
            path_params=[segment for segment in request.url.path.split("/") if segment],
            context=RequestContext(
                ip=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
                method=request.method,
                endpoint=request.url.path,
            ),
            account=account,
            token=token,
            guest_marker=runtime.guard.read_marker(request.cookies.get(GUEST_COOKIE_NAME)),
        )
    )
    if verdict.allowed:
        return await call_next(request)
    response = security_response(verdict.status_code, verdict.message, verdict.security_status)
    if verdict.guest_cookie:
        response.set_cookie(
            GUEST_COOKIE_NAME,
            verdict.guest_cookie,
            max_age=int(runtime.guard.window.total_seconds()),
            httponly=True,
            secure=runtime.settings.is_production,
            samesite=runtime.settings.session_cookie_samesite,
            path="/",
        )
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for structured logging and echo it as X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# Outermost: CORS headers must reach the guard's early responses.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability."""
    from autovault.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _run_bounded("store", runtime.store.check_health)
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    healthy = store_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
