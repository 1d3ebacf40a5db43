from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from autovault.api.schemas import (
    AccountResponse,
    AccountStatusRequest,
    AuditEventResponse,
    AuditLogPage,
    EmailRequest,
    Envelope,
    LoginRequest,
    MFACodeRequest,
    MFALoginRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenRequest,
)
from autovault.logging import get_logger
from autovault.service.auth import (
    LOGIN_INACTIVE,
    LOGIN_INVALID,
    LOGIN_LOCKED,
    LOGIN_MFA_REQUIRED,
    LOGIN_OTP_UNDELIVERED,
    LoginOutcome,
)
from autovault.service.errors import (
    AuthenticationError,
    AuthorizationError,
    InternalError,
    LockedError,
    RateLimitedError,
    ServiceError,
    ValidationError,
)
from autovault.service.runtime import check_rate_limit, get_runtime
from autovault.service.sessions import IssuedToken
from autovault.storage.models import ROLE_ADMIN, Account, AuditQuery, RequestContext

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

RATE_LIMIT_WINDOW_SECONDS = 60


class RateLimitInfo:
    """Rate limit state for response headers."""

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit and optionally apply headers to the response.

    Raises:
        RateLimitedError: if the bucket for ``key`` is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": reset_seconds})
    return info


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        method=request.method,
        endpoint=request.url.path,
    )


def _presented_token(runtime, request: Request, authorization: Optional[str]) -> Optional[str]:
    return runtime.sessions.extract_token(
        authorization, request.cookies.get(runtime.settings.session_cookie_name)
    )


def _apply_session_cookie(runtime, response: Response, issued: IssuedToken) -> None:
    response.set_cookie(**runtime.sessions.cookie_params(issued))


def _session_payload(account: Account, issued: IssuedToken) -> Dict[str, Any]:
    return {
        "token": issued.token,
        "expiresAt": issued.expires_at,
        "user": AccountResponse.from_account(account),
    }


def _raise_for_outcome(
    outcome: LoginOutcome, *, invalid: Type[ServiceError] = AuthenticationError
) -> None:
    if outcome.status == LOGIN_LOCKED:
        raise LockedError(outcome.message)
    if outcome.status == LOGIN_INACTIVE:
        raise AuthorizationError(outcome.message)
    if outcome.status == LOGIN_OTP_UNDELIVERED:
        raise InternalError(outcome.message)
    if outcome.status == LOGIN_INVALID:
        raise invalid(outcome.message)
    raise AuthenticationError(outcome.message or "authentication failed")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


async def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Account:
    runtime = get_runtime()
    token = _presented_token(runtime, request, authorization)
    account = await runtime.auth.authenticate(token)
    if account is None:
        raise AuthenticationError("invalid session")
    request.state.token = token
    return account


async def get_admin_user(account: Account = Depends(get_user)) -> Account:
    if account.role != ROLE_ADMIN:
        raise AuthorizationError("admin access required")
    return account


# account lifecycle
@router.post("/user/register", response_model=Envelope, status_code=201, tags=["user"])
async def register(body: RegisterRequest, request: Request):
    """Create an account and send the email verification link.

    Raises:
        400: password does not meet the strength rules
        409: username or email already registered
        429: rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    account = runtime.auth.register(
        body.username, body.email, body.password, _request_context(request)
    )
    return Envelope(
        status="ok",
        data={
            "message": "Registration successful. Please check your email to verify your account.",
            "user": AccountResponse.from_account(account),
        },
    )


@router.post("/user/login", response_model=Envelope, tags=["user"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email or username and password.

    Accounts with MFA enabled get ``requiresTwoFactor`` instead of a token and
    finish through ``/api/mfa/verify-login``.

    Raises:
        401: invalid credentials
        403: account locked or not active
        429: rate limit exceeded for this identity
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identity.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    outcome = await runtime.auth.login(body.identity, body.password, _request_context(request))
    if outcome.status == LOGIN_MFA_REQUIRED:
        return Envelope(
            status="ok",
            data={
                "requiresTwoFactor": True,
                "mfaMethod": outcome.mfa_method,
                "userId": outcome.account.id,
                "message": outcome.message,
            },
        )
    if not outcome.ok:
        _raise_for_outcome(outcome)
    _apply_session_cookie(runtime, response, outcome.token)
    return Envelope(
        status="ok",
        data={"message": outcome.message, **_session_payload(outcome.account, outcome.token)},
    )


@router.post("/user/logout", response_model=Envelope, tags=["user"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    token = _presented_token(runtime, request, authorization)
    account = await runtime.auth.authenticate(token)
    await runtime.auth.logout(token, account, _request_context(request))
    response.delete_cookie(**runtime.sessions.clear_cookie_params())
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/user/me", response_model=Envelope, tags=["user"])
async def me(account: Account = Depends(get_user)):
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/user/password", response_model=Envelope, tags=["user"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    account: Account = Depends(get_user),
):
    """Change the password and rotate the session token.

    Tokens issued before the change stop authenticating.
    """
    runtime = get_runtime()
    updated = runtime.auth.change_password(
        account, body.current_password, body.new_password, _request_context(request)
    )
    await runtime.sessions.revoke(getattr(request.state, "token", None))
    issued = runtime.sessions.issue(updated)
    _apply_session_cookie(runtime, response, issued)
    return Envelope(
        status="ok",
        data={"message": "Password changed successfully", **_session_payload(updated, issued)},
    )


@router.post("/user/verify-email", response_model=Envelope, tags=["user"])
async def verify_email(body: TokenRequest, request: Request):
    runtime = get_runtime()
    message = runtime.auth.verify_email(body.token, _request_context(request))
    return Envelope(status="ok", data={"message": message})


@router.post("/user/resend-verification", response_model=Envelope, tags=["user"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    return Envelope(status="ok", data={"message": runtime.auth.resend_verification(body.email)})


@router.post("/user/forgot-password", response_model=Envelope, tags=["user"])
async def forgot_password(body: EmailRequest, request: Request):
    """Send a reset link; the answer is identical whether or not the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    message = runtime.auth.request_password_reset(body.email, _request_context(request))
    return Envelope(status="ok", data={"message": message})


@router.post("/user/reset-password", response_model=Envelope, tags=["user"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    runtime.auth.reset_password(body.token, body.new_password, _request_context(request))
    return Envelope(
        status="ok",
        data={"message": "Password has been reset. Please log in with your new password."},
    )


# multi-factor authentication
@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(account: Account = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.mfa_status(account))


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(request: Request, account: Account = Depends(get_user)):
    """Start TOTP enrollment.

    The secret, QR code and backup codes are shown once; MFA stays off until
    ``/api/mfa/verify-setup`` accepts a code.
    """
    runtime = get_runtime()
    setup = runtime.auth.begin_mfa_setup(account, _request_context(request))
    return Envelope(
        status="ok",
        data={
            "secret": setup.secret,
            "manualEntrySecret": setup.secret,
            "otpauthUrl": setup.otpauth_uri,
            "qrCode": setup.qr_code,
            "backupCodes": setup.backup_codes,
        },
    )


@router.post("/mfa/verify-setup", response_model=Envelope, tags=["mfa"])
async def mfa_verify_setup(
    body: MFACodeRequest, request: Request, account: Account = Depends(get_user)
):
    runtime = get_runtime()
    updated = runtime.auth.confirm_mfa_setup(account, body.code, _request_context(request))
    return Envelope(
        status="ok",
        data={
            "message": "Two-factor authentication enabled",
            "user": AccountResponse.from_account(updated),
        },
    )


@router.post("/mfa/email/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable_email(
    body: PasswordConfirmRequest, request: Request, account: Account = Depends(get_user)
):
    runtime = get_runtime()
    updated = runtime.auth.enable_email_mfa(account, body.password, _request_context(request))
    return Envelope(
        status="ok",
        data={
            "message": "Email verification codes enabled",
            "user": AccountResponse.from_account(updated),
        },
    )


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: PasswordConfirmRequest, request: Request, account: Account = Depends(get_user)
):
    runtime = get_runtime()
    updated = runtime.auth.disable_mfa(account, body.password, _request_context(request))
    return Envelope(
        status="ok",
        data={
            "message": "Two-factor authentication disabled",
            "user": AccountResponse.from_account(updated),
        },
    )


@router.post("/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def mfa_backup_codes(
    body: PasswordConfirmRequest, request: Request, account: Account = Depends(get_user)
):
    runtime = get_runtime()
    codes = runtime.auth.regenerate_backup_codes(
        account, body.password, _request_context(request)
    )
    return Envelope(status="ok", data={"backupCodes": codes})


@router.post("/mfa/verify-login", response_model=Envelope, tags=["mfa"])
async def mfa_verify_login(body: MFALoginRequest, request: Request, response: Response):
    """Finish an MFA login with a TOTP code, backup code or emailed code.

    Raises:
        400: invalid code
        401: no pending MFA login for this account
        403: account locked after repeated failures
        429: rate limit exceeded for this account
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:{body.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    outcome = await runtime.auth.verify_mfa_login(
        body.user_id, body.code, _request_context(request)
    )
    if not outcome.ok:
        _raise_for_outcome(outcome, invalid=ValidationError)
    _apply_session_cookie(runtime, response, outcome.token)
    data: Dict[str, Any] = {
        "message": outcome.message,
        "mfaType": outcome.mfa_kind,
        **_session_payload(outcome.account, outcome.token),
    }
    if outcome.remaining_backup_codes is not None:
        data["remainingBackupCodes"] = outcome.remaining_backup_codes
        data["warning"] = outcome.message
    return Envelope(status="ok", data=data)


# administration
@router.get("/admin/audit/logs", response_model=Envelope, tags=["admin"])
async def audit_logs(
    action: Optional[str] = Query(None, max_length=64),
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    status: Optional[str] = Query(None, max_length=16),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    search: Optional[str] = Query(None, max_length=256),
    page: int = Query(1),
    limit: int = Query(20),
    admin: Account = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.audit.query(
        AuditQuery(
            action=action,
            actor_id=user_id,
            outcome=status,
            start=_as_utc(start_date),
            end=_as_utc(end_date),
            search=search,
        ),
        page=page,
        limit=limit,
    )
    return Envelope(
        status="ok",
        data=AuditLogPage(
            count=len(result.items),
            total=result.total,
            total_pages=result.total_pages,
            current_page=result.page,
            limit=result.limit,
            data=[AuditEventResponse.from_event(event) for event in result.items],
        ).model_dump(mode="json", by_alias=True),
    )


@router.get("/admin/audit/stats", response_model=Envelope, tags=["admin"])
async def audit_stats(admin: Account = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.audit.stats())


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def update_account_status(
    body: AccountStatusRequest,
    request: Request,
    user_id: str = Path(..., max_length=64),
    admin: Account = Depends(get_admin_user),
):
    runtime = get_runtime()
    updated = runtime.auth.set_account_status(
        admin, user_id, body.status, _request_context(request)
    )
    return Envelope(status="ok", data=AccountResponse.from_account(updated))
