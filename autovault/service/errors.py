from __future__ import annotations

from typing import Optional

SECURITY_WARNING = "WARNING"
SECURITY_BLOCKED = "BLOCKED"


class ServiceError(Exception):
    """An expected failure of an account operation.

    Subclasses pin the HTTP status and the machine-readable ``error_code``
    that the API envelope reports; ``detail`` travels to the client as
    ``error.details``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    security_status: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input was rejected before any state changed."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials were missing or did not verify."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """Authenticated but not allowed, such as a non-admin on admin routes."""
    status_code = 403
    error_code = "forbidden"


class LockedError(AuthorizationError):
    """Account or actor is blocked (403 for BLOCKED, 400 for WARNING).

    Callers branch on ``security_status`` rather than the HTTP status.
    """

    def __init__(
        self,
        message: str,
        *,
        security_status: str = SECURITY_BLOCKED,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        if status_code is None:
            status_code = 400 if security_status == SECURITY_WARNING else 403
        error_code = "validation_error" if status_code == 400 else "forbidden"
        super().__init__(
            message, status_code=status_code, detail=detail, error_code=error_code
        )
        self.security_status = security_status


class NotFoundError(ServiceError):
    """Unknown account or token."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Username or email already registered."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts; ``detail["retry_after"]`` holds the wait in seconds."""
    status_code = 429
    error_code = "rate_limited"


class InternalError(ServiceError):
    """A dependency such as the mail relay failed while serving the request."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "SECURITY_BLOCKED",
    "SECURITY_WARNING",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "LockedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InternalError",
]
