from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from autovault.storage.models import ACCOUNT_STATUSES, Account, AuditEvent

# Bounds for free-form strings arriving in request bodies
MAX_IDENTITY_LENGTH = 254
MAX_PASSWORD_LENGTH = 128
MAX_CODE_LENGTH = 32
MAX_TOKEN_LENGTH = 512


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi-override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: str) -> str:
    """Usernames: 3-32 characters of letters, digits, dot, underscore or hyphen."""
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 32:
        raise ValueError("username must be at most 32 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, dots, underscores and hyphens"
        )
    return value


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_Request):
    username: str
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_Request):
    identity: str = Field(
        ...,
        min_length=1,
        max_length=MAX_IDENTITY_LENGTH,
        validation_alias=AliasChoices("identity", "email", "username"),
    )
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("identity")
    @classmethod
    def _normalize_identity(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class MFALoginRequest(_Request):
    user_id: str = Field(..., alias="userId", max_length=64)
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)


class MFACodeRequest(_Request):
    code: str = Field(..., min_length=1, max_length=MAX_CODE_LENGTH)


class PasswordConfirmRequest(_Request):
    password: str = Field(default="", max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeRequest(_Request):
    current_password: str = Field(..., alias="currentPassword", max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH)


class EmailRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRequest(_Request):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ResetPasswordRequest(_Request):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    new_password: str = Field(..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH)


class AccountStatusRequest(_Request):
    status: str

    @field_validator("status")
    @classmethod
    def _validate_status(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ACCOUNT_STATUSES:
            raise ValueError(
                "status must be one of: " + ", ".join(sorted(ACCOUNT_STATUSES))
            )
        return value


class AccountResponse(BaseModel):
    id: str
    username: str
    email: str
    role: str
    status: str
    email_verified: bool
    mfa_enabled: bool
    mfa_method: str
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(**account.public_view())


class AuditEventResponse(BaseModel):
    id: str
    action: str
    status: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            action=event.action,
            status=event.outcome,
            user_id=event.actor_id,
            username=event.actor_name,
            details=event.detail,
            ip=event.ip,
            user_agent=event.user_agent,
            method=event.method,
            endpoint=event.endpoint,
            created_at=event.created_at,
        )


class AuditLogPage(BaseModel):
    """One page of audit events, serialized with camelCase paging keys."""

    model_config = ConfigDict(populate_by_name=True)

    count: int
    total: int
    total_pages: int = Field(..., serialization_alias="totalPages")
    current_page: int = Field(..., serialization_alias="currentPage")
    limit: int
    data: List[AuditEventResponse]
