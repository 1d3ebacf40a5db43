from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from autovault.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth and account-security service."""

    environment: str = env_field("development", "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/autovault", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/autovault", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory fallbacks, resettable runtime).",
    )
    cors_allow_origins: str = env_field(
        "http://localhost:5173",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed to call the API with credentials",
    )

    # Sessions
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("autovault", "JWT_ISSUER")
    jwt_audience: str = env_field("autovault-web", "JWT_AUDIENCE")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    session_cookie_name: str = env_field("token", "SESSION_COOKIE_NAME")
    session_cookie_samesite: str = env_field(
        "lax",
        "SESSION_COOKIE_SAMESITE",
        description="SameSite attribute used both when setting and clearing the session cookie",
    )

    # MFA
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP seeds and backup codes at rest",
    )
    mfa_issuer: str = env_field("AutoVault", "MFA_ISSUER")
    email_otp_ttl_minutes: int = env_field(10, "EMAIL_OTP_TTL_MINUTES")
    mfa_pending_minutes: int = env_field(10, "MFA_PENDING_MINUTES")

    # Lockout and abuse ladders
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD")
    lockout_minutes: int = env_field(60, "LOCKOUT_MINUTES")
    mfa_lockout_threshold: int = env_field(5, "MFA_LOCKOUT_THRESHOLD")
    mfa_lockout_minutes: int = env_field(30, "MFA_LOCKOUT_MINUTES")
    abuse_user_limit: int = env_field(3, "ABUSE_USER_LIMIT")
    abuse_guest_limit: int = env_field(5, "ABUSE_GUEST_LIMIT")
    abuse_block_minutes: int = env_field(20, "ABUSE_BLOCK_MINUTES")
    abuse_window_minutes: int = env_field(
        60,
        "ABUSE_WINDOW_MINUTES",
        description="Violation counters decay after this many minutes without a new hit",
    )

    # Audit and maintenance
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS")
    maintenance_interval_minutes: int = env_field(60, "MAINTENANCE_INTERVAL_MINUTES")

    # Rate limits (requests per minute per identity)
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AutoVault", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, then ``.env``."""
        dotenv = dotenv_values(".env")
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
            key = extra.get("env") or name.upper()
            raw = os.environ.get(key, dotenv.get(key))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator("session_cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("session_cookie_samesite must be lax, strict or none")
        return normalized

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        root = Path(os.getenv("SHARED_FS_ROOT", "/srv/autovault"))
        return _load_or_create_secret(root / JWT_SECRET_FILENAME)


JWT_SECRET_FILENAME = ".jwt_secret"
_MIN_PERSISTED_SECRET_LENGTH = 32


def _read_persisted_secret(path: Path) -> str | None:
    if path.is_symlink() or not path.is_file():
        return None
    try:
        stored = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_read_failed", error=str(exc), path=str(path))
        return None
    return stored if len(stored) >= _MIN_PERSISTED_SECRET_LENGTH else None


def _load_or_create_secret(path: Path) -> str:
    """Return the signing secret stored at ``path``, creating it on first use.

    Instances sharing ``SHARED_FS_ROOT`` therefore agree on one secret and
    sessions survive restarts. The file is written to a temporary name and
    renamed into place with owner-only permissions.
    """
    directory = path.parent
    try:
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(directory))

    existing = _read_persisted_secret(path)
    if existing:
        return existing

    secret = secrets.token_urlsafe(64)
    staged: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", dir=directory, prefix=f"{JWT_SECRET_FILENAME}.", delete=False
        ) as handle:
            staged = Path(handle.name)
            os.fchmod(handle.fileno(), 0o600)
            handle.write(secret)
        os.replace(staged, path)
    except OSError as exc:
        if staged is not None:
            staged.unlink(missing_ok=True)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(path))
        raise RuntimeError(
            f"cannot store a generated JWT secret under {directory}; "
            "set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    return secret


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
