from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("autovault_request_id", default=None)

REDACTION_MARKER = "[REDACTED]"

# Matched as substrings of the normalized key, so "newPassword" and
# "access_token" are covered while "payload" is not.
SENSITIVE_KEYS = frozenset({"password", "token", "secret", "authorization", "cookie"})

# Log-line fields that are masked rather than dropped.
_MASKED_LOG_FIELDS = ("password", "secret", "token", "authorization", "email", "otp")

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting one when absent."""
    request_id = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(request_id)
    return request_id


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = correlation_id_var.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and contact fields, keeping two characters at each end."""
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        if any(field in key.lower() for field in _MASKED_LOG_FIELDS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, pretty: bool = False
) -> None:
    """Install the structlog pipeline for the process.

    JSON lines go to stdout unless ``pretty`` is set or JSON is switched off,
    in which case the coloured console renderer is used instead.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if pretty or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    pretty=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def _is_sensitive_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    normalized = key.lower().replace("-", "_").replace(" ", "_")
    return any(marker in normalized for marker in SENSITIVE_KEYS)


def redact_sensitive(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Return a copy of ``data`` with sensitive values replaced by the marker.

    Recurses through dicts, lists and tuples. Every value stored under a
    sensitive key becomes ``REDACTION_MARKER`` whatever its type, so the
    plaintext never survives serialization. Structures nested deeper than
    ``max_depth`` collapse to a placeholder string.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: REDACTION_MARKER
            if _is_sensitive_key(key)
            else redact_sensitive(value, depth=depth + 1, max_depth=max_depth)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
