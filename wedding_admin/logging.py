from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Iterable, MutableMapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("wedding_admin_request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    """Return the request id bound to the running task, if any."""
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting one when absent.

    Inbound ids longer than 128 characters are replaced so a client cannot
    stuff arbitrary payloads into every log line.
    """
    if not correlation_id or len(correlation_id) > 128:
        correlation_id = uuid.uuid4().hex
    _request_id.set(correlation_id)
    return correlation_id


def _inject_request_id(_logger: Any, _name: str, event: MutableMapping[str, Any]):
    request_id = _request_id.get()
    if request_id is not None:
        event.setdefault("correlation_id", request_id)
    return event


# Values under these keys are never written verbatim
_SECRET_FIELDS = ("password", "secret", "token", "cookie", "api_key", "authorization")
_PARTIAL_FIELDS = ("session_id", "sid")


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _scrub(_logger: Any, _name: str, event: MutableMapping[str, Any]):
    for field, value in list(event.items()):
        if not isinstance(value, str) or field == "event":
            continue
        lowered = field.lower()
        if any(marker in lowered for marker in _SECRET_FIELDS):
            event[field] = "[redacted]"
        elif "email" in lowered:
            event[field] = _mask_email(value)
        elif lowered in _PARTIAL_FIELDS and len(value) > 8:
            # A short prefix is enough to line up entries from one session
            event[field] = value[:8] + "..."
    return event


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """(Re)configure structlog; unset arguments come from LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    numeric_level = logging.getLevelName(level)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _inject_request_id,
        _scrub,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output and not dev_mode:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=dev_mode))

    structlog.configure(
        processors=chain,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def _compile(patterns: Iterable[str]):
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Client-facing messages lose anything matching these
_LEAKY = _compile(
    (
        r"\b(?:redis|rediss|postgres(?:ql)?|https?)://\S+",
        r"(?:password|passwd|secret|token|api[_-]?key|credential|cookie)\s*[:=]\s*\S+",
        r"(?:/(?:home|root|var|etc|usr|opt|tmp|srv|app)/)\S*",
        r"\b[a-z]:\\\S+",
        r"traceback \(most recent call last\).*",
        r"connection\b.*\b(?:refused|reset|timed out|timeout|failed)",
    )
)

_MAX_CLIENT_MESSAGE = 500


def sanitize_error_message(error: Any, *, replacement: str = "[redacted]") -> str:
    """Make an exception message safe to return in an error envelope."""
    if not isinstance(error, str) or not error.strip():
        return "An error occurred"

    cleaned = error
    for pattern in _LEAKY:
        cleaned = pattern.sub(replacement, cleaned)
    if len(cleaned) > _MAX_CLIENT_MESSAGE:
        cleaned = cleaned[: _MAX_CLIENT_MESSAGE - 3] + "..."
    return cleaned


__all__ = [
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "sanitize_error_message",
    "set_correlation_id",
]
