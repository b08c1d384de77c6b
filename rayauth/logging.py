"""structlog setup: request ids on every event and scrubbing of credentials.

``LOG_LEVEL`` picks the threshold and ``LOG_FORMAT`` picks ``json`` (default)
or ``console`` rendering.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from contextvars import ContextVar
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, FilteringBoundLogger

request_id_var: ContextVar[Optional[str]] = ContextVar("rayauth_request_id", default=None)

# Substrings of field names whose values never reach the log
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "hash")
# Fields kept recognisable but masked
_CONTACT_FIELDS = frozenset({"email", "ip", "ip_address", "contact"})


def current_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Adopt the caller's ``X-Request-ID`` or mint one; returns the id in force."""
    rid = request_id or secrets.token_hex(16)
    request_id_var.set(rid)
    return rid


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _stamp_request_id(_logger: Any, _method: str, event: EventDict) -> EventDict:
    rid = request_id_var.get()
    if rid:
        event["request_id"] = rid
    return event


def _scrub_fields(_logger: Any, _method: str, event: EventDict) -> EventDict:
    for field, value in list(event.items()):
        if not isinstance(value, str):
            continue
        name = field.lower()
        if name.endswith("_id"):
            continue
        if any(marker in name for marker in _SECRET_MARKERS):
            event[field] = "[redacted]"
        elif name in _CONTACT_FIELDS or "email" in name:
            event[field] = _mask(value)
    return event


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if fmt == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _stamp_request_id,
            _scrub_fields,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "json").lower())


def get_logger(name: str) -> FilteringBoundLogger:
    return structlog.get_logger(name)


# DSNs, SQL fragments, server paths and key=value secrets
_LEAKY_TEXT = re.compile(
    r"(?i)(postgres(?:ql)?|redis)://\S+"
    r"|\b(select|insert|update|delete)\b.{0,60}"
    r"|/(?:home|var|etc|usr|opt|tmp|srv)/\S+"
    r"|(password|secret|token)\s*[:=]\s*\S+"
)


def scrub_error_text(text: str) -> str:
    """Blank out connection strings, SQL and secrets in an exception message."""
    if not text:
        return "unknown error"
    cleaned = _LEAKY_TEXT.sub("[redacted]", text)
    return cleaned if len(cleaned) <= 500 else cleaned[:497] + "..."
