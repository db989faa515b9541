from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "curasense-auth"

# Set by the HTTP middleware for the lifetime of one request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Log fields whose names contain one of these fragments are masked
_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "authorization", "email", "phone", "cookie")
# Fields that match a fragment but never hold a raw credential or address
_NEVER_MASKED = frozenset({"token_type", "email_hash", "email_configured"})

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the inbound request id, minting a UUID4 when the client sent none."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _stamp_request(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    event.setdefault("service", SERVICE_NAME)
    request_id = correlation_id_var.get()
    if request_id:
        event["correlation_id"] = request_id
    return event


def _scrub_credentials(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Mask passwords, tokens and patient contact details before rendering.

    Only string values are touched; ids and counters pass through untouched so
    an audit trail can still be followed.
    """
    for field, value in event.items():
        if not isinstance(value, str):
            continue
        name = field.lower()
        if name in _NEVER_MASKED:
            continue
        if any(fragment in name for fragment in _SENSITIVE_FRAGMENTS):
            event[field] = _mask(value)
    return event


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline.

    Production renders one JSON object per line on stdout; ``console=True``
    switches to the coloured dev renderer.
    """
    pipeline = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if console:
        pipeline.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        pipeline += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO
    structlog.configure(
        processors=pipeline,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY
    or os.getenv("LOG_JSON", "true").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
