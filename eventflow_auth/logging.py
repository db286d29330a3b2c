"""structlog setup for the auth service.

Configured once on import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Every entry carries the request's correlation id when one
is bound, and credential material never reaches the log sink.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys are dropped entirely
_SECRET_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "refresh_token",
        "access_token",
        "authorization",
        "jwt_secret",
        "replaced_by",
    }
)
# Identifiers that are useful for correlation but only in shortened form
_PARTIAL_KEYS = frozenset({"jti", "token"})
_REDACTED = "[redacted]"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the inbound correlation id, minting one when the caller sent none."""
    cid = (correlation_id or "").strip() or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Strip passwords and bearer material; shorten token ids; mask emails."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SECRET_KEYS or "secret" in lower_key:
            event_dict[key] = _REDACTED
        elif lower_key in _PARTIAL_KEYS and isinstance(value, str):
            event_dict[key] = f"{value[:6]}..." if len(value) > 6 else _REDACTED
        elif lower_key == "email" and isinstance(value, str):
            event_dict[key] = _mask_email(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    renderer: Any
    if dev_mode or not json_output:
        renderer = structlog.dev.ConsoleRenderer(colors=dev_mode)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            _redact_credentials,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
