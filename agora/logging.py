"""structlog setup shared by every module.

Every event carries the request correlation id when one is bound, and values
under credential- or address-like keys are masked before rendering. Callers
that need to log an address or a token use ``hash_email`` / ``token_prefix``
and a key ending in ``_hash`` / ``_prefix``, which the masker leaves alone.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

EventDict = Dict[str, Any]

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_MASKED_KEY_PARTS = ("password", "secret", "token", "state", "authorization", "email", "cookie")
_REDUCED_KEY_SUFFIXES = ("_hash", "_prefix")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if lowered.endswith(_REDUCED_KEY_SUFFIXES):
            continue
        if any(part in lowered for part in _MASKED_KEY_PARTS):
            event_dict[key] = _mask(value)
    return event_dict


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
    """(Re)configure structlog. Unset arguments fall back to LOG_LEVEL, LOG_JSON, LOG_DEV_MODE."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_email(email: str) -> str:
    """Stable, non-reversible handle for an address in log lines."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def token_prefix(token: Optional[str]) -> str:
    """First characters of an opaque token, enough to correlate log lines."""
    if not token:
        return ""
    return token[:8]


def token_hash(token: Optional[str]) -> str:
    """Short digest of a structured token (JWTs share their first characters)."""
    if not token:
        return ""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


__all__ = [
    "configure_logging",
    "correlation_id_var",
    "get_correlation_id",
    "get_logger",
    "hash_email",
    "set_correlation_id",
    "token_hash",
    "token_prefix",
]
