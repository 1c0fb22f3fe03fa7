"""Structured logging for the service.

Every line carries the request's correlation id when one is bound, and
credential material is scrubbed before rendering. The process starts with
JSON output at INFO; :func:`configure_logging` is called again once
:class:`~storeguard.config.Settings` have been loaded.
"""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

# Never logged, not even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie")
# Logged with most of the value masked
_PERSONAL_KEYS = ("email",)


def get_correlation_id() -> Optional[str]:
    """Return the correlation id bound to the current context, if any."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to the current context, generating one if needed."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def mask_personal(value: str) -> str:
    """Keep enough of an email or identifier to correlate, hide the rest."""
    local, at, domain = value.partition("@")
    if at:
        return f"{local[:2]}***@{domain}"
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _scrub(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, dict):
        return {k: _scrub(str(k), v) for k, v in value.items()}
    if not isinstance(value, str):
        return value
    if any(part in lower_key for part in _SECRET_KEYS):
        return REDACTED
    if any(part in lower_key for part in _PERSONAL_KEYS):
        return mask_personal(value)
    return value


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Scrub secrets and personal values, including inside nested mappings."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _scrub(key, event_dict[key])
    return event_dict


def _processors(json_output: bool, development_mode: bool) -> List[Any]:
    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        redact_sensitive,
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return processors


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog for the process.

    Loggers are not cached on first use, so module-level loggers created before
    settings were loaded pick up the new level and renderer.
    """
    structlog.configure(
        processors=_processors(json_output, development_mode),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structured logger; correlation ids are attached automatically."""
    return structlog.get_logger(name)
