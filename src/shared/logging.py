"""
Structured logging (structlog on top of stdlib logging).

- console renderer locally, JSON (python-json-logger for stdlib records) elsewhere
- request fields (request_id, subject_id, tenant_id, role, path, method) are
  bound per request in contextvars and merged into every event
- credentials never reach the output: bearer tokens, DSN passwords and, in
  prod-like environments, e-mail addresses are masked
- security events (token rejections, capability denials, policy violations)
  go to a dedicated "security" logger so they can be routed separately
"""

from __future__ import annotations

import datetime
import logging
import logging.config
import re
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from src.shared.config import Settings, get_settings

REQUEST_FIELDS = ("request_id", "subject_id", "tenant_id", "role", "path", "method")


# ---------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------


class RedactionProcessor:
    """Masks credentials in event values, recursively."""

    P_BEARER = re.compile(r"(?i)\b(bearer\s+)[A-Za-z0-9\-_=]+\.[A-Za-z0-9\-_=]+\.?[A-Za-z0-9\-_.+/=]*")
    P_DSN_PASSWORD = re.compile(r"(\w+(?:\+\w+)?://[^:/@\s]+:)[^@\s]+@")
    P_EMAIL = re.compile(r"\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")

    def __init__(self, *, mask_emails: bool) -> None:
        self.mask_emails = mask_emails

    def __call__(self, logger, method_name, event_dict):
        return {k: self._redact(v) for k, v in event_dict.items()}

    def _redact(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._redact(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._redact(v) for v in value]
        if isinstance(value, str):
            value = self.P_BEARER.sub(r"\1<redacted>", value)
            value = self.P_DSN_PASSWORD.sub(r"\1***@", value)
            if self.mask_emails:
                value = self.P_EMAIL.sub(lambda m: f"***@{m.group(2)}", value)
        return value


def add_request_context(logger, method_name, event_dict):
    ctx = structlog.contextvars.get_contextvars()
    for key in REQUEST_FIELDS:
        if key in ctx and key not in event_dict:
            event_dict[key] = ctx[key]
    return event_dict


def add_timestamp(logger, method_name, event_dict):
    event_dict["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds")
    return event_dict


# ---------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------


def bind_request_context(
    *,
    request_id: Optional[str] = None,
    path: Optional[str] = None,
    method: Optional[str] = None,
    subject_id: Optional[int] = None,
    tenant_id: Optional[int] = None,
    role: Optional[str] = None,
    extras: Optional[Dict[str, Any]] = None,
) -> None:
    """Bind request fields for every log line emitted while the request runs; None values are skipped."""
    fields = dict(
        request_id=request_id,
        path=path,
        method=method,
        subject_id=subject_id,
        tenant_id=tenant_id,
        role=role,
    )
    payload = {k: v for k, v in fields.items() if v is not None}
    if extras:
        payload.update(extras)
    if payload:
        structlog.contextvars.bind_contextvars(**payload)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


# ---------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------


def _stdlib_config(settings: Settings, json_output: bool) -> Dict[str, Any]:
    quiet = "WARNING" if (settings.is_prod or settings.is_staging) else "INFO"
    handler = {"level": None, "handlers": ["console"], "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": jsonlogger.JsonFormatter,
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            },
            "console": {
                "format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if json_output else "console",
                "stream": sys.stdout,
            },
        },
        "root": {"level": settings.log_level.upper(), "handlers": ["console"]},
        "loggers": {
            "uvicorn.error": {**handler, "level": "INFO"},
            "uvicorn.access": {**handler, "level": "WARNING"},
            # Engine INFO echoes every statement, including set_config values
            "sqlalchemy.engine": {**handler, "level": "WARNING"},
            "sqlalchemy.pool": {**handler, "level": quiet},
            "asyncpg": {**handler, "level": "WARNING"},
            "httpx": {**handler, "level": "WARNING"},
        },
    }


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure stdlib logging and structlog. Safe to call more than once."""
    settings = settings or get_settings()
    json_output = not (settings.is_local or settings.is_dev)
    logging.config.dictConfig(_stdlib_config(settings, json_output))

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        add_request_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        RedactionProcessor(mask_emails=settings.is_prod or settings.is_staging),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()


# ---------------------------------------------------------------------
# Security events
# ---------------------------------------------------------------------

security_logger = structlog.get_logger("security")


def log_security_event(
    event_type: str,
    *,
    reason: Optional[str] = None,
    subject_id: Optional[int] = None,
    tenant_id: Optional[int] = None,
    level: int = logging.WARNING,
    **fields: Any,
) -> None:
    """
    One line per rejected or suspicious access.

    event_type: token_rejected | capability_denied | socket_rejected | policy_violation
    Request fields bound in contextvars are merged in automatically.
    """
    # None would shadow the values bound for the request
    explicit = {k: v for k, v in dict(subject_id=subject_id, tenant_id=tenant_id).items() if v is not None}
    security_logger.log(level, "security_event", event_type=event_type, reason=reason, **explicit, **fields)
