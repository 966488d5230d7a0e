"""Structured JSON logging with request, appointment and reminder context."""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from typing import Any
from uuid import UUID

_request_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
_appointment_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "appointment_id", default=None
)
_reminder_id_ctx_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "reminder_id", default=None
)

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str | None]] = {
    "request_id": _request_id_ctx_var,
    "appointment_id": _appointment_id_ctx_var,
    "reminder_id": _reminder_id_ctx_var,
}

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}

# Provider clients log every request at INFO, which would drown the dispatch logs.
_NOISY_LOGGERS = ("httpx", "httpcore")


class RequestContextFilter(logging.Filter):
    """Copy the bound context variables onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - simple
        for name, var in _CONTEXT_VARS.items():
            if record.__dict__.get(name) is None:
                setattr(record, name, var.get())
        return True


class JSONLogFormatter(logging.Formatter):
    """Serialize log records as JSON with context metadata."""

    def __init__(self) -> None:  # pragma: no cover - trivial
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S%z")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_VARS:
            log_entry[name] = record.__dict__.get(name)

        for key, value in record.__dict__.items():
            if key in log_entry or key.startswith("_") or key in _RECORD_ATTRIBUTES:
                continue
            log_entry[key] = value

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


_configured = False


def configure_logging(level: int | str | None = None) -> None:
    """Install the JSON handler on the root logger once per process."""

    global _configured
    if _configured:
        return

    if level is None:
        from followup.core.config import settings

        level = settings.log_level.upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers = []
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "celery"):
        logger = logging.getLogger(logger_name)
        logger.handlers = []
        logger.propagate = True
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    _configured = True


def _as_str(value: UUID | str | None) -> str | None:
    return None if value is None else str(value)


def set_appointment_context(appointment_id: UUID | str | None) -> None:
    """Bind the appointment being worked on; clears any reminder binding."""

    _appointment_id_ctx_var.set(_as_str(appointment_id))
    _reminder_id_ctx_var.set(None)


def set_reminder_context(reminder_id: UUID | str | None, appointment_id: UUID | str | None) -> None:
    _appointment_id_ctx_var.set(_as_str(appointment_id))
    _reminder_id_ctx_var.set(_as_str(reminder_id))


def current_context() -> dict[str, str | None]:
    """Return the identifiers bound to the running request or task."""

    return {name: var.get() for name, var in _CONTEXT_VARS.items()}


__all__ = [
    "configure_logging",
    "current_context",
    "set_appointment_context",
    "set_reminder_context",
    "_request_id_ctx_var",
    "_appointment_id_ctx_var",
    "_reminder_id_ctx_var",
]
