"""Structured logging for the reporting core.

Every record is emitted under the ``mizan`` logger namespace. The JSON
formatter merges the request correlation id and any ``extra`` fields into a
single line; fields that look like money or credentials are redacted before
they reach the handler.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterator

LOGGER_PREFIX = "mizan"
REDACTED = "[REDACTED]"

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "api_key",
    "amount",
    "balance",
    "opening_balance",
    "fx_rate",
    "rate",
    "delta",
)

_correlation_id: ContextVar[str | None] = ContextVar("mizan_correlation_id", default=None)

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """Bind a correlation id for the duration of a request."""
    value = correlation_id or uuid.uuid4().hex
    token = _correlation_id.set(value)
    try:
        yield value
    finally:
        _correlation_id.reset(token)


def is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(sensitive in lowered for sensitive in SENSITIVE_KEYS)


def redact(fields: dict[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in fields.items():
        if is_sensitive(key):
            cleaned[key] = REDACTED
        elif isinstance(value, dict):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    return repr(value)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _STDLIB_KEYS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            payload["correlation_id"] = correlation_id
        for key, value in redact(_extra_fields(record)).items():
            payload.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


class TextFormatter(logging.Formatter):
    """Single readable line for local development."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"[{record.levelname}] {record.name} | {record.getMessage()}"
        correlation_id = get_correlation_id()
        if correlation_id:
            line += f" | cid:{correlation_id[:8]}"
        fields = redact(_extra_fields(record))
        if fields:
            line += " | " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``mizan`` namespace."""
    if name == LOGGER_PREFIX or name.startswith(f"{LOGGER_PREFIX}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: str | int = "INFO",
    fmt: str = "json",
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a single handler to the ``mizan`` logger (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler or logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(TextFormatter() if fmt == "text" else StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Drop handlers so tests can reconfigure."""
    global _configured
    with _lock:
        _configured = False
    root_logger = logging.getLogger(LOGGER_PREFIX)
    root_logger.handlers.clear()
    root_logger.setLevel(logging.WARNING)
    root_logger.propagate = True
