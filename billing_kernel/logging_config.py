"""
Structured JSON logging for billing.

Every logger lives under the ``billing_kernel`` namespace, engines and
services included, so one ``configure_logging()`` call covers the whole
system.  Each record renders as one JSON line carrying the message name,
its ``extra`` fields, the ids bound by ``LogContext.bind`` and, for a
``BillingKernelError``, the error's code and structured attributes.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from typing import Any

_LOGGER_PREFIX = "billing_kernel"


class LogContext:
    """Ids of the quote and document being worked on, for every record."""

    _fields: dict[str, ContextVar[str | None]] = {
        "document_id": ContextVar("log_document_id", default=None),
        "entity_id": ContextVar("log_entity_id", default=None),
    }

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {
            name: value
            for name, var in cls._fields.items()
            if (value := var.get()) is not None
        }

    @classmethod
    def clear(cls) -> None:
        for var in cls._fields.values():
            var.set(None)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[None]:
        """Set ids for the block and restore the outer ones on exit.

        None leaves a field as it was.  Unknown names raise KeyError.
        """
        tokens = []
        for name, value in fields.items():
            var = cls._fields[name]
            if value is not None:
                tokens.append((var, var.set(str(value))))
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    # UUID, Decimal, enums
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # e.g. exc_allocated_cents, exc_batch_id
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` under the billing namespace, e.g. "engines.waterfall"."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int = logging.INFO,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the billing namespace.  Later calls are no-ops."""
    global _installed_handler
    if _installed_handler is not None:
        return

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    root.propagate = False

    _installed_handler = handler if handler is not None else logging.StreamHandler(sys.stderr)
    _installed_handler.setFormatter(StructuredFormatter())
    root.addHandler(_installed_handler)


def reset_logging() -> None:
    """Remove the handler ``configure_logging`` attached.  Tests only."""
    global _installed_handler
    root = logging.getLogger(_LOGGER_PREFIX)
    if _installed_handler is not None:
        root.removeHandler(_installed_handler)
        _installed_handler = None
    root.setLevel(logging.WARNING)
