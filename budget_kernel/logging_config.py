"""
Structured JSON logging for the budget kernel.

Every record under the ``budget_kernel`` logger is written as one JSON
object.  Service entry points bind the budget they work on with
``LogContext.for_budget`` (or ``LogContext.bind`` for an actor or an
approval request), so records emitted further down, including transaction
and id-allocation logs, carry ``project_id``, ``group_id`` and
``budget_id`` without those ids being passed around.

Record shape::

    {"ts": ..., "level": "INFO", "logger": "budget_kernel.services.batch",
     "event": "batch_edit_applied", "project_id": ..., "budget_id": ...,
     "titles_created": 2, ...}
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

__all__ = [
    "CONTEXT_FIELDS",
    "EVENT_FIELD",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

LOGGER_ROOT = "budget_kernel"

# Extra key naming the event; ``observability`` sets it on every record.
EVENT_FIELD = "event"

CONTEXT_FIELDS = ("actor_id", "project_id", "group_id", "budget_id", "request_id")

_context: ContextVar[Mapping[str, str] | None] = ContextVar("budget_log_context", default=None)


class _BudgetLike(Protocol):
    project_id: str
    group_id: str
    budget_id: str


class LogContext:
    """Ids bound to the current thread or task and stamped on every record."""

    @staticmethod
    def current() -> dict[str, str]:
        return dict(_context.get() or {})

    @staticmethod
    @contextmanager
    def bind(**fields: str | None) -> Iterator[dict[str, str]]:
        """Add ``fields`` for the duration of the block; None values are ignored."""
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
        merged = {**LogContext.current(), **{k: v for k, v in fields.items() if v is not None}}
        token = _context.set(merged)
        try:
            yield dict(merged)
        finally:
            _context.reset(token)

    @staticmethod
    def for_budget(budget: _BudgetLike, **fields: str | None):
        """Bind the project, group and budget of ``budget`` plus any ``fields``."""
        return LogContext.bind(
            project_id=budget.project_id,
            group_id=budget.group_id,
            budget_id=budget.budget_id,
            **fields,
        )

    @staticmethod
    def clear() -> None:
        _context.set(None)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: header, bound context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            EVENT_FIELD: getattr(record, EVENT_FIELD, None) or record.getMessage(),
        }
        payload.update(LogContext.current())
        payload.update(
            (key, value) for key, value in vars(record).items() if key not in _RESERVED
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_jsonable)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
            "exc_code": getattr(exc, "code", None),
        }
        # BudgetKernelError subclasses expose their details as public attributes.
        for name, value in vars(exc).items():
            if not name.startswith("_") and name != "args":
                fields[f"exc_{name}"] = value
        return fields


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``budget_kernel`` namespace."""
    return logging.getLogger(f"{LOGGER_ROOT}.{name}")


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> logging.Handler:
    """
    Attach one JSON handler to the ``budget_kernel`` logger.

    Idempotent: once a structured handler is installed, later calls leave
    the handler and the level alone and return the installed handler.
    """
    root = logging.getLogger(LOGGER_ROOT)
    for existing in root.handlers:
        if isinstance(existing.formatter, StructuredFormatter):
            return existing

    root.setLevel(level)
    root.propagate = False
    installed = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    installed.setFormatter(StructuredFormatter())
    root.addHandler(installed)
    return installed


def reset_logging() -> None:
    """Remove the structured handler and restore defaults.  Tests only."""
    root = logging.getLogger(LOGGER_ROOT)
    for existing in list(root.handlers):
        if isinstance(existing.formatter, StructuredFormatter):
            root.removeHandler(existing)
    root.setLevel(logging.WARNING)
    root.propagate = True
