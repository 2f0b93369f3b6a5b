"""
Observability hooks for budget services.

Every service receives an ``Observability`` at construction instead of
writing to a logger or console directly.  The production implementation
emits structured log events through ``budget_kernel.logging_config``; tests
can inject ``RecordingObservability`` to assert on emitted events without
parsing log output.

All events carry an ``event`` field with the event name so
log aggregators can build metrics on clone skips, recompute failures and
fallback activations.

Usage:
    from budget_kernel.observability import LoggingObservability

    obs = LoggingObservability("services.cloning")
    obs.warning("analysis_duplicate_skipped", line_item_id=..., analysis_id=...)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from budget_kernel.logging_config import EVENT_FIELD, get_logger


class Observability(ABC):
    """Structured event sink used by the services layer."""

    @abstractmethod
    def event(self, name: str, **fields: Any) -> None:
        """Record a normal operational event."""

    @abstractmethod
    def warning(self, name: str, **fields: Any) -> None:
        """Record an anomaly that did not stop the operation."""

    @abstractmethod
    def failure(self, name: str, exc: BaseException | None = None, **fields: Any) -> None:
        """Record a failure, optionally with the exception that caused it."""

    def child(self, name: str) -> "Observability":
        """Return a sink for a nested component.  Defaults to ``self``."""
        return self


class LoggingObservability(Observability):
    """Observability backed by the budget_kernel JSON logger hierarchy."""

    def __init__(self, name: str = "services"):
        self._name = name
        self._logger = get_logger(name)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def event(self, name: str, **fields: Any) -> None:
        self._logger.info(name, extra={EVENT_FIELD: name, **fields})

    def warning(self, name: str, **fields: Any) -> None:
        self._logger.warning(name, extra={EVENT_FIELD: name, **fields})

    def failure(self, name: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._logger.error(
            name,
            exc_info=(type(exc), exc, exc.__traceback__) if exc is not None else None,
            extra={EVENT_FIELD: name, **fields},
        )

    def child(self, name: str) -> "LoggingObservability":
        return LoggingObservability(f"{self._name}.{name}")


@dataclass
class RecordedEvent:
    """One event captured by RecordingObservability."""

    level: str
    name: str
    fields: dict[str, Any] = field(default_factory=dict)
    exc: BaseException | None = None


class RecordingObservability(Observability):
    """
    In-memory sink that keeps every event.

    Also forwards to a ``LoggingObservability`` so recorded runs still show
    up in the JSON log stream.
    """

    def __init__(self, forward_to: Observability | None = None):
        self.events: list[RecordedEvent] = []
        self._forward = forward_to

    def event(self, name: str, **fields: Any) -> None:
        self.events.append(RecordedEvent("info", name, fields))
        if self._forward is not None:
            self._forward.event(name, **fields)

    def warning(self, name: str, **fields: Any) -> None:
        self.events.append(RecordedEvent("warning", name, fields))
        if self._forward is not None:
            self._forward.warning(name, **fields)

    def failure(self, name: str, exc: BaseException | None = None, **fields: Any) -> None:
        self.events.append(RecordedEvent("error", name, fields, exc))
        if self._forward is not None:
            self._forward.failure(name, exc, **fields)

    def named(self, name: str) -> list[RecordedEvent]:
        """All recorded events with the given name, in emission order."""
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()
