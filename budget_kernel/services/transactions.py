"""
Module: budget_kernel.services.transactions
Responsibility: One transaction utility for every multi-step mutation --
    totals propagation, bulk price recomputes, batch edits and version
    cloning.  Mutations go through a ``UnitOfChange`` which applies them and
    records an undo action for each.  On failure the unit is rolled back with
    a native SAVEPOINT when the store has one, otherwise by replaying the undo
    actions in reverse order.
Architecture position: Kernel > Services.  Injected into every domain
    service as an always-present capability; the mode is chosen once at
    construction.

Invariants enforced:
    - The undo log is recorded in both modes, so a compensating parent unit
      can undo work of a nested unit that used a savepoint, and vice versa.
    - A nested unit that succeeds hands its undo log to the enclosing unit.
      A nested unit that fails has already been undone and hands nothing.
    - The original exception is always re-raised after rollback.
    - TransactionUnsupportedError from the store never escapes: the unit
      silently runs in compensating mode instead.

Failure modes:
    - An undo action that itself fails is logged (``compensation_step_failed``)
      and the remaining actions still run; the original exception is raised.
    - Compensation cannot repair a session whose transaction was invalidated
      by a database error; in that case the caller's session_scope() rollback
      is what restores state.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import NotSupportedError, OperationalError
from sqlalchemy.orm import Session, SessionTransaction

from budget_kernel.exceptions import TransactionUnsupportedError
from budget_kernel.logging_config import get_logger
from budget_kernel.observability import LoggingObservability, Observability

logger = get_logger("services.transactions")


class TransactionMode(str, Enum):
    """How a unit of change is rolled back."""

    NATIVE = "native"
    COMPENSATING = "compensating"


@dataclass
class UndoAction:
    description: str
    undo: Callable[[], None]


def _primary_key(entity: Any) -> tuple:
    return tuple(inspect(type(entity)).primary_key_from_instance(entity))


def snapshot_entity(entity: Any) -> dict[str, Any]:
    """
    Capture column values of ``entity`` and of children it owns.

    Children owned through a delete-orphan relationship (analysis resources)
    are captured recursively under the relationship key.
    """
    mapper = inspect(type(entity))
    data: dict[str, Any] = {
        attr.key: getattr(entity, attr.key) for attr in mapper.column_attrs
    }
    for rel in mapper.relationships:
        if rel.cascade.delete_orphan:
            children = getattr(entity, rel.key) or []
            data[rel.key] = [(type(c), snapshot_entity(c)) for c in children]
    return data


def rebuild_entity(cls: type, data: dict[str, Any]) -> Any:
    """Create a new transient instance from ``snapshot_entity`` output."""
    mapper = inspect(cls)
    owned = {rel.key for rel in mapper.relationships if rel.cascade.delete_orphan}
    entity = cls()
    for key, value in data.items():
        if key in owned:
            setattr(entity, key, [rebuild_entity(c_cls, c_data) for c_cls, c_data in value])
        else:
            setattr(entity, key, value)
    return entity


class UnitOfChange:
    """
    Mutation recorder for one ``TransactionRunner.begin()`` block.

    Services apply every write through ``add``, ``update`` and ``delete`` so
    the undo log stays complete.  ``record`` covers anything else.
    """

    def __init__(self, session: Session, name: str, native: bool):
        self._session = session
        self.name = name
        self.native = native
        self._actions: list[UndoAction] = []

    @property
    def session(self) -> Session:
        return self._session

    @property
    def action_count(self) -> int:
        return len(self._actions)

    def record(self, description: str, undo: Callable[[], None]) -> None:
        self._actions.append(UndoAction(description, undo))

    def adopt(self, child: UnitOfChange) -> None:
        self._actions.extend(child._actions)
        child._actions = []

    # -- tracked mutations ---------------------------------------------------

    def add(self, entity: Any) -> Any:
        """Insert ``entity`` and record its deletion as the undo."""
        self._session.add(entity)
        self._session.flush()
        self.track_created(entity)
        return entity

    def update(self, entity: Any, **fields: Any) -> Any:
        """Set ``fields`` on ``entity`` after snapshotting their old values."""
        changed = {k: v for k, v in fields.items() if getattr(entity, k) != v}
        if not changed:
            return entity
        self.track_updated(entity, *changed)
        for key, value in changed.items():
            setattr(entity, key, value)
        self._session.flush()
        return entity

    def delete(self, entity: Any) -> None:
        """Delete ``entity`` after snapshotting it for re-insertion."""
        self.track_deleted(entity)
        self._session.delete(entity)
        self._session.flush()

    def track_created(self, entity: Any) -> None:
        cls = type(entity)
        pk = _primary_key(entity)

        def undo() -> None:
            current = self._session.get(cls, pk)
            if current is not None:
                self._session.delete(current)
                self._session.flush()

        self.record(f"delete created {cls.__name__} {pk}", undo)

    def track_updated(self, entity: Any, *fields: str) -> None:
        cls = type(entity)
        pk = _primary_key(entity)
        before = {f: getattr(entity, f) for f in fields}

        def undo() -> None:
            current = self._session.get(cls, pk)
            if current is not None:
                for key, value in before.items():
                    setattr(current, key, value)
                self._session.flush()

        self.record(f"restore {cls.__name__} {pk} {sorted(before)}", undo)

    def track_deleted(self, entity: Any) -> None:
        cls = type(entity)
        pk = _primary_key(entity)
        data = snapshot_entity(entity)

        def undo() -> None:
            if self._session.get(cls, pk) is None:
                self._session.add(rebuild_entity(cls, data))
                self._session.flush()

        self.record(f"re-create deleted {cls.__name__} {pk}", undo)

    # -- rollback --------------------------------------------------------------

    def compensate(self, observability: Observability) -> int:
        """Replay undo actions newest-first.  Returns the number that failed."""
        failures = 0
        while self._actions:
            action = self._actions.pop()
            try:
                action.undo()
            except Exception as exc:
                failures += 1
                observability.failure(
                    "compensation_step_failed",
                    exc,
                    unit=self.name,
                    action=action.description,
                )
        return failures


class TransactionRunner:
    """
    Opens units of change over one session.

    Contract:
        ``with runner.begin("batch_edit") as unit: ...`` either keeps every
        mutation made through ``unit`` (and nested units) or none of them.

    Guarantees:
        - NATIVE mode opens ``Session.begin_nested()`` per unit.  If the
          store rejects savepoints the unit degrades to COMPENSATING and a
          ``transaction_fallback_compensating`` event is emitted.
        - COMPENSATING mode never opens savepoints.

    Non-goals:
        - Does NOT commit.  The caller's session_scope() owns the outer
          transaction.
    """

    def __init__(
        self,
        session: Session,
        mode: TransactionMode = TransactionMode.NATIVE,
        observability: Observability | None = None,
    ):
        self._session = session
        self._mode = TransactionMode(mode)
        self._obs = observability or LoggingObservability("services.transactions")
        self._stack: list[UnitOfChange] = []

    @property
    def session(self) -> Session:
        return self._session

    @property
    def mode(self) -> TransactionMode:
        return self._mode

    @property
    def current(self) -> UnitOfChange | None:
        return self._stack[-1] if self._stack else None

    def _open_savepoint(self) -> SessionTransaction:
        try:
            return self._session.begin_nested()
        except (NotSupportedError, OperationalError) as exc:
            raise TransactionUnsupportedError(str(exc)) from exc

    @contextmanager
    def begin(self, name: str) -> Iterator[UnitOfChange]:
        parent = self.current
        savepoint: SessionTransaction | None = None
        if self._mode is TransactionMode.NATIVE:
            try:
                savepoint = self._open_savepoint()
            except TransactionUnsupportedError as exc:
                self._obs.warning(
                    "transaction_fallback_compensating",
                    unit=name,
                    reason=exc.reason,
                )

        unit = UnitOfChange(self._session, name, native=savepoint is not None)
        self._stack.append(unit)
        try:
            yield unit
            self._session.flush()
        except Exception as exc:
            self._stack.pop()
            if savepoint is not None:
                if savepoint.is_active:
                    savepoint.rollback()
                failed_steps = 0
            else:
                failed_steps = unit.compensate(self._obs)
            self._obs.warning(
                "transaction_unit_rolled_back",
                unit=name,
                native=unit.native,
                error_type=type(exc).__name__,
                failed_undo_steps=failed_steps,
            )
            raise
        else:
            self._stack.pop()
            if savepoint is not None and savepoint.is_active:
                savepoint.commit()
            if parent is not None:
                parent.adopt(unit)
            logger.debug(
                "transaction_unit_completed",
                extra={"unit": name, "native": unit.native, "actions": unit.action_count},
            )
