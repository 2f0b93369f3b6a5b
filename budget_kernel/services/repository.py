"""
Module: budget_kernel.services.repository
Responsibility: Generic persistence access for one ORM model keyed by its
    business id.  Domain services hold one Repository per entity they touch
    (composition) instead of inheriting a per-entity base service.
Architecture position: Kernel > Services.

Invariants enforced:
    - ``get`` never returns None: a missing key raises NotFoundError with the
      entity label, so callers do not null-check.
    - Writes flush immediately so later queries in the same unit of work see
      them (the tree services rely on read-after-write for recomputes).
    - Does NOT commit.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import Decimal
from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from budget_kernel.db.base import Base
from budget_kernel.exceptions import NotFoundError

ModelT = TypeVar("ModelT", bound=Base)


class Repository(Generic[ModelT]):
    """
    Business-key CRUD over one mapped class.

    Contract:
        ``Repository(session, TitleModel, "title_id", label="Title")``
        addresses rows by ``TitleModel.title_id``.  Filters are keyword
        equality tests on mapped attributes; ``None`` means IS NULL.
    """

    def __init__(
        self,
        session: Session,
        model: type[ModelT],
        key: str,
        label: str | None = None,
    ):
        self._session = session
        self._model = model
        self._key = key
        self._label = label or model.__name__.removesuffix("Model")

    @property
    def session(self) -> Session:
        return self._session

    @property
    def model(self) -> type[ModelT]:
        return self._model

    def key_of(self, entity: ModelT) -> str:
        return getattr(entity, self._key)

    def _where(self, filters: dict[str, Any]) -> list:
        clauses = []
        for name, value in filters.items():
            column = getattr(self._model, name)
            if value is None:
                clauses.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses

    def find(self, key: str) -> ModelT | None:
        return self._session.get(self._model, key)

    def get(self, key: str) -> ModelT:
        entity = self.find(key)
        if entity is None:
            raise NotFoundError(self._label, key)
        return entity

    def list(self, order_by: str | None = None, **filters: Any) -> list[ModelT]:
        stmt = select(self._model).where(*self._where(filters))
        if order_by is not None:
            stmt = stmt.order_by(getattr(self._model, order_by))
        else:
            stmt = stmt.order_by(getattr(self._model, self._key))
        return list(self._session.scalars(stmt))

    def first(self, **filters: Any) -> ModelT | None:
        stmt = (
            select(self._model)
            .where(*self._where(filters))
            .order_by(getattr(self._model, self._key))
            .limit(1)
        )
        return self._session.scalars(stmt).first()

    def exists(self, exclude_key: str | None = None, **filters: Any) -> bool:
        clauses = self._where(filters)
        if exclude_key is not None:
            clauses.append(getattr(self._model, self._key) != exclude_key)
        stmt = select(func.count()).select_from(self._model).where(*clauses)
        return (self._session.scalar(stmt) or 0) > 0

    def sum(self, column: str, **filters: Any) -> Decimal:
        """Aggregate sum of ``column`` over matching rows (zero when none)."""
        stmt = select(func.coalesce(func.sum(getattr(self._model, column)), 0)).where(
            *self._where(filters)
        )
        return Decimal(str(self._session.scalar(stmt) or 0))

    def max(self, column: str, **filters: Any) -> Any:
        stmt = select(func.max(getattr(self._model, column))).where(*self._where(filters))
        return self._session.scalar(stmt)

    def add(self, entity: ModelT) -> ModelT:
        self._session.add(entity)
        self._session.flush()
        return entity

    def add_all(self, entities: Iterable[ModelT]) -> Sequence[ModelT]:
        items = list(entities)
        self._session.add_all(items)
        self._session.flush()
        return items

    def delete(self, entity: ModelT) -> None:
        self._session.delete(entity)
        self._session.flush()

    def delete_where(self, **filters: Any) -> int:
        """Delete matching rows one by one (ORM cascades apply).  Returns count."""
        rows = self.list(**filters)
        for row in rows:
            self._session.delete(row)
        self._session.flush()
        return len(rows)

    def update(self, entity: ModelT, **fields: Any) -> ModelT:
        for name, value in fields.items():
            setattr(entity, name, value)
        self._session.flush()
        return entity
