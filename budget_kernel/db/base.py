"""
Module: budget_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the type annotation map for consistent column types and the TrackedBase
    mixin for audit timestamps.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the kernel.  ALL model files import from here.  This module MUST NOT
    import from models/, services/, domain/, or outer layers.

Invariants enforced:
    - Business-key primary keys: every budget entity is addressed by a
      sequential business key (``TIT0000000001``) allocated by
      services/sequence_service.py, so each model declares its own string
      primary key instead of inheriting a surrogate one.
    - Decimal precision: type_annotation_map maps Python Decimal to
      Numeric(18, 6).  NEVER use float for amounts or quantities.
    - Parent references (title -> parent title, line item -> title, ...) are
      plain indexed columns, not foreign keys.  Referential integrity of the
      tree is checked in code before cloning and maintained by the cascading
      services.

Failure modes:
    - IntegrityError on INSERT of a duplicate business key.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar

from sqlalchemy import BigInteger, DateTime, Integer, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - Decimal maps to Numeric(18, 6).
        - datetime maps to DateTime(timezone=True).
        - int maps to BigInteger (Integer on SQLite so autoincrement works).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(18, 6),
        datetime: DateTime(timezone=True),
        int: BigInteger().with_variant(Integer, "sqlite"),
        str: String(255),
    }


class TrackedBase(Base):
    """
    Abstract base with audit timestamps.

    Guarantees:
        - created_at is set to server NOW() on INSERT and never changes.
        - updated_at is set on INSERT and auto-updates on every UPDATE.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
