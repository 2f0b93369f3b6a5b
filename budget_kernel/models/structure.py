"""
Module: budget_kernel.models.structure
Responsibility: ORM persistence for the work-breakdown tree of a budget
    version: Titles (chapters, nestable) and Line Items (priced units of work,
    optionally nested under another Line Item as sub-items).
Architecture position: Kernel > Models.

Invariants enforced:
    - Every Line Item belongs to exactly one Title of the same budget.
    - Line Item parcial = round(quantity * unit_price, 2), maintained by
      services/line_item_service.py and services/analysis_service.py.
    - Title total_parcial is derived by services/totals_service.py and is
      never accepted as caller input.
    - item_number uniqueness per project is checked in code (a title and a
      line item of different budget versions may legitimately share a number
      only across projects, never within one).
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import TrackedBase
from budget_kernel.db.types import BUSINESS_KEY, QUANTITY, enum_column, round_money
from budget_kernel.domain.dtos import LineItemInfo, TitleInfo
from budget_kernel.domain.values import LineItemStatus, TitleKind


class TitleModel(TrackedBase):
    """A chapter or sub-chapter node of a budget tree."""

    __tablename__ = "titles"

    __table_args__ = (
        Index("idx_title_budget", "budget_id"),
        Index("idx_title_parent", "parent_title_id"),
        Index("idx_title_project_number", "project_id", "item_number"),
    )

    title_id: Mapped[str] = mapped_column(BUSINESS_KEY, primary_key=True)
    budget_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    project_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    parent_title_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)
    level: Mapped[int] = mapped_column(nullable=False, default=1)
    item_number: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    kind: Mapped[TitleKind] = mapped_column(
        enum_column(TitleKind, 20), nullable=False, default=TitleKind.TITLE
    )
    order: Mapped[int] = mapped_column("sort_order", nullable=False, default=0)
    total_parcial: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    def to_dto(self) -> TitleInfo:
        return TitleInfo(
            title_id=self.title_id,
            budget_id=self.budget_id,
            project_id=self.project_id,
            parent_title_id=self.parent_title_id,
            level=self.level,
            item_number=self.item_number,
            description=self.description,
            kind=self.kind,
            order=self.order,
            total_parcial=round_money(self.total_parcial),
        )

    def __repr__(self) -> str:
        return f"<Title {self.title_id} {self.item_number} parent={self.parent_title_id}>"


class LineItemModel(TrackedBase):
    """A priced unit of work under a Title."""

    __tablename__ = "line_items"

    __table_args__ = (
        Index("idx_line_item_budget", "budget_id"),
        Index("idx_line_item_title", "title_id"),
        Index("idx_line_item_parent", "parent_line_item_id"),
        Index("idx_line_item_project_number", "project_id", "item_number"),
    )

    line_item_id: Mapped[str] = mapped_column(BUSINESS_KEY, primary_key=True)
    budget_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    project_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    title_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    parent_line_item_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)
    level: Mapped[int] = mapped_column(nullable=False, default=1)
    item_number: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    unit_price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    parcial: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    order: Mapped[int] = mapped_column("sort_order", nullable=False, default=0)
    status: Mapped[LineItemStatus] = mapped_column(
        enum_column(LineItemStatus, 20), nullable=False, default=LineItemStatus.ACTIVE
    )

    def recompute_parcial(self) -> Decimal:
        """Set parcial = round(quantity * unit_price, 2) and return it."""
        self.parcial = round_money(
            Decimal(self.quantity or 0) * Decimal(self.unit_price or 0)
        )
        return self.parcial

    def to_dto(self) -> LineItemInfo:
        return LineItemInfo(
            line_item_id=self.line_item_id,
            budget_id=self.budget_id,
            project_id=self.project_id,
            title_id=self.title_id,
            parent_line_item_id=self.parent_line_item_id,
            level=self.level,
            item_number=self.item_number,
            description=self.description,
            unit=self.unit,
            quantity=self.quantity,
            unit_price=round_money(self.unit_price),
            parcial=round_money(self.parcial),
            order=self.order,
            status=self.status,
        )

    def __repr__(self) -> str:
        return (
            f"<LineItem {self.line_item_id} {self.item_number} "
            f"title={self.title_id} parcial={self.parcial}>"
        )
