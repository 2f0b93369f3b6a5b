"""
Module: budget_kernel.models.analysis
Responsibility: ORM persistence for Unit-Price Analyses and their ordered
    Resource lines.
Architecture position: Kernel > Models.

Invariants enforced:
    - One Analysis per Line Item.  Enforced by services/analysis_service.py
      on create rather than by a unique constraint, so legacy rows with
      several Analyses for one Line Item can still be loaded and are
      de-duplicated when a version is cloned.
    - Resources are owned by their Analysis (delete-orphan cascade) and are
      kept ordered by ``position``.
    - quantity_with_waste = quantity * (1 + waste_percentage / 100), set by
      services/analysis_service.py whenever quantity or waste changes.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budget_kernel.db.base import Base, TrackedBase
from budget_kernel.db.types import (
    BUSINESS_KEY,
    PERCENTAGE,
    QUANTITY,
    enum_column,
    round_money,
)
from budget_kernel.domain.dtos import AnalysisInfo, ResourceInfo
from budget_kernel.domain.values import ResourceType


class AnalysisModel(TrackedBase):
    """Cost breakdown deriving the unit price of exactly one Line Item."""

    __tablename__ = "analyses"

    __table_args__ = (
        Index("idx_analysis_line_item", "line_item_id"),
        Index("idx_analysis_budget", "budget_id"),
    )

    analysis_id: Mapped[str] = mapped_column(BUSINESS_KEY, primary_key=True)
    budget_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    project_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    line_item_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)

    yield_per_shift: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("1"))
    shift_hours: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("8"))

    material_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    labor_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    equipment_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    subcontract_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    direct_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    resources: Mapped[list[AnalysisResourceModel]] = relationship(
        back_populates="analysis",
        cascade="all, delete-orphan",
        order_by="AnalysisResourceModel.position",
    )

    def to_dto(self) -> AnalysisInfo:
        return AnalysisInfo(
            analysis_id=self.analysis_id,
            budget_id=self.budget_id,
            project_id=self.project_id,
            line_item_id=self.line_item_id,
            yield_per_shift=self.yield_per_shift,
            shift_hours=self.shift_hours,
            material_cost=round_money(self.material_cost),
            labor_cost=round_money(self.labor_cost),
            equipment_cost=round_money(self.equipment_cost),
            subcontract_cost=round_money(self.subcontract_cost),
            direct_cost=round_money(self.direct_cost),
            resources=tuple(r.to_dto() for r in self.resources),
        )

    def __repr__(self) -> str:
        return (
            f"<Analysis {self.analysis_id} line_item={self.line_item_id} "
            f"direct_cost={self.direct_cost}>"
        )


class AnalysisResourceModel(Base):
    """One resource line of an Analysis."""

    __tablename__ = "analysis_resources"

    __table_args__ = (
        Index("idx_resource_analysis", "analysis_id"),
        Index("idx_resource_price", "price_id"),
        Index("idx_resource_catalog", "resource_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    analysis_id: Mapped[str] = mapped_column(
        BUSINESS_KEY, ForeignKey("analyses.analysis_id"), nullable=False
    )
    position: Mapped[int] = mapped_column(nullable=False, default=0)

    resource_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(20), nullable=True)
    resource_type: Mapped[ResourceType] = mapped_column(
        enum_column(ResourceType, 20), nullable=False
    )
    price_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)

    quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    waste_percentage: Mapped[Decimal] = mapped_column(PERCENTAGE, nullable=False, default=Decimal("0"))
    quantity_with_waste: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False, default=Decimal("0"))
    parcial: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    crew_size: Mapped[Decimal | None] = mapped_column(QUANTITY, nullable=True)

    sub_line_item_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)
    sub_line_item_price: Mapped[Decimal | None] = mapped_column(nullable=True)

    has_price_override: Mapped[bool] = mapped_column(nullable=False, default=False)
    override_price: Mapped[Decimal | None] = mapped_column(nullable=True)

    analysis: Mapped[AnalysisModel] = relationship(back_populates="resources")

    def to_dto(self) -> ResourceInfo:
        return ResourceInfo(
            position=self.position,
            resource_type=self.resource_type,
            quantity=self.quantity,
            waste_percentage=self.waste_percentage,
            quantity_with_waste=self.quantity_with_waste,
            parcial=round_money(self.parcial),
            resource_id=self.resource_id,
            resource_code=self.resource_code,
            description=self.description,
            unit=self.unit,
            price_id=self.price_id,
            crew_size=self.crew_size,
            sub_line_item_id=self.sub_line_item_id,
            sub_line_item_price=self.sub_line_item_price,
            has_price_override=self.has_price_override,
            override_price=self.override_price,
        )

    def __repr__(self) -> str:
        return (
            f"<Resource {self.resource_type.value} {self.resource_code} "
            f"qty={self.quantity} parcial={self.parcial}>"
        )
