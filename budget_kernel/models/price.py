"""
Module: budget_kernel.models.price
Responsibility: ORM persistence for Shared Resource Prices -- the single
    price per (budget, external resource) used by every Analysis of that
    budget that references the resource.
Architecture position: Kernel > Models.

Invariants enforced:
    - (budget_id, resource_id) is unique.  A concurrent create of the same
      pair fails with IntegrityError, which services/price_service.py turns
      into a lookup of the winning row.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import TrackedBase
from budget_kernel.db.types import BUSINESS_KEY, enum_column, round_money
from budget_kernel.domain.dtos import SharedPriceInfo
from budget_kernel.domain.values import ResourceType


class SharedResourcePriceModel(TrackedBase):
    """Budget-scoped catalogue price of one external resource."""

    __tablename__ = "shared_resource_prices"

    __table_args__ = (
        UniqueConstraint("budget_id", "resource_id", name="uq_price_budget_resource"),
        Index("idx_price_budget", "budget_id"),
    )

    price_id: Mapped[str] = mapped_column(BUSINESS_KEY, primary_key=True)
    budget_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    resource_id: Mapped[str] = mapped_column(String(50), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    resource_type: Mapped[ResourceType] = mapped_column(
        enum_column(ResourceType, 20), nullable=False
    )
    price: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    price_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def to_dto(self) -> SharedPriceInfo:
        return SharedPriceInfo(
            price_id=self.price_id,
            budget_id=self.budget_id,
            resource_id=self.resource_id,
            code=self.code,
            description=self.description,
            unit=self.unit,
            resource_type=self.resource_type,
            price=round_money(self.price),
            updated_by=self.updated_by,
            price_updated_at=self.price_updated_at,
        )

    def __repr__(self) -> str:
        return f"<SharedPrice {self.price_id} {self.code} {self.price}>"
