"""
Module: budget_kernel.models.budget
Responsibility: ORM persistence for budgets -- both the parent shell of a
    version group (version IS NULL) and the numbered versions under it.
Architecture position: Kernel > Models.  May import from db/base.py,
    db/types.py and domain/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - is_parent <=> version IS NULL (CheckConstraint).
    - Version numbers are not unique within (group, phase): AS_BUILT
      working versions and approved versions are numbered in separate pools.
    - Financial fields are derived: parcial from root titles, tax/profit/total
      from parcial and the percentages (see services/totals_service).

Failure modes:
    - IntegrityError on duplicate budget_id.
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import TrackedBase
from budget_kernel.db.types import (
    BUSINESS_KEY,
    LONG_TEXT,
    PERCENTAGE,
    enum_column,
    round_money,
)
from budget_kernel.domain.dtos import BudgetInfo
from budget_kernel.domain.values import ApprovalStatus, ApprovalType, BudgetState, Phase

DEFAULT_TAX_PERCENTAGE = Decimal("18")


class BudgetModel(TrackedBase):
    """
    A budget version or the parent shell of a version group.

    The parent carries the group-level phase and the pending-approval marker
    for group-level transitions.  Versions carry their own state and, for
    version-targeted approvals, their own marker.
    """

    __tablename__ = "budgets"

    __table_args__ = (
        CheckConstraint(
            "(is_parent AND version IS NULL) OR (NOT is_parent AND version IS NOT NULL)",
            name="ck_budget_parent_version",
        ),
        Index("idx_budget_project", "project_id"),
        Index("idx_budget_group_phase", "group_id", "phase"),
    )

    budget_id: Mapped[str] = mapped_column(BUSINESS_KEY, primary_key=True)
    project_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    group_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(LONG_TEXT, nullable=True)
    term_days: Mapped[int | None] = mapped_column(nullable=True)

    direct_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    parcial: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    tax_percentage: Mapped[Decimal] = mapped_column(PERCENTAGE, default=DEFAULT_TAX_PERCENTAGE)
    profit_percentage: Mapped[Decimal] = mapped_column(PERCENTAGE, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    profit_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    base_budget_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))
    offer_budget_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"))

    version: Mapped[int | None] = mapped_column(nullable=True)
    version_description: Mapped[str | None] = mapped_column(LONG_TEXT, nullable=True)
    phase: Mapped[Phase] = mapped_column(
        enum_column(Phase, 20), nullable=False, default=Phase.DRAFT
    )
    state: Mapped[BudgetState] = mapped_column(
        enum_column(BudgetState, 20), nullable=False, default=BudgetState.DRAFT
    )
    is_parent: Mapped[bool] = mapped_column(nullable=False, default=False)
    is_immutable: Mapped[bool] = mapped_column(nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)

    base_budget_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)
    bidding_budget_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)
    approved_bidding_version: Mapped[int | None] = mapped_column(nullable=True)
    contractual_budget_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)
    approved_contractual_version: Mapped[int | None] = mapped_column(nullable=True)

    # Pending-approval marker
    approval_type: Mapped[ApprovalType | None] = mapped_column(
        enum_column(ApprovalType, 40), nullable=True
    )
    approval_status: Mapped[ApprovalStatus | None] = mapped_column(
        enum_column(ApprovalStatus, 20), nullable=True
    )
    approval_request_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)

    def mark_pending(self, approval_type: ApprovalType, request_id: str) -> None:
        self.approval_type = approval_type
        self.approval_status = ApprovalStatus.PENDING
        self.approval_request_id = request_id
        self.state = BudgetState.IN_REVIEW

    def clear_pending(self) -> None:
        self.approval_type = None
        self.approval_status = None
        self.approval_request_id = None

    def to_dto(self) -> BudgetInfo:
        return BudgetInfo(
            budget_id=self.budget_id,
            project_id=self.project_id,
            group_id=self.group_id,
            name=self.name,
            version=self.version,
            phase=self.phase,
            state=self.state,
            is_parent=self.is_parent,
            parcial=round_money(self.parcial),
            tax_percentage=self.tax_percentage,
            profit_percentage=self.profit_percentage,
            tax_amount=round_money(self.tax_amount),
            profit_amount=round_money(self.profit_amount),
            total=round_money(self.total),
            version_description=self.version_description,
            base_budget_id=self.base_budget_id,
            approval_type=self.approval_type,
            approval_status=self.approval_status,
            approval_request_id=self.approval_request_id,
        )

    def __repr__(self) -> str:
        return (
            f"<Budget {self.budget_id} group={self.group_id} "
            f"v={self.version} {self.phase.value}/{self.state.value}>"
        )
