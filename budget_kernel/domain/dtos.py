"""
Domain DTOs -- frozen snapshots of budget entities.

Responsibility:
    Immutable value objects returned by read operations (budget structure,
    grouped approvals, batch results).  ORM models convert themselves with
    ``to_dto()`` so callers never hold live session-bound rows.

Architecture position:
    Kernel > Domain -- pure, zero I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from budget_kernel.domain.values import (
    ApprovalStatus,
    ApprovalType,
    BudgetState,
    LineItemStatus,
    Phase,
    ResourceType,
    TitleKind,
)


@dataclass(frozen=True)
class BudgetInfo:
    budget_id: str
    project_id: str
    group_id: str
    name: str
    version: int | None
    phase: Phase
    state: BudgetState
    is_parent: bool
    parcial: Decimal
    tax_percentage: Decimal
    profit_percentage: Decimal
    tax_amount: Decimal
    profit_amount: Decimal
    total: Decimal
    version_description: str | None = None
    base_budget_id: str | None = None
    approval_type: ApprovalType | None = None
    approval_status: ApprovalStatus | None = None
    approval_request_id: str | None = None


@dataclass(frozen=True)
class TitleInfo:
    title_id: str
    budget_id: str
    project_id: str
    parent_title_id: str | None
    level: int
    item_number: str
    description: str
    kind: TitleKind
    order: int
    total_parcial: Decimal


@dataclass(frozen=True)
class LineItemInfo:
    line_item_id: str
    budget_id: str
    project_id: str
    title_id: str
    parent_line_item_id: str | None
    level: int
    item_number: str
    description: str
    unit: str | None
    quantity: Decimal
    unit_price: Decimal
    parcial: Decimal
    order: int
    status: LineItemStatus


@dataclass(frozen=True)
class ResourceInfo:
    position: int
    resource_type: ResourceType
    quantity: Decimal
    waste_percentage: Decimal
    quantity_with_waste: Decimal
    parcial: Decimal
    resource_id: str | None = None
    resource_code: str | None = None
    description: str | None = None
    unit: str | None = None
    price_id: str | None = None
    crew_size: Decimal | None = None
    sub_line_item_id: str | None = None
    sub_line_item_price: Decimal | None = None
    has_price_override: bool = False
    override_price: Decimal | None = None


@dataclass(frozen=True)
class AnalysisInfo:
    analysis_id: str
    budget_id: str
    project_id: str
    line_item_id: str
    yield_per_shift: Decimal
    shift_hours: Decimal
    material_cost: Decimal
    labor_cost: Decimal
    equipment_cost: Decimal
    subcontract_cost: Decimal
    direct_cost: Decimal
    resources: tuple[ResourceInfo, ...] = ()


@dataclass(frozen=True)
class SharedPriceInfo:
    price_id: str
    budget_id: str
    resource_id: str
    code: str
    description: str
    unit: str
    resource_type: ResourceType
    price: Decimal
    updated_by: str | None = None
    price_updated_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalRequestInfo:
    request_id: str
    budget_id: str
    project_id: str
    group_id: str
    approval_type: ApprovalType
    status: ApprovalStatus
    requested_by: str
    requested_at: datetime
    target_version: int | None = None
    target_budget_id: str | None = None
    budget_amount: Decimal | None = None
    request_comment: str | None = None
    approver_id: str | None = None
    approval_comment: str | None = None
    rejection_comment: str | None = None


@dataclass(frozen=True)
class BudgetStructure:
    """Hierarchically ordered contents of one budget version."""

    budget: BudgetInfo
    titles: tuple[TitleInfo, ...] = ()
    line_items: tuple[LineItemInfo, ...] = ()
    analyses: tuple[AnalysisInfo, ...] = ()
    prices: tuple[SharedPriceInfo, ...] = ()


@dataclass(frozen=True)
class PendingVersionGroup:
    """One version group with the single version currently under review."""

    group_id: str
    parent: BudgetInfo
    version_under_review: BudgetInfo
    requests: tuple[ApprovalRequestInfo, ...] = ()


@dataclass(frozen=True)
class PendingProjectGroup:
    """All pending version groups of one project."""

    project_id: str
    groups: tuple[PendingVersionGroup, ...] = field(default_factory=tuple)
