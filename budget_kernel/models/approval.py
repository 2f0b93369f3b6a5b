"""
Module: budget_kernel.models.approval
Responsibility: ORM persistence for approval requests gating budget phase
    transitions.
Architecture position: Kernel > Models.

Invariants enforced:
    - Status follows PENDING -> {APPROVED, REJECTED, CANCELLED}; terminal
      once resolved (guarded in ApprovalRequestModel.resolve()).
    - At most one PENDING request per (parent budget, type), or per target
      version for version-targeted types.  Enforced by read-then-write checks
      in the lifecycle service; see DESIGN.md for the concurrency caveat.

Failure modes:
    - ApprovalAlreadyResolvedError when resolving a non-PENDING request.

Audit relevance:
    Requests keep requester, approver, timestamps and the comment of every
    decision, and the version number and amount they were raised for.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import TrackedBase
from budget_kernel.db.types import BUSINESS_KEY, LONG_TEXT, enum_column
from budget_kernel.domain.dtos import ApprovalRequestInfo
from budget_kernel.domain.values import ApprovalStatus, ApprovalType
from budget_kernel.exceptions import ApprovalAlreadyResolvedError


class ApprovalRequestModel(TrackedBase):
    """Persistent approval request."""

    __tablename__ = "approval_requests"

    __table_args__ = (
        Index("idx_approval_budget_type_status", "budget_id", "approval_type", "status"),
        Index("idx_approval_status", "status"),
        Index("idx_approval_project", "project_id"),
    )

    request_id: Mapped[str] = mapped_column(BUSINESS_KEY, primary_key=True)
    budget_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    project_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    group_id: Mapped[str] = mapped_column(BUSINESS_KEY, nullable=False)
    approval_type: Mapped[ApprovalType] = mapped_column(
        enum_column(ApprovalType, 40), nullable=False
    )
    status: Mapped[ApprovalStatus] = mapped_column(
        enum_column(ApprovalStatus, 20), nullable=False, default=ApprovalStatus.PENDING
    )

    requested_by: Mapped[str] = mapped_column(String(50), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    request_comment: Mapped[str | None] = mapped_column(LONG_TEXT, nullable=True)

    target_version: Mapped[int | None] = mapped_column(nullable=True)
    target_budget_id: Mapped[str | None] = mapped_column(BUSINESS_KEY, nullable=True)
    budget_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    approver_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approval_comment: Mapped[str | None] = mapped_column(LONG_TEXT, nullable=True)
    rejection_comment: Mapped[str | None] = mapped_column(LONG_TEXT, nullable=True)

    def resolve(
        self,
        status: ApprovalStatus,
        actor_id: str,
        at: datetime,
        comment: str | None = None,
    ) -> None:
        """Move a PENDING request to a terminal status."""
        if self.status is not ApprovalStatus.PENDING:
            raise ApprovalAlreadyResolvedError(self.request_id, self.status.value)
        self.status = status
        self.approver_id = actor_id
        if status is ApprovalStatus.APPROVED:
            self.approved_at = at
            self.approval_comment = comment
        elif status is ApprovalStatus.REJECTED:
            self.rejected_at = at
            self.rejection_comment = comment
        else:
            self.cancelled_at = at
            self.rejection_comment = comment

    def to_dto(self) -> ApprovalRequestInfo:
        return ApprovalRequestInfo(
            request_id=self.request_id,
            budget_id=self.budget_id,
            project_id=self.project_id,
            group_id=self.group_id,
            approval_type=self.approval_type,
            status=self.status,
            requested_by=self.requested_by,
            requested_at=self.requested_at,
            target_version=self.target_version,
            target_budget_id=self.target_budget_id,
            budget_amount=self.budget_amount,
            request_comment=self.request_comment,
            approver_id=self.approver_id,
            approval_comment=self.approval_comment,
            rejection_comment=self.rejection_comment,
        )

    def __repr__(self) -> str:
        return (
            f"<ApprovalRequest {self.request_id} {self.approval_type.value} "
            f"{self.status.value} budget={self.budget_id}>"
        )
