"""
ApprovalWorkflow -- decisions on pending approval requests.

Responsibility:
    Approves, rejects and cancels requests opened by LifecycleManager and
    applies the consequence of each decision: materialising a baseline,
    renumbering an as-built version into the approved pool, or swapping
    the current as-built version.  Also serves the pending-requests views.

Architecture position:
    Services -- imperative shell.  Calls LifecycleManager for every
    materialisation so the cloning rules stay in one place.

Invariants enforced:
    - Only PENDING requests can be resolved; resolution is terminal.
    - A rejection always carries a non-empty comment.
    - At most one AS_BUILT version of a group is ``current``.
    - Officialization applies only while its target is still the highest
      approved version of the group.
    - The request, its side effects and the marker reset commit or roll
      back together (one unit of change).

Failure modes:
    - NotFoundError for an unknown request or a target version that no
      longer exists.
    - ApprovalAlreadyResolvedError for a request that is not PENDING.
    - ValidationError for a rejection without a comment.
    - InvalidStateError when the target version is no longer in a state the
      decision applies to.

Audit relevance:
    ``approval_approved`` / ``approval_rejected`` / ``approval_cancelled``
    record who decided, when and on which version.
"""

from __future__ import annotations

from collections import OrderedDict

from budget_kernel.domain.dtos import PendingProjectGroup, PendingVersionGroup
from budget_kernel.domain.values import (
    ASBUILT_APPROVED_STATES,
    ApprovalStatus,
    ApprovalType,
    BudgetState,
    Phase,
)
from budget_kernel.exceptions import ApprovalAlreadyResolvedError, InvalidStateError, ValidationError
from budget_kernel.logging_config import LogContext
from budget_kernel.models import ApprovalRequestModel, BudgetModel
from budget_kernel.services.transactions import UnitOfChange
from budget_services.context import ServiceContext
from budget_services.lifecycle import LifecycleManager, clear_pending

_RESOLUTION_FIELDS = (
    "status",
    "approver_id",
    "approved_at",
    "rejected_at",
    "cancelled_at",
    "approval_comment",
    "rejection_comment",
)

# Group-level decisions land on the parent shell with these states.
_PARENT_STATE_AFTER = {
    ApprovalStatus.APPROVED: BudgetState.APPROVED,
    ApprovalStatus.REJECTED: BudgetState.REJECTED,
}


class ApprovalWorkflow:
    def __init__(self, ctx: ServiceContext, lifecycle: LifecycleManager | None = None):
        self._ctx = ctx
        self._lifecycle = lifecycle or LifecycleManager(ctx)
        self._budgets = ctx.repo(BudgetModel, "budget_id", "Budget")
        self._requests = ctx.repo(ApprovalRequestModel, "request_id", "ApprovalRequest")
        self._obs = ctx.observability.child("approvals")

    # -- reads --------------------------------------------------------------------

    def get(self, request_id: str) -> ApprovalRequestModel:
        return self._requests.get(request_id)

    def list_for_budget(self, parent_id: str) -> list[ApprovalRequestModel]:
        return self._requests.list(order_by="requested_at", budget_id=parent_id)

    def list_for_project(self, project_id: str) -> list[ApprovalRequestModel]:
        return self._requests.list(order_by="requested_at", project_id=project_id)

    def list_pending(self) -> list[ApprovalRequestModel]:
        return self._requests.list(order_by="requested_at", status=ApprovalStatus.PENDING)

    def pending_grouped(self) -> list[PendingProjectGroup]:
        """
        Pending requests shaped for review screens.

        One entry per project; inside it one entry per version group with
        the parent summary and the version the oldest pending request of
        that group targets.  Requests whose parent or target version is
        gone are skipped and logged.
        """
        projects: OrderedDict[str, OrderedDict[str, PendingVersionGroup]] = OrderedDict()
        for request in self.list_pending():
            groups = projects.setdefault(request.project_id, OrderedDict())
            existing = groups.get(request.group_id)
            if existing is not None:
                groups[request.group_id] = PendingVersionGroup(
                    group_id=existing.group_id,
                    parent=existing.parent,
                    version_under_review=existing.version_under_review,
                    requests=(*existing.requests, request.to_dto()),
                )
                continue

            parent = self._budgets.find(request.budget_id)
            target = self._budgets.find(request.target_budget_id) if request.target_budget_id else None
            if parent is None or target is None:
                self._obs.warning(
                    "pending_request_orphaned",
                    request_id=request.request_id,
                    parent_id=request.budget_id,
                    target_budget_id=request.target_budget_id,
                )
                continue
            groups[request.group_id] = PendingVersionGroup(
                group_id=request.group_id,
                parent=parent.to_dto(),
                version_under_review=target.to_dto(),
                requests=(request.to_dto(),),
            )

        return [
            PendingProjectGroup(project_id=project_id, groups=tuple(groups.values()))
            for project_id, groups in projects.items()
            if groups
        ]

    # -- helpers ------------------------------------------------------------------

    def _pending(self, request_id: str) -> ApprovalRequestModel:
        request = self._requests.get(request_id)
        if request.status is not ApprovalStatus.PENDING:
            raise ApprovalAlreadyResolvedError(request_id, request.status.value)
        return request

    @staticmethod
    def _log_scope(request: ApprovalRequestModel, actor_id: str):
        return LogContext.bind(
            actor_id=actor_id,
            project_id=request.project_id,
            group_id=request.group_id,
            budget_id=request.target_budget_id,
            request_id=request.request_id,
        )

    def _target(self, request: ApprovalRequestModel) -> BudgetModel:
        return self._budgets.get(request.target_budget_id)

    def _resolve(
        self,
        work: UnitOfChange,
        request: ApprovalRequestModel,
        status: ApprovalStatus,
        actor_id: str,
        comment: str | None,
    ) -> None:
        work.track_updated(request, *_RESOLUTION_FIELDS)
        request.resolve(status, actor_id, self._ctx.clock.now(), comment)
        work.session.flush()

    def _clear_parent_marker(
        self,
        work: UnitOfChange,
        request: ApprovalRequestModel,
        state: BudgetState | None,
    ) -> None:
        parent = self._budgets.find(request.budget_id)
        if parent is not None and parent.approval_request_id == request.request_id:
            clear_pending(work, parent, state)

    def _group_state_before(self, request: ApprovalRequestModel) -> BudgetState:
        """State the parent had before ``request`` put it in review."""
        resolved = [
            r
            for r in self.list_for_budget(request.budget_id)
            if r.request_id != request.request_id
            and not r.approval_type.targets_version
            and r.status in _PARENT_STATE_AFTER
        ]
        if not resolved:
            return BudgetState.DRAFT
        return _PARENT_STATE_AFTER[resolved[-1].status]

    def _require_as_built(self, target: BudgetModel, allowed: set[BudgetState]) -> None:
        if target.phase is not Phase.AS_BUILT or target.state not in allowed:
            raise InvalidStateError(
                f"Version is {target.phase.value}/{target.state.value}; "
                f"expected AS_BUILT in {sorted(s.value for s in allowed)}",
                entity_id=target.budget_id,
                current_state=target.state.value,
            )

    # -- decisions ------------------------------------------------------------------

    def _approve_new_version(self, work: UnitOfChange, request: ApprovalRequestModel) -> dict:
        target = self._target(request)
        self._require_as_built(target, {BudgetState.DRAFT, BudgetState.IN_REVIEW})
        number = self._lifecycle.next_approved_number(target.group_id)
        clear_pending(work, target, BudgetState.APPROVED)
        work.update(target, version=number)
        return {"budget_id": target.budget_id, "approved_version": number}

    def _approve_officialize(self, work: UnitOfChange, request: ApprovalRequestModel) -> dict:
        target = self._target(request)
        self._require_as_built(target, {BudgetState.IN_REVIEW, BudgetState.APPROVED})
        higher = [
            b.version
            for b in self._budgets.list(
                group_id=target.group_id,
                phase=Phase.AS_BUILT,
                is_parent=False,
                state=sorted(ASBUILT_APPROVED_STATES, key=lambda s: s.value),
            )
            if b.budget_id != target.budget_id and (b.version or 0) >= (target.version or 0)
        ]
        if higher:
            raise InvalidStateError(
                f"V{target.version} is no longer the highest approved version "
                f"(found V{max(higher)})",
                entity_id=target.budget_id,
                current_state=target.state.value,
            )
        previous = [
            b
            for b in self._budgets.list(
                group_id=target.group_id,
                phase=Phase.AS_BUILT,
                is_parent=False,
                state=BudgetState.CURRENT,
            )
            if b.budget_id != target.budget_id
        ]
        for budget in previous:
            work.update(budget, state=BudgetState.APPROVED, is_active=False)
        clear_pending(work, target, BudgetState.CURRENT)
        work.update(target, is_active=True)
        return {
            "budget_id": target.budget_id,
            "previous_current": [b.budget_id for b in previous],
        }

    def approve(
        self,
        request_id: str,
        approver_id: str,
        comment: str | None = None,
    ) -> ApprovalRequestModel:
        """Approve a PENDING request and apply its transition."""
        request = self._pending(request_id)
        with self._log_scope(request, approver_id):
            return self._approve(request, approver_id, comment)

    def _approve(
        self,
        request: ApprovalRequestModel,
        approver_id: str,
        comment: str | None,
    ) -> ApprovalRequestModel:
        request_id = request.request_id
        approval_type = request.approval_type

        with self._ctx.runner.begin("approval_approve") as work:
            if approval_type is ApprovalType.BIDDING_TO_CONTRACTUAL:
                created = self._lifecycle.materialize_contractual(
                    request.target_budget_id, request.request_comment
                )
                outcome = {"budget_id": created.budget_id}
            elif approval_type is ApprovalType.CONTRACTUAL_TO_ASBUILT:
                created = self._lifecycle.materialize_as_built(
                    request.target_budget_id, request.request_comment
                )
                outcome = {"budget_id": created.budget_id}
            elif approval_type is ApprovalType.NEW_ASBUILT_VERSION:
                outcome = self._approve_new_version(work, request)
            else:
                outcome = self._approve_officialize(work, request)

            self._resolve(work, request, ApprovalStatus.APPROVED, approver_id, comment)
            self._clear_parent_marker(
                work,
                request,
                None if approval_type.targets_version else BudgetState.APPROVED,
            )

        self._obs.event(
            "approval_approved",
            request_id=request_id,
            approval_type=approval_type.value,
            approver_id=approver_id,
            parent_id=request.budget_id,
            **outcome,
        )
        return request

    def reject(self, request_id: str, approver_id: str, comment: str) -> ApprovalRequestModel:
        """Reject a PENDING request.  A comment is mandatory."""
        if not comment or not comment.strip():
            raise ValidationError("A rejection requires a comment", field="comment", value=comment)
        request = self._pending(request_id)
        with self._log_scope(request, approver_id):
            return self._reject(request, approver_id, comment)

    def _reject(
        self,
        request: ApprovalRequestModel,
        approver_id: str,
        comment: str,
    ) -> ApprovalRequestModel:
        request_id = request.request_id
        approval_type = request.approval_type

        with self._ctx.runner.begin("approval_reject") as work:
            if approval_type is ApprovalType.NEW_ASBUILT_VERSION:
                target = self._target(request)
                clear_pending(work, target, BudgetState.REJECTED)
            elif approval_type is ApprovalType.OFFICIALIZE_ASBUILT:
                target = self._target(request)
                clear_pending(work, target, BudgetState.APPROVED)
            self._resolve(work, request, ApprovalStatus.REJECTED, approver_id, comment)
            self._clear_parent_marker(
                work,
                request,
                None if approval_type.targets_version else BudgetState.REJECTED,
            )

        self._obs.event(
            "approval_rejected",
            request_id=request_id,
            approval_type=approval_type.value,
            approver_id=approver_id,
            parent_id=request.budget_id,
            budget_id=request.target_budget_id,
        )
        return request

    def cancel(
        self,
        request_id: str,
        requested_by: str,
        comment: str | None = None,
    ) -> ApprovalRequestModel:
        """Withdraw a PENDING request and restore what it put in review."""
        request = self._pending(request_id)
        with self._log_scope(request, requested_by):
            return self._cancel(request, requested_by, comment)

    def _cancel(
        self,
        request: ApprovalRequestModel,
        requested_by: str,
        comment: str | None,
    ) -> ApprovalRequestModel:
        request_id = request.request_id
        approval_type = request.approval_type

        with self._ctx.runner.begin("approval_cancel") as work:
            if approval_type.targets_version:
                target = self._budgets.find(request.target_budget_id)
                if target is not None and target.approval_request_id == request_id:
                    before = (
                        BudgetState.DRAFT
                        if approval_type is ApprovalType.NEW_ASBUILT_VERSION
                        else BudgetState.APPROVED
                    )
                    clear_pending(work, target, before)
                parent_state = None
            else:
                parent_state = self._group_state_before(request)
            self._resolve(work, request, ApprovalStatus.CANCELLED, requested_by, comment)
            self._clear_parent_marker(work, request, parent_state)

        self._obs.event(
            "approval_cancelled",
            request_id=request_id,
            approval_type=approval_type.value,
            cancelled_by=requested_by,
            parent_id=request.budget_id,
        )
        return request
