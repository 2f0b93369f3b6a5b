"""
LifecycleManager -- version groups and their phase transitions.

Responsibility:
    Creates version groups (parent shell + v1), numbers and clones new
    versions, opens approval requests for gated transitions and
    materialises the contractual and as-built baselines once a request is
    approved.  Fans group-level edits out to every version.

Architecture position:
    Services -- imperative shell.  Deep copies are delegated to
    BudgetCloner; approval decisions live in ApprovalWorkflow, which calls
    back into ``materialize_*``.

Invariants enforced:
    - Exactly one parent (version NULL) per group.
    - Phases only move forward: DRAFT -> BIDDING -> CONTRACTUAL -> AS_BUILT.
    - AS_BUILT versions are numbered in two pools: working versions
      (draft/in_review/rejected) and approved versions (approved/current).
    - At most one PENDING request per (parent, type); for NEW_ASBUILT_VERSION
      at most one per target version.
    - A pending request sets the approval marker and ``in_review`` on the
      parent (group-level types) or on the target version
      (version-targeted types).

Failure modes:
    - NotFoundError for unknown budgets.
    - InvalidStateError for a transition the current phase/state forbids.
    - DuplicateApprovalRequestError when an equivalent request is pending.
    - IntegrityError from BudgetCloner when the source version is
      inconsistent.

Audit relevance:
    Each transition emits a structured event naming the group, the version
    and the request involved.
"""

from __future__ import annotations

from decimal import Decimal

from budget_engines.totals import compute_budget_financials
from budget_kernel.db.types import ZERO, to_decimal
from budget_kernel.domain.values import (
    ASBUILT_APPROVED_STATES,
    ASBUILT_WORKING_STATES,
    ApprovalStatus,
    ApprovalType,
    BudgetState,
    IdKind,
    Phase,
)
from budget_kernel.exceptions import (
    DuplicateApprovalRequestError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from budget_kernel.models import ApprovalRequestModel, BudgetModel
from budget_kernel.services.transactions import UnitOfChange
from budget_services.cloning import BudgetCloner, CloneTarget
from budget_services.context import ServiceContext
from budget_services.totals_service import TotalsService

_MARKER_FIELDS = ("approval_type", "approval_status", "approval_request_id", "state")


def mark_pending(
    work: UnitOfChange,
    budget: BudgetModel,
    approval_type: ApprovalType,
    request_id: str,
) -> None:
    """Set the pending-approval marker on ``budget`` inside ``work``."""
    work.track_updated(budget, *_MARKER_FIELDS)
    budget.mark_pending(approval_type, request_id)
    work.session.flush()


def clear_pending(
    work: UnitOfChange,
    budget: BudgetModel,
    state: BudgetState | None = None,
) -> None:
    """Clear the marker on ``budget``; optionally move it to ``state``."""
    work.track_updated(budget, *_MARKER_FIELDS)
    budget.clear_pending()
    if state is not None:
        budget.state = state
    work.session.flush()


def _percentage(value: Decimal | None, field: str) -> Decimal | None:
    if value is None:
        return None
    value = to_decimal(value)
    if value < 0:
        raise ValidationError(f"{field} must be >= 0", field=field, value=value)
    return value


class LifecycleManager:
    """
    Contract:
        Every public method runs in one unit of change and returns the
        budget or request it created or changed.  Nothing is committed.
    """

    def __init__(
        self,
        ctx: ServiceContext,
        cloner: BudgetCloner | None = None,
        totals: TotalsService | None = None,
    ):
        self._ctx = ctx
        self._totals = totals or TotalsService(ctx)
        self._cloner = cloner or BudgetCloner(ctx, self._totals)
        self._budgets = ctx.repo(BudgetModel, "budget_id", "Budget")
        self._requests = ctx.repo(ApprovalRequestModel, "request_id", "ApprovalRequest")
        self._obs = ctx.observability.child("lifecycle")

    # -- lookups ------------------------------------------------------------------

    def version(self, budget_id: str) -> BudgetModel:
        """A numbered version; the parent shell is refused."""
        budget = self._budgets.get(budget_id)
        if budget.is_parent:
            raise InvalidStateError(
                "Operation requires a budget version, not the parent of the group",
                entity_id=budget_id,
                current_state=budget.state.value,
            )
        return budget

    def parent_of(self, budget: BudgetModel) -> BudgetModel:
        parent = self._budgets.first(group_id=budget.group_id, is_parent=True)
        if parent is None:
            raise NotFoundError("ParentBudget", budget.group_id)
        return parent

    def pending_request(
        self,
        parent_id: str,
        approval_type: ApprovalType,
        target_budget_id: str | None = None,
    ) -> ApprovalRequestModel | None:
        filters = {
            "budget_id": parent_id,
            "approval_type": approval_type,
            "status": ApprovalStatus.PENDING,
        }
        if target_budget_id is not None:
            filters["target_budget_id"] = target_budget_id
        return self._requests.first(**filters)

    def _ensure_no_pending(
        self,
        parent: BudgetModel,
        approval_type: ApprovalType,
        target_budget_id: str | None = None,
    ) -> None:
        existing = self.pending_request(parent.budget_id, approval_type, target_budget_id)
        if existing is not None:
            raise DuplicateApprovalRequestError(
                parent.budget_id, approval_type.value, existing.request_id
            )

    def _max_version(
        self, group_id: str, phase: Phase, states: frozenset[BudgetState] | None = None
    ) -> int:
        filters: dict[str, object] = {"group_id": group_id, "phase": phase, "is_parent": False}
        if states is not None:
            filters["state"] = sorted(states, key=lambda s: s.value)
        return self._budgets.max("version", **filters) or 0

    def next_version_number(self, source: BudgetModel) -> tuple[int, BudgetState]:
        """Number and initial state for a version cloned from ``source``."""
        if source.phase is Phase.AS_BUILT:
            return (
                self._max_version(source.group_id, Phase.AS_BUILT, ASBUILT_WORKING_STATES) + 1,
                BudgetState.DRAFT,
            )
        return self._max_version(source.group_id, source.phase) + 1, BudgetState.DRAFT

    def next_approved_number(self, group_id: str) -> int:
        """
        Next number in the approved AS_BUILT pool.

        A version under a pending officialize request is ``in_review`` but
        keeps its approved number, so it still counts towards the maximum.
        """
        highest = self._max_version(group_id, Phase.AS_BUILT, ASBUILT_APPROVED_STATES)
        for request in self._requests.list(
            group_id=group_id,
            approval_type=ApprovalType.OFFICIALIZE_ASBUILT,
            status=ApprovalStatus.PENDING,
        ):
            target = self._budgets.find(request.target_budget_id)
            if target is not None and target.version is not None:
                highest = max(highest, target.version)
        return highest + 1

    # -- group creation -----------------------------------------------------------

    def create_parent(
        self,
        project_id: str,
        name: str,
        tax_percentage: Decimal | None = None,
        profit_percentage: Decimal | None = None,
        notes: str | None = None,
        version_description: str | None = "Initial version",
    ) -> BudgetModel:
        """Create a version group: the parent shell plus an empty v1.  Returns v1."""
        if not project_id or not name:
            raise ValidationError("project_id and name are required", field="name")
        settings = self._ctx.settings
        tax = _percentage(tax_percentage, "tax_percentage")
        profit = _percentage(profit_percentage, "profit_percentage")
        tax = settings.default_tax_percentage if tax is None else tax
        profit = settings.default_profit_percentage if profit is None else profit
        zeros = {
            "direct_cost": ZERO,
            "parcial": ZERO,
            "tax_amount": ZERO,
            "profit_amount": ZERO,
            "total": ZERO,
            "base_budget_amount": ZERO,
            "offer_budget_amount": ZERO,
        }

        with self._ctx.runner.begin("budget_group_create") as work:
            group_id = self._ctx.ids.next_id(IdKind.VERSION_GROUP)
            parent = work.add(
                BudgetModel(
                    budget_id=self._ctx.ids.next_id(IdKind.BUDGET),
                    project_id=project_id,
                    group_id=group_id,
                    name=name,
                    notes=notes,
                    term_days=0,
                    tax_percentage=tax,
                    profit_percentage=profit,
                    version=None,
                    phase=Phase.DRAFT,
                    state=BudgetState.DRAFT,
                    is_parent=True,
                    is_immutable=False,
                    is_active=False,
                    **zeros,
                )
            )
            first = work.add(
                BudgetModel(
                    budget_id=self._ctx.ids.next_id(IdKind.BUDGET),
                    project_id=project_id,
                    group_id=group_id,
                    name=name,
                    notes=notes,
                    term_days=0,
                    tax_percentage=tax,
                    profit_percentage=profit,
                    version=1,
                    version_description=version_description,
                    phase=Phase.DRAFT,
                    state=BudgetState.DRAFT,
                    is_parent=False,
                    is_immutable=False,
                    is_active=False,
                    base_budget_id=parent.budget_id,
                    **zeros,
                )
            )

        self._obs.event(
            "budget_group_created",
            project_id=project_id,
            group_id=group_id,
            parent_id=parent.budget_id,
            budget_id=first.budget_id,
        )
        return first

    def submit_to_bidding(self, version_id: str) -> BudgetModel:
        """Move v1 (and the parent with it) from DRAFT to BIDDING."""
        version = self.version(version_id)
        if version.version != 1:
            raise InvalidStateError(
                "Only version 1 can be submitted to bidding",
                entity_id=version_id,
                current_state=version.phase.value,
            )
        if version.phase is not Phase.DRAFT:
            raise InvalidStateError(
                "Only DRAFT budgets can be submitted to bidding",
                entity_id=version_id,
                current_state=version.phase.value,
            )
        parent = self.parent_of(version)

        with self._ctx.runner.begin("submit_to_bidding") as work:
            work.update(version, phase=Phase.BIDDING)
            work.update(parent, phase=Phase.BIDDING)

        self._obs.event("budget_submitted_to_bidding", budget_id=version_id, group_id=version.group_id)
        return version

    # -- cloning --------------------------------------------------------------------

    def clone_version(self, base_version_id: str, description: str | None = None) -> BudgetModel:
        """Deep-copy a version into the next number of the same phase."""
        source = self.version(base_version_id)
        number, state = self.next_version_number(source)
        report = self._cloner.clone(
            base_version_id,
            CloneTarget(
                phase=source.phase,
                version=number,
                state=state,
                version_description=description,
            ),
        )
        self._obs.event(
            "budget_version_created",
            group_id=source.group_id,
            source_budget_id=base_version_id,
            budget_id=report.budget.budget_id,
            phase=source.phase.value,
            version=number,
        )
        return report.budget

    # -- approval requests ----------------------------------------------------------

    def _open_request(
        self,
        work: UnitOfChange,
        parent: BudgetModel,
        version: BudgetModel,
        approval_type: ApprovalType,
        requested_by: str,
        comment: str | None,
    ) -> ApprovalRequestModel:
        request = work.add(
            ApprovalRequestModel(
                request_id=self._ctx.ids.next_id(IdKind.APPROVAL_REQUEST),
                budget_id=parent.budget_id,
                project_id=parent.project_id,
                group_id=parent.group_id,
                approval_type=approval_type,
                status=ApprovalStatus.PENDING,
                requested_by=requested_by,
                requested_at=self._ctx.clock.now(),
                request_comment=comment,
                target_version=version.version,
                target_budget_id=version.budget_id,
                budget_amount=version.total,
            )
        )
        marked = version if approval_type.targets_version else parent
        mark_pending(work, marked, approval_type, request.request_id)
        return request

    def _request_event(self, request: ApprovalRequestModel) -> None:
        self._obs.event(
            "approval_requested",
            request_id=request.request_id,
            approval_type=request.approval_type.value,
            parent_id=request.budget_id,
            budget_id=request.target_budget_id,
            version=request.target_version,
            requested_by=request.requested_by,
        )

    def request_contractual(
        self,
        bidding_version_id: str,
        requested_by: str,
        comment: str | None = None,
    ) -> ApprovalRequestModel:
        """Ask for a BIDDING version to become the contractual baseline."""
        version = self.version(bidding_version_id)
        if version.phase is not Phase.BIDDING:
            raise InvalidStateError(
                "Only BIDDING versions can be promoted to contractual",
                entity_id=bidding_version_id,
                current_state=version.phase.value,
            )
        parent = self.parent_of(version)
        self._ensure_no_pending(parent, ApprovalType.BIDDING_TO_CONTRACTUAL)

        with self._ctx.runner.begin("request_contractual") as work:
            request = self._open_request(
                work, parent, version, ApprovalType.BIDDING_TO_CONTRACTUAL, requested_by, comment
            )

        self._request_event(request)
        return request

    def request_contractual_to_asbuilt(
        self,
        contractual_version_id: str,
        requested_by: str,
        comment: str | None = None,
    ) -> ApprovalRequestModel:
        """Ask for a CONTRACTUAL version to seed the as-built baseline."""
        version = self.version(contractual_version_id)
        if version.phase is not Phase.CONTRACTUAL:
            raise InvalidStateError(
                "Only CONTRACTUAL versions can seed the as-built budget",
                entity_id=contractual_version_id,
                current_state=version.phase.value,
            )
        self._ensure_no_asbuilt(version)
        parent = self.parent_of(version)
        self._ensure_no_pending(parent, ApprovalType.CONTRACTUAL_TO_ASBUILT)

        with self._ctx.runner.begin("request_contractual_to_asbuilt") as work:
            request = self._open_request(
                work, parent, version, ApprovalType.CONTRACTUAL_TO_ASBUILT, requested_by, comment
            )

        self._request_event(request)
        return request

    def request_new_asbuilt_version(
        self,
        version_id: str,
        requested_by: str,
        comment: str | None = None,
    ) -> ApprovalRequestModel:
        """Submit a draft AS_BUILT version for approval."""
        version = self.version(version_id)
        if version.phase is not Phase.AS_BUILT:
            raise InvalidStateError(
                "Only AS_BUILT versions can be submitted for approval",
                entity_id=version_id,
                current_state=version.phase.value,
            )
        if version.state is BudgetState.REJECTED:
            raise InvalidStateError(
                "A rejected version cannot be resubmitted; clone an approved version instead",
                entity_id=version_id,
                current_state=version.state.value,
            )
        if version.state is not BudgetState.DRAFT:
            raise InvalidStateError(
                "Only draft AS_BUILT versions can be submitted for approval",
                entity_id=version_id,
                current_state=version.state.value,
            )
        parent = self.parent_of(version)
        self._ensure_no_pending(parent, ApprovalType.NEW_ASBUILT_VERSION, version.budget_id)

        with self._ctx.runner.begin("request_new_asbuilt_version") as work:
            request = self._open_request(
                work, parent, version, ApprovalType.NEW_ASBUILT_VERSION, requested_by, comment
            )

        self._request_event(request)
        return request

    def request_officialize(
        self,
        version_id: str,
        requested_by: str,
        comment: str | None = None,
    ) -> ApprovalRequestModel:
        """Ask for the highest approved AS_BUILT version to become current."""
        version = self.version(version_id)
        if version.phase is not Phase.AS_BUILT:
            raise InvalidStateError(
                "Only AS_BUILT versions can be officialized",
                entity_id=version_id,
                current_state=version.phase.value,
            )
        if version.state is not BudgetState.APPROVED:
            raise InvalidStateError(
                "Only approved versions can be officialized",
                entity_id=version_id,
                current_state=version.state.value,
            )
        pool = self._budgets.list(
            group_id=version.group_id,
            phase=Phase.AS_BUILT,
            is_parent=False,
            state=sorted(ASBUILT_APPROVED_STATES, key=lambda s: s.value),
        )
        highest = max(pool, key=lambda b: (b.version or 0, b.budget_id))
        if highest.version != version.version:
            raise InvalidStateError(
                f"Only the highest approved version can be officialized: "
                f"highest is V{highest.version}, got V{version.version}",
                entity_id=version_id,
                current_state=version.state.value,
            )
        if highest.state is BudgetState.CURRENT:
            raise InvalidStateError(
                "The highest approved version is already current",
                entity_id=highest.budget_id,
                current_state=highest.state.value,
            )
        parent = self.parent_of(version)
        self._ensure_no_pending(parent, ApprovalType.OFFICIALIZE_ASBUILT)

        with self._ctx.runner.begin("request_officialize") as work:
            request = self._open_request(
                work, parent, version, ApprovalType.OFFICIALIZE_ASBUILT, requested_by, comment
            )

        self._request_event(request)
        return request

    # -- materialisation --------------------------------------------------------------

    def _ensure_no_asbuilt(self, version: BudgetModel) -> None:
        if self._budgets.exists(group_id=version.group_id, phase=Phase.AS_BUILT, is_parent=False):
            raise InvalidStateError(
                "An AS_BUILT version already exists for this budget",
                entity_id=version.budget_id,
                current_state=version.phase.value,
            )

    def materialize_contractual(self, bidding_version_id: str, reason: str | None = None) -> BudgetModel:
        """Clone a BIDDING version into CONTRACTUAL v1 and move the group forward."""
        source = self.version(bidding_version_id)
        if source.phase is not Phase.BIDDING:
            raise InvalidStateError(
                "Only BIDDING versions can become the contractual budget",
                entity_id=bidding_version_id,
                current_state=source.phase.value,
            )
        if self._budgets.exists(group_id=source.group_id, phase=Phase.CONTRACTUAL, is_parent=False):
            raise InvalidStateError(
                "A CONTRACTUAL version already exists for this budget",
                entity_id=bidding_version_id,
                current_state=source.phase.value,
            )
        parent = self.parent_of(source)
        description = f"Based on bidding V{source.version}"
        if reason:
            description = f"{description}. Reason: {reason}"

        with self._ctx.runner.begin("materialize_contractual") as work:
            report = self._cloner.clone(
                bidding_version_id,
                CloneTarget(
                    phase=Phase.CONTRACTUAL,
                    version=1,
                    version_description=description,
                    is_active=True,
                ),
            )
            work.update(
                parent,
                phase=Phase.CONTRACTUAL,
                bidding_budget_id=bidding_version_id,
                approved_bidding_version=source.version,
            )

        self._obs.event(
            "contractual_materialized",
            group_id=source.group_id,
            source_budget_id=bidding_version_id,
            budget_id=report.budget.budget_id,
            bidding_version=source.version,
        )
        return report.budget

    def materialize_as_built(self, contractual_version_id: str, reason: str | None = None) -> BudgetModel:
        """Clone a CONTRACTUAL version into AS_BUILT v1 (approved).  One-shot."""
        source = self.version(contractual_version_id)
        if source.phase is not Phase.CONTRACTUAL:
            raise InvalidStateError(
                "Only CONTRACTUAL versions can seed the as-built budget",
                entity_id=contractual_version_id,
                current_state=source.phase.value,
            )
        self._ensure_no_asbuilt(source)
        parent = self.parent_of(source)
        description = f"Based on contractual V{source.version}"
        if reason:
            description = f"{description}. Reason: {reason}"

        with self._ctx.runner.begin("materialize_as_built") as work:
            report = self._cloner.clone(
                contractual_version_id,
                CloneTarget(
                    phase=Phase.AS_BUILT,
                    version=1,
                    state=BudgetState.APPROVED,
                    version_description=description,
                    is_active=True,
                ),
            )
            work.update(
                parent,
                phase=Phase.AS_BUILT,
                contractual_budget_id=contractual_version_id,
                approved_contractual_version=source.version,
            )

        self._obs.event(
            "as_built_materialized",
            group_id=source.group_id,
            source_budget_id=contractual_version_id,
            budget_id=report.budget.budget_id,
            contractual_version=source.version,
        )
        return report.budget

    # -- group-level edits --------------------------------------------------------------

    def update_parent(
        self,
        parent_id: str,
        name: str | None = None,
        tax_percentage: Decimal | None = None,
        profit_percentage: Decimal | None = None,
    ) -> BudgetModel:
        """Edit the group's name/percentages and fan them out to every version."""
        parent = self._budgets.get(parent_id)
        if not parent.is_parent:
            raise InvalidStateError(
                "Only the parent of a version group can be updated this way",
                entity_id=parent_id,
                current_state=parent.state.value,
            )
        if name is not None and not name.strip():
            raise ValidationError("name must not be empty", field="name", value=name)
        tax = _percentage(tax_percentage, "tax_percentage")
        profit = _percentage(profit_percentage, "profit_percentage")
        percentages_changed = tax is not None or profit is not None

        versions = self._budgets.list(order_by="version", group_id=parent.group_id, is_parent=False)
        with self._ctx.runner.begin("budget_group_update") as work:
            for budget in [parent, *versions]:
                changes: dict[str, object] = {}
                if name is not None:
                    changes["name"] = name
                if tax is not None:
                    changes["tax_percentage"] = tax
                if profit is not None:
                    changes["profit_percentage"] = profit
                if percentages_changed and budget.parcial > 0:
                    financials = compute_budget_financials(
                        budget.parcial,
                        tax if tax is not None else budget.tax_percentage,
                        profit if profit is not None else budget.profit_percentage,
                    )
                    changes.update(
                        tax_amount=financials.tax_amount,
                        profit_amount=financials.profit_amount,
                        total=financials.total,
                    )
                work.update(budget, **changes)

        self._obs.event(
            "budget_group_updated",
            parent_id=parent_id,
            group_id=parent.group_id,
            versions_updated=len(versions),
            percentages_changed=percentages_changed,
        )
        return parent
