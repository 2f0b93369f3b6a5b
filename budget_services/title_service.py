"""
TitleService -- chapters of a budget version.

Responsibility:
    Create, update, move and delete Titles.  Enforces item-number
    uniqueness, keeps levels consistent on moves and cascades deletes to
    descendant Titles, their Line Items and Analyses.

Architecture position:
    Services -- imperative shell.  Totals propagation is delegated to
    TotalsService and is best-effort after the primary write.

Invariants enforced:
    - item_number unique among the Titles of the budget version.
    - A Title is never moved under itself or a descendant.
    - After a move both the old and the new parent chains are recomputed.
    - After a delete the parent chain is recomputed; when a root Title was
      deleted the Budget is re-derived from the remaining roots (zero when
      none remain).

Failure modes:
    - NotFoundError, DuplicateItemNumberError, ValidationError,
      InvalidStateError (parent shell or immutable budget).
"""

from __future__ import annotations

from typing import Any

from budget_engines.tree import hierarchical_order
from budget_kernel.db.types import ZERO
from budget_kernel.domain.values import IdKind, TitleKind
from budget_kernel.exceptions import ValidationError
from budget_kernel.models import TitleModel
from budget_services.context import ServiceContext
from budget_services.structure import DeletedIds, StructureRules
from budget_services.totals_service import TotalsService

_UPDATABLE = frozenset({"item_number", "description", "kind", "order", "parent_title_id"})


class TitleService:
    def __init__(
        self,
        ctx: ServiceContext,
        totals: TotalsService | None = None,
        rules: StructureRules | None = None,
    ):
        self._ctx = ctx
        self._totals = totals or TotalsService(ctx)
        self._rules = rules or StructureRules(ctx)
        self._titles = self._rules.titles
        self._obs = ctx.observability.child("titles")

    def get(self, title_id: str) -> TitleModel:
        return self._titles.get(title_id)

    def list_by_budget(self, budget_id: str) -> list[TitleModel]:
        """Titles of a budget in display order (parents before children)."""
        return hierarchical_order(
            self._titles.list(budget_id=budget_id),
            key_of=lambda t: t.title_id,
            parent_of=lambda t: t.parent_title_id,
            sort_key=lambda t: (t.order, t.title_id),
        )

    def children(self, title_id: str | None, budget_id: str) -> list[TitleModel]:
        return self._titles.list(order_by="order", budget_id=budget_id, parent_title_id=title_id)

    def create(
        self,
        budget_id: str,
        item_number: str,
        description: str,
        parent_title_id: str | None = None,
        kind: TitleKind | None = None,
        order: int | None = None,
    ) -> TitleModel:
        budget = self._rules.editable_budget(budget_id)
        if not item_number or not description:
            raise ValidationError("item_number and description are required", field="item_number")
        parent = self._rules.parent_title(budget_id, parent_title_id)
        self._rules.check_title_number(budget.project_id, budget_id, item_number)
        if order is None:
            order = len(self.children(parent_title_id, budget_id))

        with self._ctx.runner.begin("title_create") as unit:
            title = unit.add(
                TitleModel(
                    title_id=self._ctx.ids.next_id(IdKind.TITLE),
                    budget_id=budget_id,
                    project_id=budget.project_id,
                    parent_title_id=parent_title_id,
                    level=parent.level + 1 if parent else 1,
                    item_number=item_number,
                    description=description,
                    kind=TitleKind(kind) if kind else (TitleKind.SUBTITLE if parent else TitleKind.TITLE),
                    order=order,
                    total_parcial=ZERO,
                )
            )

        self._obs.event(
            "title_created",
            title_id=title.title_id,
            budget_id=budget_id,
            parent_title_id=parent_title_id,
        )
        if parent_title_id:
            self._totals.recompute_best_effort([parent_title_id], budget_id, trigger="title_create")
        return title

    def update(self, title_id: str, **changes: Any) -> TitleModel:
        """Apply ``changes``; a changed ``parent_title_id`` moves the Title."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Unknown title fields: {sorted(unknown)}")

        title = self._titles.get(title_id)
        self._rules.editable_budget(title.budget_id)
        if changes.get("item_number") and changes["item_number"] != title.item_number:
            self._rules.check_title_number(
                title.project_id, title.budget_id, changes["item_number"], exclude_id=title_id
            )
        if "kind" in changes:
            changes["kind"] = TitleKind(changes["kind"])

        old_parent = title.parent_title_id
        moved = "parent_title_id" in changes and changes["parent_title_id"] != old_parent
        if moved:
            new_parent = self._rules.parent_title(title.budget_id, changes["parent_title_id"])
            self._rules.check_title_move(title, changes["parent_title_id"])

        with self._ctx.runner.begin("title_update") as unit:
            unit.update(title, **changes)
            if moved:
                self._rules.relevel_title(unit, title, new_parent.level + 1 if new_parent else 1)

        self._obs.event("title_updated", title_id=title_id, fields=sorted(changes), moved=moved)
        if moved:
            self._totals.recompute_best_effort(
                [old_parent, title_id], title.budget_id, trigger="title_move"
            )
        return title

    def delete(self, title_id: str) -> DeletedIds:
        """Delete a Title with everything under it."""
        title = self._titles.get(title_id)
        self._rules.editable_budget(title.budget_id)
        budget_id = title.budget_id
        parent_id = title.parent_title_id

        with self._ctx.runner.begin("title_delete") as unit:
            deleted = self._rules.delete_title(unit, title)

        self._obs.event(
            "title_deleted",
            title_id=title_id,
            budget_id=budget_id,
            titles=len(deleted.title_ids),
            line_items=len(deleted.line_item_ids),
            analyses=len(deleted.analysis_ids),
        )
        # A root title leaves nothing to walk: the Budget is re-derived directly.
        self._totals.recompute_best_effort([parent_id], budget_id, trigger="title_delete")
        return deleted
