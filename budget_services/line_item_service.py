"""
LineItemService -- priced units of work under a Title.

Responsibility:
    Create, update, move and delete Line Items and their sub-items.
    Maintains ``parcial = round(quantity * unit_price, 2)`` and re-prices
    from the Analysis when one exists.

Architecture position:
    Services -- imperative shell.  Totals propagation is best-effort after
    the primary write (see TotalsService.recompute_best_effort).

Invariants enforced:
    - item_number unique among the Line Items of the budget version.
    - A Line Item with an Analysis is priced by it: a quantity change keeps
      ``unit_price == round(analysis.direct_cost, 2)``.
    - A sub-item lives in the same budget as its parent and is never moved
      under itself or one of its own sub-items.
    - Delete order: Analysis, sub-items, then the item.

Failure modes:
    - NotFoundError, DuplicateItemNumberError, ValidationError,
      InvalidStateError (parent shell or immutable budget).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from budget_engines.tree import hierarchical_order
from budget_kernel.db.types import ZERO, round_money, to_decimal
from budget_kernel.domain.values import IdKind, LineItemStatus
from budget_kernel.exceptions import ValidationError
from budget_kernel.models import LineItemModel
from budget_services.analysis_service import AnalysisService
from budget_services.context import ServiceContext
from budget_services.structure import DeletedIds, StructureRules
from budget_services.totals_service import TotalsService

_UPDATABLE = frozenset(
    {
        "item_number",
        "description",
        "unit",
        "quantity",
        "unit_price",
        "order",
        "status",
        "title_id",
        "parent_line_item_id",
    }
)


class LineItemService:
    def __init__(
        self,
        ctx: ServiceContext,
        totals: TotalsService | None = None,
        analysis: AnalysisService | None = None,
        rules: StructureRules | None = None,
    ):
        self._ctx = ctx
        self._totals = totals or TotalsService(ctx)
        self._analysis = analysis or AnalysisService(ctx, self._totals)
        self._rules = rules or StructureRules(ctx)
        self._items = self._rules.items
        self._obs = ctx.observability.child("line_items")

    def get(self, line_item_id: str) -> LineItemModel:
        return self._items.get(line_item_id)

    def list_by_title(self, title_id: str) -> list[LineItemModel]:
        return self._items.list(order_by="order", title_id=title_id)

    def list_by_budget(self, budget_id: str) -> list[LineItemModel]:
        """Line Items of a budget, each followed by its sub-items."""
        return hierarchical_order(
            self._items.list(budget_id=budget_id),
            key_of=lambda i: i.line_item_id,
            parent_of=lambda i: i.parent_line_item_id,
            sort_key=lambda i: (i.order, i.line_item_id),
        )

    def create(
        self,
        title_id: str,
        item_number: str,
        description: str,
        unit: str | None = None,
        quantity: Decimal = ZERO,
        unit_price: Decimal = ZERO,
        parent_line_item_id: str | None = None,
        order: int | None = None,
        status: LineItemStatus = LineItemStatus.ACTIVE,
    ) -> LineItemModel:
        title = self._rules.titles.get(title_id)
        budget = self._rules.editable_budget(title.budget_id)
        if not item_number or not description:
            raise ValidationError("item_number and description are required", field="item_number")
        if to_decimal(quantity) < ZERO:
            raise ValidationError("quantity must be >= 0", field="quantity", value=quantity)
        parent = self._rules.parent_line_item(budget.budget_id, parent_line_item_id)
        self._rules.check_line_item_number(budget.project_id, budget.budget_id, item_number)
        if order is None:
            order = len(
                self._items.list(title_id=title_id, parent_line_item_id=parent_line_item_id)
            )

        with self._ctx.runner.begin("line_item_create") as work:
            item = LineItemModel(
                line_item_id=self._ctx.ids.next_id(IdKind.LINE_ITEM),
                budget_id=budget.budget_id,
                project_id=budget.project_id,
                title_id=title_id,
                parent_line_item_id=parent_line_item_id,
                level=parent.level + 1 if parent else 1,
                item_number=item_number,
                description=description,
                unit=unit,
                quantity=to_decimal(quantity),
                unit_price=round_money(unit_price),
                order=order,
                status=LineItemStatus(status),
            )
            item.recompute_parcial()
            work.add(item)

        self._obs.event(
            "line_item_created",
            line_item_id=item.line_item_id,
            title_id=title_id,
            parcial=item.parcial,
        )
        self._totals.recompute_best_effort([title_id], budget.budget_id, trigger="line_item_create")
        return item

    def update(self, line_item_id: str, **changes: Any) -> LineItemModel:
        """Apply ``changes``; ``title_id``/``parent_line_item_id`` move the item."""
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"Unknown line item fields: {sorted(unknown)}")

        item = self._items.get(line_item_id)
        self._rules.editable_budget(item.budget_id)
        if changes.get("item_number") and changes["item_number"] != item.item_number:
            self._rules.check_line_item_number(
                item.project_id, item.budget_id, changes["item_number"], exclude_id=line_item_id
            )
        if "quantity" in changes:
            if to_decimal(changes["quantity"]) < ZERO:
                raise ValidationError("quantity must be >= 0", field="quantity", value=changes["quantity"])
            changes["quantity"] = to_decimal(changes["quantity"])
        if "unit_price" in changes:
            changes["unit_price"] = round_money(changes["unit_price"])
        if "status" in changes:
            changes["status"] = LineItemStatus(changes["status"])
        if "title_id" in changes and changes["title_id"] != item.title_id:
            new_title = self._rules.titles.get(changes["title_id"])
            if new_title.budget_id != item.budget_id:
                raise ValidationError(
                    "Target title belongs to another budget",
                    field="title_id",
                    value=changes["title_id"],
                )

        old_title = item.title_id
        reparented = (
            "parent_line_item_id" in changes
            and changes["parent_line_item_id"] != item.parent_line_item_id
        )
        if reparented:
            new_parent = self._rules.parent_line_item(item.budget_id, changes["parent_line_item_id"])
            self._rules.check_line_item_move(item, changes["parent_line_item_id"])

        with self._ctx.runner.begin("line_item_update") as work:
            work.update(item, **changes)
            if reparented:
                self._rules.relevel_line_item(work, item, new_parent.level + 1 if new_parent else 1)
            priced_by_analysis = self._analysis.sync_line_item(work, item)
            if not priced_by_analysis:
                work.update(item, parcial=round_money(to_decimal(item.quantity) * to_decimal(item.unit_price)))

        self._obs.event(
            "line_item_updated",
            line_item_id=line_item_id,
            fields=sorted(changes),
            parcial=item.parcial,
            priced_by_analysis=priced_by_analysis,
        )
        self._totals.recompute_best_effort(
            [old_title, item.title_id], item.budget_id, trigger="line_item_update"
        )
        return item

    def delete(self, line_item_id: str) -> DeletedIds:
        item = self._items.get(line_item_id)
        self._rules.editable_budget(item.budget_id)
        title_id, budget_id = item.title_id, item.budget_id

        with self._ctx.runner.begin("line_item_delete") as work:
            deleted = self._rules.delete_line_item(work, item)

        self._obs.event(
            "line_item_deleted",
            line_item_id=line_item_id,
            sub_items=len(deleted.line_item_ids) - 1,
            analyses=len(deleted.analysis_ids),
        )
        self._totals.recompute_best_effort([title_id], budget_id, trigger="line_item_delete")
        return deleted
