"""
BudgetService -- budgets as a whole.

Responsibility:
    Reads of budgets and version groups, edits of a single budget's
    descriptive fields and percentages, cascading deletion and the
    hierarchical structure read used by front ends.

Architecture position:
    Services -- imperative shell.  Group-wide edits (name and percentages
    fanned out to every version) live in LifecycleManager.update_parent.

Invariants enforced:
    - tax/profit/total are re-derived whenever a percentage changes.
    - Deleting a version removes its Titles, Line Items, Analyses and
      Shared Prices.  Deleting a parent shell removes the whole group,
      including its approval requests.
    - ``get_structure`` returns frozen DTOs in display order: Titles
      depth-first by (order, id), Line Items grouped the same way.
"""

from __future__ import annotations

from decimal import Decimal

from budget_engines.totals import compute_budget_financials
from budget_engines.tree import hierarchical_order
from budget_kernel.db.types import to_decimal
from budget_kernel.domain.dtos import BudgetStructure
from budget_kernel.exceptions import ValidationError
from budget_kernel.models import (
    AnalysisModel,
    ApprovalRequestModel,
    BudgetModel,
    LineItemModel,
    SharedResourcePriceModel,
    TitleModel,
)
from budget_kernel.services.transactions import UnitOfChange
from budget_services.context import ServiceContext


class BudgetService:
    def __init__(self, ctx: ServiceContext):
        self._ctx = ctx
        self._budgets = ctx.repo(BudgetModel, "budget_id", "Budget")
        self._titles = ctx.repo(TitleModel, "title_id", "Title")
        self._items = ctx.repo(LineItemModel, "line_item_id", "LineItem")
        self._analyses = ctx.repo(AnalysisModel, "analysis_id", "Analysis")
        self._prices = ctx.repo(SharedResourcePriceModel, "price_id", "SharedResourcePrice")
        self._requests = ctx.repo(ApprovalRequestModel, "request_id", "ApprovalRequest")
        self._obs = ctx.observability.child("budgets")

    def get(self, budget_id: str) -> BudgetModel:
        return self._budgets.get(budget_id)

    def list_by_project(self, project_id: str) -> list[BudgetModel]:
        return self._budgets.list(project_id=project_id)

    def parent_of_group(self, group_id: str) -> BudgetModel | None:
        return self._budgets.first(group_id=group_id, is_parent=True)

    def list_versions(self, group_id: str) -> list[BudgetModel]:
        return self._budgets.list(order_by="version", group_id=group_id, is_parent=False)

    def update_budget(
        self,
        budget_id: str,
        name: str | None = None,
        notes: str | None = None,
        term_days: int | None = None,
        tax_percentage: Decimal | None = None,
        profit_percentage: Decimal | None = None,
        base_budget_amount: Decimal | None = None,
        offer_budget_amount: Decimal | None = None,
    ) -> BudgetModel:
        budget = self._budgets.get(budget_id)
        changes: dict[str, object] = {}
        for key, value in (
            ("name", name),
            ("notes", notes),
            ("term_days", term_days),
            ("base_budget_amount", base_budget_amount),
            ("offer_budget_amount", offer_budget_amount),
        ):
            if value is not None:
                changes[key] = value
        for key, value in (("tax_percentage", tax_percentage), ("profit_percentage", profit_percentage)):
            if value is None:
                continue
            if to_decimal(value) < 0:
                raise ValidationError(f"{key} must be >= 0", field=key, value=value)
            changes[key] = to_decimal(value)

        with self._ctx.runner.begin("budget_update") as work:
            work.update(budget, **changes)
            if {"tax_percentage", "profit_percentage"} & set(changes):
                financials = compute_budget_financials(
                    budget.parcial, budget.tax_percentage, budget.profit_percentage
                )
                work.update(budget, **financials.as_fields())

        self._obs.event("budget_updated", budget_id=budget_id, fields=sorted(changes))
        return budget

    def _delete_contents(self, work: UnitOfChange, budget_id: str) -> int:
        removed = 0
        for model_repo in (self._analyses, self._items, self._titles, self._prices):
            for row in model_repo.list(budget_id=budget_id):
                work.delete(row)
                removed += 1
        return removed

    def delete_budget(self, budget_id: str) -> list[str]:
        """
        Delete a budget and everything below it.

        Returns the ids of the deleted budgets (the whole group when
        ``budget_id`` is a parent shell).
        """
        budget = self._budgets.get(budget_id)
        if budget.is_parent:
            targets = [*self.list_versions(budget.group_id), budget]
        else:
            targets = [budget]

        with self._ctx.runner.begin("budget_delete") as work:
            removed = 0
            for target in targets:
                removed += self._delete_contents(work, target.budget_id)
            if budget.is_parent:
                for request in self._requests.list(group_id=budget.group_id):
                    work.delete(request)
            for target in targets:
                work.delete(target)

        deleted_ids = [t.budget_id for t in targets]
        self._obs.event(
            "budget_deleted",
            budget_id=budget_id,
            budgets=deleted_ids,
            rows_removed=removed,
        )
        return deleted_ids

    def get_structure(self, budget_id: str) -> BudgetStructure:
        """Snapshot of a version's tree, Analyses and prices in display order."""
        budget = self._budgets.get(budget_id)
        titles = hierarchical_order(
            self._titles.list(budget_id=budget_id),
            key_of=lambda t: t.title_id,
            parent_of=lambda t: t.parent_title_id,
            sort_key=lambda t: (t.order, t.title_id),
        )
        title_rank = {t.title_id: rank for rank, t in enumerate(titles)}
        items = hierarchical_order(
            self._items.list(budget_id=budget_id),
            key_of=lambda i: i.line_item_id,
            parent_of=lambda i: i.parent_line_item_id,
            sort_key=lambda i: (title_rank.get(i.title_id, len(title_rank)), i.order, i.line_item_id),
        )
        item_rank = {i.line_item_id: rank for rank, i in enumerate(items)}
        analyses = sorted(
            self._analyses.list(budget_id=budget_id),
            key=lambda a: (item_rank.get(a.line_item_id, len(item_rank)), a.analysis_id),
        )
        return BudgetStructure(
            budget=budget.to_dto(),
            titles=tuple(t.to_dto() for t in titles),
            line_items=tuple(i.to_dto() for i in items),
            analyses=tuple(a.to_dto() for a in analyses),
            prices=tuple(p.to_dto() for p in self._prices.list(order_by="code", budget_id=budget_id)),
        )
