"""
TotalsService -- hierarchical totals propagation.

Responsibility:
    Keeps Title ``total_parcial`` and Budget ``parcial/tax/profit/total``
    consistent after any change to a Line Item or Title.  Walks from the
    changed Title up to its root, then re-derives the Budget financials.

Architecture position:
    Services -- imperative shell around budget_engines.totals and
    budget_engines.tree.

Invariants enforced:
    - title.total_parcial == round(sum(top-level Line Item parcials) +
      sum(child Title totals), 2)
    - budget.parcial == round(sum(root Title totals), 2) and
      tax/profit/total derive from it.
    - The ancestor walk is iterative with a visited set; a revisit raises
      CycleDetectedError and the whole walk is rolled back.
    - Every walk runs inside one unit of change.

Failure modes:
    - CycleDetectedError on a Title parent cycle.
    - NotFoundError for an unknown Title or Budget.
    - ``recompute_best_effort`` never raises: failures are logged as
      ``totals_recompute_failed`` so the primary write that triggered the
      recompute still stands.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.exc import SQLAlchemyError

from budget_engines.totals import budget_parcial, compute_budget_financials, title_total
from budget_engines.tree import hierarchical_order, walk_ancestors
from budget_kernel.exceptions import BudgetKernelError
from budget_kernel.models import BudgetModel, LineItemModel, TitleModel
from budget_kernel.services.transactions import UnitOfChange
from budget_services.context import ServiceContext


class TotalsService:
    """
    Recomputes derived totals.

    Contract:
        ``recompute_ascending(title_id)`` updates the Title, every ancestor
        and the Budget, and returns the Budget.

    Non-goals:
        - Does NOT recompute Line Item parcials or Analyses; those are
          inputs here (see AnalysisService).
    """

    def __init__(self, ctx: ServiceContext):
        self._ctx = ctx
        self._titles = ctx.repo(TitleModel, "title_id", "Title")
        self._items = ctx.repo(LineItemModel, "line_item_id", "LineItem")
        self._budgets = ctx.repo(BudgetModel, "budget_id", "Budget")
        self._obs = ctx.observability.child("totals")

    def _parent_of(self, title_id: str) -> str | None:
        title = self._titles.find(title_id)
        if title is None or title.parent_title_id is None:
            return None
        # A dangling parent reference ends the walk as if the Title were a root.
        if self._titles.find(title.parent_title_id) is None:
            return None
        return title.parent_title_id

    def _recompute_title(self, unit: UnitOfChange, title: TitleModel) -> None:
        items = self._items.sum("parcial", title_id=title.title_id, parent_line_item_id=None)
        children = self._titles.sum("total_parcial", parent_title_id=title.title_id)
        unit.update(title, total_parcial=title_total([items], [children]))

    def _recompute_financials(self, unit: UnitOfChange, budget_id: str) -> BudgetModel:
        budget = self._budgets.get(budget_id)
        roots = self._titles.sum("total_parcial", budget_id=budget_id, parent_title_id=None)
        financials = compute_budget_financials(
            budget_parcial([roots]), budget.tax_percentage, budget.profit_percentage
        )
        unit.update(budget, **financials.as_fields())
        return budget

    def recompute_ascending(self, title_id: str, budget_id: str | None = None) -> BudgetModel:
        """Recompute ``title_id``, each ancestor up to the root, then the Budget."""
        with self._ctx.runner.begin("totals_recompute") as unit:
            start = self._titles.get(title_id)
            budget_id = budget_id or start.budget_id
            visited = []
            for current_id in walk_ancestors(title_id, self._parent_of):
                self._recompute_title(unit, self._titles.get(current_id))
                visited.append(current_id)
            budget = self._recompute_financials(unit, budget_id)

        self._obs.event(
            "totals_recomputed",
            title_id=title_id,
            budget_id=budget_id,
            titles_updated=len(visited),
            budget_total=budget.total,
        )
        return budget

    def recompute_titles(self, title_ids: Iterable[str | None], budget_id: str) -> BudgetModel:
        """
        Recompute a set of Titles and their ancestors, each exactly once.

        Titles are processed children-first so every parent sees final child
        totals; the Budget is re-derived once at the end.
        """
        with self._ctx.runner.begin("totals_recompute_set") as unit:
            closure: set[str] = set()
            for title_id in dict.fromkeys(title_ids):
                if title_id and self._titles.find(title_id) is not None:
                    closure.update(walk_ancestors(title_id, self._parent_of))
            ordered = hierarchical_order(
                self._titles.list(budget_id=budget_id),
                key_of=lambda t: t.title_id,
                parent_of=lambda t: t.parent_title_id,
                sort_key=lambda t: (t.order, t.title_id),
            )
            for title in reversed(ordered):
                if title.title_id in closure:
                    self._recompute_title(unit, title)
            budget = self._recompute_financials(unit, budget_id)

        self._obs.event(
            "totals_recomputed",
            budget_id=budget_id,
            titles_updated=len(closure),
            budget_total=budget.total,
        )
        return budget

    def recompute_budget_financials(self, budget_id: str) -> BudgetModel:
        """Re-derive the Budget from its current root Title totals."""
        with self._ctx.runner.begin("budget_financials_recompute") as unit:
            return self._recompute_financials(unit, budget_id)

    def recompute_budget(self, budget_id: str) -> BudgetModel:
        """Recompute every Title of the Budget bottom-up, then the Budget."""
        with self._ctx.runner.begin("budget_full_recompute") as unit:
            titles = self._titles.list(budget_id=budget_id)
            ordered = hierarchical_order(
                titles,
                key_of=lambda t: t.title_id,
                parent_of=lambda t: t.parent_title_id,
                sort_key=lambda t: (t.order, t.title_id),
            )
            # Pre-order reversed puts every child before its parent.
            for title in reversed(ordered):
                self._recompute_title(unit, title)
            budget = self._recompute_financials(unit, budget_id)

        self._obs.event(
            "budget_recomputed",
            budget_id=budget_id,
            titles_updated=len(titles),
            budget_total=budget.total,
        )
        return budget

    def recompute_best_effort(
        self,
        title_ids: Iterable[str | None],
        budget_id: str,
        trigger: str,
    ) -> None:
        """
        Propagate totals after a primary write without failing it.

        Each distinct Title is walked once.  With no live Title left (the
        last root was deleted) the Budget is re-derived directly.
        """
        live = [t for t in dict.fromkeys(title_ids) if t and self._titles.find(t) is not None]
        try:
            if not live:
                self.recompute_budget_financials(budget_id)
            for title_id in live:
                self.recompute_ascending(title_id, budget_id)
        except (BudgetKernelError, SQLAlchemyError) as exc:
            self._obs.failure(
                "totals_recompute_failed",
                exc,
                budget_id=budget_id,
                title_ids=live,
                trigger=trigger,
            )
