"""
Tests for hierarchical totals (budget_services/totals_service.py).

A Title total is the sum of its top-level Line Items plus its child Titles;
the Budget parcial is the sum of its root Titles, with tax and profit
derived from it.
"""

from decimal import Decimal

import pytest

from budget_kernel.exceptions import CycleDetectedError
from budget_kernel.models import BudgetModel, TitleModel


class TestAscendingRecompute:
    def test_line_item_flows_to_title_and_budget(self, services, draft_budget):
        title = services.titles.create(draft_budget.budget_id, "01", "Earthworks")
        item = services.line_items.create(
            title.title_id, "01.01", "Excavation", quantity=Decimal("10"), unit_price=Decimal("25.5")
        )

        assert item.parcial == Decimal("255.00")
        assert services.titles.get(title.title_id).total_parcial == Decimal("255.00")
        budget = services.budgets.get(draft_budget.budget_id)
        assert budget.parcial == Decimal("255.00")
        assert budget.tax_amount == Decimal("45.90")
        assert budget.profit_amount == Decimal("0.00")
        assert budget.total == Decimal("300.90")

    def test_child_titles_roll_up_through_every_ancestor(self, services, draft_budget):
        budget_id = draft_budget.budget_id
        root = services.titles.create(budget_id, "01", "Structures")
        child = services.titles.create(budget_id, "01.01", "Foundations", parent_title_id=root.title_id)
        grandchild = services.titles.create(
            budget_id, "01.01.01", "Footings", parent_title_id=child.title_id
        )
        services.line_items.create(root.title_id, "01.90", "Cleanup", quantity=1, unit_price=Decimal("50"))
        services.line_items.create(
            grandchild.title_id, "01.01.01.01", "Concrete", quantity=2, unit_price=Decimal("40")
        )

        assert services.titles.get(grandchild.title_id).total_parcial == Decimal("80.00")
        assert services.titles.get(child.title_id).total_parcial == Decimal("80.00")
        assert services.titles.get(root.title_id).total_parcial == Decimal("130.00")
        assert services.budgets.get(budget_id).parcial == Decimal("130.00")

    def test_sub_items_are_not_counted_in_the_title(self, services, draft_budget):
        title = services.titles.create(draft_budget.budget_id, "01", "Walls")
        parent = services.line_items.create(
            title.title_id, "01.01", "Masonry", quantity=1, unit_price=Decimal("100")
        )
        services.line_items.create(
            title.title_id,
            "01.01.01",
            "Bricks",
            quantity=1,
            unit_price=Decimal("30"),
            parent_line_item_id=parent.line_item_id,
        )

        assert services.titles.get(title.title_id).total_parcial == Decimal("100.00")

    def test_events_report_titles_updated(self, services, draft_budget, recorder):
        title = services.titles.create(draft_budget.budget_id, "01", "Earthworks")
        recorder.clear()
        services.totals.recompute_ascending(title.title_id)

        event = recorder.named("totals_recomputed")[0]
        assert event.fields["titles_updated"] == 1
        assert event.fields["budget_id"] == draft_budget.budget_id


class TestFullRecompute:
    def test_recompute_is_idempotent(self, services, priced_budget):
        budget_id = priced_budget["budget"].budget_id
        first = services.totals.recompute_budget(budget_id)
        snapshot = (first.parcial, first.tax_amount, first.profit_amount, first.total)
        second = services.totals.recompute_budget(budget_id)

        assert (second.parcial, second.tax_amount, second.profit_amount, second.total) == snapshot
        assert second.parcial == Decimal("2100.00")

    def test_repairs_stale_title_totals(self, services, session, priced_budget):
        title = session.get(TitleModel, priced_budget["title"].title_id)
        title.total_parcial = Decimal("1")
        session.flush()

        budget = services.totals.recompute_budget(priced_budget["budget"].budget_id)
        assert session.get(TitleModel, title.title_id).total_parcial == Decimal("2100.00")
        assert budget.total == Decimal("2478.00")


class TestCycles:
    def _make_cycle(self, services, session, budget_id):
        a = services.titles.create(budget_id, "01", "A")
        b = services.titles.create(budget_id, "02", "B", parent_title_id=a.title_id)
        session.get(TitleModel, a.title_id).parent_title_id = b.title_id
        session.flush()
        return a, b

    def test_cycle_raises_and_changes_nothing(self, services, session, draft_budget):
        a, _ = self._make_cycle(services, session, draft_budget.budget_id)
        before = session.get(BudgetModel, draft_budget.budget_id).total

        with pytest.raises(CycleDetectedError):
            services.totals.recompute_ascending(a.title_id)

        assert session.get(BudgetModel, draft_budget.budget_id).total == before

    def test_best_effort_recompute_logs_and_swallows(self, services, session, draft_budget, recorder):
        a, _ = self._make_cycle(services, session, draft_budget.budget_id)
        recorder.clear()

        services.totals.recompute_best_effort([a.title_id], draft_budget.budget_id, trigger="test")

        failures = recorder.named("totals_recompute_failed")
        assert len(failures) == 1
        assert failures[0].fields["trigger"] == "test"
        assert isinstance(failures[0].exc, CycleDetectedError)
