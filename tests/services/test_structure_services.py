"""
Tests for the Title, Line Item and Budget services.

Each write re-derives the totals it affects; deletes cascade to everything
below the deleted node.
"""

from decimal import Decimal

import pytest

from budget_kernel.domain.values import ResourceType, TitleKind
from budget_kernel.exceptions import (
    DuplicateItemNumberError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from budget_kernel.models import AnalysisModel, LineItemModel, TitleModel
from budget_services import ResourceInput


class TestTitleService:
    def test_root_and_child_titles(self, services, draft_budget):
        root = services.titles.create(draft_budget.budget_id, "01", "Structures")
        child = services.titles.create(
            draft_budget.budget_id, "01.01", "Foundations", parent_title_id=root.title_id
        )

        assert (root.level, root.kind) == (1, TitleKind.TITLE)
        assert (child.level, child.kind) == (2, TitleKind.SUBTITLE)
        assert child.project_id == draft_budget.project_id

    def test_item_number_unique_within_version(self, services, draft_budget):
        services.titles.create(draft_budget.budget_id, "01", "Structures")
        with pytest.raises(DuplicateItemNumberError) as exc_info:
            services.titles.create(draft_budget.budget_id, "01", "Again")
        assert exc_info.value.code == "DUPLICATE_ITEM_NUMBER"

    def test_rename_to_own_number_allowed(self, services, draft_budget):
        title = services.titles.create(draft_budget.budget_id, "01", "Structures")
        updated = services.titles.update(title.title_id, item_number="01", description="Renamed")
        assert updated.description == "Renamed"

    def test_parent_shell_holds_no_structure(self, services, draft_budget):
        parent = services.budgets.parent_of_group(draft_budget.group_id)
        with pytest.raises(InvalidStateError):
            services.titles.create(parent.budget_id, "01", "Structures")

    def test_move_recomputes_old_and_new_parent(self, services, draft_budget):
        budget_id = draft_budget.budget_id
        a = services.titles.create(budget_id, "01", "A")
        b = services.titles.create(budget_id, "02", "B")
        child = services.titles.create(budget_id, "01.01", "Child", parent_title_id=a.title_id)
        services.line_items.create(child.title_id, "01.01.01", "Work", quantity=1, unit_price=Decimal("100"))
        assert services.titles.get(a.title_id).total_parcial == Decimal("100.00")

        services.titles.update(child.title_id, parent_title_id=b.title_id)

        assert services.titles.get(a.title_id).total_parcial == Decimal("0.00")
        assert services.titles.get(b.title_id).total_parcial == Decimal("100.00")
        assert services.budgets.get(budget_id).parcial == Decimal("100.00")

    def test_move_relevels_descendants(self, services, draft_budget):
        budget_id = draft_budget.budget_id
        a = services.titles.create(budget_id, "01", "A")
        b = services.titles.create(budget_id, "02", "B", parent_title_id=a.title_id)
        c = services.titles.create(budget_id, "03", "C", parent_title_id=b.title_id)

        services.titles.update(b.title_id, parent_title_id=None)

        assert services.titles.get(b.title_id).level == 1
        assert services.titles.get(c.title_id).level == 2

    def test_cannot_move_under_own_descendant(self, services, draft_budget):
        budget_id = draft_budget.budget_id
        a = services.titles.create(budget_id, "01", "A")
        b = services.titles.create(budget_id, "02", "B", parent_title_id=a.title_id)

        with pytest.raises(ValidationError):
            services.titles.update(a.title_id, parent_title_id=b.title_id)

    def test_delete_cascades_everything_below(self, services, session, priced_budget):
        budget_id = priced_budget["budget"].budget_id
        root = priced_budget["title"]
        child = services.titles.create(budget_id, "01.02", "Child", parent_title_id=root.title_id)
        services.line_items.create(child.title_id, "01.02.01", "Work", quantity=1, unit_price=Decimal("5"))

        deleted = services.titles.delete(root.title_id)

        assert set(deleted.title_ids) == {root.title_id, child.title_id}
        assert len(deleted.line_item_ids) == 2
        assert deleted.analysis_ids == [priced_budget["analysis"].analysis_id]
        assert session.get(AnalysisModel, priced_budget["analysis"].analysis_id) is None
        budget = services.budgets.get(budget_id)
        assert budget.parcial == Decimal("0.00")
        assert budget.total == Decimal("0.00")

    def test_deleting_a_root_keeps_other_roots_in_the_total(self, services, draft_budget):
        budget_id = draft_budget.budget_id
        a = services.titles.create(budget_id, "01", "A")
        b = services.titles.create(budget_id, "02", "B")
        services.line_items.create(a.title_id, "01.01", "Work", quantity=1, unit_price=Decimal("10"))
        services.line_items.create(b.title_id, "02.01", "Work", quantity=1, unit_price=Decimal("7"))

        services.titles.delete(a.title_id)

        assert services.budgets.get(budget_id).parcial == Decimal("7.00")

    def test_list_by_budget_is_depth_first(self, services, draft_budget):
        budget_id = draft_budget.budget_id
        b = services.titles.create(budget_id, "02", "B")
        a = services.titles.create(budget_id, "01", "A", order=0)
        services.titles.update(b.title_id, order=1)
        a1 = services.titles.create(budget_id, "01.01", "A1", parent_title_id=a.title_id)

        ordered = [t.title_id for t in services.titles.list_by_budget(budget_id)]
        assert ordered == [a.title_id, a1.title_id, b.title_id]


class TestLineItemService:
    @pytest.fixture
    def title(self, services, draft_budget):
        return services.titles.create(draft_budget.budget_id, "01", "Earthworks")

    def test_negative_quantity_rejected(self, services, title):
        with pytest.raises(ValidationError) as exc_info:
            services.line_items.create(title.title_id, "01.01", "Dig", quantity=Decimal("-1"))
        assert exc_info.value.field == "quantity"

    def test_unknown_title(self, services):
        with pytest.raises(NotFoundError):
            services.line_items.create("TIT9999999999", "01.01", "Dig")

    def test_price_update_without_analysis(self, services, title):
        item = services.line_items.create(title.title_id, "01.01", "Dig", quantity=Decimal("4"))
        item = services.line_items.update(item.line_item_id, unit_price=Decimal("2.5"))

        assert item.parcial == Decimal("10.00")
        assert services.titles.get(title.title_id).total_parcial == Decimal("10.00")

    def test_move_to_another_title_updates_both(self, services, draft_budget, title):
        other = services.titles.create(draft_budget.budget_id, "02", "Concrete")
        item = services.line_items.create(
            title.title_id, "01.01", "Dig", quantity=Decimal("1"), unit_price=Decimal("9")
        )

        services.line_items.update(item.line_item_id, title_id=other.title_id)

        assert services.titles.get(title.title_id).total_parcial == Decimal("0.00")
        assert services.titles.get(other.title_id).total_parcial == Decimal("9.00")

    def test_cannot_reparent_under_own_sub_item(self, services, title):
        parent = services.line_items.create(title.title_id, "01.01", "Parent")
        sub = services.line_items.create(
            title.title_id, "01.01.01", "Sub", parent_line_item_id=parent.line_item_id
        )
        assert sub.level == 2

        with pytest.raises(ValidationError):
            services.line_items.update(parent.line_item_id, parent_line_item_id=sub.line_item_id)

    def test_delete_cascades_sub_items_and_analyses(self, services, session, title):
        parent = services.line_items.create(title.title_id, "01.01", "Parent", quantity=Decimal("1"))
        sub = services.line_items.create(
            title.title_id, "01.01.01", "Sub", parent_line_item_id=parent.line_item_id
        )
        analysis = services.analyses.create_analysis(
            sub.line_item_id,
            resources=[
                ResourceInput(
                    resource_type=ResourceType.MATERIAL,
                    quantity=Decimal("1"),
                    has_price_override=True,
                    override_price=Decimal("3"),
                )
            ],
        )

        deleted = services.line_items.delete(parent.line_item_id)

        assert deleted.line_item_ids == [sub.line_item_id, parent.line_item_id]
        assert deleted.analysis_ids == [analysis.analysis_id]
        assert session.get(LineItemModel, sub.line_item_id) is None


class TestBudgetService:
    def test_update_percentages_recomputes_total(self, services, priced_budget):
        budget = services.budgets.update_budget(
            priced_budget["budget"].budget_id,
            tax_percentage=Decimal("10"),
            profit_percentage=Decimal("5"),
        )
        assert budget.tax_amount == Decimal("210.00")
        assert budget.profit_amount == Decimal("105.00")
        assert budget.total == Decimal("2415.00")

    def test_negative_percentage_rejected(self, services, draft_budget):
        with pytest.raises(ValidationError):
            services.budgets.update_budget(draft_budget.budget_id, tax_percentage=Decimal("-1"))

    def test_get_structure_orders_hierarchically(self, services, priced_budget):
        structure = services.budgets.get_structure(priced_budget["budget"].budget_id)

        assert structure.budget.total == Decimal("2478.00")
        assert [t.title_id for t in structure.titles] == [priced_budget["title"].title_id]
        assert [i.line_item_id for i in structure.line_items] == [
            priced_budget["line_item"].line_item_id
        ]
        assert structure.analyses[0].resources[0].parcial == Decimal("210.00")
        assert [p.code for p in structure.prices] == ["MAT-01"]

    def test_delete_parent_removes_whole_group(self, services, session, priced_budget):
        version = priced_budget["budget"]
        parent = services.budgets.parent_of_group(version.group_id)

        deleted = services.budgets.delete_budget(parent.budget_id)

        assert set(deleted) == {parent.budget_id, version.budget_id}
        assert services.budgets.list_by_project(version.project_id) == []
        assert session.get(TitleModel, priced_budget["title"].title_id) is None
