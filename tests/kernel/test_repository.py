"""Tests for the generic keyed repository (budget_kernel/services/repository.py)."""

from decimal import Decimal

import pytest

from budget_kernel.domain.values import LineItemStatus
from budget_kernel.exceptions import NotFoundError
from budget_kernel.models import LineItemModel
from budget_kernel.services.repository import Repository


def _item(line_item_id: str, title_id: str = "TIT0000000001", parent=None, parcial="10") -> LineItemModel:
    return LineItemModel(
        line_item_id=line_item_id,
        budget_id="PTO0000000002",
        project_id="PRY0000000001",
        title_id=title_id,
        parent_line_item_id=parent,
        level=2 if parent else 1,
        item_number=line_item_id[-4:],
        description="Item",
        quantity=Decimal("1"),
        unit_price=Decimal(parcial),
        parcial=Decimal(parcial),
        order=0,
        status=LineItemStatus.ACTIVE,
    )


@pytest.fixture
def repo(session):
    repo = Repository(session, LineItemModel, "line_item_id", "LineItem")
    repo.add_all(
        [
            _item("PAR0000000001", parcial="10"),
            _item("PAR0000000002", parcial="20.50"),
            _item("PAR0000000003", parent="PAR0000000001", parcial="5"),
            _item("PAR0000000004", title_id="TIT0000000002", parcial="1"),
        ]
    )
    return repo


class TestLookup:
    def test_get_unknown_key_raises_with_label(self, repo):
        with pytest.raises(NotFoundError) as exc_info:
            repo.get("PAR9999999999")
        assert exc_info.value.entity == "LineItem"
        assert exc_info.value.key == "PAR9999999999"

    def test_find_unknown_key_returns_none(self, repo):
        assert repo.find("PAR9999999999") is None


class TestFilters:
    def test_none_filter_means_is_null(self, repo):
        top_level = repo.list(title_id="TIT0000000001", parent_line_item_id=None)
        assert [i.line_item_id for i in top_level] == ["PAR0000000001", "PAR0000000002"]

    def test_list_filter_means_in(self, repo):
        rows = repo.list(line_item_id=["PAR0000000002", "PAR0000000004"])
        assert [i.line_item_id for i in rows] == ["PAR0000000002", "PAR0000000004"]

    def test_exists_can_exclude_a_key(self, repo):
        assert repo.exists(item_number="0001")
        assert not repo.exists(exclude_key="PAR0000000001", item_number="0001")

    def test_first_orders_by_key(self, repo):
        assert repo.first(title_id="TIT0000000001").line_item_id == "PAR0000000001"


class TestAggregates:
    def test_sum_of_matching_rows(self, repo):
        total = repo.sum("parcial", title_id="TIT0000000001", parent_line_item_id=None)
        assert total == Decimal("30.50")

    def test_sum_without_rows_is_zero(self, repo):
        assert repo.sum("parcial", title_id="TIT0000009999") == Decimal("0")

    def test_max(self, repo):
        assert repo.max("level") == 2


class TestWrites:
    def test_delete_where_returns_count(self, repo):
        assert repo.delete_where(title_id="TIT0000000001") == 3
        assert [i.line_item_id for i in repo.list()] == ["PAR0000000004"]

    def test_update_sets_fields(self, repo):
        item = repo.update(repo.get("PAR0000000004"), description="Renamed")
        assert repo.get(item.line_item_id).description == "Renamed"
