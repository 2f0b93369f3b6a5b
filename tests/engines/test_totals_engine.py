"""Tests for title and budget aggregation (budget_engines/totals.py)."""

from decimal import Decimal

from budget_engines.totals import (
    BudgetFinancials,
    budget_parcial,
    compute_budget_financials,
    title_total,
)


class TestTitleTotal:
    def test_sums_line_items_and_child_titles(self):
        total = title_total([Decimal("100.10"), Decimal("0.20")], [Decimal("50")])
        assert total == Decimal("150.30")

    def test_empty_title_is_zero(self):
        assert title_total([], []) == Decimal("0.00")


class TestBudgetFinancials:
    def test_tax_and_profit_on_parcial(self):
        financials = compute_budget_financials(Decimal("1000"), Decimal("18"), Decimal("10"))
        assert financials == BudgetFinancials(
            parcial=Decimal("1000.00"),
            tax_amount=Decimal("180.00"),
            profit_amount=Decimal("100.00"),
            total=Decimal("1280.00"),
        )

    def test_missing_percentages_count_as_zero(self):
        financials = compute_budget_financials(Decimal("99.99"), None, None)
        assert financials.tax_amount == Decimal("0.00")
        assert financials.total == Decimal("99.99")

    def test_amounts_round_half_up(self):
        financials = compute_budget_financials(Decimal("0.25"), Decimal("18"), Decimal("0"))
        # 0.25 * 0.18 = 0.045 -> 0.05
        assert financials.tax_amount == Decimal("0.05")
        assert financials.total == Decimal("0.30")

    def test_as_fields_matches_budget_columns(self):
        fields = compute_budget_financials(Decimal("10"), Decimal("18"), Decimal("0")).as_fields()
        assert set(fields) == {"parcial", "tax_amount", "profit_amount", "total"}


class TestBudgetParcial:
    def test_sums_root_titles(self):
        assert budget_parcial([Decimal("1.005"), Decimal("2")]) == Decimal("3.01")
