"""
Property-based tests for the pricing and aggregation engines.

Generated inputs check the arithmetic contracts the services rely on:
every derived amount is rounded to cents, buckets add up to the direct
cost, and tax/profit never change the parcial they are derived from.
"""

from decimal import Decimal

from hypothesis import given, settings, strategies as st

from budget_engines.totals import compute_budget_financials, title_total
from budget_engines.unit_price import (
    ResourceLine,
    compute_analysis_costs,
    line_item_pricing,
)
from budget_kernel.domain.values import ResourceType

CENT = Decimal("0.01")

amounts = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100000"),
    places=4,
    allow_nan=False,
    allow_infinity=False,
)
positive = st.decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("1000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)
percentages = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)


@st.composite
def resource_lines(draw):
    resource_type = draw(st.sampled_from(list(ResourceType)))
    unit = draw(st.sampled_from(["und", "m3", "hh", "hm", "%mo"]))
    return ResourceLine(
        resource_type=resource_type,
        quantity=draw(amounts),
        unit=unit,
        waste_percentage=draw(percentages),
        crew_size=draw(st.one_of(st.none(), positive)),
        price=draw(st.one_of(st.none(), positive)),
        stored_parcial=draw(amounts),
    )


def _is_cents(value: Decimal) -> bool:
    return value == value.quantize(CENT)


class TestAnalysisCostProperties:
    @given(
        yield_per_shift=positive,
        shift_hours=positive,
        lines=st.lists(resource_lines(), max_size=8),
    )
    @settings(max_examples=200, deadline=None)
    def test_buckets_add_up_to_direct_cost(self, yield_per_shift, shift_hours, lines):
        costs = compute_analysis_costs(yield_per_shift, shift_hours, lines)

        assert len(costs.parcials) == len(lines)
        assert all(_is_cents(p) for p in costs.parcials)
        assert costs.direct_cost == (
            costs.material_cost
            + costs.labor_cost
            + costs.equipment_cost
            + costs.subcontract_cost
            + costs.sub_item_cost
        )

    @given(yield_per_shift=positive, shift_hours=positive, lines=st.lists(resource_lines(), max_size=8))
    @settings(max_examples=100, deadline=None)
    def test_line_order_does_not_change_direct_cost(self, yield_per_shift, shift_hours, lines):
        forward = compute_analysis_costs(yield_per_shift, shift_hours, lines)
        backward = compute_analysis_costs(yield_per_shift, shift_hours, list(reversed(lines)))
        assert forward.direct_cost == backward.direct_cost


class TestLineItemPricingProperties:
    @given(quantity=amounts, direct_cost=amounts)
    @settings(max_examples=200, deadline=None)
    def test_parcial_is_quantity_times_rounded_unit_price(self, quantity, direct_cost):
        unit_price, parcial = line_item_pricing(quantity, direct_cost)
        assert _is_cents(unit_price)
        assert _is_cents(parcial)
        assert abs(parcial - quantity * unit_price) <= Decimal("0.005")


class TestFinancialProperties:
    @given(parcial=amounts, tax=percentages, profit=percentages)
    @settings(max_examples=200, deadline=None)
    def test_total_is_parcial_plus_tax_plus_profit(self, parcial, tax, profit):
        financials = compute_budget_financials(parcial, tax, profit)
        assert financials.total == financials.parcial + financials.tax_amount + financials.profit_amount
        assert financials.tax_amount >= 0
        assert financials.profit_amount >= 0

    @given(items=st.lists(amounts, max_size=10), children=st.lists(amounts, max_size=10))
    @settings(max_examples=100, deadline=None)
    def test_title_total_is_order_independent(self, items, children):
        assert title_total(items, children) == title_total(
            list(reversed(items)), list(reversed(children))
        )
