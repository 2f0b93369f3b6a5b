"""
budget_engines.totals -- Title and budget aggregate formulas.

Responsibility:
    The arithmetic of the hierarchical totals: a title's total_parcial from
    its direct children, and a budget's parcial, tax, profit and total from
    its root titles and percentages.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumed by budget_services.totals_service and by every service that
    changes budget percentages.

Invariants enforced:
    - title.total_parcial == round(sum(top-level line item parcials) +
      sum(child title totals), 2)
    - budget.tax == round(parcial * tax% / 100, 2)
    - budget.profit == round(parcial * profit% / 100, 2)
    - budget.total == round(parcial + tax + profit, 2)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from budget_kernel.db.types import ZERO, percent_of, round_money, to_decimal


@dataclass(frozen=True)
class BudgetFinancials:
    parcial: Decimal
    tax_amount: Decimal
    profit_amount: Decimal
    total: Decimal

    def as_fields(self) -> dict[str, Decimal]:
        return {
            "parcial": self.parcial,
            "tax_amount": self.tax_amount,
            "profit_amount": self.profit_amount,
            "total": self.total,
        }


def title_total(
    line_item_parcials: Iterable[Decimal],
    child_title_totals: Iterable[Decimal],
) -> Decimal:
    """Total of a title from its top-level line items and its child titles."""
    items = sum((to_decimal(p) for p in line_item_parcials), ZERO)
    children = sum((to_decimal(t) for t in child_title_totals), ZERO)
    return round_money(items + children)


def compute_budget_financials(
    parcial: Decimal,
    tax_percentage: Decimal | None,
    profit_percentage: Decimal | None,
) -> BudgetFinancials:
    """Derive tax, profit and total from a parcial and the two percentages."""
    base = round_money(parcial)
    tax = percent_of(base, tax_percentage or ZERO)
    profit = percent_of(base, profit_percentage or ZERO)
    return BudgetFinancials(
        parcial=base,
        tax_amount=tax,
        profit_amount=profit,
        total=round_money(base + tax + profit),
    )


def budget_parcial(root_title_totals: Iterable[Decimal]) -> Decimal:
    """Budget parcial from its root titles."""
    return round_money(sum((to_decimal(t) for t in root_title_totals), ZERO))
