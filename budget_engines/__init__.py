"""
Module: budget_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines used by
    budget_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import budget_kernel.domain, budget_kernel.db.types and
    budget_kernel.exceptions.  MUST NOT import budget_services.

Invariants enforced:
    - Decimal-only arithmetic with round_money() at every aggregation step.
    - Determinism: identical inputs always produce identical outputs.
"""

from budget_engines.totals import (
    BudgetFinancials,
    budget_parcial,
    compute_budget_financials,
    title_total,
)
from budget_engines.tree import (
    ParentFirstOrder,
    collect_descendants,
    hierarchical_order,
    parent_first_order,
    walk_ancestors,
)
from budget_engines.unit_price import (
    AnalysisCosts,
    ResourceLine,
    compute_analysis_costs,
    line_item_pricing,
    quantity_with_waste,
    resolve_price,
)

__all__ = [
    "AnalysisCosts",
    "BudgetFinancials",
    "ParentFirstOrder",
    "ResourceLine",
    "budget_parcial",
    "collect_descendants",
    "compute_analysis_costs",
    "compute_budget_financials",
    "hierarchical_order",
    "line_item_pricing",
    "parent_first_order",
    "quantity_with_waste",
    "resolve_price",
    "title_total",
    "walk_ancestors",
]
