"""
budget_engines.unit_price -- Unit-price analysis cost calculation.

Responsibility:
    Compute the ``parcial`` of every resource line of a unit-price analysis
    and aggregate them into per-type cost buckets and the analysis
    ``direct_cost``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import budget_kernel.domain and budget_kernel.db.types.
    Consumed by budget_services.analysis_service.

Invariants enforced:
    - Resource formulas by type:
        MATERIAL     quantity_with_waste * price
        LABOR        (1 / yield) * shift_hours * crew_size * price,
                     0 when yield <= 0 or shift_hours <= 0
        EQUIPMENT    unit "%mo": sum(LABOR parcials) * quantity / 100
                     unit "hm":  same formula as LABOR (separate branch)
                     otherwise:  quantity * price
        SUBCONTRACT  quantity * price
        sub-item     quantity * sub_line_item_price
    - LABOR parcials are computed before any EQUIPMENT "%mo" line.
    - Sub-item lines count toward direct_cost but not toward type buckets.
    - Every parcial, every bucket and direct_cost is rounded with
      round_money() (ROUND_HALF_UP, 2 places) after its aggregation step.
    - Purity: identical inputs give identical outputs.

Failure modes:
    - None raised.  A line with no positive price keeps its stored parcial
      (legacy rows priced before shared prices existed).

Usage:
    from budget_engines.unit_price import ResourceLine, compute_analysis_costs

    costs = compute_analysis_costs(
        yield_per_shift=Decimal("20"),
        shift_hours=Decimal("8"),
        lines=[ResourceLine(ResourceType.LABOR, Decimal("0"), price=Decimal("15"),
                            crew_size=Decimal("2"))],
    )
    costs.direct_cost  # Decimal("12.00")
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from budget_kernel.db.types import HUNDRED, ZERO, round_money, to_decimal
from budget_kernel.domain.values import UNIT_MACHINE_HOUR, UNIT_PERCENT_LABOR, ResourceType

ONE = Decimal("1")


@dataclass(frozen=True)
class ResourceLine:
    """
    Calculation input for one resource line.

    ``price`` is the already-resolved unit price (see ``resolve_price``).
    ``stored_parcial`` is the value currently persisted, used when no
    positive price can be resolved.
    """

    resource_type: ResourceType
    quantity: Decimal
    unit: str | None = None
    waste_percentage: Decimal = ZERO
    crew_size: Decimal | None = None
    price: Decimal | None = None
    is_sub_item: bool = False
    sub_line_item_price: Decimal | None = None
    stored_parcial: Decimal = ZERO

    @property
    def normalized_unit(self) -> str:
        return (self.unit or "").strip().lower()


@dataclass(frozen=True)
class AnalysisCosts:
    """Result of an analysis calculation.  ``parcials`` follows input order."""

    parcials: tuple[Decimal, ...]
    material_cost: Decimal
    labor_cost: Decimal
    equipment_cost: Decimal
    subcontract_cost: Decimal
    sub_item_cost: Decimal
    direct_cost: Decimal


def quantity_with_waste(quantity: Decimal, waste_percentage: Decimal | None) -> Decimal:
    """quantity * (1 + waste / 100).  Not rounded."""
    return to_decimal(quantity) * (ONE + to_decimal(waste_percentage) / HUNDRED)


def resolve_price(
    has_override: bool,
    override_price: Decimal | None,
    shared_price: Decimal | None,
) -> Decimal | None:
    """
    Pick the price a resource line is valued at.

    Order: resource-level override, then the shared budget price.  Returns
    None when neither is a positive number, which tells the calculator to
    keep the stored parcial.
    """
    if has_override and override_price is not None and to_decimal(override_price) > ZERO:
        return to_decimal(override_price)
    if shared_price is not None and to_decimal(shared_price) > ZERO:
        return to_decimal(shared_price)
    return None


def labor_parcial(
    yield_per_shift: Decimal,
    shift_hours: Decimal,
    crew_size: Decimal | None,
    price: Decimal,
) -> Decimal:
    """(1 / yield) * shift_hours * crew_size * price, rounded.  0 on bad yield/shift."""
    yield_value = to_decimal(yield_per_shift)
    shift_value = to_decimal(shift_hours)
    if yield_value <= ZERO or shift_value <= ZERO:
        return round_money(ZERO)
    crew = to_decimal(crew_size) if crew_size else ONE
    return round_money(shift_value * crew * to_decimal(price) / yield_value)


def machine_hour_parcial(
    yield_per_shift: Decimal,
    shift_hours: Decimal,
    crew_size: Decimal | None,
    price: Decimal,
) -> Decimal:
    """Equipment priced per machine hour ("hm").  Same arithmetic as labor."""
    yield_value = to_decimal(yield_per_shift)
    shift_value = to_decimal(shift_hours)
    if yield_value <= ZERO or shift_value <= ZERO:
        return round_money(ZERO)
    crew = to_decimal(crew_size) if crew_size else ONE
    return round_money(shift_value * crew * to_decimal(price) / yield_value)


def percent_of_labor_parcial(labor_total: Decimal, quantity: Decimal) -> Decimal:
    """Equipment priced as a percentage of the analysis labor ("%mo")."""
    return round_money(to_decimal(labor_total) * to_decimal(quantity) / HUNDRED)


def resource_parcial(
    line: ResourceLine,
    yield_per_shift: Decimal,
    shift_hours: Decimal,
    labor_total: Decimal = ZERO,
) -> Decimal:
    """
    Parcial of a single line.

    ``labor_total`` must already hold the sum of LABOR parcials of the same
    analysis when ``line`` is EQUIPMENT with unit "%mo".
    """
    if line.is_sub_item:
        if line.sub_line_item_price is None:
            return round_money(line.stored_parcial)
        return round_money(to_decimal(line.quantity) * to_decimal(line.sub_line_item_price))

    if line.resource_type is ResourceType.EQUIPMENT and line.normalized_unit == UNIT_PERCENT_LABOR:
        return percent_of_labor_parcial(labor_total, line.quantity)

    if line.price is None or to_decimal(line.price) <= ZERO:
        return round_money(line.stored_parcial)
    price = to_decimal(line.price)

    if line.resource_type is ResourceType.MATERIAL:
        return round_money(quantity_with_waste(line.quantity, line.waste_percentage) * price)
    if line.resource_type is ResourceType.LABOR:
        return labor_parcial(yield_per_shift, shift_hours, line.crew_size, price)
    if line.resource_type is ResourceType.EQUIPMENT:
        if line.normalized_unit == UNIT_MACHINE_HOUR:
            return machine_hour_parcial(yield_per_shift, shift_hours, line.crew_size, price)
        return round_money(to_decimal(line.quantity) * price)
    return round_money(to_decimal(line.quantity) * price)


def compute_analysis_costs(
    yield_per_shift: Decimal,
    shift_hours: Decimal,
    lines: Sequence[ResourceLine],
) -> AnalysisCosts:
    """
    Compute parcials and cost buckets for all lines of one analysis.

    Two passes: LABOR lines first so that EQUIPMENT "%mo" lines can use
    their sum, then every other line.
    """
    parcials: list[Decimal | None] = [None] * len(lines)

    for idx, line in enumerate(lines):
        if line.resource_type is ResourceType.LABOR:
            parcials[idx] = resource_parcial(line, yield_per_shift, shift_hours)

    labor_total = sum(
        (p for p, line in zip(parcials, lines)
         if p is not None and line.resource_type is ResourceType.LABOR and not line.is_sub_item),
        ZERO,
    )

    for idx, line in enumerate(lines):
        if parcials[idx] is None:
            parcials[idx] = resource_parcial(line, yield_per_shift, shift_hours, labor_total)

    final = tuple(p if p is not None else ZERO for p in parcials)
    return aggregate_costs(lines, final)


def aggregate_costs(
    lines: Sequence[ResourceLine],
    parcials: Sequence[Decimal],
) -> AnalysisCosts:
    """Bucket already-computed parcials by type and total them."""
    buckets = {rtype: ZERO for rtype in ResourceType}
    sub_items = ZERO
    for line, parcial in zip(lines, parcials):
        if line.is_sub_item:
            sub_items += parcial
        else:
            buckets[line.resource_type] += parcial

    material = round_money(buckets[ResourceType.MATERIAL])
    labor = round_money(buckets[ResourceType.LABOR])
    equipment = round_money(buckets[ResourceType.EQUIPMENT])
    subcontract = round_money(buckets[ResourceType.SUBCONTRACT])
    sub_item_cost = round_money(sub_items)
    direct = round_money(material + labor + equipment + subcontract + sub_item_cost)

    return AnalysisCosts(
        parcials=tuple(parcials),
        material_cost=material,
        labor_cost=labor,
        equipment_cost=equipment,
        subcontract_cost=subcontract,
        sub_item_cost=sub_item_cost,
        direct_cost=direct,
    )


def line_item_pricing(quantity: Decimal, direct_cost: Decimal) -> tuple[Decimal, Decimal]:
    """(unit_price, parcial) for a line item priced by its analysis."""
    unit_price = round_money(direct_cost)
    return unit_price, round_money(to_decimal(quantity) * unit_price)
