"""
AnalysisService -- Unit-Price Analyses and their Resources.

Responsibility:
    Create, edit and delete Analyses and Resource lines, recompute them
    with budget_engines.unit_price, and push the resulting direct cost into
    the owning Line Item (``unit_price`` and ``parcial``) and up the totals
    tree.  Also runs the bulk recompute that follows a Shared Resource
    Price change, and creates nested sub-items together with their
    Analyses and the parent lines that consume them.

Architecture position:
    Services -- imperative shell.  Persistence here, arithmetic in
    budget_engines.unit_price.

Invariants enforced:
    - At most one Analysis per Line Item (checked on create).
    - After any recompute the Line Item has
      unit_price == round(direct_cost, 2) and
      parcial == round(quantity * unit_price, 2).
    - A bulk recompute touches every affected Analysis, Line Item and
      Title inside one unit of change; a failure undoes all of it.
    - Each affected Title is recomputed once per bulk recompute.
    - Sub-item creation is one unit of change: Line Items, Analyses,
      parent lines and totals are written together or not at all.

Failure modes:
    - NotFoundError for unknown Analysis, Line Item or Resource position.
    - ValidationError for a second Analysis on one Line Item or a negative
      quantity, yield or shift.
    - CircularReferenceError when sub-item temp ids reference each other
      in a cycle.
    - Totals propagation after a single-Analysis recompute is best-effort
      (see TotalsService.recompute_best_effort).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, fields
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select

from budget_engines.tree import parent_first_order
from budget_engines.unit_price import (
    AnalysisCosts,
    ResourceLine,
    compute_analysis_costs,
    line_item_pricing,
    quantity_with_waste,
    resolve_price,
)
from budget_kernel.db.types import ZERO, to_decimal
from budget_kernel.domain.values import IdKind, LineItemStatus, ResourceType
from budget_kernel.exceptions import CircularReferenceError, NotFoundError, ValidationError
from budget_kernel.models import (
    AnalysisModel,
    AnalysisResourceModel,
    LineItemModel,
    SharedResourcePriceModel,
)
from budget_kernel.services.transactions import UnitOfChange
from budget_services.context import ServiceContext
from budget_services.structure import StructureRules
from budget_services.totals_service import TotalsService

DEFAULT_YIELD_PER_SHIFT = Decimal("1")
DEFAULT_SHIFT_HOURS = Decimal("8")


@dataclass(frozen=True)
class ResourceInput:
    """Caller-supplied fields of one Resource line."""

    resource_type: ResourceType
    quantity: Decimal
    unit: str | None = None
    description: str | None = None
    resource_id: str | None = None
    resource_code: str | None = None
    price_id: str | None = None
    waste_percentage: Decimal = ZERO
    crew_size: Decimal | None = None
    sub_line_item_id: str | None = None
    sub_line_item_price: Decimal | None = None
    has_price_override: bool = False
    override_price: Decimal | None = None

    def column_values(self) -> dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["resource_type"] = ResourceType(self.resource_type)
        return values


@dataclass(frozen=True)
class SubItemCreate:
    """
    A Line Item nested under another one and priced by its own Analysis.

    ``parent_line_item_id`` is an existing Line Item or the ``temp_id`` of
    another entry of the same call.  With ``quantity_in_parent`` set, the
    parent's Analysis gets a line consuming that quantity of the sub-item.
    """

    temp_id: str
    parent_line_item_id: str
    description: str
    unit: str | None = None
    quantity: Decimal = ZERO
    item_number: str | None = None
    yield_per_shift: Decimal = DEFAULT_YIELD_PER_SHIFT
    shift_hours: Decimal = DEFAULT_SHIFT_HOURS
    resources: Sequence[ResourceInput] = ()
    quantity_in_parent: Decimal | None = None


@dataclass(frozen=True)
class SubItemsCreated:
    """temp_id -> allocated id of each new Line Item and of its Analysis."""

    line_item_ids: Mapping[str, str]
    analysis_ids: Mapping[str, str]


_EDITABLE_RESOURCE_FIELDS = frozenset(f.name for f in fields(ResourceInput))
_DECIMAL_RESOURCE_FIELDS = frozenset(
    {"quantity", "waste_percentage", "crew_size", "sub_line_item_price", "override_price"}
)


def _check_non_negative(name: str, value: Any) -> None:
    if value is not None and to_decimal(value) < ZERO:
        raise ValidationError(f"{name} must be >= 0", field=name, value=value)


class AnalysisService:
    """
    Unit-Price Analysis maintenance.

    Contract:
        Every mutating method recomputes the Analysis, syncs its Line Item
        and propagates totals before returning the Analysis.
    """

    def __init__(
        self,
        ctx: ServiceContext,
        totals: TotalsService | None = None,
        rules: StructureRules | None = None,
    ):
        self._ctx = ctx
        self._totals = totals or TotalsService(ctx)
        self._rules = rules or StructureRules(ctx)
        self._analyses = ctx.repo(AnalysisModel, "analysis_id", "Analysis")
        self._items = ctx.repo(LineItemModel, "line_item_id", "LineItem")
        self._prices = ctx.repo(SharedResourcePriceModel, "price_id", "SharedResourcePrice")
        self._obs = ctx.observability.child("analysis")

    # -- reads -----------------------------------------------------------------

    def get(self, analysis_id: str) -> AnalysisModel:
        return self._analyses.get(analysis_id)

    def get_by_line_item(self, line_item_id: str) -> AnalysisModel | None:
        return self._analyses.first(line_item_id=line_item_id)

    def list_by_budget(self, budget_id: str) -> list[AnalysisModel]:
        return self._analyses.list(budget_id=budget_id)

    # -- calculation -----------------------------------------------------------

    def _price_map(self, budget_id: str, price_ids: Sequence[str | None]) -> dict[str, Decimal]:
        wanted = sorted({p for p in price_ids if p})
        if not wanted:
            return {}
        rows = self._prices.list(budget_id=budget_id, price_id=wanted)
        return {row.price_id: row.price for row in rows}

    @staticmethod
    def _line_for(resource: AnalysisResourceModel, prices: dict[str, Decimal]) -> ResourceLine:
        return ResourceLine(
            resource_type=resource.resource_type,
            quantity=to_decimal(resource.quantity),
            unit=resource.unit,
            waste_percentage=to_decimal(resource.waste_percentage),
            crew_size=resource.crew_size,
            price=resolve_price(
                resource.has_price_override,
                resource.override_price,
                prices.get(resource.price_id) if resource.price_id else None,
            ),
            is_sub_item=resource.sub_line_item_id is not None,
            sub_line_item_price=resource.sub_line_item_price,
            stored_parcial=to_decimal(resource.parcial),
        )

    def _apply_costs(self, unit: UnitOfChange, analysis: AnalysisModel) -> AnalysisCosts:
        prices = self._price_map(analysis.budget_id, [r.price_id for r in analysis.resources])
        lines = [self._line_for(r, prices) for r in analysis.resources]
        costs = compute_analysis_costs(analysis.yield_per_shift, analysis.shift_hours, lines)
        for resource, parcial in zip(analysis.resources, costs.parcials):
            unit.update(
                resource,
                parcial=parcial,
                quantity_with_waste=quantity_with_waste(
                    resource.quantity, resource.waste_percentage
                ),
            )
        unit.update(
            analysis,
            material_cost=costs.material_cost,
            labor_cost=costs.labor_cost,
            equipment_cost=costs.equipment_cost,
            subcontract_cost=costs.subcontract_cost,
            direct_cost=costs.direct_cost,
        )
        return costs

    def _sync_line_item(
        self, unit: UnitOfChange, analysis: AnalysisModel, direct_cost: Decimal
    ) -> LineItemModel | None:
        item = self._items.find(analysis.line_item_id)
        if item is None:
            self._obs.warning(
                "analysis_line_item_missing",
                analysis_id=analysis.analysis_id,
                line_item_id=analysis.line_item_id,
            )
            return None
        unit_price, parcial = line_item_pricing(item.quantity, direct_cost)
        unit.update(item, unit_price=unit_price, parcial=parcial)
        return item

    def _recompute_and_propagate(self, analysis_id: str, trigger: str) -> AnalysisModel:
        with self._ctx.runner.begin("analysis_recompute") as unit:
            analysis = self._analyses.get(analysis_id)
            costs = self._apply_costs(unit, analysis)
            item = self._sync_line_item(unit, analysis, costs.direct_cost)

        self._obs.event(
            "analysis_recomputed",
            analysis_id=analysis_id,
            line_item_id=analysis.line_item_id,
            direct_cost=costs.direct_cost,
            trigger=trigger,
        )
        if item is not None:
            self._totals.recompute_best_effort([item.title_id], item.budget_id, trigger=trigger)
        return analysis

    def recompute(self, analysis_id: str) -> AnalysisModel:
        """Recompute one Analysis, its Line Item and the totals above it."""
        return self._recompute_and_propagate(analysis_id, trigger="analysis_recompute")

    def sync_line_item(self, unit: UnitOfChange, line_item: LineItemModel) -> bool:
        """
        Re-price ``line_item`` from its Analysis inside the caller's unit.

        Returns False when the Line Item has no Analysis.
        """
        analysis = self.get_by_line_item(line_item.line_item_id)
        if analysis is None:
            return False
        unit_price, parcial = line_item_pricing(line_item.quantity, analysis.direct_cost)
        unit.update(line_item, unit_price=unit_price, parcial=parcial)
        return True

    def recompute_for_price(self, price: SharedResourcePriceModel) -> int:
        """
        Recompute every Analysis of the price's Budget that uses it.

        Returns the number of Analyses recomputed.  Runs in one unit of
        change; Titles are recomputed once each after all Line Items.
        """
        stmt = (
            select(AnalysisModel)
            .join(AnalysisModel.resources)
            .where(
                AnalysisModel.budget_id == price.budget_id,
                or_(
                    AnalysisResourceModel.price_id == price.price_id,
                    AnalysisResourceModel.resource_id == price.resource_id,
                ),
            )
            .distinct()
            .order_by(AnalysisModel.analysis_id)
        )
        analyses = list(self._ctx.session.scalars(stmt))

        with self._ctx.runner.begin("bulk_price_recompute") as unit:
            title_ids: dict[str, None] = {}
            for analysis in analyses:
                costs = self._apply_costs(unit, analysis)
                item = self._sync_line_item(unit, analysis, costs.direct_cost)
                if item is not None:
                    title_ids[item.title_id] = None
            for title_id in title_ids:
                self._totals.recompute_ascending(title_id, price.budget_id)

        self._obs.event(
            "bulk_price_recompute_completed",
            price_id=price.price_id,
            budget_id=price.budget_id,
            analyses=len(analyses),
            titles=len(title_ids),
        )
        return len(analyses)

    # -- Analysis CRUD ---------------------------------------------------------

    def _blank_analysis(
        self,
        item: LineItemModel,
        yield_per_shift: Decimal = DEFAULT_YIELD_PER_SHIFT,
        shift_hours: Decimal = DEFAULT_SHIFT_HOURS,
    ) -> AnalysisModel:
        return AnalysisModel(
            analysis_id=self._ctx.ids.next_id(IdKind.ANALYSIS),
            budget_id=item.budget_id,
            project_id=item.project_id,
            line_item_id=item.line_item_id,
            yield_per_shift=to_decimal(yield_per_shift),
            shift_hours=to_decimal(shift_hours),
            material_cost=ZERO,
            labor_cost=ZERO,
            equipment_cost=ZERO,
            subcontract_cost=ZERO,
            direct_cost=ZERO,
        )

    def create_analysis(
        self,
        line_item_id: str,
        yield_per_shift: Decimal = DEFAULT_YIELD_PER_SHIFT,
        shift_hours: Decimal = DEFAULT_SHIFT_HOURS,
        resources: Sequence[ResourceInput] = (),
    ) -> AnalysisModel:
        """Create the Analysis of a Line Item with its initial Resources."""
        item = self._items.get(line_item_id)
        if self._analyses.exists(line_item_id=line_item_id):
            raise ValidationError(
                f"Line item {line_item_id} already has an analysis",
                field="line_item_id",
                value=line_item_id,
            )
        _check_non_negative("yield_per_shift", yield_per_shift)
        _check_non_negative("shift_hours", shift_hours)
        for resource in resources:
            _check_non_negative("quantity", resource.quantity)

        with self._ctx.runner.begin("analysis_create") as unit:
            analysis = self._blank_analysis(item, yield_per_shift, shift_hours)
            analysis.resources = [
                self._new_resource(position, resource)
                for position, resource in enumerate(resources)
            ]
            unit.add(analysis)

        self._obs.event(
            "analysis_created",
            analysis_id=analysis.analysis_id,
            line_item_id=line_item_id,
            resources=len(resources),
        )
        return self._recompute_and_propagate(analysis.analysis_id, trigger="analysis_create")

    def update_analysis(
        self,
        analysis_id: str,
        yield_per_shift: Decimal | None = None,
        shift_hours: Decimal | None = None,
    ) -> AnalysisModel:
        _check_non_negative("yield_per_shift", yield_per_shift)
        _check_non_negative("shift_hours", shift_hours)
        changes: dict[str, Decimal] = {}
        if yield_per_shift is not None:
            changes["yield_per_shift"] = to_decimal(yield_per_shift)
        if shift_hours is not None:
            changes["shift_hours"] = to_decimal(shift_hours)

        with self._ctx.runner.begin("analysis_update") as unit:
            unit.update(self._analyses.get(analysis_id), **changes)
        return self._recompute_and_propagate(analysis_id, trigger="analysis_update")

    def delete_analysis(self, analysis_id: str) -> None:
        """Delete an Analysis and its Resources.  The Line Item keeps its price."""
        with self._ctx.runner.begin("analysis_delete") as unit:
            analysis = self._analyses.get(analysis_id)
            line_item_id = analysis.line_item_id
            unit.delete(analysis)
        self._obs.event("analysis_deleted", analysis_id=analysis_id, line_item_id=line_item_id)

    # -- Resource lines ----------------------------------------------------------

    @staticmethod
    def _new_resource(position: int, data: ResourceInput) -> AnalysisResourceModel:
        values = data.column_values()
        values["quantity"] = to_decimal(values["quantity"])
        values["waste_percentage"] = to_decimal(values["waste_percentage"])
        return AnalysisResourceModel(
            position=position,
            quantity_with_waste=quantity_with_waste(values["quantity"], values["waste_percentage"]),
            parcial=ZERO,
            **values,
        )

    def _resource_at(self, analysis: AnalysisModel, position: int) -> AnalysisResourceModel:
        for resource in analysis.resources:
            if resource.position == position:
                return resource
        raise NotFoundError("Resource", f"{analysis.analysis_id}#{position}")

    def add_resource(self, analysis_id: str, data: ResourceInput) -> AnalysisModel:
        _check_non_negative("quantity", data.quantity)
        with self._ctx.runner.begin("resource_add") as unit:
            analysis = self._analyses.get(analysis_id)
            next_position = max((r.position for r in analysis.resources), default=-1) + 1
            resource = self._new_resource(next_position, data)
            analysis.resources.append(resource)
            self._ctx.session.flush()
            unit.track_created(resource)
        return self._recompute_and_propagate(analysis_id, trigger="resource_add")

    def update_resource(self, analysis_id: str, position: int, **changes: Any) -> AnalysisModel:
        """Apply ``changes`` (ResourceInput field names) to the line at ``position``."""
        unknown = set(changes) - _EDITABLE_RESOURCE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown resource fields: {sorted(unknown)}")
        _check_non_negative("quantity", changes.get("quantity"))
        _check_non_negative("waste_percentage", changes.get("waste_percentage"))
        if "resource_type" in changes:
            changes["resource_type"] = ResourceType(changes["resource_type"])
        for name in _DECIMAL_RESOURCE_FIELDS & set(changes):
            if changes[name] is not None:
                changes[name] = to_decimal(changes[name])

        with self._ctx.runner.begin("resource_update") as unit:
            analysis = self._analyses.get(analysis_id)
            unit.update(self._resource_at(analysis, position), **changes)
        return self._recompute_and_propagate(analysis_id, trigger="resource_update")

    def remove_resource(self, analysis_id: str, position: int) -> AnalysisModel:
        """Remove the line at ``position`` and close the gap in positions."""
        with self._ctx.runner.begin("resource_remove") as unit:
            analysis = self._analyses.get(analysis_id)
            resource = self._resource_at(analysis, position)
            unit.track_deleted(resource)
            analysis.resources.remove(resource)
            self._ctx.session.flush()
            for later in analysis.resources:
                if later.position > position:
                    unit.update(later, position=later.position - 1)
        return self._recompute_and_propagate(analysis_id, trigger="resource_remove")

    # -- sub-items ---------------------------------------------------------------

    def _new_sub_item(
        self, unit: UnitOfChange, entry: SubItemCreate, parent: LineItemModel
    ) -> LineItemModel:
        siblings = len(
            self._items.list(title_id=parent.title_id, parent_line_item_id=parent.line_item_id)
        )
        item_number = entry.item_number or f"{parent.item_number}.{siblings + 1:02d}"
        self._rules.check_line_item_number(parent.project_id, parent.budget_id, item_number)
        item = LineItemModel(
            line_item_id=self._ctx.ids.next_id(IdKind.LINE_ITEM),
            budget_id=parent.budget_id,
            project_id=parent.project_id,
            title_id=parent.title_id,
            parent_line_item_id=parent.line_item_id,
            level=parent.level + 1,
            item_number=item_number,
            description=entry.description,
            unit=entry.unit,
            quantity=to_decimal(entry.quantity),
            unit_price=ZERO,
            order=siblings,
            status=LineItemStatus.ACTIVE,
        )
        item.recompute_parcial()
        return unit.add(item)

    def _link_to_parent(
        self,
        unit: UnitOfChange,
        parent: LineItemModel,
        item: LineItemModel,
        quantity: Decimal,
    ) -> AnalysisModel:
        """Add a line consuming ``quantity`` of ``item`` to the parent's Analysis."""
        analysis = self.get_by_line_item(parent.line_item_id)
        if analysis is None:
            analysis = unit.add(self._blank_analysis(parent))
        position = max((r.position for r in analysis.resources), default=-1) + 1
        line = self._new_resource(
            position,
            ResourceInput(
                resource_type=ResourceType.MATERIAL,
                quantity=quantity,
                unit=item.unit,
                description=item.description,
                sub_line_item_id=item.line_item_id,
                sub_line_item_price=ZERO,
            ),
        )
        analysis.resources.append(line)
        self._ctx.session.flush()
        unit.track_created(line)
        return analysis

    def _reprice(self, unit: UnitOfChange, analysis: AnalysisModel) -> None:
        """Refresh sub-item line prices, recompute costs and re-price the Line Item."""
        for resource in analysis.resources:
            if resource.sub_line_item_id is None:
                continue
            sub_item = self._items.find(resource.sub_line_item_id)
            if sub_item is not None:
                unit.update(resource, sub_line_item_price=sub_item.unit_price)
        costs = self._apply_costs(unit, analysis)
        self._sync_line_item(unit, analysis, costs.direct_cost)

    def create_sub_items(self, entries: Sequence[SubItemCreate]) -> SubItemsCreated:
        """
        Create nested sub-items with their Analyses in one unit of change.

        Entries are created parent-first.  Every Analysis touched is then
        re-priced children-first, so each sub-item line carries the final
        unit price of its sub-item, and the totals above are recomputed once.
        Any failure undoes the whole call.
        """
        if not entries:
            return SubItemsCreated(line_item_ids={}, analysis_ids={})
        temp_ids = [entry.temp_id for entry in entries]
        if not all(temp_ids) or len(set(temp_ids)) != len(temp_ids):
            raise ValidationError("Every sub-item needs a distinct temp_id", field="temp_id")
        for entry in entries:
            if not entry.description:
                raise ValidationError("description is required", field="description")
            _check_non_negative("quantity", entry.quantity)
            _check_non_negative("quantity_in_parent", entry.quantity_in_parent)
            _check_non_negative("yield_per_shift", entry.yield_per_shift)
            _check_non_negative("shift_hours", entry.shift_hours)
            for resource in entry.resources:
                _check_non_negative("quantity", resource.quantity)

        known = set(temp_ids)
        schedule = parent_first_order(
            entries,
            key_of=lambda e: e.temp_id,
            parent_of=lambda e: e.parent_line_item_id if e.parent_line_item_id in known else None,
        )
        if schedule.unresolved:
            raise CircularReferenceError("LineItem", [e.temp_id for e in schedule.unresolved])

        line_item_ids: dict[str, str] = {}
        analysis_ids: dict[str, str] = {}
        created: list[AnalysisModel] = []
        outer_parents: dict[str, None] = {}
        budget_id: str | None = None

        with self._ctx.runner.begin("sub_items_create") as unit:
            for entry in schedule.ordered:
                parent = self._items.get(
                    line_item_ids.get(entry.parent_line_item_id, entry.parent_line_item_id)
                )
                if budget_id is None:
                    budget_id = self._rules.editable_budget(parent.budget_id).budget_id
                elif parent.budget_id != budget_id:
                    raise ValidationError(
                        "All sub-items of one call must belong to the same budget",
                        field="parent_line_item_id",
                        value=parent.line_item_id,
                    )

                item = self._new_sub_item(unit, entry, parent)
                analysis = self._blank_analysis(item, entry.yield_per_shift, entry.shift_hours)
                analysis.resources = [
                    self._new_resource(position, resource)
                    for position, resource in enumerate(entry.resources)
                ]
                unit.add(analysis)
                line_item_ids[entry.temp_id] = item.line_item_id
                analysis_ids[entry.temp_id] = analysis.analysis_id
                created.append(analysis)

                if entry.quantity_in_parent is not None:
                    self._link_to_parent(unit, parent, item, to_decimal(entry.quantity_in_parent))
                    if entry.parent_line_item_id not in known:
                        outer_parents[parent.line_item_id] = None

            for analysis in reversed(created):
                self._reprice(unit, analysis)
            title_ids: dict[str, None] = {}
            for parent_id in outer_parents:
                self._reprice(unit, self.get_by_line_item(parent_id))
                title_ids[self._items.get(parent_id).title_id] = None
            for analysis in created:
                title_ids[self._items.get(analysis.line_item_id).title_id] = None
            self._totals.recompute_titles(title_ids, budget_id)

        self._obs.event(
            "sub_items_created",
            budget_id=budget_id,
            line_items=len(line_item_ids),
            linked_parents=len(outer_parents),
            temp_ids=sorted(line_item_ids),
        )
        return SubItemsCreated(line_item_ids=line_item_ids, analysis_ids=analysis_ids)
