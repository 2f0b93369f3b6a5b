"""
BatchEditor -- atomic structural edits of one budget version.

Responsibility:
    Applies a whole editing session (creates, updates and deletes of Titles
    and Line Items) as one unit of change.  New entities may reference each
    other through temporary ids (``temp_...``) that are resolved to
    allocated ids as the batch is applied.

Architecture position:
    Services -- imperative shell over StructureRules and TotalsService.

Invariants enforced:
    - All or nothing: any failure rolls back every write of the batch.
    - Titles, then Line Items, are created parent-before-child by
      fixed-point scheduling.  A pass with no progress while entries remain
      raises CircularReferenceError.
    - item_number uniqueness is checked before every create and update.
    - Updates apply only the fields they carry; parent references go
      through the temp-id maps.
    - Every affected Title is recomputed exactly once, after all
      mutations.

Failure modes:
    - CircularReferenceError, DuplicateItemNumberError, ValidationError,
      NotFoundError, InvalidStateError.  The batch is rolled back and the
      error re-raised after a ``batch_edit_failed`` event.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from budget_engines.tree import parent_first_order
from budget_kernel.db.types import ZERO, round_money, to_decimal
from budget_kernel.domain.dtos import LineItemInfo, TitleInfo
from budget_kernel.domain.values import TEMP_ID_PREFIX, IdKind, LineItemStatus, TitleKind
from budget_kernel.exceptions import BudgetKernelError, CircularReferenceError, ValidationError
from budget_kernel.logging_config import LogContext
from budget_kernel.models import BudgetModel, LineItemModel, TitleModel
from budget_kernel.services.transactions import UnitOfChange
from budget_services.analysis_service import AnalysisService
from budget_services.context import ServiceContext
from budget_services.structure import StructureRules
from budget_services.totals_service import TotalsService

_TITLE_FIELDS = frozenset({"item_number", "description", "kind", "order", "parent_title_id"})
_LINE_ITEM_FIELDS = frozenset(
    {
        "item_number",
        "description",
        "unit",
        "quantity",
        "unit_price",
        "order",
        "status",
        "title_id",
        "parent_line_item_id",
    }
)


def is_temp_id(value: str | None) -> bool:
    return bool(value) and value.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class TitleCreate:
    item_number: str
    description: str
    temp_id: str | None = None
    parent_title_id: str | None = None
    kind: TitleKind | None = None
    order: int = 0


@dataclass(frozen=True)
class LineItemCreate:
    title_id: str
    item_number: str
    description: str
    temp_id: str | None = None
    parent_line_item_id: str | None = None
    unit: str | None = None
    quantity: Decimal = ZERO
    unit_price: Decimal = ZERO
    order: int = 0
    status: LineItemStatus = LineItemStatus.ACTIVE


@dataclass(frozen=True)
class TitleUpdate:
    title_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class LineItemUpdate:
    line_item_id: str
    changes: Mapping[str, Any]


@dataclass(frozen=True)
class BatchEditRequest:
    budget_id: str
    titles_to_create: Sequence[TitleCreate] = ()
    line_items_to_create: Sequence[LineItemCreate] = ()
    titles_to_update: Sequence[TitleUpdate] = ()
    line_items_to_update: Sequence[LineItemUpdate] = ()
    title_ids_to_delete: Sequence[str] = ()
    line_item_ids_to_delete: Sequence[str] = ()


@dataclass(frozen=True)
class CreatedTitle:
    temp_id: str | None
    title: TitleInfo


@dataclass(frozen=True)
class CreatedLineItem:
    temp_id: str | None
    line_item: LineItemInfo


@dataclass(frozen=True)
class BatchEditResult:
    success: bool
    message: str
    created_titles: tuple[CreatedTitle, ...] = ()
    created_line_items: tuple[CreatedLineItem, ...] = ()
    updated_titles: tuple[TitleInfo, ...] = ()
    updated_line_items: tuple[LineItemInfo, ...] = ()
    deleted_title_ids: tuple[str, ...] = ()
    deleted_line_item_ids: tuple[str, ...] = ()
    temp_id_map: Mapping[str, str] = field(default_factory=dict)


@dataclass
class _BatchState:
    """Mutable bookkeeping while one batch is applied."""

    budget: BudgetModel
    title_ids: dict[str, str] = field(default_factory=dict)
    line_item_ids: dict[str, str] = field(default_factory=dict)
    affected_titles: dict[str, None] = field(default_factory=dict)
    created_titles: list[CreatedTitle] = field(default_factory=list)
    created_line_items: list[CreatedLineItem] = field(default_factory=list)
    updated_titles: list[TitleModel] = field(default_factory=list)
    updated_line_items: list[LineItemModel] = field(default_factory=list)
    deleted_title_ids: list[str] = field(default_factory=list)
    deleted_line_item_ids: list[str] = field(default_factory=list)

    def touch(self, *title_ids: str | None) -> None:
        for title_id in title_ids:
            if title_id:
                self.affected_titles[title_id] = None

    def resolve_title(self, ref: str | None) -> str | None:
        if not is_temp_id(ref):
            return ref
        if ref not in self.title_ids:
            raise ValidationError(f"Unknown temporary title id {ref}", field="title_id", value=ref)
        return self.title_ids[ref]

    def resolve_line_item(self, ref: str | None) -> str | None:
        if not is_temp_id(ref):
            return ref
        if ref not in self.line_item_ids:
            raise ValidationError(
                f"Unknown temporary line item id {ref}", field="parent_line_item_id", value=ref
            )
        return self.line_item_ids[ref]


class BatchEditor:
    """
    Applies a BatchEditRequest.

    Contract:
        ``apply(request)`` returns a successful BatchEditResult or raises
        with nothing written.

    Non-goals:
        - Does NOT commit.
        - Does NOT edit Analyses; a Line Item with an Analysis keeps being
          priced by it.
    """

    def __init__(
        self,
        ctx: ServiceContext,
        totals: TotalsService | None = None,
        analysis: AnalysisService | None = None,
        rules: StructureRules | None = None,
    ):
        self._ctx = ctx
        self._totals = totals or TotalsService(ctx)
        self._analysis = analysis or AnalysisService(ctx, self._totals)
        self._rules = rules or StructureRules(ctx)
        self._obs = ctx.observability.child("batch")

    def apply(self, request: BatchEditRequest) -> BatchEditResult:
        budget = self._rules.editable_budget(request.budget_id)
        with LogContext.for_budget(budget):
            return self._apply(budget, request)

    def _apply(self, budget: BudgetModel, request: BatchEditRequest) -> BatchEditResult:
        state = _BatchState(budget=budget)
        try:
            with self._ctx.runner.begin("batch_edit") as work:
                self._create_titles(work, state, request.titles_to_create)
                self._create_line_items(work, state, request.line_items_to_create)
                self._update_titles(work, state, request.titles_to_update)
                self._update_line_items(work, state, request.line_items_to_update)
                self._delete_titles(work, state, request.title_ids_to_delete)
                self._delete_line_items(work, state, request.line_item_ids_to_delete)
                self._totals.recompute_titles(state.affected_titles, budget.budget_id)
        except (BudgetKernelError, SQLAlchemyError) as exc:
            self._obs.failure(
                "batch_edit_failed",
                exc,
                budget_id=budget.budget_id,
                error_code=getattr(exc, "code", None),
            )
            raise

        result = BatchEditResult(
            success=True,
            message="Changes saved",
            created_titles=tuple(state.created_titles),
            created_line_items=tuple(state.created_line_items),
            updated_titles=tuple(t.to_dto() for t in state.updated_titles),
            updated_line_items=tuple(i.to_dto() for i in state.updated_line_items),
            deleted_title_ids=tuple(state.deleted_title_ids),
            deleted_line_item_ids=tuple(state.deleted_line_item_ids),
            temp_id_map={**state.title_ids, **state.line_item_ids},
        )
        self._obs.event(
            "batch_edit_applied",
            budget_id=budget.budget_id,
            titles_created=len(result.created_titles),
            line_items_created=len(result.created_line_items),
            titles_updated=len(result.updated_titles),
            line_items_updated=len(result.updated_line_items),
            titles_deleted=len(result.deleted_title_ids),
            line_items_deleted=len(result.deleted_line_item_ids),
            titles_recomputed=len(state.affected_titles),
        )
        return result

    # -- creates ---------------------------------------------------------------

    def _schedule(self, entries: Sequence[Any], parent_attr: str, entity: str) -> list[Any]:
        nodes = list(enumerate(entries))
        order = parent_first_order(
            nodes,
            key_of=lambda n: n[1].temp_id or n[0],
            parent_of=lambda n: (
                getattr(n[1], parent_attr) if is_temp_id(getattr(n[1], parent_attr)) else None
            ),
        )
        if order.unresolved:
            raise CircularReferenceError(
                entity, [n[1].temp_id or n[1].item_number for n in order.unresolved]
            )
        return [n[1] for n in order.ordered]

    def _create_titles(
        self, work: UnitOfChange, state: _BatchState, entries: Sequence[TitleCreate]
    ) -> None:
        budget = state.budget
        for entry in self._schedule(entries, "parent_title_id", "Title"):
            parent_id = state.resolve_title(entry.parent_title_id)
            parent = self._rules.parent_title(budget.budget_id, parent_id)
            self._rules.check_title_number(budget.project_id, budget.budget_id, entry.item_number)
            title = work.add(
                TitleModel(
                    title_id=self._ctx.ids.next_id(IdKind.TITLE),
                    budget_id=budget.budget_id,
                    project_id=budget.project_id,
                    parent_title_id=parent_id,
                    level=parent.level + 1 if parent else 1,
                    item_number=entry.item_number,
                    description=entry.description,
                    kind=TitleKind(entry.kind) if entry.kind else (
                        TitleKind.SUBTITLE if parent else TitleKind.TITLE
                    ),
                    order=entry.order,
                    total_parcial=ZERO,
                )
            )
            if entry.temp_id:
                state.title_ids[entry.temp_id] = title.title_id
            state.created_titles.append(CreatedTitle(entry.temp_id, title.to_dto()))
            state.touch(title.title_id)

    def _create_line_items(
        self, work: UnitOfChange, state: _BatchState, entries: Sequence[LineItemCreate]
    ) -> None:
        budget = state.budget
        created: list[tuple[str | None, LineItemModel]] = []
        for entry in self._schedule(entries, "parent_line_item_id", "LineItem"):
            title_id = state.resolve_title(entry.title_id)
            title = self._rules.titles.get(title_id)
            if title.budget_id != budget.budget_id:
                raise ValidationError(
                    "Title belongs to another budget", field="title_id", value=title_id
                )
            parent_id = state.resolve_line_item(entry.parent_line_item_id)
            parent = self._rules.parent_line_item(budget.budget_id, parent_id)
            if to_decimal(entry.quantity) < ZERO:
                raise ValidationError("quantity must be >= 0", field="quantity", value=entry.quantity)
            self._rules.check_line_item_number(budget.project_id, budget.budget_id, entry.item_number)
            item = LineItemModel(
                line_item_id=self._ctx.ids.next_id(IdKind.LINE_ITEM),
                budget_id=budget.budget_id,
                project_id=budget.project_id,
                title_id=title_id,
                parent_line_item_id=parent_id,
                level=parent.level + 1 if parent else 1,
                item_number=entry.item_number,
                description=entry.description,
                unit=entry.unit,
                quantity=to_decimal(entry.quantity),
                unit_price=round_money(entry.unit_price),
                order=entry.order,
                status=LineItemStatus(entry.status),
            )
            item.recompute_parcial()
            work.add(item)
            if entry.temp_id:
                state.line_item_ids[entry.temp_id] = item.line_item_id
            created.append((entry.temp_id, item))
            state.touch(title_id)
        state.created_line_items.extend(CreatedLineItem(t, i.to_dto()) for t, i in created)

    # -- updates ---------------------------------------------------------------

    def _owned_title(self, state: _BatchState, title_id: str) -> TitleModel:
        title = self._rules.titles.get(state.resolve_title(title_id))
        if title.budget_id != state.budget.budget_id:
            raise ValidationError("Title belongs to another budget", field="title_id", value=title_id)
        return title

    def _owned_line_item(self, state: _BatchState, line_item_id: str) -> LineItemModel:
        item = self._rules.items.get(state.resolve_line_item(line_item_id))
        if item.budget_id != state.budget.budget_id:
            raise ValidationError(
                "Line item belongs to another budget", field="line_item_id", value=line_item_id
            )
        return item

    def _update_titles(
        self, work: UnitOfChange, state: _BatchState, updates: Sequence[TitleUpdate]
    ) -> None:
        for update in updates:
            unknown = set(update.changes) - _TITLE_FIELDS
            if unknown:
                raise ValidationError(f"Unknown title fields: {sorted(unknown)}")
            title = self._owned_title(state, update.title_id)
            changes = dict(update.changes)
            if changes.get("item_number") and changes["item_number"] != title.item_number:
                self._rules.check_title_number(
                    title.project_id, title.budget_id, changes["item_number"], exclude_id=title.title_id
                )
            if "kind" in changes:
                changes["kind"] = TitleKind(changes["kind"])
            old_parent = title.parent_title_id
            if "parent_title_id" in changes:
                changes["parent_title_id"] = state.resolve_title(changes["parent_title_id"])
            moved = "parent_title_id" in changes and changes["parent_title_id"] != old_parent
            if moved:
                new_parent = self._rules.parent_title(title.budget_id, changes["parent_title_id"])
                self._rules.check_title_move(title, changes["parent_title_id"])

            work.update(title, **changes)
            if moved:
                self._rules.relevel_title(work, title, new_parent.level + 1 if new_parent else 1)
            state.updated_titles.append(title)
            state.touch(title.title_id, old_parent)

    def _update_line_items(
        self, work: UnitOfChange, state: _BatchState, updates: Sequence[LineItemUpdate]
    ) -> None:
        for update in updates:
            unknown = set(update.changes) - _LINE_ITEM_FIELDS
            if unknown:
                raise ValidationError(f"Unknown line item fields: {sorted(unknown)}")
            item = self._owned_line_item(state, update.line_item_id)
            changes = dict(update.changes)
            if changes.get("item_number") and changes["item_number"] != item.item_number:
                self._rules.check_line_item_number(
                    item.project_id, item.budget_id, changes["item_number"], exclude_id=item.line_item_id
                )
            if "title_id" in changes:
                changes["title_id"] = self._owned_title(state, changes["title_id"]).title_id
            if "quantity" in changes:
                if to_decimal(changes["quantity"]) < ZERO:
                    raise ValidationError(
                        "quantity must be >= 0", field="quantity", value=changes["quantity"]
                    )
                changes["quantity"] = to_decimal(changes["quantity"])
            if "unit_price" in changes:
                changes["unit_price"] = round_money(changes["unit_price"])
            if "status" in changes:
                changes["status"] = LineItemStatus(changes["status"])
            old_title = item.title_id
            if "parent_line_item_id" in changes:
                changes["parent_line_item_id"] = state.resolve_line_item(changes["parent_line_item_id"])
            reparented = (
                "parent_line_item_id" in changes
                and changes["parent_line_item_id"] != item.parent_line_item_id
            )
            if reparented:
                new_parent = self._rules.parent_line_item(item.budget_id, changes["parent_line_item_id"])
                self._rules.check_line_item_move(item, changes["parent_line_item_id"])

            work.update(item, **changes)
            if reparented:
                self._rules.relevel_line_item(work, item, new_parent.level + 1 if new_parent else 1)
            if not self._analysis.sync_line_item(work, item):
                work.update(item, parcial=round_money(to_decimal(item.quantity) * to_decimal(item.unit_price)))
            state.updated_line_items.append(item)
            state.touch(old_title, item.title_id)

    # -- deletes ---------------------------------------------------------------

    def _delete_titles(
        self, work: UnitOfChange, state: _BatchState, title_ids: Sequence[str]
    ) -> None:
        for title_id in title_ids:
            title = self._rules.titles.find(state.resolve_title(title_id))
            if title is None:
                continue
            if title.budget_id != state.budget.budget_id:
                raise ValidationError("Title belongs to another budget", field="title_id", value=title_id)
            parent_id = title.parent_title_id
            deleted = self._rules.delete_title(work, title)
            state.deleted_title_ids.append(title.title_id)
            state.deleted_line_item_ids.extend(deleted.line_item_ids)
            state.touch(parent_id)

    def _delete_line_items(
        self, work: UnitOfChange, state: _BatchState, line_item_ids: Sequence[str]
    ) -> None:
        for line_item_id in line_item_ids:
            item = self._rules.items.find(state.resolve_line_item(line_item_id))
            if item is None:
                continue
            if item.budget_id != state.budget.budget_id:
                raise ValidationError(
                    "Line item belongs to another budget", field="line_item_id", value=line_item_id
                )
            title_id = item.title_id
            deleted = self._rules.delete_line_item(work, item)
            state.deleted_line_item_ids.extend(
                i for i in deleted.line_item_ids if i not in state.deleted_line_item_ids
            )
            state.touch(title_id)
