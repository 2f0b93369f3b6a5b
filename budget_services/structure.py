"""
StructureRules -- shared rules for editing a budget tree.

Responsibility:
    The checks and cascades that TitleService, LineItemService and the
    batch editor must apply identically: which budgets accept edits,
    item-number uniqueness, cascading deletes and level bookkeeping.
    Every method works inside the caller's unit of change.

Architecture position:
    Services -- internal collaborator, not a public entry point.

Invariants enforced:
    - Only non-parent, mutable budget versions accept structural edits.
    - item_number is unique among Titles (and separately among Line Items)
      of one project's budget version.
    - Line Item delete order: Analyses, then sub-items deepest first, then
      the item.  Title delete removes descendant Titles and all their Line
      Items the same way, deepest Title first.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from budget_engines.tree import collect_descendants
from budget_kernel.exceptions import (
    DuplicateItemNumberError,
    InvalidStateError,
    ValidationError,
)
from budget_kernel.models import AnalysisModel, BudgetModel, LineItemModel, TitleModel
from budget_kernel.services.transactions import UnitOfChange
from budget_services.context import ServiceContext


@dataclass
class DeletedIds:
    title_ids: list[str] = field(default_factory=list)
    line_item_ids: list[str] = field(default_factory=list)
    analysis_ids: list[str] = field(default_factory=list)

    def extend(self, other: DeletedIds) -> None:
        self.title_ids.extend(other.title_ids)
        self.line_item_ids.extend(other.line_item_ids)
        self.analysis_ids.extend(other.analysis_ids)


class StructureRules:
    def __init__(self, ctx: ServiceContext):
        self._ctx = ctx
        self.budgets = ctx.repo(BudgetModel, "budget_id", "Budget")
        self.titles = ctx.repo(TitleModel, "title_id", "Title")
        self.items = ctx.repo(LineItemModel, "line_item_id", "LineItem")
        self.analyses = ctx.repo(AnalysisModel, "analysis_id", "Analysis")

    # -- validation -------------------------------------------------------------

    def editable_budget(self, budget_id: str) -> BudgetModel:
        budget = self.budgets.get(budget_id)
        if budget.is_parent:
            raise InvalidStateError(
                "The parent budget of a version group holds no structure",
                entity_id=budget_id,
                current_state=budget.state.value,
            )
        if budget.is_immutable:
            raise InvalidStateError(
                "Budget version is immutable",
                entity_id=budget_id,
                current_state=budget.state.value,
            )
        return budget

    def check_title_number(
        self, project_id: str, budget_id: str, item_number: str, exclude_id: str | None = None
    ) -> None:
        if self.titles.exists(
            exclude_key=exclude_id,
            project_id=project_id,
            budget_id=budget_id,
            item_number=item_number,
        ):
            raise DuplicateItemNumberError("Title", item_number, project_id)

    def check_line_item_number(
        self, project_id: str, budget_id: str, item_number: str, exclude_id: str | None = None
    ) -> None:
        if self.items.exists(
            exclude_key=exclude_id,
            project_id=project_id,
            budget_id=budget_id,
            item_number=item_number,
        ):
            raise DuplicateItemNumberError("LineItem", item_number, project_id)

    def parent_title(self, budget_id: str, parent_title_id: str | None) -> TitleModel | None:
        if parent_title_id is None:
            return None
        parent = self.titles.get(parent_title_id)
        if parent.budget_id != budget_id:
            raise ValidationError(
                "Parent title belongs to another budget",
                field="parent_title_id",
                value=parent_title_id,
            )
        return parent

    def parent_line_item(self, budget_id: str, parent_id: str | None) -> LineItemModel | None:
        if parent_id is None:
            return None
        parent = self.items.get(parent_id)
        if parent.budget_id != budget_id:
            raise ValidationError(
                "Parent line item belongs to another budget",
                field="parent_line_item_id",
                value=parent_id,
            )
        return parent

    def title_descendants(self, title_id: str) -> list[str]:
        return collect_descendants(
            title_id,
            lambda tid: [t.title_id for t in self.titles.list(parent_title_id=tid)],
        )

    def line_item_descendants(self, line_item_id: str) -> list[str]:
        return collect_descendants(
            line_item_id,
            lambda lid: [i.line_item_id for i in self.items.list(parent_line_item_id=lid)],
        )

    def check_title_move(self, title: TitleModel, new_parent_id: str | None) -> None:
        if new_parent_id is None:
            return
        if new_parent_id == title.title_id or new_parent_id in self.title_descendants(title.title_id):
            raise ValidationError(
                "A title cannot be moved under itself or one of its descendants",
                field="parent_title_id",
                value=new_parent_id,
            )

    def check_line_item_move(self, item: LineItemModel, new_parent_id: str | None) -> None:
        if new_parent_id is None:
            return
        if new_parent_id == item.line_item_id or new_parent_id in self.line_item_descendants(
            item.line_item_id
        ):
            raise ValidationError(
                "A line item cannot be moved under itself or one of its sub-items",
                field="parent_line_item_id",
                value=new_parent_id,
            )

    # -- level bookkeeping ----------------------------------------------------

    def relevel_title(self, unit: UnitOfChange, title: TitleModel, level: int) -> None:
        """Set ``title`` to ``level`` and shift its descendant Titles to match."""
        delta = level - title.level
        if delta == 0:
            return
        unit.update(title, level=level)
        for title_id in self.title_descendants(title.title_id):
            child = self.titles.get(title_id)
            unit.update(child, level=child.level + delta)

    def relevel_line_item(self, unit: UnitOfChange, item: LineItemModel, level: int) -> None:
        delta = level - item.level
        if delta == 0:
            return
        unit.update(item, level=level)
        for item_id in self.line_item_descendants(item.line_item_id):
            child = self.items.get(item_id)
            unit.update(child, level=child.level + delta)

    # -- cascading deletes ------------------------------------------------------

    def _delete_analyses(self, unit: UnitOfChange, line_item_id: str, deleted: DeletedIds) -> None:
        for analysis in self.analyses.list(line_item_id=line_item_id):
            deleted.analysis_ids.append(analysis.analysis_id)
            unit.delete(analysis)

    def delete_line_item(self, unit: UnitOfChange, item: LineItemModel) -> DeletedIds:
        """Delete ``item`` with its Analysis and all sub-items below it."""
        deleted = DeletedIds()
        self._delete_analyses(unit, item.line_item_id, deleted)
        for sub_id in reversed(self.line_item_descendants(item.line_item_id)):
            sub_item = self.items.find(sub_id)
            if sub_item is None:
                continue
            self._delete_analyses(unit, sub_id, deleted)
            deleted.line_item_ids.append(sub_id)
            unit.delete(sub_item)
        deleted.line_item_ids.append(item.line_item_id)
        unit.delete(item)
        return deleted

    def delete_title(self, unit: UnitOfChange, title: TitleModel) -> DeletedIds:
        """Delete ``title``, its descendant Titles and every Line Item under them."""
        deleted = DeletedIds()
        title_ids = [title.title_id, *self.title_descendants(title.title_id)]
        for title_id in reversed(title_ids):
            for item in self.items.list(title_id=title_id, parent_line_item_id=None):
                deleted.extend(self.delete_line_item(unit, item))
            # Sub-items filed under this title whose parent lives elsewhere.
            for item in self.items.list(title_id=title_id):
                deleted.extend(self.delete_line_item(unit, item))
            current = self.titles.find(title_id)
            if current is not None:
                deleted.title_ids.append(title_id)
                unit.delete(current)
        return deleted
