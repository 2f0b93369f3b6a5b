"""
BudgetCloner -- deep copy of one budget version into a new version.

Responsibility:
    Copies a version's Shared Prices, Titles, Line Items, Analyses and
    Resource lines under a freshly allocated budget id, remapping every
    internal reference through old -> new id maps.  Used by clone_version
    and by the contractual / as-built materialisations.

Architecture position:
    Services -- internal collaborator of LifecycleManager.  Runs inside one
    ``version_clone`` unit of change.

Invariants enforced:
    - The source is validated before anything is written.  Dangling parent,
      title or line-item references (and parent cycles) raise IntegrityError
      listing every problem found.
    - Titles and Line Items are inserted parent-before-child, so each new
      row's parent is already mapped when it is created.
    - At most one Analysis per Line Item is carried over: the first (by id)
      wins and each extra one is logged as ``analysis_duplicate_skipped``.
    - Resource ``price_id`` and ``sub_line_item_id`` point into the new
      version.  References that cannot be mapped become NULL.
    - A duplicate-key collision on one cloned row skips that row only
      (``clone_entity_skipped``).  Any other failure removes everything
      created for the new version before the error propagates.

Failure modes:
    - NotFoundError for an unknown source.
    - IntegrityError when source validation fails.

Audit relevance:
    ``version_cloned`` reports row counts per entity and every skipped row,
    so a reviewer can reconcile the copy against its source.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError as SAIntegrityError

from budget_engines.tree import hierarchical_order, parent_first_order, walk_ancestors
from budget_kernel.domain.values import BudgetState, IdKind, Phase
from budget_kernel.exceptions import CycleDetectedError, IntegrityError
from budget_kernel.logging_config import LogContext
from budget_kernel.models import (
    AnalysisModel,
    AnalysisResourceModel,
    BudgetModel,
    LineItemModel,
    SharedResourcePriceModel,
    TitleModel,
)
from budget_kernel.services.transactions import UnitOfChange
from budget_services.context import ServiceContext
from budget_services.totals_service import TotalsService

# Budget columns copied verbatim from the source version.
_BUDGET_COPY_FIELDS = (
    "project_id",
    "group_id",
    "name",
    "notes",
    "term_days",
    "direct_cost",
    "parcial",
    "tax_percentage",
    "profit_percentage",
    "tax_amount",
    "profit_amount",
    "total",
    "base_budget_amount",
    "offer_budget_amount",
)

# Resource columns that never carry over: identity and owner, plus the
# references that are remapped.
_RESOURCE_SKIP_FIELDS = frozenset({"id", "analysis_id", "price_id", "sub_line_item_id"})
_TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at"})


@dataclass(frozen=True)
class CloneTarget:
    """Phase, number and state the new version is created with."""

    phase: Phase
    version: int
    state: BudgetState = BudgetState.DRAFT
    version_description: str | None = None
    is_active: bool = False


@dataclass
class CloneReport:
    budget: BudgetModel
    source_budget_id: str
    title_map: dict[str, str] = field(default_factory=dict)
    line_item_map: dict[str, str] = field(default_factory=dict)
    analysis_map: dict[str, str] = field(default_factory=dict)
    price_map: dict[str, str] = field(default_factory=dict)
    resources_copied: int = 0
    duplicate_analyses: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _column_values(entity: Any, skip: frozenset[str] = frozenset()) -> dict[str, Any]:
    """Column values of ``entity`` minus ``skip`` and the audit timestamps."""
    mapper = inspect(type(entity))
    return {
        attr.key: getattr(entity, attr.key)
        for attr in mapper.column_attrs
        if attr.key not in skip and attr.key not in _TIMESTAMP_FIELDS
    }


def _cycle_members(
    nodes: list[Any],
    key_of: Callable[[Any], str],
    parent_of: Callable[[Any], str | None],
) -> list[str]:
    """Keys of nodes whose parent chain loops back on itself."""
    unresolved = parent_first_order(nodes, key_of=key_of, parent_of=parent_of).unresolved
    parents = {key_of(n): parent_of(n) for n in nodes}
    members: list[str] = []
    for node in unresolved:
        try:
            # A chain ending at a missing parent is reported as dangling instead.
            for _ in walk_ancestors(key_of(node), parents.get):
                pass
        except CycleDetectedError:
            members.append(key_of(node))
    return members


class BudgetCloner:
    """
    Contract:
        ``clone(source_id, target)`` returns a CloneReport whose ``budget``
        is the new, flushed version.  Nothing is committed.
    """

    def __init__(self, ctx: ServiceContext, totals: TotalsService | None = None):
        self._ctx = ctx
        self._totals = totals or TotalsService(ctx)
        self._budgets = ctx.repo(BudgetModel, "budget_id", "Budget")
        self._titles = ctx.repo(TitleModel, "title_id", "Title")
        self._items = ctx.repo(LineItemModel, "line_item_id", "LineItem")
        self._analyses = ctx.repo(AnalysisModel, "analysis_id", "Analysis")
        self._prices = ctx.repo(SharedResourcePriceModel, "price_id", "SharedResourcePrice")
        self._obs = ctx.observability.child("cloning")

    # -- validation ---------------------------------------------------------------

    def validate_source(self, budget_id: str) -> None:
        """Raise IntegrityError when the version's references do not line up."""
        titles = self._titles.list(budget_id=budget_id)
        items = self._items.list(budget_id=budget_id)
        analyses = self._analyses.list(budget_id=budget_id)
        title_ids = {t.title_id for t in titles}
        item_ids = {i.line_item_id for i in items}

        problems: list[str] = []
        for title in titles:
            if title.parent_title_id and title.parent_title_id not in title_ids:
                problems.append(
                    f"Title {title.title_id} references missing parent title {title.parent_title_id}"
                )
        for item in items:
            if item.title_id not in title_ids:
                problems.append(
                    f"Line item {item.line_item_id} references missing title {item.title_id}"
                )
            if item.parent_line_item_id and item.parent_line_item_id not in item_ids:
                problems.append(
                    f"Line item {item.line_item_id} references missing parent "
                    f"line item {item.parent_line_item_id}"
                )
        for analysis in analyses:
            if analysis.line_item_id not in item_ids:
                problems.append(
                    f"Analysis {analysis.analysis_id} references missing line item "
                    f"{analysis.line_item_id}"
                )

        problems.extend(
            f"Title {key} is part of a parent cycle"
            for key in _cycle_members(titles, lambda t: t.title_id, lambda t: t.parent_title_id)
        )
        problems.extend(
            f"Line item {key} is part of a parent cycle"
            for key in _cycle_members(
                items, lambda i: i.line_item_id, lambda i: i.parent_line_item_id
            )
        )

        if problems:
            self._obs.warning(
                "clone_integrity_failed",
                budget_id=budget_id,
                problem_count=len(problems),
                problems=problems,
            )
            raise IntegrityError(
                f"Budget {budget_id} has inconsistent references and cannot be cloned",
                problems,
            )

    # -- insertion ----------------------------------------------------------------

    def _insert(self, work: UnitOfChange, entity: Any, label: str, report: CloneReport) -> bool:
        """
        Insert one cloned row, skipping it on a duplicate key.

        With savepoints each row gets its own nested savepoint so a collision
        only discards that row.  Without them the key is checked first.
        """
        session = self._ctx.session
        key = inspect(type(entity)).primary_key_from_instance(entity)
        if work.native:
            try:
                with session.begin_nested():
                    session.add(entity)
                    session.flush()
            except SAIntegrityError as exc:
                self._skip(report, label, key, str(exc.orig))
                return False
            work.track_created(entity)
            return True

        if session.get(type(entity), tuple(key)) is not None:
            self._skip(report, label, key, "primary key already exists")
            return False
        work.add(entity)
        return True

    def _skip(self, report: CloneReport, label: str, key: Any, reason: str) -> None:
        report.skipped.append(f"{label}:{'/'.join(str(k) for k in key)}")
        self._obs.warning(
            "clone_entity_skipped",
            entity=label,
            key=list(key),
            budget_id=report.budget.budget_id,
            reason=reason,
        )

    # -- per-entity copies --------------------------------------------------------

    def _new_budget(self, work: UnitOfChange, source: BudgetModel, target: CloneTarget) -> BudgetModel:
        values = {name: getattr(source, name) for name in _BUDGET_COPY_FIELDS}
        return work.add(
            BudgetModel(
                budget_id=self._ctx.ids.next_id(IdKind.BUDGET),
                version=target.version,
                version_description=target.version_description,
                phase=target.phase,
                state=target.state,
                is_parent=False,
                is_immutable=False,
                is_active=target.is_active,
                base_budget_id=source.budget_id,
                **values,
            )
        )

    def _clone_prices(self, work: UnitOfChange, source_id: str, report: CloneReport) -> None:
        new_budget_id = report.budget.budget_id
        for price in self._prices.list(budget_id=source_id):
            values = _column_values(price, frozenset({"price_id", "budget_id"}))
            copy = SharedResourcePriceModel(
                price_id=self._ctx.ids.next_id(IdKind.SHARED_PRICE),
                budget_id=new_budget_id,
                **values,
            )
            if self._insert(work, copy, "SharedResourcePrice", report):
                report.price_map[price.price_id] = copy.price_id

    def _clone_titles(self, work: UnitOfChange, source_id: str, report: CloneReport) -> None:
        new_budget_id = report.budget.budget_id
        ordered = hierarchical_order(
            self._titles.list(budget_id=source_id),
            key_of=lambda t: t.title_id,
            parent_of=lambda t: t.parent_title_id,
            sort_key=lambda t: (t.order, t.title_id),
        )
        for title in ordered:
            parent_id = None
            if title.parent_title_id is not None:
                parent_id = report.title_map.get(title.parent_title_id)
                if parent_id is None:
                    self._skip(report, "Title", (title.title_id,), "parent title was not cloned")
                    continue
            values = _column_values(title, frozenset({"title_id", "budget_id", "parent_title_id"}))
            copy = TitleModel(
                title_id=self._ctx.ids.next_id(IdKind.TITLE),
                budget_id=new_budget_id,
                parent_title_id=parent_id,
                **values,
            )
            if self._insert(work, copy, "Title", report):
                report.title_map[title.title_id] = copy.title_id

    def _clone_line_items(self, work: UnitOfChange, source_id: str, report: CloneReport) -> None:
        new_budget_id = report.budget.budget_id
        title_rank = {old: rank for rank, old in enumerate(report.title_map)}
        ordered = hierarchical_order(
            self._items.list(budget_id=source_id),
            key_of=lambda i: i.line_item_id,
            parent_of=lambda i: i.parent_line_item_id,
            sort_key=lambda i: (title_rank.get(i.title_id, len(title_rank)), i.order, i.line_item_id),
        )
        for item in ordered:
            title_id = report.title_map.get(item.title_id)
            if title_id is None:
                self._skip(report, "LineItem", (item.line_item_id,), "title was not cloned")
                continue
            parent_id = None
            if item.parent_line_item_id is not None:
                parent_id = report.line_item_map.get(item.parent_line_item_id)
                if parent_id is None:
                    self._skip(
                        report, "LineItem", (item.line_item_id,), "parent line item was not cloned"
                    )
                    continue
            values = _column_values(
                item,
                frozenset({"line_item_id", "budget_id", "title_id", "parent_line_item_id"}),
            )
            copy = LineItemModel(
                line_item_id=self._ctx.ids.next_id(IdKind.LINE_ITEM),
                budget_id=new_budget_id,
                title_id=title_id,
                parent_line_item_id=parent_id,
                **values,
            )
            if self._insert(work, copy, "LineItem", report):
                report.line_item_map[item.line_item_id] = copy.line_item_id

    def _clone_resource(self, resource: AnalysisResourceModel, report: CloneReport) -> AnalysisResourceModel:
        values = _column_values(resource, _RESOURCE_SKIP_FIELDS)
        return AnalysisResourceModel(
            price_id=report.price_map.get(resource.price_id) if resource.price_id else None,
            sub_line_item_id=(
                report.line_item_map.get(resource.sub_line_item_id)
                if resource.sub_line_item_id
                else None
            ),
            **values,
        )

    def _clone_analyses(self, work: UnitOfChange, source_id: str, report: CloneReport) -> None:
        new_budget_id = report.budget.budget_id
        kept: dict[str, str] = {}
        for analysis in self._analyses.list(budget_id=source_id):
            first = kept.get(analysis.line_item_id)
            if first is not None:
                report.duplicate_analyses.append(analysis.analysis_id)
                self._obs.warning(
                    "analysis_duplicate_skipped",
                    budget_id=source_id,
                    line_item_id=analysis.line_item_id,
                    analysis_id=analysis.analysis_id,
                    kept_analysis_id=first,
                )
                continue
            kept[analysis.line_item_id] = analysis.analysis_id

            line_item_id = report.line_item_map.get(analysis.line_item_id)
            if line_item_id is None:
                self._skip(report, "Analysis", (analysis.analysis_id,), "line item was not cloned")
                continue
            if not work.native and self._analyses.exists(line_item_id=line_item_id):
                self._skip(
                    report,
                    "Analysis",
                    (analysis.analysis_id,),
                    "line item already has an analysis",
                )
                continue

            values = _column_values(
                analysis, frozenset({"analysis_id", "budget_id", "line_item_id"})
            )
            copy = AnalysisModel(
                analysis_id=self._ctx.ids.next_id(IdKind.ANALYSIS),
                budget_id=new_budget_id,
                line_item_id=line_item_id,
                **values,
            )
            copy.resources = [self._clone_resource(r, report) for r in analysis.resources]
            if self._insert(work, copy, "Analysis", report):
                report.analysis_map[analysis.analysis_id] = copy.analysis_id
                report.resources_copied += len(copy.resources)

    # -- entry point ----------------------------------------------------------------

    def clone(self, source_id: str, target: CloneTarget) -> CloneReport:
        """Validate ``source_id`` and copy it into a new version described by ``target``."""
        source = self._budgets.get(source_id)
        with LogContext.for_budget(source):
            return self._clone(source, target)

    def _clone(self, source: BudgetModel, target: CloneTarget) -> CloneReport:
        source_id = source.budget_id
        self.validate_source(source_id)

        try:
            with self._ctx.runner.begin("version_clone") as work:
                report = CloneReport(
                    budget=self._new_budget(work, source, target),
                    source_budget_id=source_id,
                )
                self._clone_prices(work, source_id, report)
                self._clone_titles(work, source_id, report)
                self._clone_line_items(work, source_id, report)
                self._clone_analyses(work, source_id, report)
                self._totals.recompute_budget(report.budget.budget_id)
        except Exception as exc:
            self._obs.failure(
                "version_clone_failed",
                exc,
                source_budget_id=source_id,
                error_type=type(exc).__name__,
            )
            raise

        self._obs.event(
            "version_cloned",
            source_budget_id=source_id,
            budget_id=report.budget.budget_id,
            phase=target.phase.value,
            version=target.version,
            titles=len(report.title_map),
            line_items=len(report.line_item_map),
            analyses=len(report.analysis_map),
            prices=len(report.price_map),
            resources=report.resources_copied,
            duplicate_analyses=report.duplicate_analyses,
            skipped=report.skipped,
        )
        return report
