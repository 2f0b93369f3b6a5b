"""
budget_services.orchestrator -- Central wiring for the budget services.

Responsibility:
    Creates every budget service exactly once over one ServiceContext and
    wires them together, so the Title, Line Item, Analysis and Price
    services share the same TotalsService and StructureRules instances.

Architecture position:
    Services -- top of the service layer.  The only place where services
    are composed with each other.

Invariants enforced:
    - Single-instance lifecycle: one TotalsService, one AnalysisService,
      one StructureRules and one BudgetCloner per orchestrator.
    - All services share the same session, clock, observability and
      transaction runner.

Usage:
    from budget_services.orchestrator import BudgetServices

    with session_scope() as session:
        services = BudgetServices.build(session, settings)
        v1 = services.lifecycle.create_parent("PRY001", "Warehouse")
        services.titles.create(v1.budget_id, "01", "Earthworks")
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from budget_kernel.config import BudgetSettings
from budget_kernel.domain.clock import Clock
from budget_kernel.observability import Observability
from budget_kernel.services.transactions import TransactionMode
from budget_services.analysis_service import AnalysisService
from budget_services.approval_workflow import ApprovalWorkflow
from budget_services.batch_editor import BatchEditor
from budget_services.budget_service import BudgetService
from budget_services.cloning import BudgetCloner
from budget_services.context import ServiceContext
from budget_services.lifecycle import LifecycleManager
from budget_services.line_item_service import LineItemService
from budget_services.price_service import PriceService
from budget_services.structure import StructureRules
from budget_services.title_service import TitleService
from budget_services.totals_service import TotalsService


class BudgetServices:
    """
    Contract:
        Exposes every service as a public attribute.

    Non-goals:
        - Does NOT manage transaction boundaries or the session lifecycle.
    """

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

        # Foundational (no service dependencies)
        self.totals = TotalsService(ctx)
        self.rules = StructureRules(ctx)

        # Pricing
        self.analyses = AnalysisService(ctx, self.totals, self.rules)
        self.prices = PriceService(ctx, self.analyses)

        # Structure
        self.titles = TitleService(ctx, self.totals, self.rules)
        self.line_items = LineItemService(ctx, self.totals, self.analyses, self.rules)
        self.batch = BatchEditor(ctx, self.totals, self.analyses, self.rules)
        self.budgets = BudgetService(ctx)

        # Versioning and approvals
        self.cloner = BudgetCloner(ctx, self.totals)
        self.lifecycle = LifecycleManager(ctx, self.cloner, self.totals)
        self.approvals = ApprovalWorkflow(ctx, self.lifecycle)

    @classmethod
    def build(
        cls,
        session: Session,
        settings: BudgetSettings | None = None,
        *,
        clock: Clock | None = None,
        observability: Observability | None = None,
        mode: TransactionMode | None = None,
    ) -> BudgetServices:
        return cls(
            ServiceContext.build(
                session,
                settings,
                clock=clock,
                observability=observability,
                mode=mode,
            )
        )
