"""
budget_services -- Package init and public API.

Responsibility:
    Stateful services that compose the pure engines (budget_engines/) with
    database sessions, the transaction runner and observability.  This is
    the only layer that holds sessions or reads the clock.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        budget_services/ -> budget_engines/  (allowed)
        budget_services/ -> budget_kernel/   (allowed)
        budget_engines/  -> budget_services/ (FORBIDDEN)
        budget_kernel/   -> budget_services/ (FORBIDDEN)

Audit relevance:
    - This package is the import surface for callers.  Changes to __all__
      must be reviewed for backwards-compatibility.
"""

from budget_services.analysis_service import (
    AnalysisService,
    ResourceInput,
    SubItemCreate,
    SubItemsCreated,
)
from budget_services.approval_workflow import ApprovalWorkflow
from budget_services.batch_editor import (
    BatchEditor,
    BatchEditRequest,
    BatchEditResult,
    LineItemCreate,
    LineItemUpdate,
    TitleCreate,
    TitleUpdate,
)
from budget_services.budget_service import BudgetService
from budget_services.cloning import BudgetCloner, CloneReport, CloneTarget
from budget_services.context import ServiceContext
from budget_services.lifecycle import LifecycleManager
from budget_services.line_item_service import LineItemService
from budget_services.orchestrator import BudgetServices
from budget_services.price_service import PriceService, PriceUpdateResult
from budget_services.structure import DeletedIds, StructureRules
from budget_services.title_service import TitleService
from budget_services.totals_service import TotalsService

__all__ = [
    "AnalysisService",
    "ApprovalWorkflow",
    "BatchEditRequest",
    "BatchEditResult",
    "BatchEditor",
    "BudgetCloner",
    "BudgetService",
    "BudgetServices",
    "CloneReport",
    "CloneTarget",
    "DeletedIds",
    "LifecycleManager",
    "LineItemCreate",
    "LineItemService",
    "LineItemUpdate",
    "PriceService",
    "PriceUpdateResult",
    "ResourceInput",
    "ServiceContext",
    "StructureRules",
    "SubItemCreate",
    "SubItemsCreated",
    "TitleCreate",
    "TitleService",
    "TitleUpdate",
    "TotalsService",
]
