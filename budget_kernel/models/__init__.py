"""ORM models for budgets, their work-breakdown trees, prices and approvals."""

from budget_kernel.models.analysis import AnalysisModel, AnalysisResourceModel
from budget_kernel.models.approval import ApprovalRequestModel
from budget_kernel.models.budget import DEFAULT_TAX_PERCENTAGE, BudgetModel
from budget_kernel.models.price import SharedResourcePriceModel
from budget_kernel.models.structure import LineItemModel, TitleModel

__all__ = [
    "AnalysisModel",
    "AnalysisResourceModel",
    "ApprovalRequestModel",
    "BudgetModel",
    "DEFAULT_TAX_PERCENTAGE",
    "LineItemModel",
    "SharedResourcePriceModel",
    "TitleModel",
]
