"""
PriceService -- Shared Resource Prices of a Budget.

Responsibility:
    One price per (Budget, external resource).  Creating a price that
    already exists returns the existing row; changing a price by more than
    the configured threshold triggers the bulk Analysis recompute.

Architecture position:
    Services -- imperative shell over SharedResourcePriceModel.

Invariants enforced:
    - (budget_id, resource_id) stays unique, including under a concurrent
      create: the losing insert fails with a duplicate key and the winner's
      row is returned instead.
    - A price change of |old - new| <= threshold (0.01 by default) does not
      recompute anything.

Failure modes:
    - NotFoundError for an unknown Budget or price.
    - ValidationError for a negative price.
    - A failing bulk recompute is logged (``price_recompute_failed``) and
      rolled back; the price update itself stands.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.exc import SQLAlchemyError

from budget_kernel.db.types import ZERO, round_money, to_decimal
from budget_kernel.domain.values import IdKind, ResourceType
from budget_kernel.exceptions import BudgetKernelError, ValidationError
from budget_kernel.models import BudgetModel, SharedResourcePriceModel
from budget_services.analysis_service import AnalysisService
from budget_services.context import ServiceContext


@dataclass(frozen=True)
class PriceUpdateResult:
    price: SharedResourcePriceModel
    old_price: Decimal
    recomputed: bool
    analyses_recomputed: int = 0


class PriceService:
    """Shared Resource Price maintenance."""

    def __init__(self, ctx: ServiceContext, analysis: AnalysisService | None = None):
        self._ctx = ctx
        self._analysis = analysis or AnalysisService(ctx)
        self._prices = ctx.repo(SharedResourcePriceModel, "price_id", "SharedResourcePrice")
        self._budgets = ctx.repo(BudgetModel, "budget_id", "Budget")
        self._obs = ctx.observability.child("prices")

    def get(self, price_id: str) -> SharedResourcePriceModel:
        return self._prices.get(price_id)

    def find_for_resource(self, budget_id: str, resource_id: str) -> SharedResourcePriceModel | None:
        return self._prices.first(budget_id=budget_id, resource_id=resource_id)

    def list_by_budget(self, budget_id: str) -> list[SharedResourcePriceModel]:
        return self._prices.list(order_by="code", budget_id=budget_id)

    def create_price(
        self,
        budget_id: str,
        resource_id: str,
        code: str,
        description: str,
        unit: str,
        resource_type: ResourceType,
        price: Decimal,
        updated_by: str | None = None,
    ) -> SharedResourcePriceModel:
        """Create the price of a resource in a Budget, or return the existing one."""
        self._budgets.get(budget_id)
        if to_decimal(price) < ZERO:
            raise ValidationError("price must be >= 0", field="price", value=price)

        existing = self.find_for_resource(budget_id, resource_id)
        if existing is not None:
            self._obs.event(
                "shared_price_exists",
                price_id=existing.price_id,
                budget_id=budget_id,
                resource_id=resource_id,
            )
            return existing

        row = SharedResourcePriceModel(
            price_id=self._ctx.ids.next_id(IdKind.SHARED_PRICE),
            budget_id=budget_id,
            resource_id=resource_id,
            code=code,
            description=description,
            unit=unit,
            resource_type=ResourceType(resource_type),
            price=round_money(price),
            price_updated_at=self._ctx.clock.now(),
            updated_by=updated_by,
        )
        try:
            with self._ctx.runner.begin("shared_price_create") as work:
                work.add(row)
        except SAIntegrityError:
            # Lost a create race for the same (budget, resource).
            winner = self.find_for_resource(budget_id, resource_id)
            if winner is None:
                raise
            self._obs.warning(
                "shared_price_create_race",
                price_id=winner.price_id,
                budget_id=budget_id,
                resource_id=resource_id,
            )
            return winner

        self._obs.event(
            "shared_price_created",
            price_id=row.price_id,
            budget_id=budget_id,
            resource_id=resource_id,
            price=row.price,
        )
        return row

    def update_price(
        self,
        price_id: str,
        new_price: Decimal,
        updated_by: str | None = None,
    ) -> PriceUpdateResult:
        """
        Change a price and, when it moved by more than the threshold,
        recompute every Analysis of the Budget that uses it.
        """
        if to_decimal(new_price) < ZERO:
            raise ValidationError("price must be >= 0", field="price", value=new_price)

        row = self._prices.get(price_id)
        old_price = to_decimal(row.price)
        new_value = round_money(new_price)
        with self._ctx.runner.begin("shared_price_update") as work:
            work.update(
                row,
                price=new_value,
                price_updated_at=self._ctx.clock.now(),
                updated_by=updated_by,
            )

        self._obs.event(
            "shared_price_updated",
            price_id=price_id,
            budget_id=row.budget_id,
            old_price=old_price,
            new_price=new_value,
        )

        if abs(old_price - new_value) <= self._ctx.settings.price_change_threshold:
            return PriceUpdateResult(row, old_price, recomputed=False)

        try:
            count = self._analysis.recompute_for_price(row)
        except (BudgetKernelError, SQLAlchemyError) as exc:
            self._obs.failure(
                "price_recompute_failed",
                exc,
                price_id=price_id,
                budget_id=row.budget_id,
            )
            return PriceUpdateResult(row, old_price, recomputed=False)
        return PriceUpdateResult(row, old_price, recomputed=True, analyses_recomputed=count)

    def delete_price(self, price_id: str) -> None:
        """Delete a price.  Resources referencing it fall back to their stored parcial."""
        with self._ctx.runner.begin("shared_price_delete") as work:
            work.delete(self._prices.get(price_id))
        self._obs.event("shared_price_deleted", price_id=price_id)
