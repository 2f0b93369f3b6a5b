"""Tests for shared resource prices and the bulk recompute they trigger."""

from decimal import Decimal

import pytest

from budget_kernel.domain.values import ResourceType
from budget_kernel.exceptions import NotFoundError, ValidationError
from budget_services import ResourceInput


class TestCreatePrice:
    def test_existing_price_is_returned(self, services, priced_budget, recorder):
        again = services.prices.create_price(
            priced_budget["budget"].budget_id,
            "RES-MAT-01",
            "MAT-01",
            "Cement",
            "bag",
            ResourceType.MATERIAL,
            Decimal("99"),
        )

        assert again.price_id == priced_budget["price"].price_id
        assert again.price == Decimal("20.00")
        assert len(recorder.named("shared_price_exists")) == 1

    def test_negative_price_rejected(self, services, draft_budget):
        with pytest.raises(ValidationError):
            services.prices.create_price(
                draft_budget.budget_id, "R1", "C1", "Sand", "m3", ResourceType.MATERIAL, Decimal("-1")
            )

    def test_unknown_budget(self, services):
        with pytest.raises(NotFoundError):
            services.prices.create_price(
                "PTO9999999999", "R1", "C1", "Sand", "m3", ResourceType.MATERIAL, Decimal("1")
            )

    def test_list_by_budget_orders_by_code(self, services, draft_budget):
        for resource_id, code in (("R2", "B-02"), ("R1", "A-01")):
            services.prices.create_price(
                draft_budget.budget_id, resource_id, code, code, "und", ResourceType.MATERIAL, Decimal("1")
            )
        codes = [p.code for p in services.prices.list_by_budget(draft_budget.budget_id)]
        assert codes == ["A-01", "B-02"]


class TestUpdatePrice:
    def test_change_recomputes_every_analysis_using_it(self, services, priced_budget, clock, recorder):
        clock.advance(60)
        result = services.prices.update_price(priced_budget["price"].price_id, Decimal("30"), updated_by="u1")

        assert result.recomputed is True
        assert result.analyses_recomputed == 1
        assert result.old_price == Decimal("20.00")
        assert result.price.updated_by == "u1"

        analysis = services.analyses.get(priced_budget["analysis"].analysis_id)
        assert analysis.resources[0].parcial == Decimal("315.00")
        item = services.line_items.get(priced_budget["line_item"].line_item_id)
        assert item.parcial == Decimal("3150.00")
        assert services.budgets.get(priced_budget["budget"].budget_id).parcial == Decimal("3150.00")

        completed = recorder.named("bulk_price_recompute_completed")[0]
        assert completed.fields["analyses"] == 1
        assert completed.fields["titles"] == 1

    def test_change_within_threshold_does_not_recompute(self, services, priced_budget, recorder):
        result = services.prices.update_price(priced_budget["price"].price_id, Decimal("20.01"))

        assert result.recomputed is False
        assert result.price.price == Decimal("20.01")
        assert recorder.named("bulk_price_recompute_completed") == []
        item = services.line_items.get(priced_budget["line_item"].line_item_id)
        assert item.parcial == Decimal("2100.00")

    def test_several_analyses_share_one_title_recompute(self, services, priced_budget, recorder):
        budget_id = priced_budget["budget"].budget_id
        price = priced_budget["price"]
        second = services.line_items.create(
            priced_budget["title"].title_id, "01.02", "Mortar", quantity=Decimal("1")
        )
        services.analyses.create_analysis(
            second.line_item_id,
            resources=[
                ResourceInput(
                    resource_type=ResourceType.MATERIAL,
                    quantity=Decimal("2"),
                    resource_id=price.resource_id,
                    price_id=price.price_id,
                )
            ],
        )
        recorder.clear()

        result = services.prices.update_price(price.price_id, Decimal("10"))

        assert result.analyses_recomputed == 2
        assert recorder.named("bulk_price_recompute_completed")[0].fields["titles"] == 1
        # 10.5 * 10 * 10 units + 2 * 10
        assert services.budgets.get(budget_id).parcial == Decimal("1070.00")

    def test_negative_price_rejected(self, services, priced_budget):
        with pytest.raises(ValidationError):
            services.prices.update_price(priced_budget["price"].price_id, Decimal("-5"))


class TestDeletePrice:
    def test_resources_keep_stored_parcial(self, services, priced_budget):
        services.prices.delete_price(priced_budget["price"].price_id)
        analysis = services.analyses.recompute(priced_budget["analysis"].analysis_id)

        assert analysis.resources[0].parcial == Decimal("210.00")
        assert analysis.direct_cost == Decimal("210.00")
