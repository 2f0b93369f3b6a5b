"""
Tests for unit-price analyses (budget_services/analysis_service.py).

Every change to an Analysis re-prices its Line Item and propagates the
new parcial up to the Budget.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from budget_kernel.domain.values import ResourceType
from budget_kernel.exceptions import CircularReferenceError, NotFoundError, ValidationError
from budget_kernel.models import AnalysisModel, AnalysisResourceModel, LineItemModel
from budget_services import ResourceInput, SubItemCreate


def _labor(**overrides) -> ResourceInput:
    values = dict(
        resource_type=ResourceType.LABOR,
        quantity=Decimal("1"),
        unit="hh",
        description="Crew",
        crew_size=Decimal("2"),
        has_price_override=True,
        override_price=Decimal("15"),
    )
    values.update(overrides)
    return ResourceInput(**values)


class TestMaterialAnalysis:
    """A MATERIAL line with waste priced from the shared budget price."""

    def test_material_line_prices_the_line_item(self, services, priced_budget):
        analysis = services.analyses.get(priced_budget["analysis"].analysis_id)
        resource = analysis.resources[0]

        assert resource.quantity_with_waste == Decimal("10.5")
        assert resource.parcial == Decimal("210.00")
        assert analysis.material_cost == Decimal("210.00")
        assert analysis.direct_cost == Decimal("210.00")

        item = services.line_items.get(priced_budget["line_item"].line_item_id)
        assert item.unit_price == Decimal("210.00")
        assert item.parcial == Decimal("2100.00")

    def test_budget_reflects_analysis(self, services, priced_budget):
        budget = services.budgets.get(priced_budget["budget"].budget_id)
        assert budget.parcial == Decimal("2100.00")
        assert budget.total == Decimal("2478.00")

    def test_get_by_line_item(self, services, priced_budget):
        found = services.analyses.get_by_line_item(priced_budget["line_item"].line_item_id)
        assert found.analysis_id == priced_budget["analysis"].analysis_id

    def test_second_analysis_for_line_item_rejected(self, services, priced_budget):
        with pytest.raises(ValidationError) as exc_info:
            services.analyses.create_analysis(priced_budget["line_item"].line_item_id)
        assert exc_info.value.field == "line_item_id"


class TestLaborAndEquipment:
    @pytest.fixture
    def labor_item(self, services, draft_budget):
        title = services.titles.create(draft_budget.budget_id, "01", "Earthworks")
        return services.line_items.create(
            title.title_id, "01.01", "Excavation", unit="m3", quantity=Decimal("1")
        )

    def test_labor_line(self, services, labor_item):
        analysis = services.analyses.create_analysis(
            labor_item.line_item_id,
            yield_per_shift=Decimal("20"),
            shift_hours=Decimal("8"),
            resources=[_labor()],
        )

        assert analysis.resources[0].parcial == Decimal("12.00")
        assert analysis.labor_cost == Decimal("12.00")

    def test_percent_of_labor_equipment(self, services, labor_item):
        analysis = services.analyses.create_analysis(
            labor_item.line_item_id,
            yield_per_shift=Decimal("20"),
            shift_hours=Decimal("8"),
            resources=[_labor()],
        )
        analysis = services.analyses.add_resource(
            analysis.analysis_id,
            ResourceInput(
                resource_type=ResourceType.EQUIPMENT,
                quantity=Decimal("10"),
                unit="%mo",
                description="Hand tools",
            ),
        )

        tools = analysis.resources[1]
        assert tools.position == 1
        assert tools.parcial == Decimal("1.20")
        assert analysis.equipment_cost == Decimal("1.20")
        assert analysis.direct_cost == Decimal("13.20")
        assert services.line_items.get(labor_item.line_item_id).unit_price == Decimal("13.20")

    def test_yield_change_recomputes(self, services, labor_item):
        analysis = services.analyses.create_analysis(
            labor_item.line_item_id,
            yield_per_shift=Decimal("20"),
            resources=[_labor()],
        )
        analysis = services.analyses.update_analysis(analysis.analysis_id, yield_per_shift=Decimal("40"))
        assert analysis.labor_cost == Decimal("6.00")

    def test_zero_yield_prices_labor_at_zero(self, services, labor_item):
        analysis = services.analyses.create_analysis(
            labor_item.line_item_id, yield_per_shift=Decimal("0"), resources=[_labor()]
        )
        assert analysis.labor_cost == Decimal("0.00")


class TestResourceEditing:
    def test_update_resource_recomputes(self, services, priced_budget):
        analysis_id = priced_budget["analysis"].analysis_id
        analysis = services.analyses.update_resource(analysis_id, 0, waste_percentage=Decimal("0"))

        assert analysis.resources[0].parcial == Decimal("200.00")
        assert services.line_items.get(priced_budget["line_item"].line_item_id).parcial == Decimal(
            "2000.00"
        )

    def test_override_price_wins_over_shared_price(self, services, priced_budget):
        analysis = services.analyses.update_resource(
            priced_budget["analysis"].analysis_id,
            0,
            has_price_override=True,
            override_price=Decimal("10"),
        )
        assert analysis.resources[0].parcial == Decimal("105.00")

    def test_unknown_field_rejected(self, services, priced_budget):
        with pytest.raises(ValidationError):
            services.analyses.update_resource(priced_budget["analysis"].analysis_id, 0, colour="red")

    def test_unknown_position_raises(self, services, priced_budget):
        with pytest.raises(NotFoundError):
            services.analyses.update_resource(priced_budget["analysis"].analysis_id, 7, quantity=1)

    def test_remove_resource_closes_position_gap(self, services, priced_budget):
        analysis_id = priced_budget["analysis"].analysis_id
        services.analyses.add_resource(analysis_id, _labor())
        services.analyses.add_resource(
            analysis_id,
            ResourceInput(
                resource_type=ResourceType.SUBCONTRACT,
                quantity=Decimal("1"),
                has_price_override=True,
                override_price=Decimal("5"),
            ),
        )

        analysis = services.analyses.remove_resource(analysis_id, 0)

        assert [r.position for r in analysis.resources] == [0, 1]
        assert [r.resource_type for r in analysis.resources] == [
            ResourceType.LABOR,
            ResourceType.SUBCONTRACT,
        ]
        assert analysis.material_cost == Decimal("0.00")

    def test_negative_quantity_rejected(self, services, priced_budget):
        with pytest.raises(ValidationError):
            services.analyses.add_resource(
                priced_budget["analysis"].analysis_id,
                ResourceInput(resource_type=ResourceType.MATERIAL, quantity=Decimal("-1")),
            )


class TestSubItemResources:
    def test_sub_item_line_uses_its_price(self, services, draft_budget):
        title = services.titles.create(draft_budget.budget_id, "01", "Walls")
        parent = services.line_items.create(title.title_id, "01.01", "Masonry", quantity=Decimal("1"))
        sub = services.line_items.create(
            title.title_id,
            "01.01.01",
            "Mortar",
            quantity=Decimal("1"),
            unit_price=Decimal("12.50"),
            parent_line_item_id=parent.line_item_id,
        )
        analysis = services.analyses.create_analysis(
            parent.line_item_id,
            resources=[
                ResourceInput(
                    resource_type=ResourceType.MATERIAL,
                    quantity=Decimal("4"),
                    sub_line_item_id=sub.line_item_id,
                    sub_line_item_price=Decimal("12.50"),
                )
            ],
        )

        assert analysis.resources[0].parcial == Decimal("50.00")
        assert analysis.material_cost == Decimal("0.00")
        assert analysis.direct_cost == Decimal("50.00")


class TestLineItemSync:
    def test_quantity_change_reprices_from_analysis(self, services, priced_budget):
        item = services.line_items.update(priced_budget["line_item"].line_item_id, quantity=Decimal("20"))
        assert item.unit_price == Decimal("210.00")
        assert item.parcial == Decimal("4200.00")

    def test_deleting_analysis_keeps_line_item_price(self, services, priced_budget, recorder):
        services.analyses.delete_analysis(priced_budget["analysis"].analysis_id)

        item = services.line_items.get(priced_budget["line_item"].line_item_id)
        assert item.parcial == Decimal("2100.00")
        assert services.analyses.get_by_line_item(item.line_item_id) is None
        assert len(recorder.named("analysis_deleted")) == 1


def _material(quantity: str, price: str) -> ResourceInput:
    return ResourceInput(
        resource_type=ResourceType.MATERIAL,
        quantity=Decimal(quantity),
        unit="kg",
        has_price_override=True,
        override_price=Decimal(price),
    )


class TestCreateSubItems:
    """Masonry (01.01, qty 2) <- 3 x Mortar <- 4 x Sand."""

    @pytest.fixture
    def masonry(self, services, draft_budget):
        title = services.titles.create(draft_budget.budget_id, "01", "Walls")
        return services.line_items.create(title.title_id, "01.01", "Masonry", quantity=Decimal("2"))

    @staticmethod
    def _entries(parent_id: str) -> list[SubItemCreate]:
        # Listed child-first; creation still runs parent-first.
        return [
            SubItemCreate(
                temp_id="temp_2",
                parent_line_item_id="temp_1",
                description="Sand",
                unit="m3",
                quantity=Decimal("1"),
                resources=[_material("1", "5")],
                quantity_in_parent=Decimal("4"),
            ),
            SubItemCreate(
                temp_id="temp_1",
                parent_line_item_id=parent_id,
                description="Mortar",
                unit="m3",
                quantity=Decimal("1"),
                resources=[_material("2", "10")],
                quantity_in_parent=Decimal("3"),
            ),
        ]

    @staticmethod
    def _counts(session) -> tuple[int, int, int]:
        return tuple(
            session.scalar(select(func.count()).select_from(model))
            for model in (LineItemModel, AnalysisModel, AnalysisResourceModel)
        )

    def test_nested_sub_items_are_priced_bottom_up(self, services, draft_budget, masonry, recorder):
        created = services.analyses.create_sub_items(self._entries(masonry.line_item_id))

        assert set(created.line_item_ids) == {"temp_1", "temp_2"}
        mortar = services.line_items.get(created.line_item_ids["temp_1"])
        sand = services.line_items.get(created.line_item_ids["temp_2"])
        assert mortar.parent_line_item_id == masonry.line_item_id
        assert sand.parent_line_item_id == mortar.line_item_id
        assert (mortar.item_number, mortar.level) == ("01.01.01", masonry.level + 1)
        assert (sand.item_number, sand.level) == ("01.01.01.01", masonry.level + 2)
        assert sand.unit_price == Decimal("5.00")
        assert mortar.unit_price == Decimal("40.00")

        mortar_analysis = services.analyses.get(created.analysis_ids["temp_1"])
        assert mortar_analysis.line_item_id == mortar.line_item_id
        sand_line = mortar_analysis.resources[1]
        assert sand_line.sub_line_item_id == sand.line_item_id
        assert sand_line.sub_line_item_price == Decimal("5.00")
        assert sand_line.parcial == Decimal("20.00")

        masonry_analysis = services.analyses.get_by_line_item(masonry.line_item_id)
        assert [r.sub_line_item_id for r in masonry_analysis.resources] == [mortar.line_item_id]
        assert masonry_analysis.direct_cost == Decimal("120.00")
        item = services.line_items.get(masonry.line_item_id)
        assert (item.unit_price, item.parcial) == (Decimal("120.00"), Decimal("240.00"))

        budget = services.budgets.get(draft_budget.budget_id)
        assert budget.parcial == Decimal("240.00")
        assert budget.tax_amount == Decimal("43.20")
        assert budget.total == Decimal("283.20")

        event = recorder.named("sub_items_created")[0]
        assert event.fields["line_items"] == 2
        assert event.fields["linked_parents"] == 1

    def test_sub_item_without_parent_quantity_leaves_parent_alone(self, services, masonry):
        created = services.analyses.create_sub_items(
            [
                SubItemCreate(
                    temp_id="temp_1",
                    parent_line_item_id=masonry.line_item_id,
                    description="Scaffolding",
                    item_number="01.01.A",
                    resources=[_material("1", "7")],
                )
            ]
        )

        assert services.line_items.get(created.line_item_ids["temp_1"]).item_number == "01.01.A"
        assert services.analyses.get_by_line_item(masonry.line_item_id) is None
        assert services.line_items.get(masonry.line_item_id).unit_price == Decimal("0")

    def test_circular_temp_ids_write_nothing(self, services, session, masonry):
        before = self._counts(session)
        with pytest.raises(CircularReferenceError) as exc_info:
            services.analyses.create_sub_items(
                [
                    SubItemCreate(temp_id="temp_1", parent_line_item_id="temp_2", description="A"),
                    SubItemCreate(temp_id="temp_2", parent_line_item_id="temp_1", description="B"),
                ]
            )
        assert sorted(exc_info.value.unresolved) == ["temp_1", "temp_2"]
        assert self._counts(session) == before

    def test_duplicate_temp_ids_rejected(self, services, masonry):
        entry = SubItemCreate(
            temp_id="temp_1", parent_line_item_id=masonry.line_item_id, description="A"
        )
        with pytest.raises(ValidationError) as exc_info:
            services.analyses.create_sub_items([entry, entry])
        assert exc_info.value.field == "temp_id"

    def test_unknown_parent_raises(self, services, draft_budget):
        with pytest.raises(NotFoundError):
            services.analyses.create_sub_items(
                [SubItemCreate(temp_id="temp_1", parent_line_item_id="PAR9999999999", description="A")]
            )

    def test_failure_in_totals_undoes_the_whole_call(
        self, any_mode_services, session, masonry, monkeypatch
    ):
        before = self._counts(session)

        def fail(*args, **kwargs):
            raise RuntimeError("totals unavailable")

        monkeypatch.setattr(any_mode_services.totals, "recompute_titles", fail)
        with pytest.raises(RuntimeError):
            any_mode_services.analyses.create_sub_items(self._entries(masonry.line_item_id))

        assert self._counts(session) == before
        assert any_mode_services.analyses.get_by_line_item(masonry.line_item_id) is None
        assert any_mode_services.line_items.get(masonry.line_item_id).unit_price == Decimal("0")
