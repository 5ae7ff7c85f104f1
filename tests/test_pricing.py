"""
Unit tests for the pricing engine and material catalog.
"""

import pytest

from core.exceptions import ValidationError
from models.design import DesignOptions, EmbroideryDesign
from models.pricing import MaterialSpec
from models.serialization import round2
from modules.pricing import DEFAULT_MATERIALS, MaterialCatalog, PricingEngine


# Fixtures

@pytest.fixture
def engine():
    return PricingEngine()


def _design(width=3, height=2, options=None):
    return EmbroideryDesign(
        id="d1",
        image="/art.png",
        width=width,
        height=height,
        placement_notes="Front",
        options=DesignOptions.from_dict(options),
    )


class TestMaterialCost:
    """Per-material breakdown of one patch."""

    def test_three_by_two_patch(self, engine):
        """Area materials are charged, thread and bobbin are not."""
        costs = engine.calculate_material_cost(3, 2)

        assert costs.fabric == 0.28
        assert costs.patch_attach == 0.28
        assert costs.wash_away_stabilizer == 0.04
        assert costs.cut_away_stabilizer > 0
        assert costs.thread == 0.0
        assert costs.bobbin == 0.0

    def test_total_matches_displayed_lines(self, engine):
        """The total is the sum of the already-rounded lines."""
        costs = engine.calculate_material_cost(4.37, 2.91)
        lines = [v for k, v in costs.to_dict().items() if k != "total"]

        assert costs.total == round2(sum(lines))

    def test_deterministic(self, engine):
        assert engine.calculate_material_cost(3, 2) == engine.calculate_material_cost(3, 2)

    def test_dimensions_rounded_to_two_decimals(self, engine):
        assert engine.calculate_material_cost(3.004, 2) == engine.calculate_material_cost(3, 2)


class TestDimensionValidation:
    """Bad dimensions name the offending field."""

    @pytest.mark.parametrize("value", [0, -1, 0.49, 12.01, 100])
    def test_out_of_range_width(self, engine, value):
        with pytest.raises(ValidationError) as exc_info:
            engine.calculate_material_cost(value, 2)

        assert exc_info.value.field == "width"

    @pytest.mark.parametrize("value", [None, "3", True, float("nan"), float("inf")])
    def test_non_numeric_height(self, engine, value):
        with pytest.raises(ValidationError) as exc_info:
            engine.calculate_material_cost(3, value)

        assert exc_info.value.field == "height"

    def test_bounds_are_inclusive(self, engine):
        engine.calculate_material_cost(0.5, 12)


class TestOptionsPrice:
    """Option prices are coerced; junk counts as zero."""

    def test_mixed_inputs(self, engine):
        options = [{"name": "Metallic", "price": "3.50"}, {"name": "Glow", "price": 2}, 1.25]

        assert engine.options_price(options) == 6.75

    def test_unparsable_prices_are_zero(self, engine):
        options = [{"price": "abc"}, {"price": None}, {"price": True}, {}]

        assert engine.options_price(options) == 0.0

    def test_total_price_adds_options(self, engine):
        quote = engine.calculate_total_price(3, 2, [{"name": "Metallic", "price": 3.5}])

        assert quote.options_price == 3.5
        assert quote.total_price == round2(quote.material_costs.total + 3.5)


class TestPriceDesigns:
    """Several designs on one line are priced one by one."""

    def test_designs_are_not_merged(self, engine):
        single = engine.price_designs([_design(2, 2)])
        double = engine.price_designs([_design(2, 2), _design(2, 2)])

        assert double.material_price == round2(single.material_price * 2)
        assert len(double.quotes) == 2

    def test_options_from_design(self, engine):
        pricing = engine.price_designs([
            _design(options={"border": {"name": "Merrow", "price": 2.0},
                             "threads": [{"name": "Gold", "price": 1.5}]}),
        ])

        assert pricing.options_price == 3.5
        assert pricing.total == round2(pricing.material_price + 3.5)

    def test_two_single_choice_options_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            DesignOptions.from_dict({"backing": [{"name": "A"}, {"name": "B"}]})

        assert exc_info.value.field == "backing"


class TestMaterialCatalog:
    """Operator catalog with fallback to the built-in table."""

    def test_missing_key_falls_back(self):
        catalog = MaterialCatalog()

        assert catalog.resolve("fabric") == DEFAULT_MATERIALS["fabric"]

    def test_inactive_entry_falls_back(self):
        catalog = MaterialCatalog([MaterialSpec("fabric", "Cheap", 1.0, 30, 36, 1.0, active=False)])

        assert catalog.resolve("fabric") == DEFAULT_MATERIALS["fabric"]

    def test_override_changes_price(self):
        catalog = MaterialCatalog.from_rows([
            {"key": "fabric", "name": "Twill", "cost": 68.0, "width": 30, "length": 36, "waste_factor": 1.5},
        ])
        engine = PricingEngine(catalog)

        assert engine.calculate_material_cost(3, 2).fabric == 0.57

    @pytest.mark.parametrize("row,field", [
        ({"key": "glitter", "cost": 1, "width": 1, "length": 1}, "key"),
        ({"key": "fabric", "cost": -1, "width": 1, "length": 1}, "cost"),
        ({"key": "fabric", "cost": 1, "width": 1, "length": 0}, "length"),
        ({"key": "fabric", "cost": 1, "width": 1, "length": 1, "waste_factor": 11}, "waste_factor"),
    ])
    def test_invalid_rows(self, row, field):
        with pytest.raises(ValidationError) as exc_info:
            MaterialCatalog.from_rows([row])

        assert exc_info.value.field == field
