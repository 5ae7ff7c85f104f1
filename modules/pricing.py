"""Material and option pricing for embroidered patches."""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Mapping, Optional

from core.exceptions import ValidationError
from logging_config import get_logger
from models.design import EmbroideryDesign, MAX_DIMENSION_INCHES, MIN_DIMENSION_INCHES
from models.pricing import (
    CostBreakdown,
    DesignPricing,
    MATERIAL_KEYS,
    MaterialSpec,
    PriceQuote,
)
from models.serialization import coerce_price, round2


logger = get_logger(__name__)


# Built-in catalog, used whenever the operator catalog has no usable entry.
# cost is per sheet/roll/spool; width/length in inches (spools: width 0).
DEFAULT_MATERIALS: Dict[str, MaterialSpec] = {
    "fabric": MaterialSpec("fabric", "Fabric", 34.0, 30.0, 36.0, 1.5),
    "patch_attach": MaterialSpec("patch_attach", "Patch Attach", 100.0, 9.0, 360.0, 1.5),
    "thread": MaterialSpec("thread", "Thread", 4.0, 0.0, 5000.0, 1.2),
    "bobbin": MaterialSpec("bobbin", "Bobbin", 50.0, 0.0, 35000.0, 1.2),
    "cut_away_stabilizer": MaterialSpec(
        "cut_away_stabilizer", "Cut-Away Stabilizer", 180.0, 18.0, 3600.0, 1.5
    ),
    "wash_away_stabilizer": MaterialSpec(
        "wash_away_stabilizer", "Wash-Away Stabilizer", 60.0, 15.0, 900.0, 1.5
    ),
}

MIN_WASTE_FACTOR = 1.0
MAX_WASTE_FACTOR = 10.0


class MaterialCatalog:
    """
    Operator-maintained material prices.

    Entries are validated on the way in. Lookups fall back to
    DEFAULT_MATERIALS for missing or inactive keys.
    """

    def __init__(self, entries: Optional[Iterable[MaterialSpec]] = None) -> None:
        self._entries: Dict[str, MaterialSpec] = {}
        for entry in entries or ():
            self.add(entry)

    def add(self, entry: MaterialSpec) -> None:
        if entry.key not in MATERIAL_KEYS:
            raise ValidationError("key", f"Unknown material: {entry.key}", entry.key)
        if entry.cost < 0:
            raise ValidationError("cost", f"{entry.name}: cost cannot be negative", entry.cost)
        if entry.width < 0 or entry.length < 0:
            raise ValidationError("width", f"{entry.name}: dimensions cannot be negative")
        if entry.is_area_based and entry.length <= 0:
            raise ValidationError("length", f"{entry.name}: sheet length must be positive")
        if not MIN_WASTE_FACTOR <= entry.waste_factor <= MAX_WASTE_FACTOR:
            raise ValidationError(
                "waste_factor",
                f"{entry.name}: waste factor must be between 1 and 10",
                entry.waste_factor,
            )
        self._entries[entry.key] = entry

    def resolve(self, key: str) -> MaterialSpec:
        entry = self._entries.get(key)
        if entry is None or not entry.active:
            return DEFAULT_MATERIALS[key]
        return entry

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]]) -> "MaterialCatalog":
        """Build from persisted material rows (key, name, cost, width, length, waste_factor, active)."""
        catalog = cls()
        for row in rows:
            catalog.add(MaterialSpec(
                key=str(row.get("key", "")),
                name=str(row.get("name", row.get("key", ""))),
                cost=coerce_price(row.get("cost")),
                width=coerce_price(row.get("width")),
                length=coerce_price(row.get("length")),
                waste_factor=coerce_price(row.get("waste_factor", 1.0)),
                active=bool(row.get("active", True)),
            ))
        return catalog


class PricingEngine:
    """
    Converts design dimensions and options into a cost breakdown.

    Stateless apart from the catalog it was built with; safe to share
    between request threads.
    """

    # Current policy: thread and bobbin are not charged per design.
    # The older stitch-count estimate is intentionally not used.
    NON_AREA_COST = 0.0

    def __init__(self, catalog: Optional[MaterialCatalog] = None) -> None:
        self.catalog = catalog or MaterialCatalog()

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    @staticmethod
    def validate_dimension(field: str, value: Any) -> float:
        """Return the dimension rounded to 2 decimals, or raise ValidationError."""
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(field, f"{field} must be a number", value)
        if math.isnan(value) or math.isinf(value):
            raise ValidationError(field, f"{field} must be a finite number", str(value))
        if value <= 0:
            raise ValidationError(field, f"{field} must be positive", value)
        value = round(float(value), 2)
        if not MIN_DIMENSION_INCHES <= value <= MAX_DIMENSION_INCHES:
            raise ValidationError(
                field,
                f"{field} must be between {MIN_DIMENSION_INCHES} and {MAX_DIMENSION_INCHES} inches",
                value,
            )
        return value

    # -------------------------------------------------------------------------
    # Calculations
    # -------------------------------------------------------------------------

    def material_cost(self, spec: MaterialSpec, patch_area: float) -> float:
        if not spec.is_area_based:
            return self.NON_AREA_COST
        return round2(patch_area * (spec.cost / spec.sheet_area) * spec.waste_factor)

    def calculate_material_cost(self, width: Any, height: Any) -> CostBreakdown:
        """
        Material cost of one patch.

        Every sub-cost is rounded to cents before summing so the total can
        be reproduced from the displayed lines.
        """
        width = self.validate_dimension("width", width)
        height = self.validate_dimension("height", height)
        patch_area = width * height

        costs = {
            key: self.material_cost(self.catalog.resolve(key), patch_area)
            for key in MATERIAL_KEYS
        }
        total = round2(sum(costs.values()))

        logger.debug(f"Material cost {width}x{height}in: {costs} total={total}")
        return CostBreakdown(total=total, **costs)

    def options_price(self, options: Iterable[Any]) -> float:
        """Sum of option prices; accepts option objects, dicts or bare prices."""
        total = 0.0
        for option in options or ():
            if isinstance(option, Mapping):
                price = option.get("price")
            else:
                price = getattr(option, "price", option)
            total += coerce_price(price)
        return round2(total)

    def calculate_total_price(self, width: Any, height: Any, options: Iterable[Any] = ()) -> PriceQuote:
        material_costs = self.calculate_material_cost(width, height)
        options_price = self.options_price(options)
        return PriceQuote(
            material_costs=material_costs,
            options_price=options_price,
            total_price=round2(material_costs.total + options_price),
        )

    def price_designs(self, designs: List[EmbroideryDesign]) -> DesignPricing:
        """
        Price every design on a line item separately, then add up.

        Areas are never merged: two 2x2 patches are priced as two patches,
        not as one 4x2.
        """
        quotes = []
        for design in designs:
            quotes.append(self.calculate_total_price(
                design.width, design.height, design.options.all_options()
            ))

        return DesignPricing(
            material_price=round2(sum(q.material_costs.total for q in quotes)),
            options_price=round2(sum(q.options_price for q in quotes)),
            quotes=tuple(quotes),
        )
