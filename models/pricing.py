"""
Pricing result models.

Produced by modules.pricing.PricingEngine. All amounts are dollars,
already rounded to cents by the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

from models.serialization import coerce_price, round2


MATERIAL_KEYS = (
    "fabric",
    "patch_attach",
    "thread",
    "bobbin",
    "cut_away_stabilizer",
    "wash_away_stabilizer",
)


@dataclass(frozen=True)
class MaterialSpec:
    """
    One consumable in the material catalog.

    width == 0 marks a non-area material (thread, bobbin) priced by policy
    rather than by patch area.
    """

    key: str
    name: str
    cost: float
    """Price of one sheet/roll/spool."""

    width: float
    """Sheet width in inches (0 for spools)."""

    length: float
    """Sheet length in inches, or yards/stitches per spool."""

    waste_factor: float
    """Multiplier for offcuts and setup waste, 1.0 - 10.0."""

    active: bool = True

    @property
    def is_area_based(self) -> bool:
        return self.width > 0

    @property
    def sheet_area(self) -> float:
        return self.width * self.length


@dataclass(frozen=True)
class CostBreakdown:
    """Per-material cost of one design, each line rounded on its own."""

    fabric: float = 0.0
    patch_attach: float = 0.0
    thread: float = 0.0
    bobbin: float = 0.0
    cut_away_stabilizer: float = 0.0
    wash_away_stabilizer: float = 0.0
    total: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        data = {key: getattr(self, key) for key in MATERIAL_KEYS}
        data["total"] = self.total
        return data


@dataclass(frozen=True)
class PriceQuote:
    """Material cost plus selected options for one design."""

    material_costs: CostBreakdown
    options_price: float
    total_price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "material_costs": self.material_costs.to_dict(),
            "options_price": self.options_price,
            "total_price": self.total_price,
        }


@dataclass(frozen=True)
class DesignPricing:
    """Aggregate of several designs on one line item."""

    material_price: float = 0.0
    options_price: float = 0.0
    quotes: tuple = field(default_factory=tuple)

    @property
    def total(self) -> float:
        return round2(self.material_price + self.options_price)


@dataclass(frozen=True)
class PricingBreakdown:
    """
    Frozen per-unit pricing of a line item.

    Computed once at review submission and copied verbatim into the Order;
    never recomputed from live catalog data.
    """

    base_price: float = 0.0
    embroidery_material_price: float = 0.0
    embroidery_options_price: float = 0.0

    @property
    def unit_price(self) -> float:
        return round2(
            self.base_price
            + self.embroidery_material_price
            + self.embroidery_options_price
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "base_price": self.base_price,
            "embroidery_material_price": self.embroidery_material_price,
            "embroidery_options_price": self.embroidery_options_price,
            "unit_price": self.unit_price,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingBreakdown":
        return cls(
            base_price=coerce_price(data.get("base_price", 0)),
            embroidery_material_price=coerce_price(data.get("embroidery_material_price", 0)),
            embroidery_options_price=coerce_price(data.get("embroidery_options_price", 0)),
        )
