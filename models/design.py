"""
Embroidery design models.

An EmbroideryDesign is one uploaded artwork placed on a product. It belongs
to exactly one cart line; duplicating it gives an independent copy.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.exceptions import ValidationError
from models.serialization import coerce_price


MIN_DIMENSION_INCHES = 0.5
MAX_DIMENSION_INCHES = 12.0

# Option groups where at most one choice applies
SINGLE_CHOICE_GROUPS = ("coverage", "material", "border", "backing", "cutting")

# Option groups that hold a set of choices
MULTI_CHOICE_GROUPS = ("threads", "upgrades")


def _new_design_id() -> str:
    return f"design-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class SelectedOption:
    """A priced style option (e.g. 'Metallic thread', +$3.50)."""

    name: str
    price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "price": self.price}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectedOption":
        return cls(
            name=str(data.get("name", "")),
            price=coerce_price(data.get("price", 0)),
        )


@dataclass
class DesignOptions:
    """
    Style options chosen for one design.

    coverage/material/border/backing/cutting hold at most one option each;
    threads and upgrades are sets keyed by option name.
    """

    coverage: Optional[SelectedOption] = None
    material: Optional[SelectedOption] = None
    border: Optional[SelectedOption] = None
    backing: Optional[SelectedOption] = None
    cutting: Optional[SelectedOption] = None
    threads: Dict[str, SelectedOption] = field(default_factory=dict)
    upgrades: Dict[str, SelectedOption] = field(default_factory=dict)

    def all_options(self) -> List[SelectedOption]:
        """Every selected option, singles first, in a stable order."""
        selected = [getattr(self, group) for group in SINGLE_CHOICE_GROUPS]
        options = [option for option in selected if option is not None]
        options.extend(self.threads[name] for name in sorted(self.threads))
        options.extend(self.upgrades[name] for name in sorted(self.upgrades))
        return options

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for group in SINGLE_CHOICE_GROUPS:
            option = getattr(self, group)
            data[group] = option.to_dict() if option else None
        for group in MULTI_CHOICE_GROUPS:
            chosen = getattr(self, group)
            data[group] = [chosen[name].to_dict() for name in sorted(chosen)]
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DesignOptions":
        data = data or {}
        options = cls()
        for group in SINGLE_CHOICE_GROUPS:
            raw = data.get(group)
            if isinstance(raw, list):
                if len(raw) > 1:
                    raise ValidationError(group, f"Only one {group} option may be selected")
                raw = raw[0] if raw else None
            if isinstance(raw, dict):
                setattr(options, group, SelectedOption.from_dict(raw))
        for group in MULTI_CHOICE_GROUPS:
            chosen: Dict[str, SelectedOption] = {}
            for raw in data.get(group) or []:
                if isinstance(raw, dict):
                    option = SelectedOption.from_dict(raw)
                    chosen[option.name] = option
            setattr(options, group, chosen)
        return options


@dataclass
class EmbroideryDesign:
    """
    One artwork placed on a product.

    Dimensions are inches, rounded to 2 decimals on the way in. Range
    checking belongs to the pricing engine, which names the bad field.
    """

    id: str
    image: str
    width: float
    height: float
    scale: float = 1.0
    rotation: float = 0.0
    placement_notes: str = ""
    options: DesignOptions = field(default_factory=DesignOptions)

    def duplicate(self) -> "EmbroideryDesign":
        """Copy with a fresh identity, reset scale/rotation and empty notes."""
        return EmbroideryDesign(
            id=_new_design_id(),
            image=self.image,
            width=self.width,
            height=self.height,
            options=DesignOptions.from_dict(self.options.to_dict()),
        )

    def validate_for_submission(self) -> None:
        if not self.placement_notes.strip():
            raise ValidationError(
                "placement_notes",
                f"Placement notes are required for design {self.id}",
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image": self.image,
            "width": self.width,
            "height": self.height,
            "scale": self.scale,
            "rotation": self.rotation,
            "placement_notes": self.placement_notes,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbroideryDesign":
        """
        Create from a request payload or stored row.

        Non-numeric dimensions are passed through untouched so the pricing
        engine can reject them with the right field name.
        """
        return cls(
            id=str(data.get("id") or _new_design_id()),
            image=str(data.get("image", "")),
            width=_round_dimension(data.get("width")),
            height=_round_dimension(data.get("height")),
            scale=coerce_price(data.get("scale", 1.0)) or 1.0,
            rotation=coerce_price(data.get("rotation", 0.0)),
            placement_notes=str(data.get("placement_notes") or ""),
            options=DesignOptions.from_dict(data.get("options")),
        )


def _round_dimension(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    if value != value:
        return value
    return round(float(value), 2)
