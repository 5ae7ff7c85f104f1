"""
Helpers for the serialized-text columns of persisted rows.

Review rows keep their line items, addresses, picture replies and
confirmations as JSON text. Stored shapes are not trusted: anything that
does not parse into the expected container comes back empty, never raises.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from logging_config import get_logger


logger = get_logger(__name__)

CENT = Decimal("0.01")


def round2(value: float) -> float:
    """Round half-up to cents (0.125 -> 0.13, unlike the builtin round)."""
    return float(Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; None for missing or malformed values."""
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Ignoring malformed timestamp: {value!r}")
        return None


def dump_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _load(raw: Any, column: str) -> Any:
    if raw is None or raw == "":
        return None
    if not isinstance(raw, (str, bytes, bytearray)):
        # Already decoded by the persistence layer
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"Malformed JSON in column '{column}': {e}")
        return None


def parse_json_list(raw: Any, column: str = "") -> List[Dict[str, Any]]:
    """
    Decode a JSON column expected to hold a list of objects.

    Malformed text, a non-list value, or non-object entries yield an empty
    list (entries are filtered individually).
    """
    value = _load(raw, column)
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning(f"Expected list in column '{column}', got {type(value).__name__}")
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def parse_json_dict(raw: Any, column: str = "") -> Optional[Dict[str, Any]]:
    """Decode a JSON column expected to hold one object; None otherwise."""
    value = _load(raw, column)
    if value is None:
        return None
    if not isinstance(value, dict):
        logger.warning(f"Expected object in column '{column}', got {type(value).__name__}")
        return None
    return value


def coerce_price(value: Any) -> float:
    """
    Coerce a numeric-or-string price; unparsable values count as 0.

    Booleans are not prices even though bool is an int subclass.
    """
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return 0.0
    if number != number or number in (float("inf"), float("-inf")):
        return 0.0
    return number
