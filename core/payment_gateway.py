"""
Payment provider boundary.

Each provider implements PaymentGateway. The coordinator only talks to this
interface; everything provider-specific (amount units, event shapes, which
id a refund needs) stays inside the gateway.

Operations:
    create_checkout_session(...) -> CheckoutSession
    capture_order(provider_order_id, metadata) -> CaptureResult
    issue_refund(capture_reference, amount, ...) -> RefundResult
    construct_event(payload, headers) -> dict      (signature check)
    parse_event(event) -> PaymentEvent             (normalization)

Every call carries metadata with the internal review/order id; that is the
only link between provider state and ours.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional


# PaymentEvent.outcome values
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_REFUNDED = "refunded"
OUTCOME_OTHER = "other"

# Metadata key carrying the review id through the provider
REVIEW_ID_KEY = "order_review_id"


def to_minor_units(amount: float) -> int:
    """Dollars to cents, half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: Any) -> float:
    try:
        return float(Decimal(int(cents)) / 100)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class CheckoutLineItem:
    """One line on the provider's hosted checkout page."""

    name: str
    unit_amount: float
    quantity: int = 1
    kind: str = "product"
    """'product', 'shipping' or 'tax'."""

    @property
    def amount(self) -> float:
        return float(Decimal(str(self.unit_amount)) * self.quantity)


@dataclass(frozen=True)
class CheckoutSession:
    provider: str
    session_id: str
    checkout_url: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "provider": self.provider,
            "session_id": self.session_id,
            "checkout_url": self.checkout_url,
        }


@dataclass(frozen=True)
class CaptureResult:
    success: bool
    transaction_id: str = ""
    capture_reference: str = ""
    amount: float = 0.0
    status: str = ""
    message: str = ""


@dataclass(frozen=True)
class RefundResult:
    """
    Outcome of issue_refund().

    manual_reference_required: the provider could not identify the payment
    (no capture id on file, or the one we sent is unknown to it).
    """

    success: bool
    refund_id: str = ""
    status: str = ""
    manual_reference_required: bool = False
    message: str = ""


@dataclass(frozen=True)
class PaymentEvent:
    """A provider webhook event reduced to what the coordinator needs."""

    event_id: str
    event_type: str
    provider: str
    outcome: str
    review_id: Optional[int] = None
    amount: float = 0.0
    transaction_id: str = ""
    capture_reference: str = ""
    payment_reference: str = ""
    message: str = ""
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def review_id_from(metadata: Optional[Mapping[str, Any]], *fallbacks: Any) -> Optional[int]:
    """Pull our review id out of provider metadata (or fallback fields)."""
    candidates: List[Any] = []
    if metadata:
        candidates.append(metadata.get(REVIEW_ID_KEY))
    candidates.extend(fallbacks)
    for value in candidates:
        if value is None or value == "":
            continue
        try:
            return int(str(value))
        except ValueError:
            continue
    return None


class PaymentGateway:
    """
    Base class for payment providers.

    Subclasses set `name` and implement the operations. Network calls must
    use the gateway's `timeout` so no request blocks indefinitely.

    `requires_capture_reference` tells the refund flow whether
    issue_refund() can do anything without a stored capture reference.
    Gateways that can look one up from the checkout session set it False.
    """

    name = "base"
    requires_capture_reference = True

    def __init__(self, timeout: float = 15.0, currency: str = "usd"):
        self.timeout = timeout
        self.currency = currency

    def create_checkout_session(
        self,
        line_items: List[CheckoutLineItem],
        success_url: str,
        cancel_url: str,
        customer_info: Dict[str, Any],
        shipping_address: Optional[Dict[str, Any]],
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        raise NotImplementedError

    def capture_order(self, provider_order_id: str, metadata: Dict[str, Any]) -> CaptureResult:
        raise NotImplementedError

    def issue_refund(
        self,
        capture_reference: str,
        amount: float,
        metadata: Dict[str, Any],
        reason: Optional[str] = None,
    ) -> RefundResult:
        raise NotImplementedError

    def construct_event(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_event(self, event: Dict[str, Any]) -> PaymentEvent:
        raise NotImplementedError
