"""
Order review data models.

An OrderReview is a customer's cart submitted for design review before any
money moves. It flows:

    pending -> needs-changes -> pending-payment -> approved-processing
                     (rejected reachable from the first three)

Picture replies and customer confirmations are append-only logs. Each entry
carries a per-review sequence number so "newer than" comparisons do not
depend on clock resolution.

Persistence:
    to_row() / from_row() map to a flat row whose structured columns are JSON
    text. from_row() never raises on malformed column content.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from models.design import EmbroideryDesign
from models.pricing import PricingBreakdown
from models.serialization import (
    coerce_price,
    dump_json,
    format_timestamp,
    parse_json_dict,
    parse_json_list,
    parse_timestamp,
    round2,
    utc_now,
)


class Actor(Enum):
    """Who is driving a transition."""

    CUSTOMER = "customer"
    """The customer who owns the review."""

    OPERATOR = "operator"
    """Shop staff reviewing designs and refunds."""

    SYSTEM = "system"
    """The payment coordinator reacting to provider events."""


class ReviewStatus(Enum):
    """
    Status of an order review.

    Lifecycle:
        PENDING -> NEEDS_CHANGES -> PENDING_PAYMENT -> APPROVED_PROCESSING
        PENDING | NEEDS_CHANGES | PENDING_PAYMENT -> REJECTED -> PENDING
    """

    PENDING = "pending"
    """Submitted, waiting for an operator to look at the designs."""

    NEEDS_CHANGES = "needs-changes"
    """Operator posted proof pictures; waiting on the customer."""

    PENDING_PAYMENT = "pending-payment"
    """Customer accepted every proof; waiting for payment capture."""

    APPROVED_PROCESSING = "approved-processing"
    """Paid. An Order exists for this review."""

    REJECTED = "rejected"
    """Operator declined the submission."""

    @property
    def label(self) -> str:
        """Coarse status shown to customers."""
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self is ReviewStatus.APPROVED_PROCESSING


_STATUS_LABELS = {
    ReviewStatus.PENDING: "Design Review Pending",
    ReviewStatus.NEEDS_CHANGES: "Changes Requested",
    ReviewStatus.PENDING_PAYMENT: "Awaiting Payment",
    ReviewStatus.APPROVED_PROCESSING: "Approved - In Production",
    ReviewStatus.REJECTED: "Not Approved",
}


def _parse_status(value: Any) -> ReviewStatus:
    try:
        return ReviewStatus(value)
    except ValueError:
        return ReviewStatus.PENDING


@dataclass(frozen=True)
class Address:
    """Postal address as entered at checkout."""

    name: str = ""
    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "US"
    phone: str = ""
    email: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
            "phone": self.phone,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Address"]:
        if not data:
            return None
        return cls(
            name=str(data.get("name", "")),
            line1=str(data.get("line1", data.get("street", ""))),
            line2=str(data.get("line2", "")),
            city=str(data.get("city", "")),
            state=str(data.get("state", "")),
            postal_code=str(data.get("postal_code", data.get("zip", ""))),
            country=str(data.get("country", "US")),
            phone=str(data.get("phone", "")),
            email=str(data.get("email", "")),
        )


@dataclass(frozen=True)
class ShippingMethod:
    """A shipping option as quoted by the rate lookup (price + ETA)."""

    name: str
    price: float = 0.0
    eta: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "price": self.price, "eta": self.eta}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ShippingMethod"]:
        if not data:
            return None
        return cls(
            name=str(data.get("name", "")),
            price=round2(coerce_price(data.get("price", 0))),
            eta=str(data.get("eta", "")),
        )


@dataclass
class LineItem:
    """
    One cart line inside a review.

    `id` is assigned when the review is created and is the only key picture
    replies and confirmations may use. `source_ref` keeps whatever id the
    client cart used, for migrating old replies.
    """

    id: str
    quantity: int
    pricing: PricingBreakdown
    product_id: Optional[str] = None
    product_name: str = ""
    is_custom: bool = False
    source_ref: str = ""
    designs: List[EmbroideryDesign] = field(default_factory=list)

    @property
    def unit_price(self) -> float:
        return self.pricing.unit_price

    @property
    def line_total(self) -> float:
        return round2(self.pricing.unit_price * self.quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "quantity": self.quantity,
            "pricing": self.pricing.to_dict(),
            "product_id": self.product_id,
            "product_name": self.product_name,
            "is_custom": self.is_custom,
            "source_ref": self.source_ref,
            "designs": [d.to_dict() for d in self.designs],
            "line_total": self.line_total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        designs = []
        for raw in data.get("designs") or []:
            if isinstance(raw, dict):
                designs.append(EmbroideryDesign.from_dict(raw))
        pricing = data.get("pricing")
        return cls(
            id=str(data.get("id", "")),
            quantity=int(coerce_price(data.get("quantity", 1))) or 1,
            pricing=PricingBreakdown.from_dict(pricing if isinstance(pricing, dict) else {}),
            product_id=data.get("product_id"),
            product_name=str(data.get("product_name", "")),
            is_custom=bool(data.get("is_custom", False)),
            source_ref=str(data.get("source_ref", "")),
            designs=designs,
        )


@dataclass(frozen=True)
class PictureReply:
    """Operator proof image + note for one line item."""

    id: str
    item_id: str
    image: str
    note: str
    sequence: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "image": self.image,
            "note": self.note,
            "sequence": self.sequence,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PictureReply":
        return cls(
            id=str(data.get("id", "")),
            item_id=str(data.get("item_id", "")),
            image=str(data.get("image", "")),
            note=str(data.get("note", "")),
            sequence=int(coerce_price(data.get("sequence", 0))),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
        )


@dataclass(frozen=True)
class CustomerConfirmation:
    """Customer's accept/reject answer for the proofs of one line item."""

    id: str
    item_id: str
    accepted: bool
    note: str
    sequence: int
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "accepted": self.accepted,
            "note": self.note,
            "sequence": self.sequence,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomerConfirmation":
        return cls(
            id=str(data.get("id", "")),
            item_id=str(data.get("item_id", "")),
            accepted=data.get("accepted") is True,
            note=str(data.get("note", "")),
            sequence=int(coerce_price(data.get("sequence", 0))),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
        )


@dataclass(frozen=True)
class StatusChange:
    """One entry of the review's audit trail."""

    from_status: Optional[str]
    to_status: str
    actor: str
    at: datetime
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status,
            "to": self.to_status,
            "actor": self.actor,
            "at": format_timestamp(self.at),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusChange":
        return cls(
            from_status=data.get("from"),
            to_status=str(data.get("to", "")),
            actor=str(data.get("actor", "")),
            at=parse_timestamp(data.get("at")) or utc_now(),
            note=str(data.get("note", "")),
        )


@dataclass
class OrderReview:
    """
    A submitted cart awaiting design approval and payment.

    Only services.review_service mutates instances, and only through its
    transition methods. Instances handed to callers are copies loaded from
    the store.
    """

    id: int
    customer_id: str
    items: List[LineItem]
    subtotal: float
    shipping: float
    tax: float
    total: float
    status: ReviewStatus = ReviewStatus.PENDING
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    shipping_method: Optional[ShippingMethod] = None
    customer_notes: str = ""
    admin_notes: str = ""
    internal_notes: str = ""
    rejection_reason: str = ""
    picture_replies: List[PictureReply] = field(default_factory=list)
    confirmations: List[CustomerConfirmation] = field(default_factory=list)
    history: List[StatusChange] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    picture_reply_uploaded_at: Optional[datetime] = None
    customer_confirmed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_provider: str = ""
    payment_reference: str = ""
    order_number: str = ""
    resubmitted_from: Optional[int] = None

    # -------------------------------------------------------------------------
    # Log helpers
    # -------------------------------------------------------------------------

    def item(self, item_id: str) -> Optional[LineItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def next_sequence(self) -> int:
        sequences = [r.sequence for r in self.picture_replies]
        sequences.extend(c.sequence for c in self.confirmations)
        return max(sequences, default=0) + 1

    def replies_for(self, item_id: str) -> List[PictureReply]:
        return [r for r in self.picture_replies if r.item_id == item_id]

    def current_confirmation(self, item_id: str) -> Optional[CustomerConfirmation]:
        """Most recently appended confirmation for the item."""
        current = None
        for confirmation in self.confirmations:
            if confirmation.item_id == item_id:
                if current is None or confirmation.sequence > current.sequence:
                    current = confirmation
        return current

    def replied_item_ids(self) -> List[str]:
        seen: List[str] = []
        for reply in self.picture_replies:
            if reply.item_id not in seen:
                seen.append(reply.item_id)
        return seen

    def outstanding_item_ids(self) -> List[str]:
        """
        Replied items whose latest reply has no later confirmation.
        """
        outstanding = []
        for item_id in self.replied_item_ids():
            latest_reply = max(r.sequence for r in self.replies_for(item_id))
            confirmation = self.current_confirmation(item_id)
            if confirmation is None or confirmation.sequence < latest_reply:
                outstanding.append(item_id)
        return outstanding

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Full snapshot for operators and notifications."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "status_label": self.status.label,
            "items": [i.to_dict() for i in self.items],
            "subtotal": self.subtotal,
            "shipping": self.shipping,
            "tax": self.tax,
            "total": self.total,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
            "billing_address": self.billing_address.to_dict() if self.billing_address else None,
            "shipping_method": self.shipping_method.to_dict() if self.shipping_method else None,
            "customer_notes": self.customer_notes,
            "admin_notes": self.admin_notes,
            "internal_notes": self.internal_notes,
            "rejection_reason": self.rejection_reason,
            "picture_replies": [r.to_dict() for r in self.picture_replies],
            "confirmations": [c.to_dict() for c in self.confirmations],
            "history": [h.to_dict() for h in self.history],
            "submitted_at": format_timestamp(self.submitted_at),
            "reviewed_at": format_timestamp(self.reviewed_at),
            "picture_reply_uploaded_at": format_timestamp(self.picture_reply_uploaded_at),
            "customer_confirmed_at": format_timestamp(self.customer_confirmed_at),
            "paid_at": format_timestamp(self.paid_at),
            "payment_provider": self.payment_provider,
            "payment_reference": self.payment_reference,
            "order_number": self.order_number,
            "resubmitted_from": self.resubmitted_from,
        }

    def to_customer_dict(self) -> Dict[str, Any]:
        """Snapshot without operator-internal fields."""
        data = self.to_dict()
        for key in ("internal_notes", "history", "payment_reference"):
            data.pop(key, None)
        return data

    def to_row(self) -> Dict[str, Any]:
        """Flat persistence row; structured columns are JSON text."""
        return {
            "id": self.id,
            "user_id": self.customer_id,
            "status": self.status.value,
            "order_data": dump_json([i.to_dict() for i in self.items]),
            "subtotal": self.subtotal,
            "shipping": self.shipping,
            "tax": self.tax,
            "total": self.total,
            "shipping_address": dump_json(self.shipping_address.to_dict()) if self.shipping_address else None,
            "billing_address": dump_json(self.billing_address.to_dict()) if self.billing_address else None,
            "shipping_method": dump_json(self.shipping_method.to_dict()) if self.shipping_method else None,
            "customer_notes": self.customer_notes,
            "admin_notes": self.admin_notes,
            "internal_notes": self.internal_notes,
            "rejection_reason": self.rejection_reason,
            "admin_picture_replies": dump_json([r.to_dict() for r in self.picture_replies]),
            "customer_confirmations": dump_json([c.to_dict() for c in self.confirmations]),
            "status_history": dump_json([h.to_dict() for h in self.history]),
            "submitted_at": format_timestamp(self.submitted_at),
            "reviewed_at": format_timestamp(self.reviewed_at),
            "picture_reply_uploaded_at": format_timestamp(self.picture_reply_uploaded_at),
            "customer_confirmed_at": format_timestamp(self.customer_confirmed_at),
            "paid_at": format_timestamp(self.paid_at),
            "payment_provider": self.payment_provider,
            "payment_reference": self.payment_reference,
            "order_number": self.order_number,
            "resubmitted_from": self.resubmitted_from,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OrderReview":
        """
        Rebuild from a persistence row.

        Malformed JSON columns come back as empty lists / None.
        """
        return cls(
            id=int(row["id"]),
            customer_id=str(row.get("user_id", "")),
            items=[LineItem.from_dict(d) for d in parse_json_list(row.get("order_data"), "order_data")],
            subtotal=coerce_price(row.get("subtotal")),
            shipping=coerce_price(row.get("shipping")),
            tax=coerce_price(row.get("tax")),
            total=coerce_price(row.get("total")),
            status=_parse_status(row.get("status")),
            shipping_address=Address.from_dict(parse_json_dict(row.get("shipping_address"), "shipping_address")),
            billing_address=Address.from_dict(parse_json_dict(row.get("billing_address"), "billing_address")),
            shipping_method=ShippingMethod.from_dict(parse_json_dict(row.get("shipping_method"), "shipping_method")),
            customer_notes=row.get("customer_notes") or "",
            admin_notes=row.get("admin_notes") or "",
            internal_notes=row.get("internal_notes") or "",
            rejection_reason=row.get("rejection_reason") or "",
            picture_replies=[
                PictureReply.from_dict(d)
                for d in parse_json_list(row.get("admin_picture_replies"), "admin_picture_replies")
            ],
            confirmations=[
                CustomerConfirmation.from_dict(d)
                for d in parse_json_list(row.get("customer_confirmations"), "customer_confirmations")
            ],
            history=[
                StatusChange.from_dict(d)
                for d in parse_json_list(row.get("status_history"), "status_history")
            ],
            submitted_at=parse_timestamp(row.get("submitted_at")),
            reviewed_at=parse_timestamp(row.get("reviewed_at")),
            picture_reply_uploaded_at=parse_timestamp(row.get("picture_reply_uploaded_at")),
            customer_confirmed_at=parse_timestamp(row.get("customer_confirmed_at")),
            paid_at=parse_timestamp(row.get("paid_at")),
            payment_provider=row.get("payment_provider") or "",
            payment_reference=row.get("payment_reference") or "",
            order_number=row.get("order_number") or "",
            resubmitted_from=row.get("resubmitted_from"),
        )
