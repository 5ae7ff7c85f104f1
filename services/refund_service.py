"""
Refund request state machine.

Independent lifecycle over a paid Order:

    pending -> under_review -> approved -> processing -> completed
    pending | under_review -> rejected | cancelled
    approved | processing -> failed -> approved (retry)

Approval runs the provider refund:
    1. Resolve the capture reference (operator override > stored)
    2. No reference and the gateway needs one (PayPal) ->
       RefundOutcome.manual_reference_required, the refund does NOT move;
       the operator supplies the reference and approves again. Stripe gets
       the review's checkout session to look the payment intent up; with
       no session either it takes the same manual-reference path
    3. approved -> processing, provider call with bounded timeout
    4. success -> completed, order refunded_amount/payment_status updated
       provider error/timeout -> failed (retryable); any other exception
       also fails the refund before it propagates

Notifications are published after the store lock is released.
Approving an already-completed refund is a no-op returning the completed
record. A second approve while one is in flight hits 'processing' and is
rejected as an invalid transition.

Customers see statuses, admin notes and rejection reasons; raw provider
messages are kept in failure_reason and retry markers in internal_notes,
for operators only.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import (
    ActorNotPermittedError,
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from core.payment_gateway import PaymentGateway
from logging_config import get_logger
from models.order import Order, PaymentStatus
from models.refund import (
    RefundItem,
    RefundMethod,
    RefundOutcome,
    RefundReason,
    RefundRequest,
    RefundStatus,
    RefundType,
)
from models.review import Actor
from models.serialization import coerce_price, round2, utc_now
from services.notifier import (
    ORDER_STATUS_CHANGED,
    REFUND_STATUS_CHANGED,
    NotificationHub,
    customer_key,
    order_key,
    refund_key,
)
from services.store import OrderStore


logger = get_logger(__name__)


# Per-item amounts must add up to the requested amount within this
RECONCILE_TOLERANCE = 0.01

RETRY_MARKER = "[RETRY ATTEMPT]"

ALLOWED_TRANSITIONS = {
    RefundStatus.PENDING: {
        RefundStatus.UNDER_REVIEW,
        RefundStatus.APPROVED,
        RefundStatus.REJECTED,
        RefundStatus.CANCELLED,
    },
    RefundStatus.UNDER_REVIEW: {
        RefundStatus.APPROVED,
        RefundStatus.REJECTED,
        RefundStatus.CANCELLED,
    },
    RefundStatus.APPROVED: {RefundStatus.PROCESSING, RefundStatus.FAILED},
    RefundStatus.PROCESSING: {RefundStatus.COMPLETED, RefundStatus.FAILED},
    RefundStatus.FAILED: {RefundStatus.APPROVED},
}


def _parse_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field, f"{field} must be one of: {allowed}", value)


class RefundService:
    """Creates refund requests and drives them through approval."""

    def __init__(
        self,
        store: OrderStore,
        notifier: NotificationHub,
        gateways: Optional[Dict[str, PaymentGateway]] = None,
        refund_window_days: int = 30,
        currency: str = "USD",
        clock: Callable = utc_now,
    ):
        self.store = store
        self.notifier = notifier
        self.gateways: Dict[str, PaymentGateway] = dict(gateways or {})
        self.refund_window = timedelta(days=refund_window_days)
        self.currency = currency.upper()
        self.clock = clock

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_refund(self, refund_id: int, customer_id: Optional[str] = None) -> RefundRequest:
        refund = self.store.get_refund(refund_id)
        if customer_id is not None and refund.customer_id != customer_id:
            raise NotFoundError("Refund request", refund_id)
        return refund

    def list_refunds(
        self,
        order_number: Optional[str] = None,
        status: Optional[RefundStatus] = None,
        customer_id: Optional[str] = None,
    ) -> List[RefundRequest]:
        refunds = self.store.list_refunds(order_number=order_number, status=status)
        if customer_id is not None:
            refunds = [r for r in refunds if r.customer_id == customer_id]
        return refunds

    def refund_stats(self) -> Dict[str, Any]:
        """Counts per status and money totals for the operator dashboard."""
        refunds = self.store.list_refunds()
        counts = {status.value: 0 for status in RefundStatus}
        for refund in refunds:
            counts[refund.status.value] += 1
        return {
            "total_requests": len(refunds),
            "by_status": counts,
            "open_requests": sum(1 for r in refunds if r.status.is_active),
            "total_requested": round2(sum(
                r.requested_amount for r in refunds
                if r.status not in (RefundStatus.REJECTED, RefundStatus.CANCELLED)
            )),
            "total_refunded": round2(sum(
                r.requested_amount for r in refunds if r.status is RefundStatus.COMPLETED
            )),
        }

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_refund(
        self,
        order_number: str,
        actor: Actor,
        customer_id: Optional[str] = None,
        refund_type: str = RefundType.FULL.value,
        reason: str = RefundReason.OTHER.value,
        description: str = "",
        amount: Any = None,
        items: Optional[List[Dict[str, Any]]] = None,
        refund_method: str = RefundMethod.ORIGINAL_PAYMENT.value,
    ) -> RefundRequest:
        """
        Open a refund request against a paid order.

        Rules:
            - customers may only refund their own orders, within the refund
              window (operators are not bound by the window)
            - one active refund per order
            - amount <= what is left to refund on the order
            - itemized partial refunds must add up within one cent

        Raises:
            ValidationError, ConflictError, NotFoundError
        """
        if actor not in (Actor.CUSTOMER, Actor.OPERATOR):
            raise ActorNotPermittedError("request a refund", actor.value, "customer or operator")
        if actor is Actor.CUSTOMER and not customer_id:
            raise ValidationError("customer_id", "Customer id is required")

        refund_type_value = _parse_enum(RefundType, refund_type, "refund_type")
        reason_value = _parse_enum(RefundReason, reason, "reason")
        method_value = _parse_enum(RefundMethod, refund_method, "refund_method")

        with self.store.atomic():
            order = self.store.get_order(order_number)
            if actor is Actor.CUSTOMER and order.customer_id != customer_id:
                raise NotFoundError("Order", order_number)

            if order.payment_status is PaymentStatus.REFUNDED or order.refundable_amount <= 0:
                raise ConflictError(f"Order {order_number} is already fully refunded")

            if actor is Actor.CUSTOMER and self.clock() - order.refund_window_start > self.refund_window:
                raise ConflictError(
                    f"Refund window of {self.refund_window.days} days has passed for order {order_number}",
                    {"order_number": order_number, "resolution": "Contact support"},
                )

            active = [r for r in self.store.list_refunds(order_number=order_number) if r.status.is_active]
            if active:
                raise ConflictError(
                    f"Order {order_number} already has an open refund request (#{active[0].id})",
                    {"refund_id": active[0].id},
                )

            refund_items = self._build_items(order, items or [])
            requested = self._requested_amount(order, refund_type_value, amount, refund_items)

            refund = RefundRequest(
                id=0,
                order_number=order.order_number,
                customer_id=order.customer_id,
                requested_amount=requested,
                original_amount=order.total,
                refund_type=refund_type_value,
                reason=reason_value,
                description=description or "",
                refund_method=method_value,
                currency=self.currency,
                items=refund_items,
                provider=order.payment_provider,
                capture_reference=order.capture_reference,
                requested_by=actor.value,
                requested_at=self.clock(),
            )
            refund = self.store.insert_refund(refund)

        logger.info(
            f"Refund #{refund.id} requested by {actor.value} on {order_number}: "
            f"{refund.refund_type.value} {refund.requested_amount:.2f} ({refund.reason.value})"
        )
        self._notify(refund)
        return refund

    def _build_items(self, order: Order, raw_items: List[Dict[str, Any]]) -> List[RefundItem]:
        """Price refunded lines from the order snapshot, with proportional tax/shipping."""
        refund_items: List[RefundItem] = []
        seen = set()
        for raw in raw_items:
            line_item_id = str(raw.get("line_item_id") or "")
            line_item = order.item(line_item_id)
            if line_item is None:
                raise ValidationError("items", f"Order has no line item '{line_item_id}'", line_item_id)
            if line_item_id in seen:
                raise ValidationError("items", f"Line item '{line_item_id}' listed twice", line_item_id)
            seen.add(line_item_id)

            quantity = raw.get("quantity", 1)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= line_item.quantity:
                raise ValidationError(
                    "quantity",
                    f"Quantity for '{line_item_id}' must be between 1 and {line_item.quantity}",
                    quantity,
                )

            item_subtotal = round2(line_item.unit_price * quantity)
            share = item_subtotal / order.subtotal if order.subtotal else 0.0
            tax_share = round2(order.tax * share)
            shipping_share = round2(order.shipping * share)
            expected = round2(item_subtotal + tax_share + shipping_share)

            if raw.get("amount") is not None:
                stated = coerce_price(raw.get("amount"))
                if abs(stated - expected) > RECONCILE_TOLERANCE:
                    raise ValidationError(
                        "items",
                        f"Amount for '{line_item_id}' should be {expected:.2f}, got {stated:.2f}",
                        stated,
                    )

            refund_items.append(RefundItem(
                line_item_id=line_item_id,
                quantity=quantity,
                unit_price=line_item.unit_price,
                tax_share=tax_share,
                shipping_share=shipping_share,
                amount=expected,
            ))
        return refund_items

    def _requested_amount(
        self,
        order: Order,
        refund_type: RefundType,
        amount: Any,
        items: List[RefundItem],
    ) -> float:
        refundable = order.refundable_amount
        stated = round2(coerce_price(amount)) if amount is not None else None

        if refund_type is RefundType.FULL:
            if items:
                raise ValidationError("items", "Full refunds are not itemized")
            if stated is not None and abs(stated - refundable) > RECONCILE_TOLERANCE:
                raise ValidationError(
                    "amount",
                    f"A full refund is for the remaining {refundable:.2f}",
                    stated,
                )
            return refundable

        itemized = round2(sum(i.amount for i in items)) if items else None
        if itemized is not None and stated is not None and abs(itemized - stated) > RECONCILE_TOLERANCE:
            raise ValidationError(
                "amount",
                f"Itemized amounts add up to {itemized:.2f}, not {stated:.2f}",
                stated,
            )
        requested = stated if stated is not None else itemized
        if requested is None or requested <= 0:
            raise ValidationError("amount", "Partial refunds need a positive amount or refunded items")
        if requested > order.total or requested - refundable > RECONCILE_TOLERANCE:
            raise ValidationError(
                "amount",
                f"Refund of {requested:.2f} exceeds the refundable {refundable:.2f}",
                requested,
            )
        return min(requested, refundable)

    # =========================================================================
    # OPERATOR TRANSITIONS
    # =========================================================================

    def start_review(self, refund_id: int, actor: Actor, admin_notes: Optional[str] = None) -> RefundRequest:
        self._require_operator(actor, "review refunds")
        with self.store.atomic():
            refund = self.store.get_refund(refund_id)
            self._move(refund, RefundStatus.UNDER_REVIEW)
            refund.reviewed_at = self.clock()
            if admin_notes is not None:
                refund.admin_notes = admin_notes
            refund = self.store.save_refund(refund)
        self._notify(refund)
        return refund

    def reject_refund(
        self,
        refund_id: int,
        reason: str,
        actor: Actor,
        admin_notes: Optional[str] = None,
    ) -> RefundRequest:
        """Reject with a customer-visible reason."""
        self._require_operator(actor, "reject refunds")
        if not reason or not reason.strip():
            raise ValidationError("rejection_reason", "A rejection reason is required")
        with self.store.atomic():
            refund = self.store.get_refund(refund_id)
            self._move(refund, RefundStatus.REJECTED)
            refund.rejection_reason = reason.strip()
            refund.reviewed_at = refund.reviewed_at or self.clock()
            if admin_notes is not None:
                refund.admin_notes = admin_notes
            refund = self.store.save_refund(refund)
        self._notify(refund)
        return refund

    def cancel_refund(self, refund_id: int, actor: Actor, customer_id: Optional[str] = None) -> RefundRequest:
        """Withdraw a request that has not been decided yet."""
        with self.store.atomic():
            refund = self.store.get_refund(refund_id)
            if actor is Actor.CUSTOMER and refund.customer_id != customer_id:
                raise NotFoundError("Refund request", refund_id)
            if actor is Actor.SYSTEM:
                raise ActorNotPermittedError("cancel refunds", actor.value, "customer or operator")
            self._move(refund, RefundStatus.CANCELLED)
            refund.cancelled_at = self.clock()
            refund = self.store.save_refund(refund)
        self._notify(refund)
        return refund

    def approve_refund(
        self,
        refund_id: int,
        actor: Actor,
        admin_notes: Optional[str] = None,
        capture_reference: Optional[str] = None,
    ) -> RefundOutcome:
        """
        Approve (or retry) a refund and execute it with the provider.

        Args:
            refund_id: Refund request id
            actor: Must be Actor.OPERATOR
            admin_notes: Customer-visible operator notes
            capture_reference: Operator-supplied provider capture id, used
                when the order has none on file or the stored one is wrong

        Returns:
            RefundOutcome (completed, failed, or manual reference required)
        """
        self._require_operator(actor, "approve refunds")

        # =====================================================================
        # STEP 1: Validate and move to processing
        # =====================================================================
        with self.store.atomic():
            refund = self.store.get_refund(refund_id)
            if refund.status is RefundStatus.COMPLETED:
                logger.info(f"Refund #{refund.id} already completed; approve is a no-op")
                return RefundOutcome.create_completed(refund, "Refund already completed.")
            if RefundStatus.APPROVED not in ALLOWED_TRANSITIONS.get(refund.status, set()):
                raise InvalidTransitionError("refund", refund.id, refund.status.value, RefundStatus.APPROVED.value)

            order = self.store.get_order(refund.order_number)
            if capture_reference and capture_reference.strip():
                refund.capture_reference = capture_reference.strip()
            if admin_notes is not None:
                refund.admin_notes = admin_notes
            if refund.status is RefundStatus.FAILED:
                refund.internal_notes = f"{refund.internal_notes}\n{RETRY_MARKER}".strip()

            gateway = None
            checkout_session = ""
            if refund.refund_method is RefundMethod.ORIGINAL_PAYMENT:
                provider = refund.provider or order.payment_provider
                gateway = self.gateways.get(provider)
                if gateway is None:
                    raise ConfigurationError(
                        f"{provider or 'payment'} provider",
                        f"Refunds through '{provider}' are not configured",
                    )
                if not refund.capture_reference:
                    checkout_session = self._checkout_session_for(order)
                    if gateway.requires_capture_reference or not checkout_session:
                        refund = self.store.save_refund(refund)
                        logger.warning(f"Refund #{refund.id}: {provider} payment cannot be identified; none on file")
                        return RefundOutcome.create_manual_reference_required(refund, provider)

            self._move(refund, RefundStatus.APPROVED)
            refund.reviewed_at = refund.reviewed_at or self.clock()
            approved = self.store.save_refund(refund)

            self._move(refund, RefundStatus.PROCESSING)
            refund.processed_at = self.clock()
            refund.attempts += 1
            refund = self.store.save_refund(refund)
        self._notify(approved)
        self._notify(refund)

        # =====================================================================
        # STEP 2: Execute (outside the store lock)
        # =====================================================================
        if gateway is None:
            logger.info(f"Refund #{refund.id} settled via {refund.refund_method.value}")
            return self._complete(refund, provider_refund_id="")

        metadata = {
            "refund_id": refund.id,
            "order_number": refund.order_number,
            "order_review_id": order.order_review_id,
        }
        if checkout_session:
            metadata["checkout_session"] = checkout_session
        try:
            result = gateway.issue_refund(
                refund.capture_reference,
                refund.requested_amount,
                metadata,
                reason=refund.reason.value,
            )
        except ProviderError as e:
            logger.error(f"Refund #{refund.id} failed at {gateway.name}: {e}")
            return self._fail(refund, e.message)
        except Exception as e:
            # Never leave the refund stuck in processing
            logger.exception(f"Refund #{refund.id} crashed at {gateway.name}")
            self._fail(refund, f"Unexpected error: {e}")
            raise

        if result.success:
            return self._complete(refund, provider_refund_id=result.refund_id)
        if result.manual_reference_required:
            return self._fail(refund, result.message, manual_reference_required=True)
        return self._fail(refund, result.message or f"{gateway.name} declined the refund")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @staticmethod
    def _require_operator(actor: Actor, action: str) -> None:
        if actor is not Actor.OPERATOR:
            raise ActorNotPermittedError(action, actor.value, Actor.OPERATOR.value)

    @staticmethod
    def _move(refund: RefundRequest, target: RefundStatus) -> None:
        if target not in ALLOWED_TRANSITIONS.get(refund.status, set()):
            raise InvalidTransitionError("refund", refund.id, refund.status.value, target.value)
        logger.info(f"Refund #{refund.id}: {refund.status.value} -> {target.value}")
        refund.status = target

    def _complete(self, refund: RefundRequest, provider_refund_id: str) -> RefundOutcome:
        with self.store.atomic():
            refund = self.store.get_refund(refund.id)
            self._move(refund, RefundStatus.COMPLETED)
            refund.completed_at = self.clock()
            refund.provider_refund_id = provider_refund_id
            refund.failure_reason = ""
            refund = self.store.save_refund(refund)

            order = self.store.get_order(refund.order_number)
            refunded = round2(order.refunded_amount + refund.requested_amount)
            payment_status = (
                PaymentStatus.REFUNDED
                if refunded >= order.total - RECONCILE_TOLERANCE
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            order = self.store.save_order(replace(order, refunded_amount=refunded, payment_status=payment_status))

        self._notify(refund)
        self.notifier.publish_many(
            ORDER_STATUS_CHANGED,
            (order_key(order.order_number), customer_key(order.customer_id)),
            order.to_customer_dict(),
            order.to_dict(),
        )
        return RefundOutcome.create_completed(refund)

    def _fail(self, refund: RefundRequest, message: str, manual_reference_required: bool = False) -> RefundOutcome:
        with self.store.atomic():
            refund = self.store.get_refund(refund.id)
            self._move(refund, RefundStatus.FAILED)
            refund.failed_at = self.clock()
            refund.failure_reason = message
            refund = self.store.save_refund(refund)
        self._notify(refund)

        if manual_reference_required:
            customer_message = "The payment provider could not find the original payment. Supply the capture reference and retry."
        else:
            customer_message = "The refund could not be processed by the payment provider. It can be retried."
        return RefundOutcome.create_failed(refund, customer_message, manual_reference_required)

    def _notify(self, refund: RefundRequest) -> None:
        self.notifier.publish_many(
            REFUND_STATUS_CHANGED,
            (refund_key(refund.id), order_key(refund.order_number), customer_key(refund.customer_id)),
            refund.to_customer_dict(),
            refund.to_dict(),
        )

    def _checkout_session_for(self, order: Order) -> str:
        try:
            return self.store.get_review(order.order_review_id).payment_reference
        except NotFoundError:
            return ""
