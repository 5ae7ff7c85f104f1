"""
Payment & webhook coordinator.

Bridges order reviews to the payment providers. It is the only component
that can move a review to 'approved-processing', and the only one that
creates Orders.

Two paths:
    Checkout (synchronous, request/response)
        create_checkout_session() -> provider hosted page URL
        Never creates an Order.

    Capture events (asynchronous, webhook-driven)
        Provider event -> gateway.construct_event/parse_event -> PaymentEvent
        -> WebhookRegistry.dispatch() -> handler
        The "succeeded" handler materializes the Order.

Idempotency:
    Materialization is keyed on the review id. The store refuses a second
    Order for the same review, and the handler checks the review is still
    'pending-payment' inside store.atomic(). Redelivered or duplicate
    success events become logged no-ops, never errors (a provider retries on
    non-2xx, which would only make things worse).

PayPal synchronous capture:
    capture_payment() captures with the provider and then feeds a synthetic
    PAYMENT.CAPTURE.COMPLETED event through the same registry, so the Order
    is still created by the one success handler. The later real webhook is a
    no-op.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from core.payment_gateway import (
    OUTCOME_SUCCEEDED,
    REVIEW_ID_KEY,
    CaptureResult,
    CheckoutLineItem,
    CheckoutSession,
    PaymentEvent,
    PaymentGateway,
)
from logging_config import get_logger, get_review_logger
from models.order import Order, generate_order_number
from models.review import Actor, OrderReview, ReviewStatus
from services.notifier import (
    ORDER_STATUS_CHANGED,
    NotificationHub,
    customer_key,
    order_key,
)
from services.review_service import ReviewService
from services.store import OrderStore


logger = get_logger(__name__)


Handler = Callable[[PaymentEvent], Optional[Order]]

# Allowed difference between captured amount and review total
AMOUNT_TOLERANCE = 0.01

STRIPE_SUCCEEDED_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
)
STRIPE_FAILED_EVENTS = (
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
    "payment_intent.payment_failed",
)
PAYPAL_SUCCEEDED_EVENTS = ("PAYMENT.CAPTURE.COMPLETED",)
PAYPAL_FAILED_EVENTS = ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED")
REFUND_NOTICE_EVENTS = ("charge.refunded", "PAYMENT.CAPTURE.REFUNDED")


@dataclass(frozen=True)
class DispatchResult:
    """What happened to one webhook event."""

    event_type: str
    handled: bool
    order: Optional[Order] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": True,
            "event_type": self.event_type,
            "handled": self.handled,
            "order_number": self.order.order_number if self.order else None,
        }


class WebhookRegistry:
    """
    Event type -> handler map.

    Built once in create_app() and handed to the coordinator. New provider
    events are supported by registering a handler; dispatch() never changes.
    Unknown event types are logged and ignored.
    """

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._lock = threading.Lock()

    def register(self, event_type: str, handler: Handler, replace: bool = False) -> None:
        with self._lock:
            if event_type in self._handlers and not replace:
                raise ConflictError(
                    f"Handler already registered for {event_type}",
                    {"event_type": event_type},
                )
            self._handlers[event_type] = handler
        logger.debug(f"Registered webhook handler for {event_type}")

    def unregister(self, event_type: str) -> None:
        with self._lock:
            self._handlers.pop(event_type, None)

    def get_handler(self, event_type: str) -> Optional[Handler]:
        with self._lock:
            return self._handlers.get(event_type)

    def has_handler(self, event_type: str) -> bool:
        return self.get_handler(event_type) is not None

    @property
    def registered_event_types(self) -> List[str]:
        with self._lock:
            return sorted(self._handlers)

    def dispatch(self, event: PaymentEvent) -> DispatchResult:
        """
        Run the handler for `event`.

        Handler exceptions propagate so the webhook returns 5xx and the
        provider redelivers; handlers are idempotent.
        """
        handler = self.get_handler(event.event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled {event.provider} event {event.event_type} ({event.event_id})")
            return DispatchResult(event_type=event.event_type, handled=False)

        logger.info(f"Dispatching {event.provider} event {event.event_type} ({event.event_id})")
        order = handler(event)
        return DispatchResult(event_type=event.event_type, handled=True, order=order)


class PaymentCoordinator:
    """
    Checkout, capture and webhook handling for order reviews.

    Thread Safety:
        Webhooks can arrive concurrently with each other and with user
        actions on the same review. The check-insert-transition sequence in
        handle_payment_succeeded() runs inside store.atomic().
    """

    def __init__(
        self,
        store: OrderStore,
        reviews: ReviewService,
        notifier: NotificationHub,
        registry: WebhookRegistry,
        gateways: Optional[Dict[str, PaymentGateway]] = None,
    ):
        self.store = store
        self.reviews = reviews
        self.notifier = notifier
        self.registry = registry
        self.gateways: Dict[str, PaymentGateway] = dict(gateways or {})

    def register_default_handlers(self) -> None:
        """Wire the built-in Stripe/PayPal event types into the registry."""
        for event_type in STRIPE_SUCCEEDED_EVENTS + PAYPAL_SUCCEEDED_EVENTS:
            self.registry.register(event_type, self.handle_payment_succeeded, replace=True)
        for event_type in STRIPE_FAILED_EVENTS + PAYPAL_FAILED_EVENTS:
            self.registry.register(event_type, self.handle_payment_failed, replace=True)
        for event_type in REFUND_NOTICE_EVENTS:
            self.registry.register(event_type, self.handle_refund_notice, replace=True)

    def gateway(self, provider: str) -> PaymentGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ValidationError("provider", f"Payment provider '{provider}' is not available", provider)
        return gateway

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    def create_checkout_session(
        self,
        review_id: int,
        customer_id: str,
        provider: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Open a hosted checkout for a review awaiting payment.

        Uses the review's frozen prices. Stores the provider session id on
        the review so events lacking our metadata can still be matched.
        """
        gateway = self.gateway(provider)
        review = self.reviews.get_review(review_id, customer_id=customer_id)
        if review.status is not ReviewStatus.PENDING_PAYMENT:
            raise InvalidTransitionError("review", review.id, review.status.value, "checkout")
        if not success_url or not cancel_url:
            raise ValidationError("success_url", "success_url and cancel_url are required")

        session = gateway.create_checkout_session(
            line_items=self._checkout_lines(review),
            success_url=success_url,
            cancel_url=cancel_url,
            customer_info={
                "customer_id": review.customer_id,
                "email": review.shipping_address.email if review.shipping_address else "",
            },
            shipping_address=review.shipping_address.to_dict() if review.shipping_address else None,
            metadata=self._metadata(review),
        )
        self.reviews.attach_payment_reference(review.id, gateway.name, session.session_id)
        get_review_logger(review.id).info(f"Checkout opened with {gateway.name}: {session.session_id}")
        return session

    @staticmethod
    def _metadata(review: OrderReview) -> Dict[str, Any]:
        return {REVIEW_ID_KEY: review.id, "customer_id": review.customer_id}

    @staticmethod
    def _checkout_lines(review: OrderReview) -> List[CheckoutLineItem]:
        lines = [
            CheckoutLineItem(
                name=item.product_name or ("Custom embroidery" if item.is_custom else item.id),
                unit_amount=item.unit_price,
                quantity=item.quantity,
            )
            for item in review.items
        ]
        if review.shipping:
            method = review.shipping_method.name if review.shipping_method else "Shipping"
            lines.append(CheckoutLineItem(name=method or "Shipping", unit_amount=review.shipping, kind="shipping"))
        if review.tax:
            lines.append(CheckoutLineItem(name="Sales tax", unit_amount=review.tax, kind="tax"))
        return lines

    def capture_payment(
        self,
        review_id: int,
        customer_id: str,
        provider_order_id: str,
        provider: str = "paypal",
    ) -> Dict[str, Any]:
        """
        Capture an approved provider order (PayPal return flow).

        A successful capture goes through the same success handler as the
        webhook. Only a review awaiting payment is captured; a repeated
        return for a review that is already paid reports the existing Order
        without charging again.

        Raises:
            InvalidTransitionError: the review is not awaiting payment
        """
        gateway = self.gateway(provider)
        review = self.reviews.get_review(review_id, customer_id=customer_id)
        if not provider_order_id:
            raise ValidationError("provider_order_id", "Provider order id is required")

        if review.status is ReviewStatus.APPROVED_PROCESSING:
            existing = self.store.get_order_for_review(review.id)
            if existing is not None:
                get_review_logger(review.id).warning(f"No-op: capture for review already paid as {existing.order_number}")
                return {
                    "success": True,
                    "status": "COMPLETED",
                    "transaction_id": existing.transaction_id,
                    "order_number": existing.order_number,
                }
        if review.status is not ReviewStatus.PENDING_PAYMENT:
            raise InvalidTransitionError("review", review.id, review.status.value, "capture")

        result: CaptureResult = gateway.capture_order(provider_order_id, self._metadata(review))
        if not result.success:
            get_review_logger(review.id).warning(f"{provider} capture not completed: {result.status}")
            return {"success": False, "status": result.status, "order_number": None}

        event = PaymentEvent(
            event_id=f"capture-{result.transaction_id}",
            event_type=PAYPAL_SUCCEEDED_EVENTS[0] if provider == "paypal" else "payment_intent.succeeded",
            provider=provider,
            outcome=OUTCOME_SUCCEEDED,
            review_id=review.id,
            amount=result.amount,
            transaction_id=result.transaction_id,
            capture_reference=result.capture_reference,
            payment_reference=provider_order_id,
        )
        dispatched = self.registry.dispatch(event)
        order = dispatched.order or self.store.get_order_for_review(review.id)
        return {
            "success": True,
            "status": result.status,
            "transaction_id": result.transaction_id,
            "order_number": order.order_number if order else None,
        }

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def handle_webhook(self, provider: str, payload: bytes, headers: Mapping[str, str]) -> DispatchResult:
        """Verify, normalize and dispatch one provider webhook."""
        gateway = self.gateway(provider)
        raw_event = gateway.construct_event(payload, headers)
        event = gateway.parse_event(raw_event)
        return self.registry.dispatch(event)

    def _resolve_review_id(self, event: PaymentEvent) -> Optional[int]:
        if event.review_id is not None:
            return event.review_id
        review = self.store.find_review_by_payment_reference(event.payment_reference)
        return review.id if review else None

    def handle_payment_succeeded(self, event: PaymentEvent) -> Optional[Order]:
        """
        Materialize the Order for a captured payment.

        Returns the Order (new or already existing) or None when the event
        cannot be matched to a payable review.
        """
        if event.outcome != OUTCOME_SUCCEEDED:
            logger.info(f"{event.event_type} ({event.event_id}) is not a completed payment; ignoring")
            return None

        review_id = self._resolve_review_id(event)
        if review_id is None:
            logger.warning(f"{event.event_type} ({event.event_id}) carries no review reference; ignoring")
            return None

        review_logger = get_review_logger(review_id)

        # =====================================================================
        # CHECK + INSERT + TRANSITION (one critical section)
        # =====================================================================
        with self.store.atomic():
            try:
                review = self.store.get_review(review_id)
            except NotFoundError:
                logger.warning(f"{event.event_type} ({event.event_id}) references unknown review {review_id}")
                return None

            if review.status is not ReviewStatus.PENDING_PAYMENT:
                existing = self.store.get_order_for_review(review.id)
                if review.status is ReviewStatus.REJECTED:
                    review_logger.error(
                        f"Payment {event.transaction_id} captured for rejected review; refund manually"
                    )
                else:
                    review_logger.warning(
                        f"No-op: {event.event_type} ({event.event_id}) for review in '{review.status.value}'"
                    )
                return existing

            if event.amount and abs(event.amount - review.total) > AMOUNT_TOLERANCE:
                review_logger.error(
                    f"Captured {event.amount:.2f} but review total is {review.total:.2f}"
                )

            order = Order.from_review(
                review,
                order_number=generate_order_number(review.id),
                transaction_id=event.transaction_id,
                capture_reference=event.capture_reference,
                provider=event.provider,
            )
            try:
                order = self.store.insert_order(order)
            except ConflictError as e:
                review_logger.warning(f"No-op: order already materialized ({e.message})")
                return self.store.get_order_for_review(review.id)

            paid = self.reviews.mark_paid(
                review.id, Actor.SYSTEM, order.order_number, provider=event.provider, notify=False
            )

        review_logger.info(f"Order {order.order_number} created from {event.event_type} ({event.event_id})")
        self.reviews.notify_updated(paid)
        self.notifier.publish_many(
            ORDER_STATUS_CHANGED,
            (order_key(order.order_number), customer_key(order.customer_id)),
            order.to_customer_dict(),
            order.to_dict(),
        )
        return order

    def handle_payment_failed(self, event: PaymentEvent) -> Optional[Order]:
        """Log only. The review stays in 'pending-payment' for another attempt."""
        review_id = self._resolve_review_id(event)
        if review_id is None:
            logger.warning(f"Payment failure {event.event_id} without review reference: {event.message}")
        else:
            get_review_logger(review_id).warning(
                f"{event.provider} payment failed ({event.event_type}): {event.message or 'no detail'}"
            )
        return None

    def handle_refund_notice(self, event: PaymentEvent) -> Optional[Order]:
        """Provider-side refund confirmations; refunds are driven by RefundService."""
        logger.info(
            f"{event.provider} reports refund of {event.amount:.2f} on {event.transaction_id or 'unknown payment'}"
        )
        return None
