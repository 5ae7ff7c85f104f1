"""
Shared fixtures for the StitchOrderWeb tests.

Provider gateways are MagicMocks; no test touches the network.
"""

from unittest.mock import MagicMock

import pytest

from core.payment_gateway import (
    OUTCOME_SUCCEEDED,
    CaptureResult,
    CheckoutSession,
    PaymentEvent,
    PaymentGateway,
    RefundResult,
)
from models.review import Actor
from modules.pricing import PricingEngine
from services.notifier import NotificationHub
from services.order_service import OrderService
from services.payment_service import PaymentCoordinator, WebhookRegistry
from services.refund_service import RefundService
from services.review_service import ReviewService
from services.store import OrderStore


CUSTOMER = "cust-1"


# Payload builders

def design_payload(width=3, height=2, notes="Left chest, centered", options=None):
    return {
        "image": "/uploads/art.png",
        "width": width,
        "height": height,
        "placement_notes": notes,
        "options": options or {},
    }


def custom_item(quantity=1, base_price=20.0, designs=None, cart_item_id="cart-hat-1"):
    return {
        "product_id": "hat",
        "product_name": "Trucker Hat",
        "base_price": base_price,
        "quantity": quantity,
        "is_custom": True,
        "cart_item_id": cart_item_id,
        "designs": designs if designs is not None else [design_payload()],
    }


def shipping_method(price=5.0):
    return {"name": "Ground", "price": price, "eta": "3-5 days"}


def success_event(review, event_type="checkout.session.completed", provider="stripe", **overrides):
    values = dict(
        event_id=f"evt-{review.id}",
        event_type=event_type,
        provider=provider,
        outcome=OUTCOME_SUCCEEDED,
        review_id=review.id,
        amount=review.total,
        transaction_id=f"pi_{review.id}",
        capture_reference=f"pi_{review.id}",
    )
    values.update(overrides)
    return PaymentEvent(**values)


def make_gateway(name):
    gateway = MagicMock(spec=PaymentGateway)
    gateway.name = name
    gateway.requires_capture_reference = True
    gateway.create_checkout_session.return_value = CheckoutSession(
        provider=name, session_id=f"{name}-session-1", checkout_url=f"https://pay.example/{name}"
    )
    gateway.capture_order.return_value = CaptureResult(
        success=True, transaction_id="CAPTURE-1", capture_reference="CAPTURE-1", status="COMPLETED"
    )
    gateway.issue_refund.return_value = RefundResult(success=True, refund_id=f"{name}-refund-1", status="succeeded")
    return gateway


# Fixtures

@pytest.fixture
def store():
    return OrderStore()


@pytest.fixture
def hub():
    return NotificationHub(stream_queue_size=10)


@pytest.fixture
def engine():
    return PricingEngine()


@pytest.fixture
def review_service(store, engine, hub):
    return ReviewService(store, engine, hub)


@pytest.fixture
def gateways():
    return {"stripe": make_gateway("stripe"), "paypal": make_gateway("paypal")}


@pytest.fixture
def registry():
    return WebhookRegistry()


@pytest.fixture
def coordinator(store, review_service, hub, registry, gateways):
    coordinator = PaymentCoordinator(store, review_service, hub, registry, gateways)
    coordinator.register_default_handlers()
    return coordinator


@pytest.fixture
def order_service(store, hub):
    return OrderService(store, hub)


@pytest.fixture
def refund_service(store, hub, gateways):
    return RefundService(store, hub, gateways, refund_window_days=30)


@pytest.fixture
def submitted_review(review_service):
    """A pending review with one custom line (li-1) and $5 shipping."""
    return review_service.submit_review(
        CUSTOMER, [custom_item()], shipping_method=shipping_method()
    )


@pytest.fixture
def payable_review(review_service, submitted_review):
    """Review in pending-payment: proof uploaded and accepted."""
    review_service.upload_picture_replies(
        submitted_review.id, [{"item_id": "li-1", "image": "/proofs/1.png"}], Actor.OPERATOR
    )
    return review_service.submit_confirmations(
        submitted_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": True}]
    )


@pytest.fixture
def paid_order(coordinator, payable_review):
    """Order materialized from a Stripe checkout.session.completed event."""
    return coordinator.handle_payment_succeeded(success_event(payable_review))
