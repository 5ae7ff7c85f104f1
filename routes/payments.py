"""
Payment, webhook and order routes.

Handles:
- POST  /api/reviews/<id>/checkout            - open hosted checkout
- POST  /api/reviews/<id>/capture             - PayPal return-flow capture
- POST  /api/webhooks/<provider>              - Stripe / PayPal events
- GET   /api/orders, /api/orders/<number>     - customer orders
- GET   /api/admin/orders                     - all orders
- PATCH /api/admin/orders/<number>/fulfillment
"""

from flask import Blueprint, request

from logging_config import get_logger, set_thread_name
from models.review import Actor
from routes.helpers import customer_id_from_request, json_body, sanitize_text, service


# Module logger
logger = get_logger(__name__)

payments_bp = Blueprint("payments", __name__)


# =============================================================================
# CHECKOUT
# =============================================================================

@payments_bp.route("/api/reviews/<int:review_id>/checkout", methods=["POST"])
def create_checkout(review_id: int):
    """
    Body: {"provider": "stripe"|"paypal", "success_url": ..., "cancel_url": ...}

    Never creates an order; that happens when the capture event arrives.
    """
    customer_id = customer_id_from_request()
    data = json_body()
    session = service("PAYMENT_COORDINATOR").create_checkout_session(
        review_id,
        customer_id,
        provider=str(data.get("provider") or "stripe"),
        success_url=str(data.get("success_url") or ""),
        cancel_url=str(data.get("cancel_url") or ""),
    )
    return {"success": True, "checkout": session.to_dict()}


@payments_bp.route("/api/reviews/<int:review_id>/capture", methods=["POST"])
def capture_payment(review_id: int):
    """Body: {"provider_order_id": "...", "provider": "paypal"}"""
    customer_id = customer_id_from_request()
    data = json_body()
    result = service("PAYMENT_COORDINATOR").capture_payment(
        review_id,
        customer_id,
        provider_order_id=str(data.get("provider_order_id") or ""),
        provider=str(data.get("provider") or "paypal"),
    )
    return result, 200 if result.get("success") else 402


# =============================================================================
# WEBHOOKS
# =============================================================================

@payments_bp.route("/api/webhooks/<provider>", methods=["POST"])
def payment_webhook(provider: str):
    """
    Provider webhook endpoint.

    Bad signatures are 400; handler failures propagate as 5xx so the
    provider redelivers. Unknown event types are acknowledged.
    """
    set_thread_name(f"Webhook-{provider}")
    result = service("PAYMENT_COORDINATOR").handle_webhook(
        provider, request.get_data(), request.headers
    )
    return result.to_dict()


# =============================================================================
# ORDERS
# =============================================================================

@payments_bp.route("/api/orders", methods=["GET"])
def list_my_orders():
    orders = service("ORDER_SERVICE").list_orders(customer_id=customer_id_from_request())
    return {"success": True, "orders": [o.to_customer_dict() for o in orders]}


@payments_bp.route("/api/orders/<order_number>", methods=["GET"])
def get_my_order(order_number: str):
    order = service("ORDER_SERVICE").get_order(order_number, customer_id=customer_id_from_request())
    return {"success": True, "order": order.to_customer_dict()}


@payments_bp.route("/api/admin/orders", methods=["GET"])
def admin_list_orders():
    orders = service("ORDER_SERVICE").list_orders()
    return {"success": True, "orders": [o.to_dict() for o in orders]}


@payments_bp.route("/api/admin/orders/<order_number>/fulfillment", methods=["PATCH"])
def update_fulfillment(order_number: str):
    """Body: {"status": "shipped", "tracking_number": ..., "tracking_url": ..., "carrier": ...}"""
    data = json_body()

    def text(key):
        return sanitize_text(data[key], 500) if data.get(key) is not None else None

    order = service("ORDER_SERVICE").update_fulfillment(
        order_number,
        str(data.get("status") or ""),
        Actor.OPERATOR,
        tracking_number=text("tracking_number"),
        tracking_url=text("tracking_url"),
        carrier=text("carrier"),
    )
    return {"success": True, "order": order.to_dict()}
