"""
Server-sent event streams over the notification hub.

- GET  /api/events/<key>              - customer stream for one of their
                                        reviews/orders/refunds or customer:<id>
- GET  /api/admin/events              - operator stream of everything
- POST /api/admin/events/stock-alert  - broadcast a stock alert to operators

Streams send a comment line every KEEPALIVE_SECONDS so proxies keep the
connection open. The subscription is dropped when the client goes away.
"""

import json

from flask import Blueprint, Response, current_app, stream_with_context

from core.exceptions import NotFoundError, ValidationError
from logging_config import get_logger
from routes.helpers import MAX_REASON_LENGTH, customer_id_from_request, json_body, sanitize_text, service
from services.notifier import STOCK_ALERT, WILDCARD, customer_key


# Module logger
logger = get_logger(__name__)

events_bp = Blueprint("events", __name__)

KEEPALIVE_SECONDS = 15.0


def _authorize_key(key: str, customer_id: str) -> None:
    """The customer may only watch their own records."""
    kind, _, ident = key.partition(":")
    if not ident:
        raise ValidationError("key", f"Malformed event key: {key}", key)

    if kind == "customer":
        if key != customer_key(customer_id):
            raise NotFoundError("Event stream", key)
    elif kind == "review":
        if not ident.isdigit():
            raise ValidationError("key", f"Malformed event key: {key}", key)
        service("REVIEW_SERVICE").get_review(int(ident), customer_id=customer_id)
    elif kind == "order":
        service("ORDER_SERVICE").get_order(ident, customer_id=customer_id)
    elif kind == "refund":
        if not ident.isdigit():
            raise ValidationError("key", f"Malformed event key: {key}", key)
        service("REFUND_SERVICE").get_refund(int(ident), customer_id=customer_id)
    else:
        raise ValidationError("key", f"Unknown event key type: {kind}", key)


def _event_stream(key: str) -> Response:
    hub = service("NOTIFICATION_HUB")
    stream = hub.open_stream(key)
    logger.info(f"Event stream opened for {key}")

    def generate():
        try:
            yield ": connected\n\n"
            while True:
                notification = stream.get(timeout=KEEPALIVE_SECONDS)
                if notification is None:
                    yield ": keep-alive\n\n"
                    continue
                data = json.dumps(notification.to_dict(), default=str)
                yield f"event: {notification.event}\ndata: {data}\n\n"
        finally:
            stream.close()
            logger.info(f"Event stream closed for {key} ({stream.dropped} dropped)")

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@events_bp.route("/api/events/<key>", methods=["GET"])
def customer_events(key: str):
    _authorize_key(key, customer_id_from_request())
    return _event_stream(key)


@events_bp.route("/api/admin/events", methods=["GET"])
def operator_events():
    return _event_stream(WILDCARD)


@events_bp.route("/api/admin/events/stock-alert", methods=["POST"])
def stock_alert():
    """Body: {"material": "fabric", "message": "Below 10 sheets"}"""
    data = json_body()
    material = sanitize_text(data.get("material"), 100)
    if not material:
        raise ValidationError("material", "Material is required")
    payload = {
        "material": material,
        "message": sanitize_text(data.get("message"), MAX_REASON_LENGTH),
        "environment": current_app.config.get("ENVIRONMENT", "unknown"),
    }
    delivered = service("NOTIFICATION_HUB").publish(STOCK_ALERT, WILDCARD, payload)
    logger.warning(f"Stock alert for {material}: {payload['message']}")
    return {"success": True, "delivered": delivered}
