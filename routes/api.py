"""
Utility API routes.

Handles:
- /health              - Health check endpoint
- /api/pricing/quote   - Live price for the design editor
"""

from flask import Blueprint, current_app

from core.exceptions import ValidationError
from logging_config import get_logger
from models.design import EmbroideryDesign
from routes.helpers import json_body, service


# Module logger
logger = get_logger(__name__)

api_bp = Blueprint("api", __name__)


@api_bp.route("/health", methods=["GET"])
def health():
    """Health check endpoint with service status."""
    health_status = {
        "status": "ok",
        "environment": current_app.config.get("ENVIRONMENT", "unknown"),
        "checks": {}
    }

    for name, key in (
        ("store", "ORDER_STORE"),
        ("reviews", "REVIEW_SERVICE"),
        ("payments", "PAYMENT_COORDINATOR"),
        ("refunds", "REFUND_SERVICE"),
    ):
        if current_app.config.get(key) is not None:
            health_status["checks"][name] = "ok"
        else:
            health_status["checks"][name] = "not_available"
            health_status["status"] = "degraded"

    # Missing providers are a configuration choice, not a failure
    coordinator = current_app.config.get("PAYMENT_COORDINATOR")
    providers = sorted(coordinator.gateways) if coordinator else []
    health_status["checks"]["payment_providers"] = providers or "none"

    hub = current_app.config.get("NOTIFICATION_HUB")
    if hub is not None:
        health_status["checks"]["subscribers"] = hub.subscriber_count()

    status_code = 200 if health_status["status"] == "ok" else 503
    return health_status, status_code


@api_bp.route("/api/pricing/quote", methods=["POST"])
def pricing_quote():
    """
    Price designs without submitting anything.

    Body, single design: {"width": 3, "height": 2, "options": [{"name", "price"}]}
    Body, several:       {"designs": [<design>, ...]}
    """
    data = json_body()
    engine = service("PRICING_ENGINE")

    if "designs" in data:
        raw_designs = data.get("designs")
        if not isinstance(raw_designs, list) or not raw_designs:
            raise ValidationError("designs", "designs must be a non-empty list")
        designs = [EmbroideryDesign.from_dict(d) for d in raw_designs if isinstance(d, dict)]
        pricing = engine.price_designs(designs)
        return {
            "success": True,
            "material_price": pricing.material_price,
            "options_price": pricing.options_price,
            "total_price": pricing.total,
            "quotes": [q.to_dict() for q in pricing.quotes],
        }

    options = data.get("options") or []
    if not isinstance(options, list):
        raise ValidationError("options", "options must be a list")
    quote = engine.calculate_total_price(data.get("width"), data.get("height"), options)
    return {"success": True, **quote.to_dict()}
