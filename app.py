"""
StitchOrderWeb - Flask Application Entry Point.

This is a slim app factory that:
1. Loads configuration and sets up logging
2. Builds the pricing engine (optionally from a material catalog file)
3. Creates the store, notification hub and the three state machines
4. Registers payment gateways for the configured providers
5. Registers route blueprints and JSON error handlers

ARCHITECTURE:
    Request threads (Flask)
    ├── ReviewService      - design review state machine
    ├── PaymentCoordinator - checkout, capture, webhook dispatch
    │   └── WebhookRegistry (event type -> handler)
    ├── OrderService       - order lookups and fulfillment
    └── RefundService      - refund state machine

    Shared, lock-protected:
    ├── OrderStore         - reviews / orders / refunds tables
    └── NotificationHub    - fan-out to SSE streams and subscribers
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from logging_config import setup_logging, get_logger
from core.exceptions import ConfigurationError, StitchOrderError
from core.payment_gateway import PaymentGateway
from core.paypal_gateway import PayPalGateway
from core.stripe_gateway import StripeGateway
from modules.pricing import MaterialCatalog, PricingEngine
from routes import register_blueprints
from services.notifier import NotificationHub
from services.order_service import OrderService
from services.payment_service import PaymentCoordinator, WebhookRegistry
from services.refund_service import RefundService
from services.review_service import ReviewService
from services.store import OrderStore


# Module logger (configured after setup_logging)
logger = get_logger(__name__)


def _load_catalog(path: str) -> Optional[MaterialCatalog]:
    """Read a JSON list of material rows; None means built-in defaults."""
    if not path:
        return None
    catalog_file = Path(path)
    if not catalog_file.exists():
        raise ConfigurationError("MATERIAL_CATALOG_PATH", f"Material catalog not found: {path}")
    try:
        rows = json.loads(catalog_file.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigurationError("MATERIAL_CATALOG_PATH", f"Material catalog is not valid JSON: {e}")
    if not isinstance(rows, list):
        raise ConfigurationError("MATERIAL_CATALOG_PATH", "Material catalog must be a JSON list")
    catalog = MaterialCatalog.from_rows(rows)
    logger.info(f"Loaded {len(rows)} material row(s) from {path}")
    return catalog


def build_gateways(config) -> Dict[str, PaymentGateway]:
    """
    Create a gateway for each provider that has credentials.

    Missing credentials are not fatal: the provider is left out and
    checkout against it is rejected.
    """
    timeout = float(config.get("PROVIDER_TIMEOUT_SECONDS", 15.0))
    currency = config.get("CURRENCY", "usd")
    gateways: Dict[str, PaymentGateway] = {}

    if config.get("STRIPE_SECRET_KEY"):
        gateways["stripe"] = StripeGateway(
            secret_key=config["STRIPE_SECRET_KEY"],
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET", ""),
            timeout=timeout,
            currency=currency,
        )
    else:
        logger.warning("STRIPE_SECRET_KEY not set - Stripe payments disabled")

    if config.get("PAYPAL_CLIENT_ID") and config.get("PAYPAL_CLIENT_SECRET"):
        gateways["paypal"] = PayPalGateway(
            client_id=config["PAYPAL_CLIENT_ID"],
            client_secret=config["PAYPAL_CLIENT_SECRET"],
            mode=config.get("PAYPAL_MODE", "sandbox"),
            webhook_id=config.get("PAYPAL_WEBHOOK_ID", ""),
            timeout=timeout,
            currency=currency,
        )
    else:
        logger.warning("PAYPAL_CLIENT_ID/PAYPAL_CLIENT_SECRET not set - PayPal payments disabled")

    return gateways


def create_app(
    config_object: str = "config.Config",
    gateways: Optional[Dict[str, PaymentGateway]] = None,
) -> Flask:
    """
    Application factory - creates and configures Flask app.

    Args:
        config_object: Import path of the config class
        gateways: Pre-built payment gateways (tests); built from config
            when omitted

    Returns:
        Configured Flask application

    Raises:
        ConfigurationError: MATERIAL_CATALOG_PATH points at a bad file
    """
    # Use override=True so .env file always takes precedence over shell environment
    load_dotenv(override=True)

    # Create Flask app
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Configure logging
    log_level = logging.DEBUG if app.config.get("DEBUG") else logging.INFO
    enable_file_logging = app.config.get("ENVIRONMENT") == "production"

    root_logger = setup_logging(
        app_name="stitch_order_web",
        log_level=log_level,
        enable_file_logging=enable_file_logging
    )

    # Set Flask's logger to use our configured logger
    app.logger.handlers = root_logger.handlers
    app.logger.setLevel(log_level)

    logger.info(f"Starting StitchOrderWeb in {app.config.get('ENVIRONMENT')} mode")

    # Ensure upload folder exists
    upload_folder = Path(app.config["UPLOAD_FOLDER"])
    upload_folder.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # SERVICES INITIALIZATION
    # =========================================================================

    store = OrderStore()
    pricing = PricingEngine(_load_catalog(app.config.get("MATERIAL_CATALOG_PATH", "")))
    notifier = NotificationHub(stream_queue_size=app.config.get("NOTIFICATION_QUEUE_SIZE", 100))

    if gateways is None:
        gateways = build_gateways(app.config)
    logger.info(f"Payment providers: {', '.join(sorted(gateways)) or 'none'}")

    review_service = ReviewService(
        store, pricing, notifier, tax_rate=app.config.get("SALES_TAX_RATE", 0.0)
    )

    registry = WebhookRegistry()
    payment_coordinator = PaymentCoordinator(store, review_service, notifier, registry, gateways)
    payment_coordinator.register_default_handlers()

    order_service = OrderService(store, notifier)
    refund_service = RefundService(
        store,
        notifier,
        gateways,
        refund_window_days=app.config.get("REFUND_WINDOW_DAYS", 30),
        currency=app.config.get("CURRENCY", "usd"),
    )

    # Store in app config for access by routes
    app.config["ORDER_STORE"] = store
    app.config["PRICING_ENGINE"] = pricing
    app.config["NOTIFICATION_HUB"] = notifier
    app.config["REVIEW_SERVICE"] = review_service
    app.config["WEBHOOK_REGISTRY"] = registry
    app.config["PAYMENT_COORDINATOR"] = payment_coordinator
    app.config["ORDER_SERVICE"] = order_service
    app.config["REFUND_SERVICE"] = refund_service
    logger.info("Services initialized")

    # =========================================================================
    # REGISTER BLUEPRINTS
    # =========================================================================

    register_blueprints(app)

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.errorhandler(StitchOrderError)
    def handle_app_error(e: StitchOrderError):
        if e.http_status >= 500:
            logger.error(f"{type(e).__name__}: {e}")
        else:
            logger.info(f"{type(e).__name__}: {e.message}")
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(RequestEntityTooLarge)
    def handle_file_too_large(e):
        max_mb = app.config.get("MAX_CONTENT_LENGTH", 16 * 1024 * 1024) / (1024 * 1024)
        return jsonify({
            "success": False,
            "error": "payload_too_large",
            "message": f"File too large. Maximum upload size is {max_mb:.0f} MB.",
        }), 413

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({"success": False, "error": "not_found", "message": "Resource not found."}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e: HTTPException):
        return jsonify({"success": False, "error": "method_not_allowed", "message": e.description}), 405

    @app.errorhandler(500)
    def handle_server_error(e):
        logger.error(f"500 error: {e}", exc_info=True)
        return jsonify({
            "success": False,
            "error": "server_error",
            "message": "An unexpected error occurred. Please try again.",
        }), 500

    logger.info("Application initialized successfully")
    return app


if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "1") == "1"
    app.run(debug=debug_mode, threaded=True)
