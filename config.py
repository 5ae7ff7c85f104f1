"""
Configuration for StitchOrderWeb.

Payment providers are optional: a provider without credentials is simply
not registered, and checkout against it is rejected.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file early so environment variables are available for Config class
# This must happen before the Config class is defined
load_dotenv(override=True)

# Base directory (where this file lives)
BASE_DIR = Path(__file__).resolve().parent


class Config:
    """Default configuration for the Flask application."""

    # Flask settings
    SECRET_KEY = os.environ.get("FLASK_SECRET_KEY", "dev-secret-key")
    UPLOAD_FOLDER = os.environ.get(
        "UPLOAD_FOLDER", str(BASE_DIR / "static" / "uploads")
    )
    MAX_CONTENT_LENGTH = int(os.environ.get("MAX_CONTENT_LENGTH", 16 * 1024 * 1024))  # 16 MB uploads
    ENVIRONMENT = os.environ.get("FLASK_ENV", "development")

    # Debug mode
    DEBUG = os.environ.get("FLASK_DEBUG", "1") == "1"

    # ==========================================================================
    # Payment providers
    # ==========================================================================
    # Stripe: hosted Checkout + Refunds. Webhook signatures are verified only
    # when STRIPE_WEBHOOK_SECRET is set (leave it empty for local testing).
    #
    # PayPal: Orders v2 REST API. PAYPAL_MODE is "sandbox" or "live".
    # PAYPAL_WEBHOOK_ID enables webhook signature verification.
    #
    # Every provider call is bounded by PROVIDER_TIMEOUT_SECONDS.
    # ==========================================================================
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID", "")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET", "")
    PAYPAL_MODE = os.environ.get("PAYPAL_MODE", "sandbox")
    PAYPAL_WEBHOOK_ID = os.environ.get("PAYPAL_WEBHOOK_ID", "")

    PROVIDER_TIMEOUT_SECONDS = float(
        os.environ.get("PROVIDER_TIMEOUT_SECONDS", "15")
    )
    CURRENCY = os.environ.get("CURRENCY", "usd")

    # ==========================================================================
    # Order rules
    # ==========================================================================
    # SALES_TAX_RATE: fraction applied to the review subtotal (0.0825 = 8.25%)
    # REFUND_WINDOW_DAYS: customers can request refunds this long after
    #   delivery (or shipping, or order creation if neither happened yet)
    # MATERIAL_CATALOG_PATH: optional JSON list of material rows overriding
    #   the built-in pricing table
    # ==========================================================================
    SALES_TAX_RATE = float(os.environ.get("SALES_TAX_RATE", "0"))
    REFUND_WINDOW_DAYS = int(os.environ.get("REFUND_WINDOW_DAYS", "30"))
    MATERIAL_CATALOG_PATH = os.environ.get("MATERIAL_CATALOG_PATH", "")

    # Per-subscriber SSE buffer; slow consumers lose the oldest-pending events
    NOTIFICATION_QUEUE_SIZE = int(os.environ.get("NOTIFICATION_QUEUE_SIZE", "100"))


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class TestingConfig(Config):
    """Testing configuration."""
    DEBUG = False
    TESTING = True
    STRIPE_SECRET_KEY = ""
    STRIPE_WEBHOOK_SECRET = ""
    PAYPAL_CLIENT_ID = ""
    PAYPAL_CLIENT_SECRET = ""
    MATERIAL_CATALOG_PATH = ""
    SALES_TAX_RATE = 0.0
