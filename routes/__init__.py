"""
Flask route blueprints for StitchOrderWeb.

This module contains all route handlers organized by functionality:
- api: Health check and pricing quotes
- reviews: Design review submission, picture replies, confirmations
- payments: Checkout, capture, provider webhooks, orders
- refunds: Refund requests and operator decisions
- events: Server-sent event streams

Each blueprint is registered with the Flask app in create_app().
"""

from .api import api_bp
from .reviews import reviews_bp
from .payments import payments_bp
from .refunds import refunds_bp
from .events import events_bp

__all__ = [
    "api_bp",
    "reviews_bp",
    "payments_bp",
    "refunds_bp",
    "events_bp",
]


def register_blueprints(app):
    """
    Register all blueprints with the Flask app.

    Args:
        app: Flask application instance
    """
    app.register_blueprint(api_bp)
    app.register_blueprint(reviews_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(refunds_bp)
    app.register_blueprint(events_bp)
