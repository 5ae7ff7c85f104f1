"""
Core module for StitchOrderWeb.

Contains fundamental infrastructure components:
- exceptions: Custom exception hierarchy
- payment_gateway: Provider-neutral gateway interface and result types
- stripe_gateway: Stripe Checkout + Refunds (official SDK)
- paypal_gateway: PayPal Orders v2 REST client (requests)
"""

from .exceptions import (
    StitchOrderError,
    ValidationError,
    NotFoundError,
    ConflictError,
    InvalidTransitionError,
    ActorNotPermittedError,
    ProviderError,
    ProviderTimeoutError,
    ConfigurationError,
)
from .payment_gateway import PaymentGateway, PaymentEvent, RefundResult
from .stripe_gateway import StripeGateway
from .paypal_gateway import PayPalGateway

__all__ = [
    "StitchOrderError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "ActorNotPermittedError",
    "ProviderError",
    "ProviderTimeoutError",
    "ConfigurationError",
    "PaymentGateway",
    "PaymentEvent",
    "RefundResult",
    "StripeGateway",
    "PayPalGateway",
]
