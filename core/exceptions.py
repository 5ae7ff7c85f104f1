"""
Custom exceptions for StitchOrderWeb.

Exception Hierarchy:
    StitchOrderError (base)
    ├── ValidationError                  - Malformed or out-of-range input (field-tagged)
    ├── NotFoundError                    - Missing review/order/refund
    ├── ConflictError                    - Operation not allowed in the current state
    │   ├── InvalidTransitionError       - Wrong source state for a transition
    │   └── ActorNotPermittedError       - Wrong actor for a transition
    ├── ProviderError                    - Payment provider failure (retryable)
    │   └── ProviderTimeoutError         - Provider call exceeded its timeout
    └── ConfigurationError               - Missing provider credentials, bad settings

Usage:
    Validation, not-found and conflict errors are returned to the caller and
    never mutate state. Provider errors during refund execution are turned
    into a visible refund state (failed / manual reference required).
    Notification failures never raise at all (see services.notifier).
"""

from typing import Optional, Dict, Any


class StitchOrderError(Exception):
    """
    Base exception for all StitchOrderWeb errors.

    All custom exceptions inherit from this class, allowing callers to catch
    all application-specific errors with a single except clause if needed.
    """

    code = "error"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize the exception.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context for debugging
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """JSON body for API error responses."""
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
        }


# =============================================================================
# CALLER ERRORS - returned synchronously, state untouched
# =============================================================================

class ValidationError(StitchOrderError):
    """
    Input failed validation.

    Always names the offending field so forms can highlight it.
    """

    code = "validation_error"
    http_status = 400

    def __init__(self, field: str, message: str, value: Any = None):
        details = {
            "field": field,
            "resolution": f"Correct the value of '{field}' and retry",
        }
        if value is not None:
            details["value"] = value
        super().__init__(message, details)
        self.field = field
        self.value = value

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class NotFoundError(StitchOrderError):
    """A review, order or refund id does not exist."""

    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any):
        message = f"{entity} not found: {entity_id}"
        details = {"entity": entity, "id": entity_id}
        super().__init__(message, details)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(StitchOrderError):
    """
    The operation conflicts with current state.

    Raised for duplicate order numbers, a second Order for the same review,
    a second active refund for the same order, and similar.
    """

    code = "conflict"
    http_status = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class InvalidTransitionError(ConflictError):
    """
    A state machine transition was attempted from the wrong state.
    """

    code = "invalid_transition"

    def __init__(self, entity: str, entity_id: Any, current: str, target: str):
        message = f"Cannot move {entity} {entity_id} from '{current}' to '{target}'"
        details = {
            "entity": entity,
            "id": entity_id,
            "current_status": current,
            "target_status": target,
            "resolution": "Reload the record; it may have been changed by someone else",
        }
        super().__init__(message, details)
        self.current = current
        self.target = target


class ActorNotPermittedError(ConflictError):
    """
    A transition was attempted by an actor that does not own that edge.

    e.g. an operator trying to confirm proofs, or anyone but the payment
    coordinator marking a review as paid.
    """

    code = "actor_not_permitted"
    http_status = 403

    def __init__(self, action: str, actor: str, allowed: str):
        message = f"'{actor}' may not {action}"
        details = {
            "action": action,
            "actor": actor,
            "allowed_actor": allowed,
        }
        super().__init__(message, details)
        self.action = action
        self.actor = actor


# =============================================================================
# PROVIDER ERRORS - payment boundary
# =============================================================================

class ProviderError(StitchOrderError):
    """
    Payment provider rejected or failed a request.

    Retryable: the refund that triggered it moves to 'failed' and can be
    approved again.
    """

    code = "provider_error"
    http_status = 502

    def __init__(
        self,
        provider: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        error_details = details or {}
        error_details["provider"] = provider
        error_details.setdefault("resolution", "Retry later or check the provider dashboard")
        super().__init__(message, error_details)
        self.provider = provider


class ProviderTimeoutError(ProviderError):
    """Provider call did not finish within PROVIDER_TIMEOUT_SECONDS."""

    def __init__(self, provider: str, operation: str, timeout_seconds: float):
        message = f"{provider} {operation} timed out after {timeout_seconds:.1f}s"
        details = {
            "operation": operation,
            "timeout_seconds": timeout_seconds,
            "resolution": "The provider may still complete the operation - check before retrying",
        }
        super().__init__(provider, message, details)
        self.operation = operation
        self.timeout_seconds = timeout_seconds


# =============================================================================
# STARTUP ERRORS
# =============================================================================

class ConfigurationError(StitchOrderError):
    """
    A required setting is missing or invalid.

    Typical causes:
    - STRIPE_SECRET_KEY / PAYPAL_CLIENT_ID not set in .env
    - Checkout requested for a provider that is not configured
    """

    code = "configuration_error"
    http_status = 500

    def __init__(self, setting: str, message: Optional[str] = None):
        message = message or f"Missing or invalid setting: {setting}"
        details = {
            "setting": setting,
            "resolution": f"Set {setting} in .env",
        }
        super().__init__(message, details)
        self.setting = setting
