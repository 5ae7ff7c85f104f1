"""
Shared request helpers for the JSON routes.

Customer identity comes from the X-Customer-Id header set by the
storefront; authentication itself happens upstream.
"""

from typing import Any, Dict, Optional

import bleach
from flask import current_app, request

from core.exceptions import ValidationError


CUSTOMER_HEADER = "X-Customer-Id"

MAX_NOTE_LENGTH = 2000
MAX_REASON_LENGTH = 500


def sanitize_text(text: Any, max_length: Optional[int] = None) -> str:
    """
    Sanitize user input text to prevent XSS and injection attacks.

    Args:
        text: Raw input text
        max_length: Optional maximum length to enforce

    Returns:
        Sanitized text safe for storage and display
    """
    if not text:
        return ""

    # Strip whitespace
    text = str(text).strip()

    # Bleach HTML tags and attributes
    text = bleach.clean(text, tags=[], strip=True)

    # Truncate if needed
    if max_length and len(text) > max_length:
        text = text[:max_length]

    return text


def optional_text(data: Dict[str, Any], key: str, max_length: int = MAX_NOTE_LENGTH) -> Optional[str]:
    """Sanitized value for `key`, or None when the key is absent."""
    if key not in data or data[key] is None:
        return None
    return sanitize_text(data[key], max_length)


def json_body() -> Dict[str, Any]:
    """Request JSON as a dict; anything else is a validation error."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("body", "Request body must be a JSON object")
    return data


def customer_id_from_request() -> str:
    customer_id = sanitize_text(request.headers.get(CUSTOMER_HEADER, ""), 128)
    if not customer_id:
        raise ValidationError(CUSTOMER_HEADER, f"{CUSTOMER_HEADER} header is required")
    return customer_id


def service(name: str):
    """Fetch a service stored on app.config by create_app()."""
    return current_app.config[name]
