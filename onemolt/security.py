"""
Security module for the OneMolt registry.

Provides input validation, sanitization, and request correlation helpers.
"""

import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError


# ============================================================
# Input Validation
# ============================================================

UUID_V4_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$',
    re.IGNORECASE
)
HANDLE_PATTERN = re.compile(r'^[A-Za-z0-9_]{1,15}$')


def is_uuid4(value: Any) -> bool:
    """Format-only check for a v4 UUID string."""
    return isinstance(value, str) and bool(UUID_V4_PATTERN.match(value))


def require_fields(body: Dict[str, Any], fields: List[str]) -> None:
    """
    Check that every field is present and non-empty.

    Raises:
        ValidationError: naming all missing fields at once
    """
    missing = [f for f in fields if not body.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def validate_string_length(
    value: Any,
    field_name: str,
    min_length: int = 1,
    max_length: int = 1000
) -> str:
    """
    Validate string length.

    Args:
        value: The string to validate
        field_name: Name of the field (for error messages)
        min_length: Minimum allowed length
        max_length: Maximum allowed length

    Returns:
        The validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError("must be a string", field=field_name)

    if len(value) < min_length:
        raise ValidationError(f"must be at least {min_length} characters", field=field_name)

    if len(value) > max_length:
        raise ValidationError(f"must be {max_length} characters or less", field=field_name)

    return value


def validate_handle(value: Any) -> str:
    """Normalize and validate a social handle (leading @ stripped, lowercased)."""
    if not isinstance(value, str):
        raise ValidationError("must be a string", field="handle")
    handle = value.strip().lstrip("@")
    if not HANDLE_PATTERN.match(handle):
        raise ValidationError("invalid format", field="handle")
    return handle.lower()


def validate_page(page: Any, page_size: Any, max_page_size: int = 50) -> Tuple[int, int]:
    try:
        page_i = int(page)
        size_i = int(page_size)
    except (TypeError, ValueError):
        raise ValidationError("page and pageSize must be integers")
    if page_i < 1 or size_i < 1:
        raise ValidationError("page and pageSize must be positive")
    return page_i, min(size_i, max_page_size)


# ============================================================
# Request ID Generation
# ============================================================

def generate_request_id() -> str:
    """Generate a unique request ID for audit trail correlation."""
    return str(uuid.uuid4())


# ============================================================
# Audit Logging Helpers
# ============================================================

def sanitize_for_logging(data: Dict[str, Any], sensitive_fields: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Sanitize data for logging by masking sensitive fields.

    Args:
        data: The data to sanitize
        sensitive_fields: List of field names to mask

    Returns:
        Sanitized copy of the data
    """
    if sensitive_fields is None:
        sensitive_fields = ["signature", "proof", "merkle_root", "session_token", "token"]

    result = {}
    for key, value in data.items():
        if key in sensitive_fields:
            if isinstance(value, str) and len(value) > 8:
                result[key] = value[:4] + "..." + value[-4:]
            else:
                result[key] = "[REDACTED]"
        elif isinstance(value, dict):
            result[key] = sanitize_for_logging(value, sensitive_fields)
        elif isinstance(value, list):
            result[key] = [
                sanitize_for_logging(item, sensitive_fields) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value

    return result
