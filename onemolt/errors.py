"""
Error taxonomy for the OneMolt registry.

Every failure that can reach a caller is a MoltError subclass carrying a
human-readable message, a stable machine code and an HTTP status class.
The HTTP layer renders them as ``{"error": ..., "code": ...}``.
"""

from typing import Any, Dict, Optional


class MoltError(Exception):
    """Base class for all registry errors."""

    status_code = 500
    default_code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body.update(self.details)
        return body


class ValidationError(MoltError):
    """Malformed input. Never retried server-side."""

    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, code: Optional[str] = None):
        self.field = field
        super().__init__(f"{field}: {message}" if field else message, code=code)


class SignalMismatchError(ValidationError):
    """The proof was generated for a different device than the session's."""

    default_code = "SIGNAL_MISMATCH"


class AuthenticationError(MoltError):
    """Signature or personhood proof is invalid."""

    status_code = 401
    default_code = "AUTHENTICATION_FAILED"


class NotFoundError(MoltError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(MoltError):
    """Uniqueness violation, duplicate vote or already-claimed handle."""

    status_code = 409
    default_code = "CONFLICT"


class DuplicateHumanError(ConflictError):
    """The human already has an active molt and replacement was not confirmed."""

    default_code = "DUPLICATE_HUMAN"

    def __init__(self, existing_device_id: str, existing_registered_at: Optional[str]):
        super().__init__(
            "You already have a molt registered. Resubmit with replaceExisting to replace it with this device.",
            details={
                "duplicateDetected": True,
                "existingDevice": {
                    "deviceId": existing_device_id,
                    "registeredAt": existing_registered_at,
                },
            },
        )


class ExpiredError(MoltError):
    """Session TTL elapsed; the caller must restart the flow."""

    status_code = 410
    default_code = "SESSION_EXPIRED"


class RateLimitedError(MoltError):
    status_code = 429
    default_code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: Optional[float] = None):
        details = {"retryAfterMs": int(retry_after * 1000)} if retry_after is not None else None
        super().__init__(message, details=details)


class UpstreamError(MoltError):
    """Proof-of-personhood oracle or OAuth provider failure."""

    status_code = 502
    default_code = "UPSTREAM_ERROR"
    retryable = True


class StoreError(MoltError):
    """Transient store failure; safe to retry at the same step."""

    status_code = 503
    default_code = "STORE_ERROR"
    retryable = True
