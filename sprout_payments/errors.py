"""Error taxonomy for the payment service.

Every error carries the HTTP status it maps to and renders as
``{"error": ..., "details": ...}``.
"""
from typing import Any


class PaymentServiceError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "details": self.details}


class ValidationError(PaymentServiceError):
    status_code = 400
    default_message = "Missing or invalid request fields"


class AuthError(PaymentServiceError):
    status_code = 401
    default_message = "Invalid or expired token"


class VerificationError(PaymentServiceError):
    status_code = 400
    default_message = "Signature verification failed"


class MalformedPayload(VerificationError):
    default_message = "Invalid webhook payload"


class InsufficientCredits(PaymentServiceError):
    status_code = 402
    default_message = "No analysis credits available"


class NotFound(PaymentServiceError):
    status_code = 404
    default_message = "Not found"


class OrderStateConflict(PaymentServiceError):
    status_code = 409
    default_message = "Order is already in a conflicting terminal state"


class StorageError(PaymentServiceError):
    status_code = 500
    default_message = "Failed to persist payment state"


class ProviderError(PaymentServiceError):
    status_code = 502
    default_message = "Payment provider request failed"

    def __init__(self, message: str | None = None, details: Any = None, provider: str | None = None):
        super().__init__(message, details)
        self.provider = provider


class ProviderNotConfiguredError(ProviderError):
    status_code = 503
    default_message = "Payment provider is not configured"


class ProviderTimeoutError(ProviderError):
    """The provider did not answer in time; the remote side effect is unknown."""

    status_code = 504
    default_message = "Payment provider timed out"


class RateLimitExceeded(PaymentServiceError):
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: str | None = None):
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after
