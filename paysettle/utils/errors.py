"""Error payload helpers and the webhook/settlement exception taxonomy."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class WebhookError(Exception):
    """Base class for failures surfaced to the webhook caller."""

    code = "WEBHOOK_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class WebhookValidationError(WebhookError):
    """Malformed or incomplete delivery; the provider must fix the payload."""

    code = "WEBHOOK_PAYLOAD_INVALID"
    status_code = 400


class WebhookAuthenticationError(WebhookError):
    """Signature mismatch. The message never says which check failed."""

    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature.")


class WebhookConfigurationError(WebhookError):
    code = "WEBHOOK_PROVIDER_NOT_CONFIGURED"
    status_code = 503
    retryable = True


class WebhookProcessingError(WebhookError):
    """Settlement failed after the event was recorded; the provider should redeliver."""

    code = "WEBHOOK_PROCESSING_FAILED"
    status_code = 500
    retryable = True


class SettlementError(Exception):
    """Raised by the settlement engine; always rolls back the settlement transaction."""

    code = "SETTLEMENT_FAILED"


class UserNotFoundError(SettlementError):
    code = "USER_NOT_FOUND"

    def __init__(self, message: str = "user not found") -> None:
        super().__init__(message)


class WebhookEventMissingError(SettlementError):
    code = "WEBHOOK_EVENT_MISSING"


class SettlementConflictError(SettlementError):
    """Concurrent settlements kept conflicting after the bounded retries."""

    code = "SETTLEMENT_CONFLICT"


class SettlementTimeoutError(SettlementError):
    code = "SETTLEMENT_TIMEOUT"


__all__ = [
    "error_response",
    "WebhookError",
    "WebhookValidationError",
    "WebhookAuthenticationError",
    "WebhookConfigurationError",
    "WebhookProcessingError",
    "SettlementError",
    "UserNotFoundError",
    "WebhookEventMissingError",
    "SettlementConflictError",
    "SettlementTimeoutError",
]
