"""Error taxonomy for the webhook pipeline.

Every error that can reach the HTTP boundary carries a stable string code
and an HTTP status. Messages are short and safe to return to the caller;
internal details stay in the logs.
"""

from __future__ import annotations

from typing import Any


class WebhookError(Exception):
    """Base class for pipeline errors mapped to an HTTP response."""

    code = "WEBHOOK_ERROR"
    status_code = 500
    public_message = "Webhook processing failed"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.public_message)
        if code:
            self.code = code

    def to_body(self) -> dict[str, Any]:
        """JSON body for the caller. Never includes internal detail."""
        return {"error": self.code, "message": self.public_message}


class TransportError(WebhookError):
    """Network or timeout failure that outlasted the retry budget."""

    code = "TRANSPORT_ERROR"
    status_code = 500
    public_message = "Upstream call failed"

    def __init__(self, message: str = "", *, storage_error: Any = None) -> None:
        super().__init__(message)
        self.storage_error = storage_error


class ValidationError(WebhookError):
    """Malformed or incomplete payload. Never retried."""

    code = "INVALID_PAYLOAD"
    status_code = 400
    public_message = "Invalid webhook payload"


class AuthError(WebhookError):
    """Bad signature or bad admin credential. Never retried."""

    code = "UNAUTHORIZED"
    status_code = 401
    public_message = "Unauthorized"


class PersistenceError(WebhookError):
    """Storage write failed after the retry budget was spent."""

    code = "PERSISTENCE_FAILED"
    status_code = 500
    public_message = "Storage write failed"

    def __init__(self, message: str = "", *, storage_error: Any = None) -> None:
        super().__init__(message)
        self.storage_error = storage_error


class ConfigurationError(WebhookError):
    """Required configuration missing in production."""

    code = "WEBHOOK_NOT_CONFIGURED"
    status_code = 503
    public_message = "Webhook not configured"


class InvalidJSONError(ValidationError):
    """Request body is not valid JSON."""

    code = "INVALID_JSON"
    public_message = "Invalid JSON body"


class InvalidSignatureError(AuthError):
    """Provider did not confirm the webhook signature."""

    code = "INVALID_SIGNATURE"
    public_message = "Invalid signature"


class IdempotencyCheckError(PersistenceError):
    """The event id could not be claimed."""

    code = "IDEMPOTENCY_CHECK_FAILED"
    public_message = "Idempotency check failed"


class HandlerFailedError(WebhookError):
    """State-machine dispatch failed; the event went to the dead-letter queue."""

    code = "WEBHOOK_HANDLER_FAILED"
    public_message = "Webhook handler failed"


class InvalidRequestError(ValidationError):
    """Malformed admin request."""

    code = "INVALID_REQUEST"
    public_message = "Invalid request"


class NotFoundError(WebhookError):
    """No pending dead-letter entry for the requested event."""

    code = "NOT_FOUND"
    status_code = 404
    public_message = "No pending dead-letter entry"


class ReplayFailedError(WebhookError):
    """Replay dispatch failed; the entry is back to pending."""

    code = "REPLAY_FAILED"
    public_message = "Replay failed"
