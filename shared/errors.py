"""
Exception hierarchy for the fulfillment engine.

Every error carries a short machine-readable ``code`` and the HTTP status the
API layer renders it with. Callers that want to handle any engine failure can
catch ``FulfillmentError``; callers that need to decide whether to retry should
look for ``TransientStoreError``.
"""
from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base exception for all engine errors."""

    code: str = "fulfillment_error"
    http_status: int = 500

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        if message is None:
            message = "An unspecified fulfillment error occurred."
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class ValidationError(FulfillmentError):
    """Bad input. Not retried."""

    code = "validation_error"
    http_status = 422


class NotFound(FulfillmentError):
    """Referenced transaction, item or subject does not exist."""

    code = "not_found"
    http_status = 404


class InsufficientStock(FulfillmentError):
    """
    The ledger or the booking calendar could not supply the requested quantity.

    Raised while entering the stock state, the transaction that asked for the
    stock is moved to CANCELLED with reason OUT_OF_STOCK before this reaches
    the caller. Raised at creation, nothing is stored.
    """

    code = "insufficient_stock"
    http_status = 409


class InvalidTransition(FulfillmentError):
    """Requested status change is not defined from the current status."""

    code = "invalid_transition"
    http_status = 409


class InvalidSignature(FulfillmentError):
    """Webhook signature verification failed. Never retried."""

    code = "invalid_signature"
    http_status = 400


class TransientStoreError(FulfillmentError):
    """
    Infrastructure failure with nothing committed.

    Safe to retry with the same input.
    """

    code = "transient_store_error"
    http_status = 503


class LockTimeout(TransientStoreError):
    """A per-key lock could not be acquired within the configured timeout."""

    code = "lock_timeout"
