"""
Error taxonomy for order creation, payment and reconciliation.

Every error the core raises derives from CommerceError and carries the HTTP
status the API layer should answer with, plus optional field-level details.
Reconciliation discrepancies are not exceptions: they are returned as
results and written to the audit log.
"""

from typing import Any, Dict, List, Optional


class CommerceError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class OrderValidationError(CommerceError):
    """Missing or malformed input. Raised before any write."""

    status_code = 400


class NotFoundError(CommerceError):
    status_code = 404


class ConflictError(CommerceError):
    """The request is incompatible with the current state of the entity."""

    status_code = 409

    def __init__(self, message: str, current_state: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_state = current_state


class OrderNotCancellableError(ConflictError):
    """Cancel requested on a shipped, delivered or cancelled order."""

    status_code = 400


class UpstreamPaymentError(CommerceError):
    """Processor unreachable, timed out, or declined the request."""

    status_code = 502

    def __init__(self, message: str, processor: str = "unknown", decline_code: Optional[str] = None):
        super().__init__(message)
        self.processor = processor
        self.decline_code = decline_code


class WebhookSignatureError(CommerceError):
    """Webhook signature missing or invalid. Never causes a state change."""

    status_code = 400


class StorageError(CommerceError):
    """A data-store read or write failed. Fatal for the current request."""

    status_code = 500


class OrderNumberConflict(StorageError):
    """Generated order number collided with an existing one."""
