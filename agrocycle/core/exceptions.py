"""
Error taxonomy for the order engine.

Services raise these; the API layer maps them to HTTP responses through a
single exception handler (see agrocycle.main). Every error carries a
human-readable message and an optional details dict.
"""

from typing import Dict, Optional


class OrderEngineError(Exception):
    """Base exception for order engine errors."""
    status_code: int = 400

    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OrderEngineError):
    """Bad input shape or range. Nothing was mutated."""
    status_code = 400


class NotFoundError(OrderEngineError):
    """Unknown id, or an id the requester is not allowed to see."""
    status_code = 404


class OrderNotFoundError(NotFoundError):
    pass


class DeliveryNotFoundError(NotFoundError):
    pass


class InvalidStateError(OrderEngineError):
    """Action is illegal in the record's current status."""
    status_code = 400


class PreconditionFailedError(InvalidStateError):
    """A gated transition is missing a required sub-record."""
    status_code = 400


class OrderMismatchError(OrderEngineError):
    """Gateway order id does not match the one stored at intent creation."""
    status_code = 400


class InvalidSignatureError(OrderEngineError):
    """Gateway signature did not verify."""
    status_code = 400


class AlreadyPaidError(OrderEngineError):
    """Order has no amount due."""
    status_code = 400


class AlreadyProcessedError(OrderEngineError):
    """The payment event has already been applied."""
    status_code = 409


class ConcurrentUpdateError(OrderEngineError):
    """Another writer changed the record first. Safe to retry."""
    status_code = 409


class GatewayError(OrderEngineError):
    """The payment gateway call failed or timed out."""
    status_code = 502


class InternalError(OrderEngineError):
    """Store unavailable. Safe to retry at the caller."""
    status_code = 503
