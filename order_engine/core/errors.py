"""Closed set of errors raised by the engine.

Every error carries a stable ``code`` and a ``context`` dict with the ids and
quantities a caller needs to render a specific message.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for all caller-facing engine errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(message)


class NotFound(EngineError):
    """Raised when a referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity} not found: {entity_id}",
            entity=entity,
            entity_id=entity_id,
        )


class InvalidState(EngineError):
    """Raised when an operation is illegal for the entity's current status."""

    code = "INVALID_STATE"


class AlreadyReleased(InvalidState):
    """Raised when a reservation is released a second time."""

    code = "ALREADY_RELEASED"

    def __init__(self, reservation_id: int):
        self.reservation_id = reservation_id
        super().__init__(
            f"Reservation {reservation_id} has already been released",
            reservation_id=reservation_id,
        )


class InsufficientStock(EngineError):
    """Raised when a reservation or decrease would make available stock negative."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, item: str, requested: int, available: int, **context: Any):
        self.item = item
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {item}. Available: {available}, Requested: {requested}",
            item=item,
            requested=requested,
            available=available,
            **context,
        )


class InvalidQuantity(EngineError):
    """Raised when a fulfillment, return or refund exceeds what remains."""

    code = "INVALID_QUANTITY"

    def __init__(self, item: str, requested: Any, allowed: Any, **context: Any):
        self.item = item
        self.requested = requested
        self.allowed = allowed
        super().__init__(
            f"Cannot process {requested} for {item}, only {allowed} remaining",
            item=item,
            requested=requested,
            allowed=allowed,
            **context,
        )


class PaymentFailed(EngineError):
    """Raised when the gateway step declines, errors or times out."""

    code = "PAYMENT_FAILED"

    def __init__(self, order_id: int, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(
            f"Payment for order {order_id} failed: {reason}",
            order_id=order_id,
            reason=reason,
        )


class ValidationError(EngineError):
    """Raised for malformed requests that reach the engine."""

    code = "VALIDATION_ERROR"


class Unavailable(EngineError):
    """Raised when the store is unreachable or contention could not be resolved."""

    code = "UNAVAILABLE"


class ConcurrencyConflictError(Exception):
    """Raised when a concurrent transaction modified a row we were updating.

    Retried by the unit of work; never surfaced to callers.
    """
