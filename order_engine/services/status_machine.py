"""Order status transitions as a (state, event) -> state table."""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from order_engine.core.errors import InvalidState
from order_engine.models.enums import OrderStatus


class OrderEvent(str, Enum):
    CONFIRM = "CONFIRM"
    PROCESS = "PROCESS"
    SHIP = "SHIP"
    DELIVER = "DELIVER"
    CANCEL = "CANCEL"
    REFUND = "REFUND"


TRANSITIONS: Dict[Tuple[OrderStatus, OrderEvent], OrderStatus] = {
    (OrderStatus.PENDING, OrderEvent.CONFIRM): OrderStatus.CONFIRMED,
    (OrderStatus.CONFIRMED, OrderEvent.PROCESS): OrderStatus.PROCESSING,
    (OrderStatus.PROCESSING, OrderEvent.SHIP): OrderStatus.SHIPPED,
    (OrderStatus.SHIPPED, OrderEvent.DELIVER): OrderStatus.DELIVERED,
    (OrderStatus.PENDING, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.CONFIRMED, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.PROCESSING, OrderEvent.CANCEL): OrderStatus.CANCELLED,
    (OrderStatus.CANCELLED, OrderEvent.REFUND): OrderStatus.REFUNDED,
    (OrderStatus.DELIVERED, OrderEvent.REFUND): OrderStatus.REFUNDED,
}

# Each target status is reached by exactly one event
_EVENT_FOR_TARGET: Dict[OrderStatus, OrderEvent] = {
    target: event for (_, event), target in TRANSITIONS.items()
}


def next_status(current: OrderStatus, event: OrderEvent) -> OrderStatus:
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidState(
            f"Cannot {event.value.lower()} an order in status {current.value}",
            current_status=current.value,
            event=event.value,
        ) from None


def event_for(current: OrderStatus, target: OrderStatus) -> Optional[OrderEvent]:
    """
    Resolve a requested status change to the event that produces it.

    Returns None when ``target`` equals ``current`` (a no-op write) and raises
    InvalidState when no legal transition leads from ``current`` to ``target``.
    """
    if current == target:
        return None
    event = _EVENT_FOR_TARGET.get(target)
    if event is None or (current, event) not in TRANSITIONS:
        raise InvalidState(
            f"Invalid status transition from {current.value} to {target.value}",
            current_status=current.value,
            requested_status=target.value,
        )
    return event


def allowed_events(current: OrderStatus) -> List[OrderEvent]:
    return [event for (state, event) in TRANSITIONS if state == current]
