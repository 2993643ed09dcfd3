import pytest

from order_engine.core.errors import InvalidState
from order_engine.models.enums import OrderStatus
from order_engine.services.status_machine import OrderEvent, allowed_events, event_for, next_status


class TestTransitions:
    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (OrderStatus.PENDING, OrderEvent.CONFIRM, OrderStatus.CONFIRMED),
            (OrderStatus.CONFIRMED, OrderEvent.PROCESS, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderEvent.SHIP, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderEvent.DELIVER, OrderStatus.DELIVERED),
            (OrderStatus.PENDING, OrderEvent.CANCEL, OrderStatus.CANCELLED),
            (OrderStatus.PROCESSING, OrderEvent.CANCEL, OrderStatus.CANCELLED),
            (OrderStatus.CANCELLED, OrderEvent.REFUND, OrderStatus.REFUNDED),
            (OrderStatus.DELIVERED, OrderEvent.REFUND, OrderStatus.REFUNDED),
        ],
    )
    def test_legal_transitions(self, current, event, expected):
        assert next_status(current, event) == expected

    @pytest.mark.parametrize(
        "current,event",
        [
            (OrderStatus.SHIPPED, OrderEvent.CANCEL),
            (OrderStatus.DELIVERED, OrderEvent.CANCEL),
            (OrderStatus.PENDING, OrderEvent.SHIP),
            (OrderStatus.REFUNDED, OrderEvent.CONFIRM),
            (OrderStatus.PENDING, OrderEvent.REFUND),
        ],
    )
    def test_illegal_transitions(self, current, event):
        with pytest.raises(InvalidState) as exc_info:
            next_status(current, event)
        assert exc_info.value.context["current_status"] == current.value

    def test_terminal_status_has_no_events(self):
        assert allowed_events(OrderStatus.REFUNDED) == []
        assert set(allowed_events(OrderStatus.PENDING)) == {OrderEvent.CONFIRM, OrderEvent.CANCEL}


class TestEventForTarget:
    def test_same_status_is_no_event(self):
        assert event_for(OrderStatus.CONFIRMED, OrderStatus.CONFIRMED) is None

    def test_target_resolves_to_event(self):
        assert event_for(OrderStatus.CONFIRMED, OrderStatus.PROCESSING) == OrderEvent.PROCESS
        assert event_for(OrderStatus.CONFIRMED, OrderStatus.CANCELLED) == OrderEvent.CANCEL

    def test_unreachable_target(self):
        with pytest.raises(InvalidState) as exc_info:
            event_for(OrderStatus.DELIVERED, OrderStatus.PENDING)
        assert exc_info.value.context["requested_status"] == "PENDING"
