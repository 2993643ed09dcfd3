import re
from decimal import Decimal

import pytest

from order_engine.core.errors import InvalidQuantity, InvalidState, NotFound
from order_engine.models.database import InventoryItem, OrderItem, Payment, Return
from order_engine.models.enums import FinancialStatus, PaymentMethod, ReturnCondition, ReturnStatus
from order_engine.models.schemas import (
    FulfillmentCreate,
    FulfillmentItemCreate,
    PaymentCreate,
    ReturnCreate,
    ReturnDecision,
    ReturnItemCreate,
)
from order_engine.services.coordinator import TransactionCoordinator
from order_engine.services.return_service import RefundAndRestock


def return_lines(*lines, reason="Not as described"):
    return ReturnCreate(
        items=[
            ReturnItemCreate(order_item_id=order_item_id, quantity=quantity, condition=ReturnCondition.OPENED)
            for order_item_id, quantity in lines
        ],
        reason=reason,
    )


@pytest.fixture
def delivered_order(order_request):
    """A paid order for 2 mixers with both units fulfilled"""

    async def _create(coordinator):
        order = await coordinator.create_order(order_request(quantity=2))
        await coordinator.process_payment(
            order.id,
            PaymentCreate(
                amount=order.total_amount, currency="USD", method=PaymentMethod.CREDIT_CARD, gateway="stripe"
            ),
        )
        order_item_id = order.order_items[0].id
        await coordinator.create_fulfillment(
            order.id, FulfillmentCreate(items=[FulfillmentItemCreate(order_item_id=order_item_id, quantity=2)])
        )
        return order, order_item_id

    return _create


class TestReturnRequests:
    @pytest.mark.asyncio
    async def test_request_counts_returned_units(self, coordinator, delivered_order, load, events, audit):
        order, order_item_id = await delivered_order(coordinator)

        return_record = await coordinator.create_return(order.id, return_lines((order_item_id, 1)))

        assert return_record.status == ReturnStatus.REQUESTED
        assert re.match(r"^RET-\d{8}-0001$", return_record.return_number)
        assert return_record.items[0].condition == ReturnCondition.OPENED
        assert load(OrderItem, order_item_id).quantity_returned == 1

        assert events.named("return.created")[0]["return"]["id"] == return_record.id
        assert "CREATE_RETURN" in audit.actions()

    @pytest.mark.asyncio
    async def test_cannot_return_more_than_fulfilled(self, coordinator, order_request, rows, load):
        """Nothing fulfilled yet, so nothing is returnable"""
        order = await coordinator.create_order(order_request(quantity=2))
        order_item_id = order.order_items[0].id

        with pytest.raises(InvalidQuantity) as exc_info:
            await coordinator.create_return(order.id, return_lines((order_item_id, 1)))

        assert exc_info.value.allowed == 0
        assert rows(Return) == []
        assert load(OrderItem, order_item_id).quantity_returned == 0

    @pytest.mark.asyncio
    async def test_second_request_sees_first(self, coordinator, delivered_order, rows, load):
        order, order_item_id = await delivered_order(coordinator)
        await coordinator.create_return(order.id, return_lines((order_item_id, 1)))

        with pytest.raises(InvalidQuantity) as exc_info:
            await coordinator.create_return(order.id, return_lines((order_item_id, 2)))

        assert exc_info.value.allowed == 1
        assert len(rows(Return)) == 1
        assert load(OrderItem, order_item_id).quantity_returned == 1

    @pytest.mark.asyncio
    async def test_item_from_another_order(self, coordinator, delivered_order, order_request):
        order, _ = await delivered_order(coordinator)
        other = await coordinator.create_order(order_request())

        with pytest.raises(NotFound):
            await coordinator.create_return(order.id, return_lines((other.order_items[0].id, 1)))


class TestReturnProcessing:
    @pytest.mark.asyncio
    async def test_rejection_makes_units_returnable_again(self, coordinator, delivered_order, load):
        order, order_item_id = await delivered_order(coordinator)
        return_record = await coordinator.create_return(order.id, return_lines((order_item_id, 2)))

        rejected = await coordinator.process_return(return_record.id, ReturnDecision(approve=False))

        assert rejected.status == ReturnStatus.REJECTED
        assert rejected.processed_at is not None
        assert load(OrderItem, order_item_id).quantity_returned == 0

        again = await coordinator.create_return(order.id, return_lines((order_item_id, 2)))
        assert again.return_number.endswith("-0002")

    @pytest.mark.asyncio
    async def test_processing_twice(self, coordinator, delivered_order):
        order, order_item_id = await delivered_order(coordinator)
        return_record = await coordinator.create_return(order.id, return_lines((order_item_id, 1)))
        await coordinator.process_return(return_record.id, ReturnDecision(approve=True))

        with pytest.raises(InvalidState):
            await coordinator.process_return(return_record.id, ReturnDecision(approve=False))

    @pytest.mark.asyncio
    async def test_approval_alone_moves_no_money_or_stock(self, coordinator, catalog, delivered_order, rows, load):
        order, order_item_id = await delivered_order(coordinator)
        return_record = await coordinator.create_return(order.id, return_lines((order_item_id, 1)))

        approved = await coordinator.process_return(
            return_record.id, ReturnDecision(approve=True, refund_amount=Decimal("299.99"))
        )

        assert approved.status == ReturnStatus.APPROVED
        assert approved.approved_at is not None
        assert approved.refund_amount == Decimal("299.99")
        assert [p.amount for p in rows(Payment, order_id=order.id) if p.amount < 0] == []
        assert load(InventoryItem, catalog.mixer_stock).quantity == 3

    @pytest.mark.asyncio
    async def test_refund_and_restock_by_hand(self, coordinator, catalog, delivered_order, load, rows, events):
        order, order_item_id = await delivered_order(coordinator)
        return_record = await coordinator.create_return(order.id, return_lines((order_item_id, 1)))
        await coordinator.process_return(return_record.id, ReturnDecision(approve=True, refund_amount=Decimal("299.99")))

        refund = await coordinator.refund_return(return_record.id)

        assert refund.amount == Decimal("-299.99")
        assert load(Return, return_record.id).refunded_at is not None
        assert (await coordinator.get_order(order.id)).financial_status == FinancialStatus.PARTIALLY_REFUNDED
        with pytest.raises(InvalidState):
            await coordinator.refund_return(return_record.id)

        restocked = await coordinator.restock_return(return_record.id)

        assert restocked.restocked_at is not None
        assert load(InventoryItem, catalog.mixer_stock).quantity == 4
        assert events.named("inventory.adjusted")[0]["adjustment"]["type"] == "INCREASE"
        with pytest.raises(InvalidState):
            await coordinator.restock_return(return_record.id)

    @pytest.mark.asyncio
    async def test_restock_to_another_location(self, coordinator, catalog, delivered_order, rows, audit):
        order, order_item_id = await delivered_order(coordinator)
        return_record = await coordinator.create_return(order.id, return_lines((order_item_id, 2)))
        await coordinator.process_return(return_record.id, ReturnDecision(approve=True))

        await coordinator.restock_return(return_record.id, catalog.store, actor="warehouse")

        store_stock = rows(InventoryItem, product_id=catalog.mixer, location_id=catalog.store)
        assert [item.quantity for item in store_stock] == [2]

        record = audit.records[-1]
        assert (record.action, record.entity_id, record.actor) == ("RESTOCK_RETURN", return_record.id, "warehouse")
        assert record.metadata["location_id"] == catalog.store
        assert len(record.metadata["adjustments"]) == 1

    @pytest.mark.asyncio
    async def test_refund_requires_approval_and_amount(self, coordinator, delivered_order):
        order, order_item_id = await delivered_order(coordinator)
        pending = await coordinator.create_return(order.id, return_lines((order_item_id, 1)))

        with pytest.raises(InvalidState):
            await coordinator.refund_return(pending.id)
        with pytest.raises(InvalidState):
            await coordinator.restock_return(pending.id)

        await coordinator.process_return(pending.id, ReturnDecision(approve=True))
        with pytest.raises(InvalidState):
            await coordinator.refund_return(pending.id)

    @pytest.mark.asyncio
    async def test_refund_and_restock_policy(
        self, session_factory, events, audit, settings, catalog, delivered_order, load
    ):
        coordinator = TransactionCoordinator(
            session_factory,
            broadcaster=events,
            audit_sink=audit,
            return_policy=RefundAndRestock(),
            settings=settings,
        )
        order, order_item_id = await delivered_order(coordinator)
        return_record = await coordinator.create_return(order.id, return_lines((order_item_id, 1)))

        await coordinator.process_return(return_record.id, ReturnDecision(approve=True, refund_amount=Decimal("100")))

        stored = load(Return, return_record.id)
        assert stored.refunded_at is not None
        assert stored.restocked_at is not None
        assert load(InventoryItem, catalog.mixer_stock).quantity == 4
        assert events.named("payment.refunded")[0]["payment"]["amount"] == "-100.00"

    @pytest.mark.asyncio
    async def test_unknown_return(self, coordinator):
        with pytest.raises(NotFound):
            await coordinator.process_return(9999, ReturnDecision(approve=True))
