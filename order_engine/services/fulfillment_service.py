import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_engine.core.errors import InsufficientStock, InvalidQuantity, InvalidState, NotFound
from order_engine.core.guards import guarded_update
from order_engine.models.database import Fulfillment, FulfillmentItem, Order, OrderItem
from order_engine.models.enums import AdjustmentType, FulfillmentStatus, OrderStatus
from order_engine.models.schemas import FulfillmentCreate, TrackingInfo
from order_engine.services.inventory_ledger import InventoryLedger
from order_engine.services.order_service import ORDER_ITEM_REFERENCE, OrderAggregate

logger = logging.getLogger(__name__)

FULFILLMENT_REFERENCE = "FULFILLMENT"


class FulfillmentTracker:
    """
    Shipments of an order's items.

    Creating a fulfillment is the point where held stock becomes a permanent
    decrease: the order item's reservations are consumed through the ledger.
    """

    def __init__(self, db: Session, orders: OrderAggregate, ledger: InventoryLedger):
        self.db = db
        self.orders = orders
        self.ledger = ledger

    def create(self, order: Order, fulfillment_data: FulfillmentCreate, actor=None) -> Fulfillment:
        if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            raise InvalidState(
                f"Cannot fulfill order {order.order_number} in status {order.status.value}",
                order_id=order.id,
                status=order.status.value,
            )

        # Validate every line before writing anything
        requested: Dict[int, int] = defaultdict(int)
        for item in fulfillment_data.items:
            requested[item.order_item_id] += item.quantity
        order_items = {}
        for order_item_id, quantity in requested.items():
            order_item = self.orders.get_item(order, order_item_id)
            remaining = order_item.quantity - order_item.quantity_fulfilled
            if quantity > remaining:
                raise InvalidQuantity(order_item.name, quantity, remaining, order_item_id=order_item.id)
            order_items[order_item_id] = order_item

        fulfillment = Fulfillment(
            order_id=order.id,
            status=FulfillmentStatus.PENDING,
            tracking_number=fulfillment_data.tracking_number,
            tracking_url=fulfillment_data.tracking_url,
            carrier=fulfillment_data.carrier,
            service=fulfillment_data.service,
        )
        self.db.add(fulfillment)
        self.db.flush()

        for order_item_id, quantity in requested.items():
            order_item = order_items[order_item_id]
            fulfillment.items.append(FulfillmentItem(order_item_id=order_item.id, quantity=quantity))
            self.orders.add_item_quantity(order_item, "quantity_fulfilled", quantity)
            self._consume_stock(order, order_item, quantity, fulfillment, actor)

        self.orders.refresh_fulfillment_status(order)
        order.updated_at = datetime.utcnow()
        self.db.flush()

        logger.info(
            f"Fulfillment {fulfillment.id} created for order {order.order_number} "
            f"({sum(requested.values())} unit(s), order now {order.fulfillment_status.value})"
        )
        return fulfillment

    def _consume_stock(self, order: Order, order_item: OrderItem, quantity: int, fulfillment: Fulfillment, actor) -> None:
        to_consume = quantity
        for reservation in self.ledger.reservations_for(ORDER_ITEM_REFERENCE, str(order_item.id)):
            if to_consume == 0:
                break
            take = min(reservation.remaining_quantity, to_consume)
            self.ledger.fulfill(
                reservation.id,
                take,
                reference_type=FULFILLMENT_REFERENCE,
                reference_id=str(fulfillment.id),
                actor=actor,
            )
            to_consume -= take

        if to_consume == 0:
            return

        product = self.orders.catalog.product(self.db, order_item.product_id)
        if product is None or not product.track_quantity:
            return

        # No hold left for this line: take the stock directly
        candidates = [
            item for item in self.ledger.items_for_product(order_item.product_id, order_item.variant_id)
            if item.variant_id == order_item.variant_id
        ]
        item = max(candidates, key=lambda i: i.available_quantity, default=None)
        if item is None or item.available_quantity < to_consume:
            raise InsufficientStock(
                order_item.name,
                to_consume,
                item.available_quantity if item is not None else 0,
                order_item_id=order_item.id,
            )
        self.ledger.adjust(
            item.id,
            AdjustmentType.DECREASE,
            to_consume,
            reason=f"Fulfillment for order {order.order_number}",
            reference_type=FULFILLMENT_REFERENCE,
            reference_id=str(fulfillment.id),
            actor=actor,
        )

    def ship(self, fulfillment: Fulfillment, tracking: TrackingInfo) -> Fulfillment:
        if fulfillment.status != FulfillmentStatus.PENDING:
            raise InvalidState(
                f"Fulfillment {fulfillment.id} is {fulfillment.status.value} and cannot be shipped",
                fulfillment_id=fulfillment.id,
                status=fulfillment.status.value,
            )

        now = datetime.utcnow()
        guarded_update(
            self.db,
            fulfillment,
            Fulfillment.status == FulfillmentStatus.PENDING,
            status=FulfillmentStatus.SHIPPED,
            shipped_at=now,
            updated_at=now,
        )
        if tracking.tracking_number is not None:
            fulfillment.tracking_number = tracking.tracking_number
        if tracking.tracking_url is not None:
            fulfillment.tracking_url = tracking.tracking_url
        if tracking.carrier is not None:
            fulfillment.carrier = tracking.carrier
        self.db.flush()

        logger.info(f"Fulfillment {fulfillment.id} shipped (tracking {fulfillment.tracking_number})")
        return fulfillment

    def deliver(self, fulfillment: Fulfillment) -> Fulfillment:
        if fulfillment.status != FulfillmentStatus.SHIPPED:
            raise InvalidState(
                f"Fulfillment {fulfillment.id} is {fulfillment.status.value} and cannot be delivered",
                fulfillment_id=fulfillment.id,
                status=fulfillment.status.value,
            )
        now = datetime.utcnow()
        guarded_update(
            self.db,
            fulfillment,
            Fulfillment.status == FulfillmentStatus.SHIPPED,
            status=FulfillmentStatus.DELIVERED,
            delivered_at=now,
            updated_at=now,
        )
        logger.info(f"Fulfillment {fulfillment.id} delivered")
        return fulfillment

    def get(self, fulfillment_id: int) -> Fulfillment:
        fulfillment = self.db.execute(
            select(Fulfillment)
            .where(Fulfillment.id == fulfillment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not fulfillment:
            raise NotFound("Fulfillment", fulfillment_id)
        return fulfillment
