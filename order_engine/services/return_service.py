import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_engine.core.errors import InvalidQuantity, InvalidState, NotFound, ValidationError
from order_engine.core.guards import guarded_update
from order_engine.core.numbering import next_document_number
from order_engine.models import schemas
from order_engine.models.database import InventoryAdjustment, Order, OrderItem, Payment, Return, ReturnItem
from order_engine.models.enums import AdjustmentType, ReturnStatus
from order_engine.services.inventory_ledger import InventoryLedger
from order_engine.services.order_service import ORDER_ITEM_REFERENCE, OrderAggregate
from order_engine.services.payment_service import PaymentSubledger
from order_engine.services.pricing import to_money

logger = logging.getLogger(__name__)

RETURN_REFERENCE = "RETURN"


@runtime_checkable
class ReturnApprovalPolicy(Protocol):
    """Runs after an approval has committed; decides what follows it."""

    async def on_return_approved(self, coordinator, return_record: schemas.Return) -> None:
        ...


class ManualFollowUp:
    """Approval moves neither money nor stock; staff trigger refund and restock."""

    async def on_return_approved(self, coordinator, return_record: schemas.Return) -> None:
        logger.info(f"Return {return_record.return_number} approved, awaiting manual refund and restock")


class RefundAndRestock:
    """Refunds the approved amount and puts the items back on the shelf."""

    def __init__(self, location_id: Optional[int] = None):
        self.location_id = location_id

    async def on_return_approved(self, coordinator, return_record: schemas.Return) -> None:
        if return_record.refund_amount:
            await coordinator.refund_return(return_record.id)
        await coordinator.restock_return(return_record.id, self.location_id)


class ReturnTracker:
    def __init__(
        self,
        db: Session,
        orders: OrderAggregate,
        ledger: InventoryLedger,
        payments: PaymentSubledger,
        return_number_prefix: str = "RET",
    ):
        self.db = db
        self.orders = orders
        self.ledger = ledger
        self.payments = payments
        self.return_number_prefix = return_number_prefix

    def create(self, order: Order, return_data: schemas.ReturnCreate) -> Return:
        """
        Open a return request.

        The requested quantities are counted into ``quantity_returned`` right
        away so that a second request cannot claim the same units.
        """
        requested: Dict[int, int] = defaultdict(int)
        for item in return_data.items:
            requested[item.order_item_id] += item.quantity

        order_items = {}
        for order_item_id, quantity in requested.items():
            order_item = self.orders.get_item(order, order_item_id)
            returnable = order_item.quantity_fulfilled - order_item.quantity_returned
            if quantity > returnable:
                raise InvalidQuantity(order_item.name, quantity, returnable, order_item_id=order_item.id)
            order_items[order_item_id] = order_item

        return_number = next_document_number(self.db, self.return_number_prefix, Return.return_number)
        return_record = Return(
            order_id=order.id,
            return_number=return_number,
            status=ReturnStatus.REQUESTED,
            reason=return_data.reason,
            notes=return_data.notes,
            requested_at=datetime.utcnow(),
        )
        self.db.add(return_record)
        self.db.flush()

        for item in return_data.items:
            return_record.items.append(
                ReturnItem(
                    order_item_id=item.order_item_id,
                    quantity=item.quantity,
                    reason=item.reason,
                    condition=item.condition,
                )
            )
        for order_item_id, quantity in requested.items():
            self.orders.add_item_quantity(order_items[order_item_id], "quantity_returned", quantity)
        self.db.flush()

        logger.info(f"Return {return_number} requested for order {order.order_number}")
        return return_record

    def process(self, return_record: Return, approve: bool, refund_amount: Optional[Decimal] = None) -> Return:
        if return_record.status != ReturnStatus.REQUESTED:
            raise InvalidState(
                f"Return {return_record.return_number} has already been processed",
                return_id=return_record.id,
                status=return_record.status.value,
            )

        now = datetime.utcnow()
        if approve:
            guarded_update(
                self.db,
                return_record,
                Return.status == ReturnStatus.REQUESTED,
                status=ReturnStatus.APPROVED,
                approved_at=now,
                processed_at=now,
                refund_amount=to_money(refund_amount) if refund_amount is not None else None,
                updated_at=now,
            )
        else:
            guarded_update(
                self.db,
                return_record,
                Return.status == ReturnStatus.REQUESTED,
                status=ReturnStatus.REJECTED,
                processed_at=now,
                updated_at=now,
            )
            # Rejected units become returnable again
            order = self.orders.get(return_record.order_id)
            for item in return_record.items:
                order_item = self.orders.get_item(order, item.order_item_id)
                self.orders.add_item_quantity(order_item, "quantity_returned", -item.quantity)

        self.db.flush()
        logger.info(f"Return {return_record.return_number} {return_record.status.value.lower()}")
        return return_record

    def refund(self, return_record: Return) -> Payment:
        if return_record.status != ReturnStatus.APPROVED:
            raise InvalidState(
                f"Return {return_record.return_number} is not approved",
                return_id=return_record.id,
                status=return_record.status.value,
            )
        if return_record.refunded_at is not None:
            raise InvalidState(f"Return {return_record.return_number} has already been refunded", return_id=return_record.id)
        if not return_record.refund_amount:
            raise InvalidState(f"Return {return_record.return_number} has no refund amount", return_id=return_record.id)

        order = self.orders.get(return_record.order_id, lock=True)
        payment = self.payments.refund(
            order,
            return_record.refund_amount,
            reason=f"Return {return_record.return_number}",
        )
        guarded_update(self.db, return_record, Return.refunded_at.is_(None), refunded_at=datetime.utcnow())
        return payment

    def restock(self, return_record: Return, location_id: Optional[int] = None, actor=None) -> List[InventoryAdjustment]:
        if return_record.status != ReturnStatus.APPROVED:
            raise InvalidState(
                f"Return {return_record.return_number} is not approved",
                return_id=return_record.id,
                status=return_record.status.value,
            )
        if return_record.restocked_at is not None:
            raise InvalidState(f"Return {return_record.return_number} has already been restocked", return_id=return_record.id)

        order = self.orders.get(return_record.order_id)
        adjustments = []
        for item in return_record.items:
            order_item = self.orders.get_item(order, item.order_item_id)
            product = self.orders.catalog.product(self.db, order_item.product_id)
            if product is None or not product.track_quantity:
                continue

            target_location = location_id or self._restock_location(order_item)
            inventory_item = self.ledger.ensure_item(order_item.product_id, order_item.variant_id, target_location)
            adjustments.append(
                self.ledger.adjust(
                    inventory_item.id,
                    AdjustmentType.INCREASE,
                    item.quantity,
                    reason=f"Restock from return {return_record.return_number}",
                    reference_type=RETURN_REFERENCE,
                    reference_id=str(return_record.id),
                    actor=actor,
                )
            )

        guarded_update(self.db, return_record, Return.restocked_at.is_(None), restocked_at=datetime.utcnow())
        logger.info(f"Return {return_record.return_number} restocked ({len(adjustments)} adjustment(s))")
        return adjustments

    def _restock_location(self, order_item: OrderItem) -> int:
        reservations = self.ledger.reservations_for(ORDER_ITEM_REFERENCE, str(order_item.id), status=None)
        if reservations:
            return self.ledger.get_item(reservations[0].inventory_item_id).location_id

        for inventory_item in self.ledger.items_for_product(order_item.product_id, order_item.variant_id):
            if inventory_item.variant_id == order_item.variant_id:
                return inventory_item.location_id

        raise ValidationError(
            f"No location to restock {order_item.name}; pass location_id",
            order_item_id=order_item.id,
        )

    def get(self, return_id: int) -> Return:
        return_record = self.db.execute(
            select(Return)
            .where(Return.id == return_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not return_record:
            raise NotFound("Return", return_id)
        return return_record
