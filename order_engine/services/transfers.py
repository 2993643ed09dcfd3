"""Stock moves between locations, held at the source until received."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from order_engine.core.errors import InsufficientStock, InvalidQuantity, InvalidState, NotFound, ValidationError
from order_engine.core.guards import guarded_update
from order_engine.models.database import InventoryTransfer, InventoryTransferItem, Location
from order_engine.models.enums import AdjustmentType, TransferStatus
from order_engine.models.schemas import TransferCreate, TransferReceiveItem
from order_engine.services.inventory_ledger import InventoryLedger

logger = logging.getLogger(__name__)

TRANSFER_ITEM_REFERENCE = "TRANSFER_ITEM"
TRANSFER_REFERENCE = "TRANSFER"


class TransferManager:
    def __init__(self, db: Session, ledger: InventoryLedger):
        self.db = db
        self.ledger = ledger

    def create(self, transfer_data: TransferCreate, actor: Optional[str] = None) -> InventoryTransfer:
        if transfer_data.from_location_id == transfer_data.to_location_id:
            raise ValidationError(
                "Source and destination locations must differ",
                location_id=transfer_data.from_location_id,
            )
        for location_id in (transfer_data.from_location_id, transfer_data.to_location_id):
            if not self.db.get(Location, location_id):
                raise NotFound("Location", location_id)

        transfer = InventoryTransfer(
            from_location_id=transfer_data.from_location_id,
            to_location_id=transfer_data.to_location_id,
            status=TransferStatus.PENDING,
            notes=transfer_data.notes,
            created_by=actor,
        )
        self.db.add(transfer)
        self.db.flush()

        for item in transfer_data.items:
            source = self.ledger.find_item(item.product_id, item.variant_id, transfer_data.from_location_id)
            if source is None:
                raise InsufficientStock(
                    f"product {item.product_id} at location {transfer_data.from_location_id}",
                    item.quantity,
                    0,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                )

            transfer_item = InventoryTransferItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity_requested=item.quantity,
            )
            transfer.items.append(transfer_item)
            self.db.flush()

            self.ledger.reserve(
                source.id,
                item.quantity,
                reason=f"Transfer {transfer.id}",
                reference_type=TRANSFER_ITEM_REFERENCE,
                reference_id=str(transfer_item.id),
            )

        logger.info(
            f"Transfer {transfer.id} created from location {transfer.from_location_id} "
            f"to {transfer.to_location_id} with {len(transfer_data.items)} item(s)"
        )
        return transfer

    def ship(self, transfer: InventoryTransfer, tracking_number: Optional[str] = None) -> InventoryTransfer:
        self._require_status(transfer, TransferStatus.PENDING, "shipped")
        guarded_update(
            self.db,
            transfer,
            InventoryTransfer.status == TransferStatus.PENDING,
            status=TransferStatus.SHIPPED,
            shipped_at=datetime.utcnow(),
            tracking_number=tracking_number,
        )
        for item in transfer.items:
            item.quantity_shipped = item.quantity_requested
        self.db.flush()

        logger.info(f"Transfer {transfer.id} shipped")
        return transfer

    def receive(
        self,
        transfer: InventoryTransfer,
        received: Optional[List[TransferReceiveItem]] = None,
        actor: Optional[str] = None,
    ) -> InventoryTransfer:
        """
        Book the transfer in at the destination.

        The source hold is consumed for the shipped quantity; the destination
        gains what actually arrived (all of it when ``received`` is omitted).
        """
        self._require_status(transfer, TransferStatus.SHIPPED, "received")

        items_by_id = {item.id: item for item in transfer.items}
        received_quantities: Dict[int, int] = {item.id: item.quantity_shipped for item in transfer.items}
        for entry in received or []:
            if entry.transfer_item_id not in items_by_id:
                raise NotFound("Transfer item", entry.transfer_item_id)
            received_quantities[entry.transfer_item_id] = entry.quantity_received

        for item_id, quantity in received_quantities.items():
            shipped = items_by_id[item_id].quantity_shipped
            if quantity > shipped:
                raise InvalidQuantity(f"transfer item {item_id}", quantity, shipped, transfer_id=transfer.id)

        guarded_update(
            self.db,
            transfer,
            InventoryTransfer.status == TransferStatus.SHIPPED,
            status=TransferStatus.RECEIVED,
            received_at=datetime.utcnow(),
        )

        for item in transfer.items:
            for reservation in self.ledger.reservations_for(TRANSFER_ITEM_REFERENCE, str(item.id)):
                self.ledger.fulfill(
                    reservation.id,
                    reservation.remaining_quantity,
                    reference_type=TRANSFER_REFERENCE,
                    reference_id=str(transfer.id),
                    actor=actor,
                )

            quantity = received_quantities[item.id]
            item.quantity_received = quantity
            if quantity > 0:
                destination = self.ledger.ensure_item(item.product_id, item.variant_id, transfer.to_location_id)
                self.ledger.adjust(
                    destination.id,
                    AdjustmentType.INCREASE,
                    quantity,
                    reason=f"Received from transfer {transfer.id}",
                    reference_type=TRANSFER_REFERENCE,
                    reference_id=str(transfer.id),
                    actor=actor,
                )
        self.db.flush()

        logger.info(f"Transfer {transfer.id} received at location {transfer.to_location_id}")
        return transfer

    def cancel(self, transfer: InventoryTransfer) -> InventoryTransfer:
        self._require_status(transfer, TransferStatus.PENDING, "cancelled")
        guarded_update(
            self.db,
            transfer,
            InventoryTransfer.status == TransferStatus.PENDING,
            status=TransferStatus.CANCELLED,
        )
        for item in transfer.items:
            for reservation in self.ledger.reservations_for(TRANSFER_ITEM_REFERENCE, str(item.id)):
                self.ledger.release(reservation.id)

        logger.info(f"Transfer {transfer.id} cancelled")
        return transfer

    def get(self, transfer_id: int) -> InventoryTransfer:
        transfer = self.db.execute(
            select(InventoryTransfer)
            .where(InventoryTransfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not transfer:
            raise NotFound("Transfer", transfer_id)
        return transfer

    def _require_status(self, transfer: InventoryTransfer, status: TransferStatus, action: str) -> None:
        if transfer.status != status:
            raise InvalidState(
                f"Transfer {transfer.id} is {transfer.status.value} and cannot be {action}",
                transfer_id=transfer.id,
                status=transfer.status.value,
            )
