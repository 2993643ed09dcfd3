import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, sessionmaker

from order_engine.core.config import Settings, get_settings
from order_engine.core.errors import EngineError
from order_engine.core.events import AuditSink, EventBroadcaster, LoggingAuditSink, LoggingBroadcaster, Notifier
from order_engine.core.unit_of_work import UnitOfWork
from order_engine.models import schemas
from order_engine.models.enums import AdjustmentType
from order_engine.services.coordinator import publish_alerts
from order_engine.services.inventory_ledger import InventoryLedger
from order_engine.services.transfers import TransferManager

logger = logging.getLogger(__name__)


class InventoryService:
    """Direct stock operations, one unit of work per call."""

    def __init__(
        self,
        session_factory: sessionmaker,
        broadcaster: Optional[EventBroadcaster] = None,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.uow = UnitOfWork(
            session_factory,
            max_retries=settings.uow_max_retries,
            retry_backoff=settings.uow_retry_backoff,
        )
        self.notifier = Notifier(broadcaster or LoggingBroadcaster(), audit_sink or LoggingAuditSink())

    async def _run(self, work, description: str):
        """Run ``work(ledger)`` and publish any low-stock crossings after commit."""

        def unit(db: Session):
            ledger = InventoryLedger(db)
            return work(ledger), ledger.alerts

        result, alerts = await self.uow.run(unit, description)
        publish_alerts(self.notifier, alerts)
        return result

    # ------------------------------------------------------------------
    # Reservations and adjustments
    # ------------------------------------------------------------------

    async def reserve(self, reservation_data: schemas.ReservationCreate, actor: Optional[str] = None) -> schemas.Reservation:
        def work(ledger: InventoryLedger):
            reservation = ledger.reserve(
                reservation_data.inventory_item_id,
                reservation_data.quantity,
                reservation_data.reason,
                reference_type=reservation_data.reference_type,
                reference_id=reservation_data.reference_id,
                expires_at=reservation_data.expires_at,
            )
            return schemas.Reservation.model_validate(reservation)

        reservation = await self._run(work, "reservation")
        self.notifier.audit(
            "RESERVE_INVENTORY",
            "InventoryReservation",
            reservation.id,
            actor,
            {"inventory_item_id": reservation.inventory_item_id, "quantity": reservation.quantity},
        )
        return reservation

    async def release(self, reservation_id: int, actor: Optional[str] = None) -> schemas.Reservation:
        reservation = await self._run(
            lambda ledger: schemas.Reservation.model_validate(ledger.release(reservation_id)),
            "reservation release",
        )
        self.notifier.audit(
            "RELEASE_RESERVATION",
            "InventoryReservation",
            reservation.id,
            actor,
            {"inventory_item_id": reservation.inventory_item_id},
        )
        return reservation

    async def fulfill_reservation(
        self, reservation_id: int, quantity: int, actor: Optional[str] = None
    ) -> schemas.Adjustment:
        def work(ledger: InventoryLedger):
            return schemas.Adjustment.model_validate(ledger.fulfill(reservation_id, quantity, actor=actor))

        adjustment = await self._run(work, "reservation fulfillment")
        self.notifier.publish("inventory.adjusted", {"adjustment": adjustment.model_dump(mode="json")})
        self.notifier.audit(
            "FULFILL_RESERVATION",
            "InventoryReservation",
            reservation_id,
            actor,
            {"quantity": quantity, "adjustment_id": adjustment.id},
        )
        return adjustment

    async def adjust(self, adjustment_data: schemas.AdjustmentCreate, actor: Optional[str] = None) -> schemas.Adjustment:
        def work(ledger: InventoryLedger):
            adjustment = ledger.adjust(
                adjustment_data.inventory_item_id,
                adjustment_data.type,
                adjustment_data.quantity_change,
                reason=adjustment_data.reason,
                reference_type=adjustment_data.reference_type,
                reference_id=adjustment_data.reference_id,
                actor=actor,
                notes=adjustment_data.notes,
            )
            return schemas.Adjustment.model_validate(adjustment)

        adjustment = await self._run(work, "inventory adjustment")
        self.notifier.publish("inventory.adjusted", {"adjustment": adjustment.model_dump(mode="json")})
        self.notifier.audit(
            "ADJUST_INVENTORY",
            "InventoryItem",
            adjustment.inventory_item_id,
            actor,
            {"type": adjustment.type.value, "quantity_change": adjustment.quantity_change},
        )
        return adjustment

    async def bulk_set_stock(
        self, updates: List[schemas.StockLevelUpdate], actor: Optional[str] = None
    ) -> List[schemas.StockLevelResult]:
        """Set several stock levels; each entry commits or fails on its own."""
        results = []
        for entry in updates:
            adjustment_data = schemas.AdjustmentCreate(
                inventory_item_id=entry.inventory_item_id,
                type=AdjustmentType.SET,
                quantity_change=entry.quantity,
                reason=entry.reason or "Bulk stock update",
            )
            try:
                adjustment = await self.adjust(adjustment_data, actor)
            except EngineError as e:
                logger.warning(f"Bulk stock update for item {entry.inventory_item_id} failed: {e.message}")
                results.append(
                    schemas.StockLevelResult(inventory_item_id=entry.inventory_item_id, success=False, error=e.message)
                )
            else:
                results.append(
                    schemas.StockLevelResult(
                        inventory_item_id=entry.inventory_item_id, success=True, adjustment=adjustment
                    )
                )
        return results

    async def update_low_stock_threshold(
        self, item_id: int, threshold: int, actor: Optional[str] = None
    ) -> schemas.InventoryItem:
        item = await self._run(
            lambda ledger: schemas.InventoryItem.model_validate(ledger.update_low_stock_threshold(item_id, threshold)),
            "threshold update",
        )
        self.notifier.audit("UPDATE_LOW_STOCK_THRESHOLD", "InventoryItem", item.id, actor, {"threshold": threshold})
        return item

    async def ensure_item(
        self, product_id: int, variant_id: Optional[int], location_id: int, actor: Optional[str] = None
    ) -> schemas.InventoryItem:
        item = await self._run(
            lambda ledger: schemas.InventoryItem.model_validate(ledger.ensure_item(product_id, variant_id, location_id)),
            "inventory item creation",
        )
        self.notifier.audit(
            "ENSURE_INVENTORY_ITEM",
            "InventoryItem",
            item.id,
            actor,
            {"product_id": product_id, "variant_id": variant_id, "location_id": location_id},
        )
        return item

    async def cleanup_expired_reservations(self, now: Optional[datetime] = None, actor: Optional[str] = None) -> int:
        """Release every ACTIVE reservation past its expiry; returns how many were released."""

        def work(ledger: InventoryLedger):
            expired = ledger.expired_reservations(now)
            for reservation in expired:
                ledger.release(reservation.id)
            return [reservation.id for reservation in expired]

        released = await self._run(work, "expired reservation cleanup")
        if released:
            logger.info(f"Released {len(released)} expired reservation(s)")
            self.notifier.audit(
                "RELEASE_EXPIRED_RESERVATIONS", "InventoryReservation", None, actor, {"reservation_ids": released}
            )
        return len(released)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def totals(self, product_id: int, variant_id: Optional[int] = None) -> schemas.InventoryTotals:
        return await self._run(lambda ledger: ledger.totals(product_id, variant_id), "inventory totals")

    async def get_item(self, item_id: int) -> schemas.InventoryItem:
        return await self._run(
            lambda ledger: schemas.InventoryItem.model_validate(ledger.get_item(item_id)), "inventory item lookup"
        )

    async def items_by_location(
        self,
        location_id: int,
        product_ids: Optional[List[int]] = None,
        low_stock_only: bool = False,
        include_zero_stock: bool = True,
    ) -> List[schemas.InventoryItem]:
        def work(ledger: InventoryLedger):
            items = ledger.items_by_location(location_id, product_ids, low_stock_only, include_zero_stock)
            return [schemas.InventoryItem.model_validate(item) for item in items]

        return await self._run(work, "location inventory")

    async def low_stock_items(self, location_id: Optional[int] = None) -> List[schemas.InventoryItem]:
        return await self._run(
            lambda ledger: [schemas.InventoryItem.model_validate(i) for i in ledger.low_stock_items(location_id)],
            "low stock report",
        )

    async def out_of_stock_items(self, location_id: Optional[int] = None) -> List[schemas.InventoryItem]:
        return await self._run(
            lambda ledger: [schemas.InventoryItem.model_validate(i) for i in ledger.out_of_stock_items(location_id)],
            "out of stock report",
        )

    async def movement_history(
        self,
        item_id: int,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[schemas.Adjustment]:
        def work(ledger: InventoryLedger):
            ledger.get_item(item_id)
            return [
                schemas.Adjustment.model_validate(adjustment)
                for adjustment in ledger.movement_history(item_id, date_from, date_to, limit)
            ]

        return await self._run(work, "movement history")

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def create_transfer(self, transfer_data: schemas.TransferCreate, actor: Optional[str] = None) -> schemas.Transfer:
        return await self._transfer(
            lambda transfers: transfers.create(transfer_data, actor), "created", "CREATE_TRANSFER", actor
        )

    async def ship_transfer(
        self, transfer_id: int, tracking_number: Optional[str] = None, actor: Optional[str] = None
    ) -> schemas.Transfer:
        return await self._transfer(
            lambda transfers: transfers.ship(transfers.get(transfer_id), tracking_number),
            "shipped",
            "SHIP_TRANSFER",
            actor,
        )

    async def receive_transfer(
        self,
        transfer_id: int,
        received: Optional[List[schemas.TransferReceiveItem]] = None,
        actor: Optional[str] = None,
    ) -> schemas.Transfer:
        return await self._transfer(
            lambda transfers: transfers.receive(transfers.get(transfer_id), received, actor),
            "received",
            "RECEIVE_TRANSFER",
            actor,
        )

    async def cancel_transfer(self, transfer_id: int, actor: Optional[str] = None) -> schemas.Transfer:
        return await self._transfer(
            lambda transfers: transfers.cancel(transfers.get(transfer_id)), "cancelled", "CANCEL_TRANSFER", actor
        )

    async def _transfer(self, action, outcome: str, audit_action: str, actor: Optional[str]) -> schemas.Transfer:
        """Run one transfer step, then publish ``inventory.transfer.<outcome>`` and audit it."""

        def work(ledger: InventoryLedger):
            return schemas.Transfer.model_validate(action(TransferManager(ledger.db, ledger)))

        transfer = await self._run(work, f"transfer {outcome}")
        self.notifier.publish(f"inventory.transfer.{outcome}", {"transfer": transfer.model_dump(mode="json")})
        self.notifier.audit(
            audit_action,
            "InventoryTransfer",
            transfer.id,
            actor,
            {"from_location_id": transfer.from_location_id, "to_location_id": transfer.to_location_id},
        )
        return transfer
