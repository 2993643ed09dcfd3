"""
Inventory ledger: per-location stock counts, reservations and adjustments.

The ledger knows nothing about orders. Callers pass an open session and the
ledger performs its reads and writes inside the caller's transaction.

Every write to an inventory item or reservation goes through a guarded
UPDATE (``WHERE version = :expected`` for items, ``WHERE status = 'ACTIVE'``
for reservations). Rows are also read ``FOR UPDATE`` where the store supports
it. A guarded update that matches no row means another transaction got there
first; it raises ConcurrencyConflictError and the unit of work retries.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from order_engine.core.errors import (
    AlreadyReleased,
    ConcurrencyConflictError,
    InsufficientStock,
    InvalidQuantity,
    InvalidState,
    NotFound,
    ValidationError,
)
from order_engine.core.guards import guarded_update
from order_engine.models.database import InventoryAdjustment, InventoryItem, InventoryReservation
from order_engine.models.enums import AdjustmentType, ReservationStatus
from order_engine.models.schemas import InventoryTotals

logger = logging.getLogger(__name__)


@dataclass
class LowStockAlert:
    inventory_item_id: int
    product_id: int
    variant_id: Optional[int]
    location_id: int
    available_quantity: int
    threshold: int

    def as_payload(self) -> dict:
        return asdict(self)


class InventoryLedger:
    """Stock bookkeeping against one open session."""

    def __init__(self, db: Session):
        self.db = db
        # Threshold crossings seen in this transaction, published after commit
        self.alerts: List[LowStockAlert] = []

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve(
        self,
        item_id: int,
        quantity: int,
        reason: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> InventoryReservation:
        if quantity <= 0:
            raise ValidationError("Reservation quantity must be positive", quantity=quantity)

        item = self._lock_item(item_id)
        if item.available_quantity < quantity:
            raise InsufficientStock(
                _describe(item), quantity, item.available_quantity, inventory_item_id=item.id
            )

        self._write_item(item, item.quantity, item.reserved_quantity + quantity)

        reservation = InventoryReservation(
            inventory_item_id=item.id,
            quantity=quantity,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            status=ReservationStatus.ACTIVE,
            expires_at=expires_at,
        )
        self.db.add(reservation)
        self.db.flush()

        logger.info(
            f"Reserved {quantity} of inventory item {item.id} "
            f"(reservation {reservation.id}, reason {reason!r}, available now {item.available_quantity})"
        )
        return reservation

    def allocate(
        self,
        product_id: int,
        variant_id: Optional[int],
        quantity: int,
        reason: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> List[InventoryReservation]:
        """Reserve ``quantity`` of a product across locations, largest stock first."""
        items = self.db.execute(
            self._product_query(product_id, variant_id)
            .order_by(InventoryItem.available_quantity.desc(), InventoryItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        total_available = sum(max(item.available_quantity, 0) for item in items)
        if total_available < quantity:
            raise InsufficientStock(
                _describe_product(product_id, variant_id),
                quantity,
                total_available,
                product_id=product_id,
                variant_id=variant_id,
            )

        reservations = []
        remaining = quantity
        for item in items:
            if remaining == 0:
                break
            take = min(remaining, item.available_quantity)
            if take <= 0:
                continue
            reservations.append(
                self.reserve(item.id, take, reason, reference_type, reference_id, expires_at)
            )
            remaining -= take
        return reservations

    def release(self, reservation_id: int) -> InventoryReservation:
        reservation = self._lock_reservation(reservation_id)
        if reservation.status == ReservationStatus.RELEASED:
            raise AlreadyReleased(reservation.id)
        if reservation.status == ReservationStatus.FULFILLED:
            raise InvalidState(
                f"Reservation {reservation.id} is already fulfilled and cannot be released",
                reservation_id=reservation.id,
            )

        item = self._lock_item(reservation.inventory_item_id)
        remaining = reservation.remaining_quantity
        if item.reserved_quantity < remaining:
            raise InvalidState(
                f"Inventory item {item.id} holds {item.reserved_quantity} reserved, "
                f"cannot release {remaining}",
                inventory_item_id=item.id,
                reservation_id=reservation.id,
            )

        now = datetime.utcnow()
        self._write_reservation(reservation, status=ReservationStatus.RELEASED, released_at=now, updated_at=now)
        self._write_item(item, item.quantity, item.reserved_quantity - remaining)

        logger.info(f"Released reservation {reservation.id}: {remaining} of inventory item {item.id}")
        return reservation

    def fulfill(
        self,
        reservation_id: int,
        quantity: int,
        reference_type: str = "RESERVATION",
        reference_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> InventoryAdjustment:
        """Turn part or all of a hold into a permanent stock decrease."""
        if quantity <= 0:
            raise ValidationError("Fulfilled quantity must be positive", quantity=quantity)

        reservation = self._lock_reservation(reservation_id)
        if reservation.status != ReservationStatus.ACTIVE:
            raise InvalidState(
                f"Reservation {reservation.id} is {reservation.status.value.lower()} and cannot be fulfilled",
                reservation_id=reservation.id,
                status=reservation.status.value,
            )
        remaining = reservation.remaining_quantity
        if quantity > remaining:
            raise InvalidQuantity(f"reservation {reservation.id}", quantity, remaining, reservation_id=reservation.id)

        item = self._lock_item(reservation.inventory_item_id)
        quantity_before = item.quantity

        now = datetime.utcnow()
        fulfilled = reservation.quantity_fulfilled + quantity
        if fulfilled == reservation.quantity:
            self._write_reservation(
                reservation,
                quantity_fulfilled=fulfilled,
                status=ReservationStatus.FULFILLED,
                fulfilled_at=now,
                updated_at=now,
            )
        else:
            self._write_reservation(reservation, quantity_fulfilled=fulfilled, updated_at=now)
        self._write_item(item, item.quantity - quantity, item.reserved_quantity - quantity)

        adjustment = self._record(
            item,
            AdjustmentType.DECREASE,
            quantity,
            quantity_before,
            reason=f"Fulfilled reservation: {reservation.reason}",
            reference_type=reference_type,
            reference_id=reference_id or str(reservation.id),
            actor=actor,
        )
        logger.info(
            f"Fulfilled {quantity} of reservation {reservation.id} "
            f"(remaining {reservation.remaining_quantity}, on hand {item.quantity})"
        )
        return adjustment

    # ------------------------------------------------------------------
    # Adjustments
    # ------------------------------------------------------------------

    def adjust(
        self,
        item_id: int,
        type: AdjustmentType,
        quantity_change: int,
        reason: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> InventoryAdjustment:
        if quantity_change < 0:
            raise ValidationError("Adjustment quantity must not be negative", quantity_change=quantity_change)

        item = self._lock_item(item_id)
        quantity_before = item.quantity

        if type == AdjustmentType.INCREASE:
            quantity_after = quantity_before + quantity_change
        elif type == AdjustmentType.DECREASE:
            quantity_after = quantity_before - quantity_change
        elif type == AdjustmentType.SET:
            quantity_after = quantity_change
        else:
            raise ValidationError(f"Invalid adjustment type: {type}", type=str(type))

        # Stock already promised to reservations cannot be adjusted away
        if quantity_after < item.reserved_quantity:
            raise InsufficientStock(
                _describe(item),
                quantity_before - quantity_after,
                item.available_quantity,
                inventory_item_id=item.id,
                reserved=item.reserved_quantity,
            )

        self._write_item(item, quantity_after, item.reserved_quantity)
        adjustment = self._record(
            item,
            type,
            quantity_change,
            quantity_before,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor=actor,
            notes=notes,
        )
        logger.info(
            f"Adjusted inventory item {item.id} ({type.value} {quantity_change}): "
            f"{quantity_before} -> {quantity_after}"
        )
        return adjustment

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def find_item(self, product_id: int, variant_id: Optional[int], location_id: int) -> Optional[InventoryItem]:
        return self.db.execute(
            self._product_query(product_id, variant_id).where(InventoryItem.location_id == location_id)
        ).scalar_one_or_none()

    def ensure_item(self, product_id: int, variant_id: Optional[int], location_id: int) -> InventoryItem:
        item = self.find_item(product_id, variant_id, location_id)
        if item:
            return item

        item = InventoryItem(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            quantity=0,
            reserved_quantity=0,
        )
        self.db.add(item)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ConcurrencyConflictError(
                f"Inventory item for product {product_id} at location {location_id} was created concurrently"
            ) from e
        return item

    def update_low_stock_threshold(self, item_id: int, threshold: int) -> InventoryItem:
        if threshold < 0:
            raise ValidationError("Low stock threshold must not be negative", threshold=threshold)
        item = self._lock_item(item_id)
        previous = item.low_stock_threshold
        item.low_stock_threshold = threshold
        self.db.flush()
        # Raising the threshold above current stock is a crossing too
        if previous < item.available_quantity <= threshold:
            self.alerts.append(_alert_for(item))
        return item

    # ------------------------------------------------------------------
    # Reads (never lock)
    # ------------------------------------------------------------------

    def get_item(self, item_id: int) -> InventoryItem:
        item = self.db.get(InventoryItem, item_id)
        if not item:
            raise NotFound("Inventory item", item_id)
        return item

    def totals(self, product_id: int, variant_id: Optional[int] = None) -> InventoryTotals:
        """Stock summed across locations; all variants when ``variant_id`` is omitted."""
        query = select(
            func.coalesce(func.sum(InventoryItem.quantity), 0),
            func.coalesce(func.sum(InventoryItem.reserved_quantity), 0),
        ).where(InventoryItem.product_id == product_id)
        if variant_id is not None:
            query = query.where(InventoryItem.variant_id == variant_id)
        on_hand, reserved = self.db.execute(query).one()
        return InventoryTotals(available=on_hand - reserved, reserved=reserved, on_hand=on_hand)

    def available_for(self, product_id: int, variant_id: Optional[int]) -> int:
        """Available stock for exactly this product/variant pair."""
        items = self.db.execute(self._product_query(product_id, variant_id)).scalars().all()
        return sum(max(item.available_quantity, 0) for item in items)

    def items_for_product(self, product_id: int, variant_id: Optional[int] = None) -> Sequence[InventoryItem]:
        query = select(InventoryItem).where(InventoryItem.product_id == product_id)
        if variant_id is not None:
            query = query.where(InventoryItem.variant_id == variant_id)
        return self.db.execute(query.order_by(InventoryItem.location_id)).scalars().all()

    def items_by_location(
        self,
        location_id: int,
        product_ids: Optional[List[int]] = None,
        low_stock_only: bool = False,
        include_zero_stock: bool = True,
    ) -> Sequence[InventoryItem]:
        query = select(InventoryItem).where(InventoryItem.location_id == location_id)
        if product_ids:
            query = query.where(InventoryItem.product_id.in_(product_ids))
        if low_stock_only:
            query = query.where(InventoryItem.available_quantity <= InventoryItem.low_stock_threshold)
        if not include_zero_stock:
            query = query.where(InventoryItem.quantity > 0)
        return self.db.execute(query.order_by(InventoryItem.product_id, InventoryItem.id)).scalars().all()

    def low_stock_items(self, location_id: Optional[int] = None) -> Sequence[InventoryItem]:
        query = select(InventoryItem).where(InventoryItem.available_quantity <= InventoryItem.low_stock_threshold)
        if location_id is not None:
            query = query.where(InventoryItem.location_id == location_id)
        return self.db.execute(query.order_by(InventoryItem.available_quantity, InventoryItem.id)).scalars().all()

    def out_of_stock_items(self, location_id: Optional[int] = None) -> Sequence[InventoryItem]:
        query = select(InventoryItem).where(InventoryItem.available_quantity <= 0)
        if location_id is not None:
            query = query.where(InventoryItem.location_id == location_id)
        return self.db.execute(query.order_by(InventoryItem.id)).scalars().all()

    def movement_history(
        self,
        item_id: int,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> Sequence[InventoryAdjustment]:
        query = select(InventoryAdjustment).where(InventoryAdjustment.inventory_item_id == item_id)
        if date_from:
            query = query.where(InventoryAdjustment.created_at >= date_from)
        if date_to:
            query = query.where(InventoryAdjustment.created_at <= date_to)
        query = query.order_by(InventoryAdjustment.created_at.desc(), InventoryAdjustment.id.desc()).limit(limit)
        return self.db.execute(query).scalars().all()

    def reservations_for(
        self,
        reference_type: str,
        reference_id: str,
        status: Optional[ReservationStatus] = ReservationStatus.ACTIVE,
    ) -> Sequence[InventoryReservation]:
        query = select(InventoryReservation).where(
            InventoryReservation.reference_type == reference_type,
            InventoryReservation.reference_id == reference_id,
        )
        if status is not None:
            query = query.where(InventoryReservation.status == status)
        return self.db.execute(query.order_by(InventoryReservation.id)).scalars().all()

    def expired_reservations(self, now: Optional[datetime] = None) -> Sequence[InventoryReservation]:
        return self.db.execute(
            select(InventoryReservation)
            .where(
                InventoryReservation.status == ReservationStatus.ACTIVE,
                InventoryReservation.expires_at.is_not(None),
                InventoryReservation.expires_at <= (now or datetime.utcnow()),
            )
            .order_by(InventoryReservation.id)
        ).scalars().all()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _product_query(self, product_id: int, variant_id: Optional[int]):
        query = select(InventoryItem).where(InventoryItem.product_id == product_id)
        if variant_id is None:
            return query.where(InventoryItem.variant_id.is_(None))
        return query.where(InventoryItem.variant_id == variant_id)

    def _lock_item(self, item_id: int) -> InventoryItem:
        item = self.db.execute(
            select(InventoryItem)
            .where(InventoryItem.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not item:
            raise NotFound("Inventory item", item_id)
        return item

    def _lock_reservation(self, reservation_id: int) -> InventoryReservation:
        reservation = self.db.execute(
            select(InventoryReservation)
            .where(InventoryReservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not reservation:
            raise NotFound("Reservation", reservation_id)
        return reservation

    def _write_item(self, item: InventoryItem, quantity: int, reserved_quantity: int) -> None:
        old_available = item.available_quantity
        guarded_update(
            self.db,
            item,
            InventoryItem.version == item.version,
            quantity=quantity,
            reserved_quantity=reserved_quantity,
            version=item.version + 1,
            updated_at=datetime.utcnow(),
        )
        if old_available > item.low_stock_threshold >= item.available_quantity:
            self.alerts.append(_alert_for(item))

    def _write_reservation(self, reservation: InventoryReservation, **values) -> None:
        guarded_update(
            self.db,
            reservation,
            InventoryReservation.status == ReservationStatus.ACTIVE,
            InventoryReservation.quantity_fulfilled == reservation.quantity_fulfilled,
            **values,
        )

    def _record(
        self,
        item: InventoryItem,
        type: AdjustmentType,
        quantity_change: int,
        quantity_before: int,
        reason: Optional[str] = None,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        actor: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> InventoryAdjustment:
        adjustment = InventoryAdjustment(
            inventory_item_id=item.id,
            type=type,
            quantity_change=quantity_change,
            quantity_before=quantity_before,
            quantity_after=item.quantity,
            reason=reason,
            notes=notes,
            reference_type=reference_type,
            reference_id=reference_id,
            created_by=actor,
        )
        self.db.add(adjustment)
        self.db.flush()
        return adjustment


def _describe(item: InventoryItem) -> str:
    return f"inventory item {item.id} (product {item.product_id} at location {item.location_id})"


def _describe_product(product_id: int, variant_id: Optional[int]) -> str:
    if variant_id is not None:
        return f"product {product_id} variant {variant_id}"
    return f"product {product_id}"


def _alert_for(item: InventoryItem) -> LowStockAlert:
    return LowStockAlert(
        inventory_item_id=item.id,
        product_id=item.product_id,
        variant_id=item.variant_id,
        location_id=item.location_id,
        available_quantity=item.available_quantity,
        threshold=item.low_stock_threshold,
    )
