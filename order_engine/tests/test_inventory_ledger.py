from datetime import datetime, timedelta

import pytest

from order_engine.core.errors import (
    AlreadyReleased,
    InsufficientStock,
    InvalidQuantity,
    InvalidState,
    NotFound,
    ValidationError,
)
from order_engine.models.database import InventoryAdjustment, InventoryItem, InventoryReservation
from order_engine.models.enums import AdjustmentType, ReservationStatus
from order_engine.models.schemas import AdjustmentCreate, ReservationCreate, StockLevelUpdate
from order_engine.services.inventory_ledger import InventoryLedger


def reservation_for(item_id, quantity, **overrides):
    data = {"inventory_item_id": item_id, "quantity": quantity, "reason": "manual hold"}
    data.update(overrides)
    return ReservationCreate(**data)


class TestReservations:
    """Holding and releasing stock on a single inventory item"""

    @pytest.mark.asyncio
    async def test_reserve_moves_stock_from_available_to_reserved(self, inventory_service, catalog, load):
        reservation = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 4))

        assert reservation.status == ReservationStatus.ACTIVE
        assert reservation.quantity == 4
        assert reservation.quantity_fulfilled == 0

        item = load(InventoryItem, catalog.headphones_stock)
        assert item.quantity == 10
        assert item.reserved_quantity == 4
        assert item.available_quantity == 6
        assert item.version == 2

    @pytest.mark.asyncio
    async def test_reserve_then_release_restores_reserved_quantity(self, inventory_service, catalog, load):
        before = load(InventoryItem, catalog.headphones_stock).reserved_quantity

        reservation = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 3))
        released = await inventory_service.release(reservation.id)

        assert released.status == ReservationStatus.RELEASED
        assert released.released_at is not None
        assert load(InventoryItem, catalog.headphones_stock).reserved_quantity == before

    @pytest.mark.asyncio
    async def test_release_twice_fails_without_touching_stock(self, inventory_service, catalog, load):
        """A second release is rejected and does not decrement reserved stock again"""
        reservation = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 3))
        await inventory_service.release(reservation.id)

        with pytest.raises(AlreadyReleased) as exc_info:
            await inventory_service.release(reservation.id)

        assert exc_info.value.context["reservation_id"] == reservation.id
        assert load(InventoryItem, catalog.headphones_stock).reserved_quantity == 0

    @pytest.mark.asyncio
    async def test_reserve_more_than_available(self, inventory_service, catalog, load):
        with pytest.raises(InsufficientStock) as exc_info:
            await inventory_service.reserve(reservation_for(catalog.mixer_stock, 6))

        error = exc_info.value
        assert error.requested == 6
        assert error.available == 5
        assert error.context["inventory_item_id"] == catalog.mixer_stock
        assert load(InventoryItem, catalog.mixer_stock).reserved_quantity == 0

    @pytest.mark.asyncio
    async def test_reserve_unknown_item(self, inventory_service):
        with pytest.raises(NotFound):
            await inventory_service.reserve(reservation_for(9999, 1))

    @pytest.mark.asyncio
    async def test_release_unknown_reservation(self, inventory_service):
        with pytest.raises(NotFound):
            await inventory_service.release(9999)

    def test_ledger_rejects_non_positive_quantity(self, session_factory, catalog):
        db = session_factory()
        try:
            with pytest.raises(ValidationError):
                InventoryLedger(db).reserve(catalog.mixer_stock, 0, "nothing")
        finally:
            db.rollback()
            db.close()

    @pytest.mark.asyncio
    async def test_available_never_negative_across_reservations(self, inventory_service, catalog, load):
        for _ in range(5):
            await inventory_service.reserve(reservation_for(catalog.mixer_stock, 1))

        with pytest.raises(InsufficientStock):
            await inventory_service.reserve(reservation_for(catalog.mixer_stock, 1))

        item = load(InventoryItem, catalog.mixer_stock)
        assert item.reserved_quantity == 5
        assert item.available_quantity == 0


class TestReservationFulfillment:
    """Consuming a hold turns it into a permanent decrease"""

    @pytest.mark.asyncio
    async def test_partial_then_full_fulfillment(self, inventory_service, catalog, load):
        reservation = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 3))

        adjustment = await inventory_service.fulfill_reservation(reservation.id, 1)
        assert adjustment.type == AdjustmentType.DECREASE
        assert adjustment.quantity_change == 1
        assert adjustment.quantity_before == 10
        assert adjustment.quantity_after == 9

        partial = load(InventoryReservation, reservation.id)
        assert partial.status == ReservationStatus.ACTIVE
        assert partial.quantity_fulfilled == 1

        await inventory_service.fulfill_reservation(reservation.id, 2)

        done = load(InventoryReservation, reservation.id)
        assert done.status == ReservationStatus.FULFILLED
        assert done.fulfilled_at is not None

        item = load(InventoryItem, catalog.headphones_stock)
        assert item.quantity == 7
        assert item.reserved_quantity == 0

    @pytest.mark.asyncio
    async def test_fulfill_more_than_remaining(self, inventory_service, catalog, load):
        reservation = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 3))
        await inventory_service.fulfill_reservation(reservation.id, 1)

        with pytest.raises(InvalidQuantity) as exc_info:
            await inventory_service.fulfill_reservation(reservation.id, 3)

        assert exc_info.value.allowed == 2
        assert load(InventoryItem, catalog.headphones_stock).reserved_quantity == 2

    @pytest.mark.asyncio
    async def test_released_reservation_cannot_be_fulfilled(self, inventory_service, catalog):
        reservation = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 2))
        await inventory_service.release(reservation.id)

        with pytest.raises(InvalidState):
            await inventory_service.fulfill_reservation(reservation.id, 1)

    @pytest.mark.asyncio
    async def test_fulfilled_reservation_cannot_be_released(self, inventory_service, catalog, load):
        reservation = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 2))
        await inventory_service.fulfill_reservation(reservation.id, 2)

        with pytest.raises(InvalidState) as exc_info:
            await inventory_service.release(reservation.id)

        assert not isinstance(exc_info.value, AlreadyReleased)
        assert load(InventoryItem, catalog.headphones_stock).quantity == 8


class TestAdjustments:
    """Raw stock changes and their audit trail"""

    @pytest.mark.asyncio
    async def test_increase_decrease_and_set(self, inventory_service, catalog, load):
        increase = await inventory_service.adjust(
            AdjustmentCreate(
                inventory_item_id=catalog.mixer_stock, type=AdjustmentType.INCREASE, quantity_change=3, reason="Delivery"
            )
        )
        assert (increase.quantity_before, increase.quantity_after) == (5, 8)

        decrease = await inventory_service.adjust(
            AdjustmentCreate(
                inventory_item_id=catalog.mixer_stock, type=AdjustmentType.DECREASE, quantity_change=2, reason="Damaged"
            )
        )
        assert (decrease.quantity_before, decrease.quantity_after) == (8, 6)

        stock_take = await inventory_service.adjust(
            AdjustmentCreate(
                inventory_item_id=catalog.mixer_stock, type=AdjustmentType.SET, quantity_change=4, reason="Stock take"
            ),
            actor="warehouse-staff",
        )
        assert (stock_take.quantity_before, stock_take.quantity_after) == (6, 4)
        assert stock_take.created_by == "warehouse-staff"

        assert load(InventoryItem, catalog.mixer_stock).quantity == 4

    @pytest.mark.asyncio
    async def test_adjustment_emits_event_and_audit(self, inventory_service, catalog, events, audit):
        adjustment = await inventory_service.adjust(
            AdjustmentCreate(inventory_item_id=catalog.mixer_stock, type=AdjustmentType.INCREASE, quantity_change=1)
        )

        published = events.named("inventory.adjusted")
        assert len(published) == 1
        assert published[0]["adjustment"]["id"] == adjustment.id
        assert audit.actions() == ["ADJUST_INVENTORY"]
        assert audit.records[0].entity_id == catalog.mixer_stock

    @pytest.mark.asyncio
    async def test_decrease_cannot_eat_into_reserved_stock(self, inventory_service, catalog, load):
        await inventory_service.reserve(reservation_for(catalog.mixer_stock, 3))

        with pytest.raises(InsufficientStock):
            await inventory_service.adjust(
                AdjustmentCreate(
                    inventory_item_id=catalog.mixer_stock, type=AdjustmentType.DECREASE, quantity_change=3
                )
            )

        item = load(InventoryItem, catalog.mixer_stock)
        assert item.quantity == 5
        assert item.reserved_quantity == 3

    def test_negative_adjustment_rejected(self, session_factory, catalog):
        db = session_factory()
        try:
            with pytest.raises(ValidationError):
                InventoryLedger(db).adjust(catalog.mixer_stock, AdjustmentType.INCREASE, -1)
        finally:
            db.rollback()
            db.close()

    @pytest.mark.asyncio
    async def test_adjustments_are_immutable(self, inventory_service, session_factory, catalog):
        adjustment = await inventory_service.adjust(
            AdjustmentCreate(inventory_item_id=catalog.mixer_stock, type=AdjustmentType.INCREASE, quantity_change=1)
        )

        db = session_factory()
        try:
            record = db.get(InventoryAdjustment, adjustment.id)
            record.quantity_change = 100
            with pytest.raises(InvalidState):
                db.flush()
        finally:
            db.rollback()
            db.close()

    @pytest.mark.asyncio
    async def test_movement_history_newest_first(self, inventory_service, catalog):
        for quantity in (1, 2, 3):
            await inventory_service.adjust(
                AdjustmentCreate(
                    inventory_item_id=catalog.mixer_stock, type=AdjustmentType.INCREASE, quantity_change=quantity
                )
            )

        history = await inventory_service.movement_history(catalog.mixer_stock, limit=2)

        assert [entry.quantity_change for entry in history] == [3, 2]

    @pytest.mark.asyncio
    async def test_movement_history_unknown_item(self, inventory_service):
        with pytest.raises(NotFound):
            await inventory_service.movement_history(9999)


class TestBulkStockLevels:
    @pytest.mark.asyncio
    async def test_each_entry_succeeds_or_fails_on_its_own(self, inventory_service, catalog, load):
        await inventory_service.reserve(reservation_for(catalog.headphones_stock, 3))

        results = await inventory_service.bulk_set_stock(
            [
                StockLevelUpdate(inventory_item_id=catalog.mixer_stock, quantity=8),
                StockLevelUpdate(inventory_item_id=catalog.headphones_stock, quantity=1),
                StockLevelUpdate(inventory_item_id=9999, quantity=4),
            ]
        )

        assert [result.success for result in results] == [True, False, False]
        assert results[0].adjustment.type == AdjustmentType.SET
        assert "Insufficient stock" in results[1].error
        assert "not found" in results[2].error

        assert load(InventoryItem, catalog.mixer_stock).quantity == 8
        assert load(InventoryItem, catalog.headphones_stock).quantity == 10


class TestStockReads:
    @pytest.mark.asyncio
    async def test_totals_across_variants(self, inventory_service, catalog):
        await inventory_service.reserve(reservation_for(catalog.black_stock, 1))

        all_variants = await inventory_service.totals(catalog.headphones)
        assert (all_variants.on_hand, all_variants.reserved, all_variants.available) == (13, 1, 12)

        black_only = await inventory_service.totals(catalog.headphones, catalog.headphones_black)
        assert (black_only.on_hand, black_only.reserved, black_only.available) == (3, 1, 2)

    @pytest.mark.asyncio
    async def test_totals_for_product_without_stock(self, inventory_service, catalog):
        totals = await inventory_service.totals(catalog.gift_card)
        assert (totals.on_hand, totals.reserved, totals.available) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_location_and_stock_reports(self, inventory_service, catalog):
        await inventory_service.reserve(reservation_for(catalog.black_stock, 3))

        warehouse = await inventory_service.items_by_location(catalog.warehouse)
        assert {item.id for item in warehouse} == {catalog.mixer_stock, catalog.headphones_stock, catalog.black_stock}

        only_mixer = await inventory_service.items_by_location(catalog.warehouse, product_ids=[catalog.mixer])
        assert [item.id for item in only_mixer] == [catalog.mixer_stock]

        out_of_stock = await inventory_service.out_of_stock_items()
        assert [item.id for item in out_of_stock] == [catalog.black_stock]

        low_stock = await inventory_service.low_stock_items(catalog.warehouse)
        assert catalog.black_stock in {item.id for item in low_stock}
        assert catalog.mixer_stock not in {item.id for item in low_stock}

        assert await inventory_service.items_by_location(catalog.store) == []

    @pytest.mark.asyncio
    async def test_ensure_item_is_idempotent(self, inventory_service, catalog):
        created = await inventory_service.ensure_item(catalog.mixer, None, catalog.store)
        again = await inventory_service.ensure_item(catalog.mixer, None, catalog.store)

        assert created.id == again.id
        assert created.quantity == 0
        assert created.location_id == catalog.store


class TestLowStockAlerts:
    @pytest.mark.asyncio
    async def test_alert_when_available_crosses_threshold(self, inventory_service, catalog, events):
        # Mixer threshold is 1 with 5 on hand
        await inventory_service.reserve(reservation_for(catalog.mixer_stock, 3))
        assert events.named("inventory.low_stock") == []

        await inventory_service.reserve(reservation_for(catalog.mixer_stock, 1))

        alerts = events.named("inventory.low_stock")
        assert len(alerts) == 1
        assert alerts[0]["inventory_item_id"] == catalog.mixer_stock
        assert alerts[0]["available_quantity"] == 1
        assert alerts[0]["threshold"] == 1

        # Already below: no second alert
        await inventory_service.reserve(reservation_for(catalog.mixer_stock, 1))
        assert len(events.named("inventory.low_stock")) == 1

    @pytest.mark.asyncio
    async def test_raising_threshold_above_stock_alerts(self, inventory_service, catalog, events):
        item = await inventory_service.update_low_stock_threshold(catalog.black_stock, 5)

        assert item.low_stock_threshold == 5
        alerts = events.named("inventory.low_stock")
        assert [alert["inventory_item_id"] for alert in alerts] == [catalog.black_stock]

    @pytest.mark.asyncio
    async def test_failed_reservation_publishes_nothing(self, inventory_service, catalog, events):
        with pytest.raises(InsufficientStock):
            await inventory_service.reserve(reservation_for(catalog.mixer_stock, 6))

        assert events.events == []


class TestExpiredReservations:
    @pytest.mark.asyncio
    async def test_cleanup_releases_only_expired_holds(self, inventory_service, catalog, load):
        now = datetime.utcnow()
        expired = await inventory_service.reserve(
            reservation_for(catalog.headphones_stock, 2, expires_at=now - timedelta(minutes=5))
        )
        current = await inventory_service.reserve(
            reservation_for(catalog.headphones_stock, 3, expires_at=now + timedelta(hours=1))
        )
        open_ended = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 1))

        released = await inventory_service.cleanup_expired_reservations(now)

        assert released == 1
        assert load(InventoryReservation, expired.id).status == ReservationStatus.RELEASED
        assert load(InventoryReservation, current.id).status == ReservationStatus.ACTIVE
        assert load(InventoryReservation, open_ended.id).status == ReservationStatus.ACTIVE
        assert load(InventoryItem, catalog.headphones_stock).reserved_quantity == 4

        assert await inventory_service.cleanup_expired_reservations(now) == 0


class TestAuditTrail:
    """Every stock mutation leaves one audit record after it commits"""

    @pytest.mark.asyncio
    async def test_reservation_lifecycle_is_audited(self, inventory_service, catalog, audit):
        held = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 2), actor="ops")
        await inventory_service.release(held.id, actor="ops")
        shipped = await inventory_service.reserve(reservation_for(catalog.headphones_stock, 1))
        adjustment = await inventory_service.fulfill_reservation(shipped.id, 1)

        assert audit.actions() == [
            "RESERVE_INVENTORY",
            "RELEASE_RESERVATION",
            "RESERVE_INVENTORY",
            "FULFILL_RESERVATION",
        ]
        assert [record.entity_id for record in audit.records] == [held.id, held.id, shipped.id, shipped.id]
        assert audit.records[0].actor == "ops"
        assert audit.records[0].metadata == {"inventory_item_id": catalog.headphones_stock, "quantity": 2}
        assert audit.records[3].metadata == {"quantity": 1, "adjustment_id": adjustment.id}

    @pytest.mark.asyncio
    async def test_item_settings_are_audited(self, inventory_service, catalog, audit):
        await inventory_service.update_low_stock_threshold(catalog.mixer_stock, 2)
        created = await inventory_service.ensure_item(catalog.mixer, None, catalog.store)

        assert audit.actions() == ["UPDATE_LOW_STOCK_THRESHOLD", "ENSURE_INVENTORY_ITEM"]
        assert audit.records[0].metadata == {"threshold": 2}
        assert audit.records[1].entity_id == created.id

    @pytest.mark.asyncio
    async def test_cleanup_is_audited_only_when_it_releases(self, inventory_service, catalog, audit):
        now = datetime.utcnow()
        expired = await inventory_service.reserve(
            reservation_for(catalog.headphones_stock, 2, expires_at=now - timedelta(minutes=1))
        )

        await inventory_service.cleanup_expired_reservations(now)
        await inventory_service.cleanup_expired_reservations(now)

        assert audit.actions() == ["RESERVE_INVENTORY", "RELEASE_EXPIRED_RESERVATIONS"]
        assert audit.records[1].metadata == {"reservation_ids": [expired.id]}

    @pytest.mark.asyncio
    async def test_failed_mutation_is_not_audited(self, inventory_service, catalog, audit):
        with pytest.raises(InsufficientStock):
            await inventory_service.reserve(reservation_for(catalog.mixer_stock, 6))

        assert audit.records == []
