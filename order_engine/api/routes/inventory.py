from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from order_engine.api.dependencies import get_inventory_service
from order_engine.models.schemas import (
    Adjustment,
    AdjustmentCreate,
    InventoryItem,
    InventoryTotals,
    Reservation,
    ReservationCreate,
    ReservationFulfill,
    StockLevelResult,
    StockLevelUpdate,
    ThresholdUpdate,
    Transfer,
    TransferCreate,
    TransferReceiveItem,
    TransferShip,
)
from order_engine.services.inventory_service import InventoryService

router = APIRouter()


class InventoryItemEnsure(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    location_id: int


@router.post("/items", response_model=InventoryItem)
async def ensure_inventory_item(
    item_data: InventoryItemEnsure, service: InventoryService = Depends(get_inventory_service)
):
    """Get or create the stock record for a product at a location"""
    return await service.ensure_item(item_data.product_id, item_data.variant_id, item_data.location_id)


@router.get("/items/{item_id}", response_model=InventoryItem)
async def get_inventory_item(item_id: int, service: InventoryService = Depends(get_inventory_service)):
    return await service.get_item(item_id)


@router.get("/items/{item_id}/movements", response_model=List[Adjustment])
async def get_movement_history(
    item_id: int,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.movement_history(item_id, date_from, date_to, limit)


@router.put("/items/{item_id}/threshold", response_model=InventoryItem)
async def update_low_stock_threshold(
    item_id: int, threshold: ThresholdUpdate, service: InventoryService = Depends(get_inventory_service)
):
    return await service.update_low_stock_threshold(item_id, threshold.threshold)


@router.get("/products/{product_id}/totals", response_model=InventoryTotals)
async def get_product_totals(
    product_id: int,
    variant_id: Optional[int] = None,
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.totals(product_id, variant_id)


@router.get("/locations/{location_id}/items", response_model=List[InventoryItem])
async def get_location_inventory(
    location_id: int,
    product_ids: List[int] = Query(default=[]),
    low_stock_only: bool = False,
    include_zero_stock: bool = True,
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.items_by_location(location_id, product_ids or None, low_stock_only, include_zero_stock)


@router.get("/reports/low-stock", response_model=List[InventoryItem])
async def get_low_stock_items(
    location_id: Optional[int] = None, service: InventoryService = Depends(get_inventory_service)
):
    return await service.low_stock_items(location_id)


@router.get("/reports/out-of-stock", response_model=List[InventoryItem])
async def get_out_of_stock_items(
    location_id: Optional[int] = None, service: InventoryService = Depends(get_inventory_service)
):
    return await service.out_of_stock_items(location_id)


@router.post("/adjustments", response_model=Adjustment, status_code=201)
async def adjust_inventory(
    adjustment_data: AdjustmentCreate, service: InventoryService = Depends(get_inventory_service)
):
    return await service.adjust(adjustment_data)


@router.post("/stock-levels", response_model=List[StockLevelResult])
async def bulk_set_stock(
    updates: List[StockLevelUpdate], service: InventoryService = Depends(get_inventory_service)
):
    """Set stock levels in bulk; failures are reported per entry"""
    return await service.bulk_set_stock(updates)


@router.post("/reservations", response_model=Reservation, status_code=201)
async def reserve_inventory(
    reservation_data: ReservationCreate, service: InventoryService = Depends(get_inventory_service)
):
    return await service.reserve(reservation_data)


@router.post("/reservations/{reservation_id}/release", response_model=Reservation)
async def release_reservation(reservation_id: int, service: InventoryService = Depends(get_inventory_service)):
    return await service.release(reservation_id)


@router.post("/reservations/{reservation_id}/fulfill", response_model=Adjustment)
async def fulfill_reservation(
    reservation_id: int, fulfill: ReservationFulfill, service: InventoryService = Depends(get_inventory_service)
):
    return await service.fulfill_reservation(reservation_id, fulfill.quantity)


@router.post("/reservations/cleanup")
async def cleanup_expired_reservations(service: InventoryService = Depends(get_inventory_service)):
    released = await service.cleanup_expired_reservations()
    return {"released": released}


@router.post("/transfers", response_model=Transfer, status_code=201)
async def create_transfer(transfer_data: TransferCreate, service: InventoryService = Depends(get_inventory_service)):
    return await service.create_transfer(transfer_data)


@router.post("/transfers/{transfer_id}/ship", response_model=Transfer)
async def ship_transfer(
    transfer_id: int, ship: TransferShip, service: InventoryService = Depends(get_inventory_service)
):
    return await service.ship_transfer(transfer_id, ship.tracking_number)


@router.post("/transfers/{transfer_id}/receive", response_model=Transfer)
async def receive_transfer(
    transfer_id: int,
    received: List[TransferReceiveItem] = Body(default=[]),
    service: InventoryService = Depends(get_inventory_service),
):
    return await service.receive_transfer(transfer_id, received or None)


@router.post("/transfers/{transfer_id}/cancel", response_model=Transfer)
async def cancel_transfer(transfer_id: int, service: InventoryService = Depends(get_inventory_service)):
    return await service.cancel_transfer(transfer_id)
