from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from order_engine.api.dependencies import get_coordinator
from order_engine.models.enums import FinancialStatus, OrderFulfillmentStatus, OrderStatus
from order_engine.models.schemas import (
    Fulfillment,
    FulfillmentCreate,
    Order,
    OrderCancel,
    OrderCreate,
    OrderFilters,
    OrderList,
    OrderUpdate,
    Payment,
    PaymentCreate,
    RefundCreate,
    Return,
    ReturnCreate,
    ReturnDecision,
    ReturnRestock,
    TrackingInfo,
)
from order_engine.services.coordinator import TransactionCoordinator

router = APIRouter()


@router.post("/", response_model=Order, status_code=201)
async def create_order(order_data: OrderCreate, coordinator: TransactionCoordinator = Depends(get_coordinator)):
    """Create an order and reserve its stock"""
    return await coordinator.create_order(order_data)


@router.get("/", response_model=OrderList)
async def list_orders(
    status: List[OrderStatus] = Query(default=[]),
    financial_status: List[FinancialStatus] = Query(default=[]),
    fulfillment_status: List[OrderFulfillmentStatus] = Query(default=[]),
    customer_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    tags: List[str] = Query(default=[]),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    filters = OrderFilters(
        status=status,
        financial_status=financial_status,
        fulfillment_status=fulfillment_status,
        customer_id=customer_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        tags=tags,
    )
    return await coordinator.list_orders(filters, page, limit)


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: int, coordinator: TransactionCoordinator = Depends(get_coordinator)):
    return await coordinator.get_order(order_id)


@router.patch("/{order_id}", response_model=Order)
async def update_order(
    order_id: int, patch: OrderUpdate, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    return await coordinator.update_order(order_id, patch)


@router.post("/{order_id}/cancel", response_model=Order)
async def cancel_order(
    order_id: int, cancel: OrderCancel, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    """Cancel an order, release its stock and refund completed payments"""
    return await coordinator.cancel_order(order_id, cancel.reason)


@router.post("/{order_id}/payments", response_model=Payment, status_code=201)
async def process_payment(
    order_id: int, payment_data: PaymentCreate, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    return await coordinator.process_payment(order_id, payment_data)


@router.post("/{order_id}/refunds", response_model=Payment, status_code=201)
async def refund_payment(
    order_id: int, refund_data: RefundCreate, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    return await coordinator.refund_payment(order_id, refund_data)


@router.post("/{order_id}/fulfillments", response_model=Fulfillment, status_code=201)
async def create_fulfillment(
    order_id: int, fulfillment_data: FulfillmentCreate, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    return await coordinator.create_fulfillment(order_id, fulfillment_data)


@router.post("/fulfillments/{fulfillment_id}/ship", response_model=Fulfillment)
async def ship_fulfillment(
    fulfillment_id: int, tracking: TrackingInfo, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    return await coordinator.ship_fulfillment(fulfillment_id, tracking)


@router.post("/fulfillments/{fulfillment_id}/deliver", response_model=Fulfillment)
async def deliver_fulfillment(fulfillment_id: int, coordinator: TransactionCoordinator = Depends(get_coordinator)):
    return await coordinator.deliver_fulfillment(fulfillment_id)


@router.post("/{order_id}/returns", response_model=Return, status_code=201)
async def create_return(
    order_id: int, return_data: ReturnCreate, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    return await coordinator.create_return(order_id, return_data)


@router.post("/returns/{return_id}/process", response_model=Return)
async def process_return(
    return_id: int, decision: ReturnDecision, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    """Approve or reject a return request"""
    return await coordinator.process_return(return_id, decision)


@router.post("/returns/{return_id}/refund", response_model=Payment, status_code=201)
async def refund_return(return_id: int, coordinator: TransactionCoordinator = Depends(get_coordinator)):
    return await coordinator.refund_return(return_id)


@router.post("/returns/{return_id}/restock", response_model=Return)
async def restock_return(
    return_id: int, restock: ReturnRestock, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    return await coordinator.restock_return(return_id, restock.location_id)
