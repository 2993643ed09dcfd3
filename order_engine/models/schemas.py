from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from order_engine.models.enums import (
    AdjustmentType,
    FinancialStatus,
    FulfillmentStatus,
    OrderFulfillmentStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ReservationStatus,
    ReturnCondition,
    ReturnStatus,
    TransferStatus,
)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class AddressCreate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address1: str
    address2: Optional[str] = None
    city: str
    state: Optional[str] = None
    country: str
    postal_code: Optional[str] = None
    phone: Optional[str] = None


class OrderItemCreate(BaseModel):
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    quantity: int = Field(..., gt=0)
    # Overrides the live catalog price when set
    price: Optional[Decimal] = Field(default=None, ge=0)


class OrderCreate(BaseModel):
    customer_id: Optional[int] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    items: List[OrderItemCreate] = Field(..., min_length=1)
    billing_address: Optional[AddressCreate] = None
    shipping_address: Optional[AddressCreate] = None
    shipping_method: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = []
    currency: Optional[str] = None


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    financial_status: Optional[FinancialStatus] = None
    fulfillment_status: Optional[OrderFulfillmentStatus] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    shipping_method: Optional[str] = None


class OrderCancel(BaseModel):
    reason: Optional[str] = None


class OrderFilters(BaseModel):
    status: List[OrderStatus] = []
    financial_status: List[FinancialStatus] = []
    fulfillment_status: List[OrderFulfillmentStatus] = []
    customer_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None
    tags: List[str] = []


class OrderItem(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    name: str
    sku: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    quantity_fulfilled: int
    quantity_returned: int
    product_snapshot: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str
    method: PaymentMethod
    gateway: str
    gateway_transaction_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class RefundCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: Optional[str] = None


class Payment(BaseModel):
    id: int
    order_id: int
    amount: Decimal
    currency: str
    method: PaymentMethod
    gateway: str
    gateway_transaction_id: Optional[str] = None
    status: PaymentStatus
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Fulfillments
# ---------------------------------------------------------------------------

class FulfillmentItemCreate(BaseModel):
    order_item_id: int
    quantity: int = Field(..., gt=0)


class FulfillmentCreate(BaseModel):
    items: List[FulfillmentItemCreate] = Field(..., min_length=1)
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    service: Optional[str] = None


class TrackingInfo(BaseModel):
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None


class FulfillmentItem(BaseModel):
    id: int
    order_item_id: int
    quantity: int

    class Config:
        from_attributes = True


class Fulfillment(BaseModel):
    id: int
    order_id: int
    status: FulfillmentStatus
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    service: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    items: List[FulfillmentItem] = []

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------

class ReturnItemCreate(BaseModel):
    order_item_id: int
    quantity: int = Field(..., gt=0)
    reason: Optional[str] = None
    condition: Optional[ReturnCondition] = None


class ReturnCreate(BaseModel):
    items: List[ReturnItemCreate] = Field(..., min_length=1)
    reason: Optional[str] = None
    notes: Optional[str] = None


class ReturnDecision(BaseModel):
    approve: bool
    refund_amount: Optional[Decimal] = Field(default=None, ge=0)


class ReturnRestock(BaseModel):
    location_id: Optional[int] = None


class ReturnItem(BaseModel):
    id: int
    order_item_id: int
    quantity: int
    reason: Optional[str] = None
    condition: Optional[ReturnCondition] = None

    class Config:
        from_attributes = True


class Return(BaseModel):
    id: int
    order_id: int
    return_number: str
    status: ReturnStatus
    reason: Optional[str] = None
    notes: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    requested_at: datetime
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    restocked_at: Optional[datetime] = None
    items: List[ReturnItem] = []

    class Config:
        from_attributes = True


class Order(BaseModel):
    id: int
    order_number: str
    customer_id: Optional[int] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    status: OrderStatus
    financial_status: FinancialStatus
    fulfillment_status: OrderFulfillmentStatus
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    shipping_method: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = []
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    order_items: List[OrderItem] = []
    payments: List[Payment] = []
    fulfillments: List[Fulfillment] = []
    returns: List[Return] = []

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderList(BaseModel):
    orders: List[Order]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

class InventoryItem(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    location_id: int
    quantity: int
    reserved_quantity: int
    available_quantity: int
    low_stock_threshold: int
    version: int
    updated_at: datetime

    class Config:
        from_attributes = True


class InventoryTotals(BaseModel):
    available: int
    reserved: int
    on_hand: int


class ReservationCreate(BaseModel):
    inventory_item_id: int
    quantity: int = Field(..., gt=0)
    reason: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class ReservationFulfill(BaseModel):
    quantity: int = Field(..., gt=0)


class Reservation(BaseModel):
    id: int
    inventory_item_id: int
    quantity: int
    quantity_fulfilled: int
    reason: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    status: ReservationStatus
    expires_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AdjustmentCreate(BaseModel):
    inventory_item_id: int
    type: AdjustmentType
    quantity_change: int = Field(..., ge=0)
    reason: Optional[str] = None
    notes: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None


class Adjustment(BaseModel):
    id: int
    inventory_item_id: int
    type: AdjustmentType
    quantity_change: int
    quantity_before: int
    quantity_after: int
    reason: Optional[str] = None
    notes: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StockLevelUpdate(BaseModel):
    inventory_item_id: int
    quantity: int = Field(..., ge=0)
    reason: Optional[str] = None


class StockLevelResult(BaseModel):
    inventory_item_id: int
    success: bool
    adjustment: Optional[Adjustment] = None
    error: Optional[str] = None


class ThresholdUpdate(BaseModel):
    threshold: int = Field(..., ge=0)


class TransferItemCreate(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int = Field(..., gt=0)


class TransferCreate(BaseModel):
    from_location_id: int
    to_location_id: int
    items: List[TransferItemCreate] = Field(..., min_length=1)
    notes: Optional[str] = None


class TransferShip(BaseModel):
    tracking_number: Optional[str] = None


class TransferReceiveItem(BaseModel):
    transfer_item_id: int
    quantity_received: int = Field(..., ge=0)


class TransferItem(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    quantity_requested: int
    quantity_shipped: int
    quantity_received: int

    class Config:
        from_attributes = True


class Transfer(BaseModel):
    id: int
    from_location_id: int
    to_location_id: int
    status: TransferStatus
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    shipped_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    items: List[TransferItem] = []

    class Config:
        from_attributes = True
