from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import declarative_base, relationship

from order_engine.core.errors import InvalidState
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

Base = declarative_base()

Money = Numeric(12, 2)


def _enum(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=32)


# ---------------------------------------------------------------------------
# Catalog and customers (read by the engine, owned elsewhere)
# ---------------------------------------------------------------------------

class Customer(Base):
    """Customer with aggregate order statistics"""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    first_name = Column(String)
    last_name = Column(String)
    orders_count = Column(Integer, nullable=False, default=0)
    total_spent = Column(Money, nullable=False, default=0)
    last_order_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    orders = relationship("Order", back_populates="customer")


class Location(Base):
    """Warehouse or store holding stock"""
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="WAREHOUSE")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Product(Base):
    """Catalog product"""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, unique=True, index=True)
    description = Column(String)
    price = Column(Money, nullable=False)
    track_quantity = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    """Catalog variant of a product (size, colour, ...)"""
    __tablename__ = "product_variants"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    name = Column(String)
    sku = Column(String, unique=True, index=True)
    price = Column(Money, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product", back_populates="variants")


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------

class InventoryItem(Base):
    """Stock record for one product/variant at one location"""
    __tablename__ = "inventory_items"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    variant_id = Column(Integer, ForeignKey("product_variants.id"), index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)  # For optimistic locking
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    product = relationship("Product")
    variant = relationship("ProductVariant")
    location = relationship("Location")
    reservations = relationship("InventoryReservation", back_populates="inventory_item")
    adjustments = relationship("InventoryAdjustment", back_populates="inventory_item")

    __table_args__ = (
        UniqueConstraint("product_id", "variant_id", "location_id", name="uq_inventory_product_location"),
        CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("quantity - reserved_quantity >= 0", name="ck_inventory_available_non_negative"),
    )

    @hybrid_property
    def available_quantity(self):
        return self.quantity - self.reserved_quantity


class InventoryReservation(Base):
    """Hold against an inventory item, consumed at fulfillment or released"""
    __tablename__ = "inventory_reservations"

    id = Column(Integer, primary_key=True, index=True)
    inventory_item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    quantity_fulfilled = Column(Integer, nullable=False, default=0)
    reason = Column(String, nullable=False)
    reference_type = Column(String)
    reference_id = Column(String)
    status = Column(_enum(ReservationStatus), nullable=False, default=ReservationStatus.ACTIVE)
    expires_at = Column(DateTime)
    released_at = Column(DateTime)
    fulfilled_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    inventory_item = relationship("InventoryItem", back_populates="reservations")

    __table_args__ = (
        Index("idx_reservation_reference", "reference_type", "reference_id"),
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
        CheckConstraint(
            "quantity_fulfilled >= 0 AND quantity_fulfilled <= quantity",
            name="ck_reservation_fulfilled_bounds",
        ),
    )

    @property
    def remaining_quantity(self) -> int:
        return self.quantity - self.quantity_fulfilled


class InventoryAdjustment(Base):
    """Immutable record of a raw stock change"""
    __tablename__ = "inventory_adjustments"

    id = Column(Integer, primary_key=True, index=True)
    inventory_item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    type = Column(_enum(AdjustmentType), nullable=False)
    quantity_change = Column(Integer, nullable=False)
    quantity_before = Column(Integer, nullable=False)
    quantity_after = Column(Integer, nullable=False)
    reason = Column(String)
    notes = Column(Text)
    reference_type = Column(String)
    reference_id = Column(String)
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    inventory_item = relationship("InventoryItem", back_populates="adjustments")


@event.listens_for(InventoryAdjustment, "before_update")
def _reject_adjustment_update(mapper, connection, target):
    raise InvalidState(
        f"Inventory adjustment {target.id} is immutable",
        adjustment_id=target.id,
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class Order(Base):
    """Order model representing customer orders"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), index=True)
    guest_email = Column(String)
    guest_phone = Column(String)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    financial_status = Column(_enum(FinancialStatus), nullable=False, default=FinancialStatus.PENDING)
    fulfillment_status = Column(
        _enum(OrderFulfillmentStatus), nullable=False, default=OrderFulfillmentStatus.UNFULFILLED
    )
    subtotal = Column(Money, nullable=False)
    tax_amount = Column(Money, nullable=False, default=0)
    shipping_amount = Column(Money, nullable=False, default=0)
    discount_amount = Column(Money, nullable=False, default=0)
    total_amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    billing_address = Column(JSON)
    shipping_address = Column(JSON)
    shipping_method = Column(String)
    notes = Column(Text)
    tags = Column(JSON, nullable=False, default=list)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = relationship("Customer", back_populates="orders")
    order_items = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.id"
    )
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
    fulfillments = relationship("Fulfillment", back_populates="order", order_by="Fulfillment.id")
    returns = relationship("Return", back_populates="order", order_by="Return.id")


class OrderItem(Base):
    """Order item model representing items within an order"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"))
    name = Column(String, nullable=False)
    sku = Column(String)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Money, nullable=False)
    total_price = Column(Money, nullable=False)
    quantity_fulfilled = Column(Integer, nullable=False, default=0)
    quantity_returned = Column(Integer, nullable=False, default=0)
    product_snapshot = Column(JSON)

    order = relationship("Order", back_populates="order_items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
        CheckConstraint(
            "quantity_fulfilled >= 0 AND quantity_fulfilled <= quantity",
            name="ck_order_item_fulfilled_bounds",
        ),
        CheckConstraint(
            "quantity_returned >= 0 AND quantity_returned <= quantity_fulfilled",
            name="ck_order_item_returned_bounds",
        ),
    )


class NumberSequence(Base):
    """Per-prefix counter backing order and return numbers"""
    __tablename__ = "number_sequences"

    prefix = Column(String, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Payments, fulfillments, returns
# ---------------------------------------------------------------------------

class Payment(Base):
    """Payment attempt or refund (negative amount) against an order"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(_enum(PaymentMethod), nullable=False)
    gateway = Column(String, nullable=False)
    gateway_transaction_id = Column(String)
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    failure_reason = Column(String)
    details = Column(JSON)
    processed_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    order = relationship("Order", back_populates="payments")


class Fulfillment(Base):
    """Shipment of some or all of an order's items"""
    __tablename__ = "fulfillments"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(_enum(FulfillmentStatus), nullable=False, default=FulfillmentStatus.PENDING)
    tracking_number = Column(String)
    tracking_url = Column(String)
    carrier = Column(String)
    service = Column(String)
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="fulfillments")
    items = relationship("FulfillmentItem", back_populates="fulfillment", cascade="all, delete-orphan")


class FulfillmentItem(Base):
    __tablename__ = "fulfillment_items"

    id = Column(Integer, primary_key=True, index=True)
    fulfillment_id = Column(Integer, ForeignKey("fulfillments.id"), nullable=False, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)

    fulfillment = relationship("Fulfillment", back_populates="items")
    order_item = relationship("OrderItem")


class Return(Base):
    """Customer return request against fulfilled items"""
    __tablename__ = "returns"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    return_number = Column(String, unique=True, index=True, nullable=False)
    status = Column(_enum(ReturnStatus), nullable=False, default=ReturnStatus.REQUESTED)
    reason = Column(String)
    notes = Column(Text)
    refund_amount = Column(Money)
    requested_at = Column(DateTime, default=datetime.utcnow)
    approved_at = Column(DateTime)
    processed_at = Column(DateTime)
    refunded_at = Column(DateTime)
    restocked_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="returns")
    items = relationship("ReturnItem", back_populates="return_", cascade="all, delete-orphan")


class ReturnItem(Base):
    __tablename__ = "return_items"

    id = Column(Integer, primary_key=True, index=True)
    return_id = Column(Integer, ForeignKey("returns.id"), nullable=False, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    reason = Column(String)
    condition = Column(_enum(ReturnCondition))

    return_ = relationship("Return", back_populates="items")
    order_item = relationship("OrderItem")


# ---------------------------------------------------------------------------
# Transfers between locations
# ---------------------------------------------------------------------------

class InventoryTransfer(Base):
    __tablename__ = "inventory_transfers"

    id = Column(Integer, primary_key=True, index=True)
    from_location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    to_location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    status = Column(_enum(TransferStatus), nullable=False, default=TransferStatus.PENDING)
    notes = Column(Text)
    tracking_number = Column(String)
    shipped_at = Column(DateTime)
    received_at = Column(DateTime)
    created_by = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("InventoryTransferItem", back_populates="transfer", cascade="all, delete-orphan")


class InventoryTransferItem(Base):
    __tablename__ = "inventory_transfer_items"

    id = Column(Integer, primary_key=True, index=True)
    transfer_id = Column(Integer, ForeignKey("inventory_transfers.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    variant_id = Column(Integer, ForeignKey("product_variants.id"))
    quantity_requested = Column(Integer, nullable=False)
    quantity_shipped = Column(Integer, nullable=False, default=0)
    quantity_received = Column(Integer, nullable=False, default=0)

    transfer = relationship("InventoryTransfer", back_populates="items")
