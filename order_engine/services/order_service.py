import logging
import math
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import String, func, or_, select
from sqlalchemy.orm import Session, selectinload

from order_engine.core.errors import InsufficientStock, InvalidState, NotFound, ValidationError
from order_engine.core.guards import guarded_update
from order_engine.core.numbering import next_document_number
from order_engine.models.database import Customer, Order, OrderItem, Payment, Product, ProductVariant
from order_engine.models.enums import (
    FinancialStatus,
    OrderFulfillmentStatus,
    OrderStatus,
    PaymentStatus,
)
from order_engine.models.schemas import OrderCreate, OrderFilters, OrderItemCreate, OrderUpdate
from order_engine.services.catalog import CatalogLookup, CustomerStatsUpdater, SqlCatalog, SqlCustomerStats
from order_engine.services.inventory_ledger import InventoryLedger
from order_engine.services.pricing import AmountCalculator, to_money, zero_amount
from order_engine.services.status_machine import OrderEvent, event_for, next_status

logger = logging.getLogger(__name__)

ORDER_ITEM_REFERENCE = "ORDER_ITEM"


class PricedLine:
    """An order line resolved against the catalog, before it is persisted."""

    def __init__(self, request: OrderItemCreate, product: Product, variant: Optional[ProductVariant]):
        self.product = product
        self.variant = variant
        self.quantity = request.quantity
        live_price = variant.price if variant is not None else product.price
        self.unit_price = to_money(request.price if request.price is not None else live_price)
        self.total_price = to_money(self.unit_price * self.quantity)

    @property
    def variant_id(self) -> Optional[int]:
        return self.variant.id if self.variant is not None else None

    @property
    def name(self) -> str:
        if self.variant is not None and self.variant.name:
            return f"{self.product.name} - {self.variant.name}"
        return self.product.name

    @property
    def sku(self) -> Optional[str]:
        if self.variant is not None and self.variant.sku:
            return self.variant.sku
        return self.product.sku

    def snapshot(self) -> dict:
        return {
            "product": {
                "id": self.product.id,
                "name": self.product.name,
                "sku": self.product.sku,
                "description": self.product.description,
                "price": str(self.product.price),
            },
            "variant": {
                "id": self.variant.id,
                "name": self.variant.name,
                "sku": self.variant.sku,
                "price": str(self.variant.price),
            } if self.variant is not None else None,
        }


class OrderAggregate:
    """
    Order lifecycle inside one unit of work: creation, status changes,
    cancellation and reads.

    Stock is held and released through the inventory ledger; nothing here
    commits.
    """

    def __init__(
        self,
        db: Session,
        ledger: InventoryLedger,
        catalog: Optional[CatalogLookup] = None,
        customer_stats: Optional[CustomerStatsUpdater] = None,
        tax: AmountCalculator = zero_amount,
        shipping: AmountCalculator = zero_amount,
        discount: AmountCalculator = zero_amount,
        order_number_prefix: str = "ORD",
        default_currency: str = "USD",
    ):
        self.db = db
        self.ledger = ledger
        self.catalog = catalog or SqlCatalog()
        self.customer_stats = customer_stats or SqlCustomerStats()
        self.tax = tax
        self.shipping = shipping
        self.discount = discount
        self.order_number_prefix = order_number_prefix
        self.default_currency = default_currency

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, order_data: OrderCreate) -> Order:
        """
        Persist a new order and hold stock for every stock-tracked line.

        No partial orders: any line that cannot be priced or reserved fails
        the whole request, and the caller's unit of work rolls back.
        """
        self._validate_customer(order_data)

        lines = [self._price_line(item) for item in order_data.items]
        self._check_stock(lines)

        subtotal = to_money(sum((line.total_price for line in lines), Decimal("0")))
        tax_amount = to_money(self.tax(lines, subtotal))
        shipping_amount = to_money(self.shipping(lines, subtotal))
        discount_amount = to_money(self.discount(lines, subtotal))
        total_amount = subtotal + tax_amount + shipping_amount - discount_amount
        if total_amount < 0:
            raise ValidationError(
                "Order total cannot be negative",
                subtotal=str(subtotal),
                discount_amount=str(discount_amount),
            )

        order_number = next_document_number(self.db, self.order_number_prefix, Order.order_number)

        order = Order(
            order_number=order_number,
            customer_id=order_data.customer_id,
            guest_email=order_data.guest_email,
            guest_phone=order_data.guest_phone,
            status=OrderStatus.PENDING,
            financial_status=FinancialStatus.PENDING,
            fulfillment_status=OrderFulfillmentStatus.UNFULFILLED,
            subtotal=subtotal,
            tax_amount=tax_amount,
            shipping_amount=shipping_amount,
            discount_amount=discount_amount,
            total_amount=total_amount,
            currency=order_data.currency or self.default_currency,
            billing_address=order_data.billing_address.model_dump() if order_data.billing_address else None,
            shipping_address=order_data.shipping_address.model_dump() if order_data.shipping_address else None,
            shipping_method=order_data.shipping_method,
            notes=order_data.notes,
            tags=list(order_data.tags),
        )
        self.db.add(order)
        self.db.flush()

        for line in lines:
            order_item = OrderItem(
                order_id=order.id,
                product_id=line.product.id,
                variant_id=line.variant_id,
                name=line.name,
                sku=line.sku,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
                product_snapshot=line.snapshot(),
            )
            order.order_items.append(order_item)
            self.db.flush()

            if line.product.track_quantity:
                self.ledger.allocate(
                    line.product.id,
                    line.variant_id,
                    line.quantity,
                    reason=order_number,
                    reference_type=ORDER_ITEM_REFERENCE,
                    reference_id=str(order_item.id),
                )

        if order.customer_id:
            self.customer_stats.update(self.db, order.customer_id)

        logger.info(f"Order {order_number} created with {len(lines)} item(s), total {total_amount} {order.currency}")
        return order

    def _validate_customer(self, order_data: OrderCreate) -> None:
        if order_data.customer_id is None and not order_data.guest_email:
            raise ValidationError("Either customer_id or guest_email is required")
        if order_data.customer_id is not None and not self.db.get(Customer, order_data.customer_id):
            raise NotFound("Customer", order_data.customer_id)

    def _price_line(self, item: OrderItemCreate) -> PricedLine:
        variant = None
        if item.variant_id is not None:
            variant = self.catalog.variant(self.db, item.variant_id)
            if not variant:
                raise NotFound("Product variant", item.variant_id)
            if item.product_id is not None and variant.product_id != item.product_id:
                raise ValidationError(
                    f"Variant {variant.id} does not belong to product {item.product_id}",
                    product_id=item.product_id,
                    variant_id=variant.id,
                )
            product_id = variant.product_id
        elif item.product_id is not None:
            product_id = item.product_id
        else:
            raise ValidationError("Each order item needs a product_id or variant_id")

        product = self.catalog.product(self.db, product_id)
        if not product or not product.is_active:
            raise NotFound("Product", product_id)
        return PricedLine(item, product, variant)

    def _check_stock(self, lines: List[PricedLine]) -> None:
        requested: Dict[Tuple[int, Optional[int]], int] = defaultdict(int)
        names: Dict[Tuple[int, Optional[int]], str] = {}
        for line in lines:
            if not line.product.track_quantity:
                continue
            key = (line.product.id, line.variant_id)
            requested[key] += line.quantity
            names[key] = line.name

        for (product_id, variant_id), quantity in requested.items():
            available = self.ledger.available_for(product_id, variant_id)
            if available < quantity:
                raise InsufficientStock(
                    names[(product_id, variant_id)],
                    quantity,
                    available,
                    product_id=product_id,
                    variant_id=variant_id,
                )

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def update(self, order: Order, patch: OrderUpdate) -> Order:
        """Merge an update; a status change must be a legal transition."""
        if patch.status is not None:
            event = event_for(order.status, patch.status)
            if event == OrderEvent.CANCEL:
                raise InvalidState(
                    "Orders are cancelled through the cancel operation",
                    order_id=order.id,
                )
            if event == OrderEvent.REFUND and not self.has_completed_refund(order):
                raise InvalidState(
                    f"Order {order.order_number} has no completed refund",
                    order_id=order.id,
                )
            if event is not None:
                self.set_status(order, patch.status)

        if patch.financial_status is not None:
            order.financial_status = patch.financial_status
        if patch.fulfillment_status is not None:
            order.fulfillment_status = patch.fulfillment_status
        if patch.notes is not None:
            order.notes = patch.notes
        if patch.tags is not None:
            order.tags = list(patch.tags)
        if patch.shipping_method is not None:
            order.shipping_method = patch.shipping_method

        order.updated_at = datetime.utcnow()
        self.db.flush()
        return order

    def cancel(self, order: Order, reason: Optional[str] = None) -> int:
        """
        Cancel the order and release its held stock.

        Returns the number of reservations released. Refunds are issued by
        the payment subledger in the same unit of work.
        """
        if order.status in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            raise InvalidState(
                f"Cannot cancel order {order.order_number} that has been shipped or delivered",
                order_id=order.id,
                status=order.status.value,
            )
        self.set_status(order, next_status(order.status, OrderEvent.CANCEL))

        now = datetime.utcnow()
        order.cancelled_at = now
        if reason:
            note = f"Cancellation reason: {reason}"
            order.notes = f"{order.notes}\n{note}" if order.notes else note
        order.updated_at = now

        released = 0
        for order_item in order.order_items:
            for reservation in self.ledger.reservations_for(ORDER_ITEM_REFERENCE, str(order_item.id)):
                self.ledger.release(reservation.id)
                released += 1

        self.db.flush()
        logger.info(f"Order {order.order_number} cancelled, released {released} reservation(s)")
        return released

    def set_status(self, order: Order, status: OrderStatus) -> None:
        """Write a new status, guarded on the status this transaction read."""
        guarded_update(self.db, order, Order.status == order.status, status=status, updated_at=datetime.utcnow())

    def add_item_quantity(self, order_item: OrderItem, field: str, delta: int) -> None:
        """Move ``quantity_fulfilled`` or ``quantity_returned`` by ``delta``, guarded on the value read."""
        column = getattr(OrderItem, field)
        current = getattr(order_item, field)
        guarded_update(self.db, order_item, column == current, **{field: current + delta})

    def has_completed_refund(self, order: Order) -> bool:
        return self.db.execute(
            select(func.count(Payment.id)).where(
                Payment.order_id == order.id,
                Payment.status == PaymentStatus.COMPLETED,
                Payment.amount < 0,
            )
        ).scalar_one() > 0

    def refresh_fulfillment_status(self, order: Order) -> OrderFulfillmentStatus:
        items = order.order_items
        if items and all(item.quantity_fulfilled >= item.quantity for item in items):
            status = OrderFulfillmentStatus.FULFILLED
        elif any(item.quantity_fulfilled > 0 for item in items):
            status = OrderFulfillmentStatus.PARTIALLY_FULFILLED
        else:
            status = OrderFulfillmentStatus.UNFULFILLED
        order.fulfillment_status = status
        return status

    def refresh_customer_stats(self, order: Order) -> None:
        if order.customer_id:
            self.customer_stats.update(self.db, order.customer_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, order_id: int, lock: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id)
        if lock:
            query = query.with_for_update().execution_options(populate_existing=True)
        order = self.db.execute(query).scalar_one_or_none()
        if not order:
            raise NotFound("Order", order_id)
        return order

    def get_item(self, order: Order, order_item_id: int) -> OrderItem:
        for order_item in order.order_items:
            if order_item.id == order_item_id:
                return order_item
        raise NotFound("Order item", order_item_id, f"Order item {order_item_id} not found in order {order.order_number}")

    def list_orders(self, filters: OrderFilters, page: int = 1, limit: int = 20) -> Tuple[List[Order], dict]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", page=page, limit=limit)

        conditions = []
        if filters.status:
            conditions.append(Order.status.in_(filters.status))
        if filters.financial_status:
            conditions.append(Order.financial_status.in_(filters.financial_status))
        if filters.fulfillment_status:
            conditions.append(Order.fulfillment_status.in_(filters.fulfillment_status))
        if filters.customer_id is not None:
            conditions.append(Order.customer_id == filters.customer_id)
        if filters.date_from:
            conditions.append(Order.created_at >= filters.date_from)
        if filters.date_to:
            conditions.append(Order.created_at <= filters.date_to)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(or_(Order.order_number.ilike(pattern), Order.guest_email.ilike(pattern)))
        for tag in filters.tags:
            # Tags are stored as a JSON list; match the quoted element in its text form
            conditions.append(Order.tags.cast(String).like(f'%"{tag}"%'))

        total = self.db.execute(select(func.count(Order.id)).where(*conditions)).scalar_one()
        orders = self.db.execute(
            select(Order)
            .where(*conditions)
            .options(
                selectinload(Order.order_items),
                selectinload(Order.payments),
                selectinload(Order.fulfillments),
                selectinload(Order.returns),
            )
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()

        pagination = {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        }
        return list(orders), pagination
