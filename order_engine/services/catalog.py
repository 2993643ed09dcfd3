"""Catalog and customer collaborators used by order creation."""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from order_engine.models.database import Customer, Order, Product, ProductVariant
from order_engine.models.enums import OrderStatus


@runtime_checkable
class CatalogLookup(Protocol):
    def product(self, session: Session, product_id: int) -> Optional[Product]:
        ...

    def variant(self, session: Session, variant_id: int) -> Optional[ProductVariant]:
        ...


@runtime_checkable
class CustomerStatsUpdater(Protocol):
    def update(self, session: Session, customer_id: int) -> None:
        ...


class SqlCatalog:
    """Reads products and variants from the same store as the orders."""

    def product(self, session: Session, product_id: int) -> Optional[Product]:
        return session.get(Product, product_id)

    def variant(self, session: Session, variant_id: int) -> Optional[ProductVariant]:
        return session.get(ProductVariant, variant_id)


class SqlCustomerStats:
    """
    Recomputes a customer's order statistics from their orders.

    Cancelled and refunded orders do not count towards total spent.
    """

    def update(self, session: Session, customer_id: int) -> None:
        customer = session.get(Customer, customer_id)
        if not customer:
            return

        session.flush()
        orders_count, last_order_at = session.execute(
            select(func.count(Order.id), func.max(Order.created_at)).where(Order.customer_id == customer_id)
        ).one()
        total_spent = session.execute(
            select(func.coalesce(func.sum(Order.total_amount), 0)).where(
                Order.customer_id == customer_id,
                Order.status.not_in([OrderStatus.CANCELLED, OrderStatus.REFUNDED]),
            )
        ).scalar_one()

        customer.orders_count = orders_count
        customer.total_spent = Decimal(str(total_spent)).quantize(Decimal("0.01"))
        customer.last_order_at = last_order_at
        customer.updated_at = datetime.utcnow()
