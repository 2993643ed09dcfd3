"""
Payment subledger: payment attempts, refunds and the order's financial status.

Refunds are stored as payments with a negative amount, so the net paid sum of
an order is the plain sum of its COMPLETED payments.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from order_engine.core.errors import InvalidQuantity, InvalidState
from order_engine.models.database import Order, Payment
from order_engine.models.enums import FinancialStatus, OrderStatus, PaymentMethod, PaymentStatus
from order_engine.models.schemas import PaymentCreate
from order_engine.services.pricing import to_money

logger = logging.getLogger(__name__)

REFUND_GATEWAY = "refund"


@dataclass
class ChargeRequest:
    order_id: int
    order_number: str
    amount: Decimal
    currency: str
    method: PaymentMethod
    gateway: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayResult:
    approved: bool
    transaction_id: Optional[str] = None
    message: Optional[str] = None


@runtime_checkable
class PaymentGateway(Protocol):
    async def charge(self, request: ChargeRequest) -> GatewayResult:
        ...


class SimulatedGateway:
    """Approves every charge, optionally declining above a limit or after a delay."""

    def __init__(self, decline_above: Optional[Decimal] = None, delay: float = 0.0):
        self.decline_above = to_money(decline_above) if decline_above is not None else None
        self.delay = delay

    async def charge(self, request: ChargeRequest) -> GatewayResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.decline_above is not None and request.amount > self.decline_above:
            return GatewayResult(
                approved=False,
                message=f"Amount {request.amount} exceeds limit {self.decline_above}",
            )
        return GatewayResult(approved=True, transaction_id=f"sim_{uuid.uuid4().hex[:12]}")


async def charge_with_timeout(gateway: PaymentGateway, request: ChargeRequest, timeout: float) -> GatewayResult:
    """Run the gateway step; timeouts and gateway errors come back as declines."""
    try:
        return await asyncio.wait_for(gateway.charge(request), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Payment gateway timed out after {timeout}s for order {request.order_number}")
        return GatewayResult(approved=False, message=f"Gateway timed out after {timeout}s")
    except Exception as e:
        logger.exception(f"Payment gateway error for order {request.order_number}")
        return GatewayResult(approved=False, message=f"Gateway error: {e}")


class PaymentSubledger:
    def __init__(self, db: Session):
        self.db = db

    def check_payable(self, order: Order) -> None:
        if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            raise InvalidState(
                f"Cannot take payment for order {order.order_number} in status {order.status.value}",
                order_id=order.id,
                status=order.status.value,
            )

    def charge_request(self, order: Order, payment_data: PaymentCreate) -> ChargeRequest:
        return ChargeRequest(
            order_id=order.id,
            order_number=order.order_number,
            amount=to_money(payment_data.amount),
            currency=payment_data.currency,
            method=payment_data.method,
            gateway=payment_data.gateway,
            details=dict(payment_data.details or {}),
        )

    def record_completed(self, order: Order, payment_data: PaymentCreate, result: GatewayResult) -> Payment:
        if payment_data.currency != order.currency:
            # Known gap: amounts in other currencies are summed unconverted
            logger.warning(
                f"Payment currency {payment_data.currency} differs from order "
                f"{order.order_number} currency {order.currency}; no conversion applied"
            )

        now = datetime.utcnow()
        payment = Payment(
            order_id=order.id,
            amount=to_money(payment_data.amount),
            currency=payment_data.currency,
            method=payment_data.method,
            gateway=payment_data.gateway,
            gateway_transaction_id=payment_data.gateway_transaction_id or result.transaction_id,
            status=PaymentStatus.COMPLETED,
            details=payment_data.details,
            processed_at=now,
        )
        self.db.add(payment)
        self.db.flush()

        self.refresh_financial_status(order)
        order.updated_at = now
        self.db.flush()

        logger.info(
            f"Payment {payment.id} of {payment.amount} {payment.currency} completed for order "
            f"{order.order_number} (financial status {order.financial_status.value})"
        )
        return payment

    def record_failed(self, order: Order, payment_data: PaymentCreate, reason: str) -> Payment:
        payment = Payment(
            order_id=order.id,
            amount=to_money(payment_data.amount),
            currency=payment_data.currency,
            method=payment_data.method,
            gateway=payment_data.gateway,
            gateway_transaction_id=payment_data.gateway_transaction_id,
            status=PaymentStatus.FAILED,
            failure_reason=reason,
            details=payment_data.details,
            processed_at=datetime.utcnow(),
        )
        self.db.add(payment)
        self.db.flush()
        logger.info(f"Payment attempt for order {order.order_number} failed: {reason}")
        return payment

    def refund(
        self,
        order: Order,
        amount: Decimal,
        reason: Optional[str] = None,
        original: Optional[Payment] = None,
    ) -> Payment:
        """Record a completed refund; cannot exceed what has been paid net."""
        amount = to_money(amount)
        net_paid = self.net_paid(order)
        if amount <= 0 or amount > net_paid:
            raise InvalidQuantity(
                f"order {order.order_number}",
                str(amount),
                str(net_paid),
                order_id=order.id,
            )

        if original is None:
            original = self._latest_completed_charge(order)
        refund = self._refund_payment(order, amount, original, reason)

        order.financial_status = (
            FinancialStatus.REFUNDED if net_paid - amount <= 0 else FinancialStatus.PARTIALLY_REFUNDED
        )
        order.updated_at = datetime.utcnow()
        self.db.flush()

        logger.info(f"Refunded {amount} {refund.currency} on order {order.order_number}")
        return refund

    def refund_all(self, order: Order, reason: Optional[str] = None) -> List[Payment]:
        """Refund every completed charge; used when an order is cancelled."""
        remaining = self.net_paid(order)
        refunds = []
        for payment in self.completed_charges(order):
            if remaining <= 0:
                break
            amount = min(to_money(payment.amount), remaining)
            refunds.append(self._refund_payment(order, amount, payment, reason))
            remaining -= amount

        if refunds:
            order.financial_status = FinancialStatus.REFUNDED
            order.updated_at = datetime.utcnow()
            self.db.flush()
            logger.info(f"Refunded {len(refunds)} payment(s) on order {order.order_number}")
        return refunds

    def refresh_financial_status(self, order: Order) -> FinancialStatus:
        net_paid = self.net_paid(order)
        if net_paid <= 0:
            status = FinancialStatus.PENDING
        elif net_paid < order.total_amount:
            status = FinancialStatus.PARTIALLY_PAID
        else:
            status = FinancialStatus.PAID
        order.financial_status = status
        return status

    def net_paid(self, order: Order) -> Decimal:
        self.db.flush()
        total = self.db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.order_id == order.id,
                Payment.status == PaymentStatus.COMPLETED,
            )
        ).scalar_one()
        return to_money(total)

    def completed_charges(self, order: Order) -> List[Payment]:
        return list(
            self.db.execute(
                select(Payment)
                .where(
                    Payment.order_id == order.id,
                    Payment.status == PaymentStatus.COMPLETED,
                    Payment.amount > 0,
                )
                .order_by(Payment.id)
            ).scalars().all()
        )

    def _latest_completed_charge(self, order: Order) -> Optional[Payment]:
        charges = self.completed_charges(order)
        return charges[-1] if charges else None

    def _refund_payment(
        self,
        order: Order,
        amount: Decimal,
        original: Optional[Payment],
        reason: Optional[str],
    ) -> Payment:
        details: Dict[str, Any] = {"reason": reason} if reason else {}
        if original is not None:
            details["original_payment_id"] = original.id
        refund = Payment(
            order_id=order.id,
            amount=-amount,
            currency=original.currency if original is not None else order.currency,
            method=original.method if original is not None else PaymentMethod.OTHER,
            gateway=REFUND_GATEWAY,
            gateway_transaction_id=(
                f"REFUND_{original.gateway_transaction_id}"
                if original is not None and original.gateway_transaction_id
                else None
            ),
            status=PaymentStatus.COMPLETED,
            details=details,
            processed_at=datetime.utcnow(),
        )
        self.db.add(refund)
        self.db.flush()
        return refund
