import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session, sessionmaker

from order_engine.core.config import Settings, get_settings
from order_engine.core.errors import EngineError, PaymentFailed
from order_engine.core.events import AuditSink, EventBroadcaster, LoggingAuditSink, LoggingBroadcaster, Notifier
from order_engine.core.unit_of_work import UnitOfWork
from order_engine.models import schemas
from order_engine.models.enums import OrderStatus, ReturnStatus
from order_engine.services.catalog import CatalogLookup, CustomerStatsUpdater
from order_engine.services.fulfillment_service import FulfillmentTracker
from order_engine.services.inventory_ledger import InventoryLedger, LowStockAlert
from order_engine.services.order_service import OrderAggregate
from order_engine.services.payment_service import (
    PaymentGateway,
    PaymentSubledger,
    SimulatedGateway,
    charge_with_timeout,
)
from order_engine.services.pricing import AmountCalculator, zero_amount
from order_engine.services.return_service import ManualFollowUp, ReturnApprovalPolicy, ReturnTracker

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """The engine's components bound to one unit of work's session."""

    ledger: InventoryLedger
    orders: OrderAggregate
    payments: PaymentSubledger
    fulfillments: FulfillmentTracker
    returns: ReturnTracker


def publish_alerts(notifier: Notifier, alerts: List[LowStockAlert]) -> None:
    for alert in alerts:
        notifier.publish("inventory.low_stock", alert.as_payload())


class TransactionCoordinator:
    """
    Entry point for every multi-entity operation.

    Each operation runs in exactly one unit of work. Events and audit records
    are emitted only after that unit of work has committed, and their
    failures never undo or fail the operation.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        broadcaster: Optional[EventBroadcaster] = None,
        audit_sink: Optional[AuditSink] = None,
        gateway: Optional[PaymentGateway] = None,
        catalog: Optional[CatalogLookup] = None,
        customer_stats: Optional[CustomerStatsUpdater] = None,
        tax: AmountCalculator = zero_amount,
        shipping: AmountCalculator = zero_amount,
        discount: AmountCalculator = zero_amount,
        return_policy: Optional[ReturnApprovalPolicy] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.uow = UnitOfWork(
            session_factory,
            max_retries=self.settings.uow_max_retries,
            retry_backoff=self.settings.uow_retry_backoff,
        )
        self.notifier = Notifier(broadcaster or LoggingBroadcaster(), audit_sink or LoggingAuditSink())
        self.gateway = gateway or SimulatedGateway()
        self.catalog = catalog
        self.customer_stats = customer_stats
        self.tax = tax
        self.shipping = shipping
        self.discount = discount
        self.return_policy = return_policy or ManualFollowUp()

    def components(self, db: Session) -> Components:
        ledger = InventoryLedger(db)
        orders = OrderAggregate(
            db,
            ledger,
            catalog=self.catalog,
            customer_stats=self.customer_stats,
            tax=self.tax,
            shipping=self.shipping,
            discount=self.discount,
            order_number_prefix=self.settings.order_number_prefix,
            default_currency=self.settings.default_currency,
        )
        payments = PaymentSubledger(db)
        return Components(
            ledger=ledger,
            orders=orders,
            payments=payments,
            fulfillments=FulfillmentTracker(db, orders, ledger),
            returns=ReturnTracker(db, orders, ledger, payments, self.settings.return_number_prefix),
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(self, order_data: schemas.OrderCreate, actor: Optional[str] = None) -> schemas.Order:
        def work(db: Session):
            c = self.components(db)
            order = c.orders.create(order_data)
            return schemas.Order.model_validate(order), c.ledger.alerts

        order, alerts = await self.uow.run(work, "order creation")

        publish_alerts(self.notifier, alerts)
        self.notifier.publish("order.created", {"order": order.model_dump(mode="json")})
        self.notifier.audit(
            "CREATE_ORDER",
            "Order",
            order.id,
            actor,
            {"order_number": order.order_number, "total_amount": str(order.total_amount)},
        )
        return order

    async def update_order(
        self, order_id: int, patch: schemas.OrderUpdate, actor: Optional[str] = None
    ) -> schemas.Order:
        def work(db: Session):
            c = self.components(db)
            order = c.orders.get(order_id, lock=True)
            old_status = order.status
            cancellation = None
            if patch.status == OrderStatus.CANCELLED and order.status != OrderStatus.CANCELLED:
                cancellation = self._cancel(c, order, None)
                c.orders.update(order, patch.model_copy(update={"status": None}))
            else:
                c.orders.update(order, patch)
            return schemas.Order.model_validate(order), old_status, cancellation, c.ledger.alerts

        order, old_status, cancellation, alerts = await self.uow.run(work, "order update")

        publish_alerts(self.notifier, alerts)
        if order.status != old_status:
            self.notifier.publish(
                "order.status.updated",
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "old_status": old_status.value,
                    "new_status": order.status.value,
                },
            )
        self.notifier.audit(
            "UPDATE_ORDER",
            "Order",
            order.id,
            actor,
            {"changes": patch.model_dump(mode="json", exclude_none=True)},
        )
        if cancellation is not None:
            released, refunds = cancellation
            self._order_cancelled(order, None, released, refunds, actor)
        return order

    async def cancel_order(
        self, order_id: int, reason: Optional[str] = None, actor: Optional[str] = None
    ) -> schemas.Order:
        def work(db: Session):
            c = self.components(db)
            order = c.orders.get(order_id, lock=True)
            released, refunds = self._cancel(c, order, reason)
            return schemas.Order.model_validate(order), released, refunds, c.ledger.alerts

        order, released, refunds, alerts = await self.uow.run(work, "order cancellation")

        publish_alerts(self.notifier, alerts)
        self._order_cancelled(order, reason, released, refunds, actor)
        return order

    def _cancel(self, c: Components, order, reason: Optional[str]):
        released = c.orders.cancel(order, reason)
        refunds = c.payments.refund_all(order, reason=reason or "Order cancelled")
        c.orders.refresh_customer_stats(order)
        return released, [schemas.Payment.model_validate(refund) for refund in refunds]

    def _order_cancelled(
        self, order: schemas.Order, reason: Optional[str], released: int, refunds: List[schemas.Payment], actor
    ) -> None:
        """After-commit notifications shared by every path that cancels an order."""
        for refund in refunds:
            self.notifier.publish(
                "payment.refunded",
                {
                    "order_id": order.id,
                    "payment": refund.model_dump(mode="json"),
                    "financial_status": order.financial_status.value,
                },
            )
        self.notifier.publish(
            "order.cancelled",
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "reason": reason,
                "released_reservations": released,
                "refunded_amount": str(sum((-r.amount for r in refunds), 0)),
            },
        )
        self.notifier.audit("CANCEL_ORDER", "Order", order.id, actor, {"reason": reason, "refunds": len(refunds)})

    async def get_order(self, order_id: int) -> schemas.Order:
        def work(db: Session):
            return schemas.Order.model_validate(self.components(db).orders.get(order_id))

        return await self.uow.run(work, "order lookup")

    async def list_orders(
        self, filters: Optional[schemas.OrderFilters] = None, page: int = 1, limit: int = 20
    ) -> schemas.OrderList:
        def work(db: Session):
            orders, pagination = self.components(db).orders.list_orders(filters or schemas.OrderFilters(), page, limit)
            return schemas.OrderList(
                orders=[schemas.Order.model_validate(order) for order in orders],
                pagination=schemas.Pagination(**pagination),
            )

        return await self.uow.run(work, "order listing")

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def process_payment(
        self, order_id: int, payment_data: schemas.PaymentCreate, actor: Optional[str] = None
    ) -> schemas.Payment:
        """
        Charge through the gateway, then record the outcome.

        The gateway call happens between two units of work so no transaction
        is held open while waiting on it.
        """

        def prepare(db: Session):
            c = self.components(db)
            order = c.orders.get(order_id)
            c.payments.check_payable(order)
            return c.payments.charge_request(order, payment_data)

        request = await self.uow.run(prepare, "payment preparation")
        result = await charge_with_timeout(self.gateway, request, self.settings.payment_gateway_timeout)

        if not result.approved:
            reason = result.message or "Payment declined"
            await self._record_failed_payment(order_id, payment_data, reason)
            self.notifier.audit(
                "PROCESS_PAYMENT",
                "Order",
                order_id,
                actor,
                {"status": "FAILED", "amount": str(payment_data.amount), "reason": reason},
            )
            raise PaymentFailed(order_id, reason)

        def record(db: Session):
            c = self.components(db)
            order = c.orders.get(order_id, lock=True)
            c.payments.check_payable(order)
            payment = c.payments.record_completed(order, payment_data, result)
            return schemas.Payment.model_validate(payment), order.financial_status

        payment, financial_status = await self.uow.run(record, "payment")

        self.notifier.publish(
            "payment.processed",
            {
                "order_id": order_id,
                "payment": payment.model_dump(mode="json"),
                "financial_status": financial_status.value,
            },
        )
        self.notifier.audit(
            "PROCESS_PAYMENT",
            "Order",
            order_id,
            actor,
            {"payment_id": payment.id, "amount": str(payment.amount), "status": payment.status.value},
        )
        return payment

    async def _record_failed_payment(self, order_id: int, payment_data: schemas.PaymentCreate, reason: str) -> None:
        def work(db: Session):
            c = self.components(db)
            c.payments.record_failed(c.orders.get(order_id, lock=True), payment_data, reason)

        try:
            await self.uow.run(work, "failed payment record")
        except EngineError:
            logger.exception(f"Could not record failed payment for order {order_id}")

    async def refund_payment(
        self, order_id: int, refund_data: schemas.RefundCreate, actor: Optional[str] = None
    ) -> schemas.Payment:
        def work(db: Session):
            c = self.components(db)
            order = c.orders.get(order_id, lock=True)
            refund = c.payments.refund(order, refund_data.amount, refund_data.reason)
            return schemas.Payment.model_validate(refund), order.financial_status

        refund, financial_status = await self.uow.run(work, "refund")
        self._payment_refunded(order_id, refund, financial_status.value, actor)
        return refund

    def _payment_refunded(self, order_id: int, refund: schemas.Payment, financial_status: str, actor) -> None:
        self.notifier.publish(
            "payment.refunded",
            {"order_id": order_id, "payment": refund.model_dump(mode="json"), "financial_status": financial_status},
        )
        self.notifier.audit("PROCESS_PAYMENT", "Order", order_id, actor, {"refund_id": refund.id, "amount": str(refund.amount)})

    # ------------------------------------------------------------------
    # Fulfillments
    # ------------------------------------------------------------------

    async def create_fulfillment(
        self, order_id: int, fulfillment_data: schemas.FulfillmentCreate, actor: Optional[str] = None
    ) -> schemas.Fulfillment:
        def work(db: Session):
            c = self.components(db)
            order = c.orders.get(order_id, lock=True)
            fulfillment = c.fulfillments.create(order, fulfillment_data, actor)
            return schemas.Fulfillment.model_validate(fulfillment), order.fulfillment_status, c.ledger.alerts

        fulfillment, fulfillment_status, alerts = await self.uow.run(work, "fulfillment creation")

        publish_alerts(self.notifier, alerts)
        self.notifier.publish(
            "fulfillment.created",
            {
                "order_id": order_id,
                "fulfillment": fulfillment.model_dump(mode="json"),
                "order_fulfillment_status": fulfillment_status.value,
            },
        )
        self.notifier.audit(
            "CREATE_FULFILLMENT",
            "Fulfillment",
            fulfillment.id,
            actor,
            {"order_id": order_id, "items": len(fulfillment.items)},
        )
        return fulfillment

    async def ship_fulfillment(
        self, fulfillment_id: int, tracking: schemas.TrackingInfo, actor: Optional[str] = None
    ) -> schemas.Fulfillment:
        def work(db: Session):
            c = self.components(db)
            fulfillment = c.fulfillments.ship(c.fulfillments.get(fulfillment_id), tracking)
            return schemas.Fulfillment.model_validate(fulfillment)

        fulfillment = await self.uow.run(work, "fulfillment shipment")

        self.notifier.publish("fulfillment.shipped", {"fulfillment": fulfillment.model_dump(mode="json")})
        self.notifier.audit(
            "SHIP_FULFILLMENT",
            "Fulfillment",
            fulfillment.id,
            actor,
            {"tracking_number": fulfillment.tracking_number, "carrier": fulfillment.carrier},
        )
        return fulfillment

    async def deliver_fulfillment(self, fulfillment_id: int, actor: Optional[str] = None) -> schemas.Fulfillment:
        def work(db: Session):
            c = self.components(db)
            return schemas.Fulfillment.model_validate(c.fulfillments.deliver(c.fulfillments.get(fulfillment_id)))

        fulfillment = await self.uow.run(work, "fulfillment delivery")

        self.notifier.audit("DELIVER_FULFILLMENT", "Fulfillment", fulfillment.id, actor, {"order_id": fulfillment.order_id})
        return fulfillment

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------

    async def create_return(
        self, order_id: int, return_data: schemas.ReturnCreate, actor: Optional[str] = None
    ) -> schemas.Return:
        def work(db: Session):
            c = self.components(db)
            order = c.orders.get(order_id, lock=True)
            return schemas.Return.model_validate(c.returns.create(order, return_data))

        return_record = await self.uow.run(work, "return creation")

        self.notifier.publish("return.created", {"order_id": order_id, "return": return_record.model_dump(mode="json")})
        self.notifier.audit(
            "CREATE_RETURN",
            "Return",
            return_record.id,
            actor,
            {"order_id": order_id, "return_number": return_record.return_number},
        )
        return return_record

    async def process_return(
        self, return_id: int, decision: schemas.ReturnDecision, actor: Optional[str] = None
    ) -> schemas.Return:
        def work(db: Session):
            c = self.components(db)
            return_record = c.returns.process(c.returns.get(return_id), decision.approve, decision.refund_amount)
            return schemas.Return.model_validate(return_record)

        return_record = await self.uow.run(work, "return processing")

        self.notifier.publish("return.processed", {"return": return_record.model_dump(mode="json")})
        self.notifier.audit(
            "PROCESS_RETURN",
            "Return",
            return_record.id,
            actor,
            {"status": return_record.status.value, "refund_amount": str(return_record.refund_amount)},
        )

        if return_record.status == ReturnStatus.APPROVED:
            try:
                await self.return_policy.on_return_approved(self, return_record)
            except Exception:
                logger.exception(f"Follow-up for approved return {return_record.return_number} failed")
        return return_record

    async def refund_return(self, return_id: int, actor: Optional[str] = None) -> schemas.Payment:
        def work(db: Session):
            c = self.components(db)
            return_record = c.returns.get(return_id)
            refund = c.returns.refund(return_record)
            order = c.orders.get(return_record.order_id)
            return schemas.Payment.model_validate(refund), order.id, order.financial_status

        refund, order_id, financial_status = await self.uow.run(work, "return refund")
        self._payment_refunded(order_id, refund, financial_status.value, actor)
        return refund

    async def restock_return(
        self, return_id: int, location_id: Optional[int] = None, actor: Optional[str] = None
    ) -> schemas.Return:
        def work(db: Session):
            c = self.components(db)
            return_record = c.returns.get(return_id)
            adjustments = c.returns.restock(return_record, location_id, actor)
            return (
                schemas.Return.model_validate(return_record),
                [schemas.Adjustment.model_validate(adjustment) for adjustment in adjustments],
                c.ledger.alerts,
            )

        return_record, adjustments, alerts = await self.uow.run(work, "return restock")

        publish_alerts(self.notifier, alerts)
        for adjustment in adjustments:
            self.notifier.publish("inventory.adjusted", {"adjustment": adjustment.model_dump(mode="json")})
        self.notifier.audit(
            "RESTOCK_RETURN",
            "Return",
            return_record.id,
            actor,
            {"location_id": location_id, "adjustments": [adjustment.id for adjustment in adjustments]},
        )
        return return_record
