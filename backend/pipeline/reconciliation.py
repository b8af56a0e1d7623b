# pipeline/reconciliation.py
# ============================================================================
# TRUCKSY PAYMENTS — RECONCILIATION ENGINE
# ============================================================================
# The trust boundary. A gateway callback is an unauthenticated claim; it is
# only acted on after the gateway's own record agrees with it.
#
#   1. load subject (order / owner)            -> NotFoundError
#   2. already settled?                        -> no-op result, no gateway call
#   2b. payment id == id stored at initiation  -> PaymentMismatchError
#   3. query gateway for the payment id
#   4. claimed status == gateway status        -> StatusMismatchError
#   5. gateway amount == expected amount       -> AmountMismatchError
#   6. gateway status == "paid"                -> PaymentNotPaidError
#   7. atomic: re-check subject, debit ledger, advance state
#   8. after commit: audit + post-commit event (notifications)
#
# Steps 3-6 run outside the atomic unit so a slow gateway never holds a lock.
# A second callback that lost the race sees the advanced state in step 7 and
# exits as a no-op.
# ============================================================================

from datetime import date, datetime
from typing import Callable, Optional

import structlog

from errors import (
    AmountMismatchError,
    InvalidRequestError,
    NotFoundError,
    PaymentMismatchError,
    PaymentNotPaidError,
    StatusMismatchError,
    TrucksyError,
)
from pipeline.event_bus_adapter import IEventBus
from pipeline.gateway_client import IPaymentGateway
from pipeline.subscription_lifecycle import describe
from schemas.domain import (
    GatewayPayment,
    Order,
    OrderStatus,
    Owner,
    ReconciliationOutcome,
    ReconciliationResult,
    SubscriptionSnapshot,
    format_minor,
)
from schemas.event_definitions import EventType, OrderEvent, SubscriptionActivatedEvent
from storage.repositories import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    ITrucksyStore,
    account_key,
    order_key,
    owner_key,
)


class ReconciliationEngine:
    """
    Verifies payment callbacks for orders and subscriptions.

    Example:
        engine = ReconciliationEngine(store, gateway, bus, audit, subscription_fee_minor=3000)
        result = await engine.reconcile_order(order_id=7, payment_id="pay_1",
                                              claimed_status="paid", message="APPROVED")
    """

    def __init__(
        self,
        store: ITrucksyStore,
        gateway: IPaymentGateway,
        event_bus: IEventBus,
        audit_log: IAuditLog,
        subscription_fee_minor: int,
        currency: str = "SAR",
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.gateway = gateway
        self.event_bus = event_bus
        self.audit = audit_log
        self.subscription_fee_minor = subscription_fee_minor
        self.currency = currency
        self.today = today
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str, **context):
        return self._base_logger.bind(
            component="reconciliation",
            correlation_id=correlation_id,
            **context,
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: int,
        correlation_id: str,
        **metadata,
    ):
        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            metadata=metadata,
            actor="gateway",
        ))

    # =========================================================================
    # VERIFICATION (shared)
    # =========================================================================

    async def _verify(
        self,
        payment_id: str,
        claimed_status: Optional[str],
        expected_minor: int,
        log,
    ) -> GatewayPayment:
        payment = await self.gateway.query_status(payment_id)

        if payment.payment_id != payment_id:
            log.warning("callback_gateway_id_mismatch", gateway_payment_id=payment.payment_id)
            raise PaymentMismatchError("The payment record returned by the gateway does not match the callback")

        if (claimed_status or "").casefold() != payment.status.casefold():
            log.warning("callback_status_mismatch",
                        claimed_status=claimed_status,
                        gateway_status=payment.status)
            raise StatusMismatchError("The status received is inconsistent with the payment gateway")

        if payment.amount_minor != expected_minor:
            log.warning("callback_amount_mismatch",
                        gateway_amount_minor=payment.amount_minor,
                        expected_minor=expected_minor)
            raise AmountMismatchError(
                f"The amount {format_minor(payment.amount_minor, self.currency)} does not match "
                f"the expected {format_minor(expected_minor, self.currency)}"
            )

        if not payment.is_paid:
            log.warning("callback_not_paid", gateway_status=payment.status)
            raise PaymentNotPaidError("The invoice was not paid")

        return payment

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def reconcile_order(
        self,
        order_id: int,
        payment_id: str,
        claimed_status: Optional[str],
        message: Optional[str] = None,
    ) -> ReconciliationResult:
        if not payment_id:
            raise InvalidRequestError("Missing payment id", code="MISSING_PAYMENT_ID")

        log = self._get_logger(payment_id, order_id=order_id)
        log.info("order_callback_received", claimed_status=claimed_status)
        await self._emit_audit(AuditEventType.CALLBACK_RECEIVED, "order", order_id, payment_id,
                               claimed_status=claimed_status, message=message)

        try:
            order = await self.store.get_order(order_id)
            if order is None:
                raise NotFoundError("Order not found", code="ORDER_NOT_FOUND")

            if order.status != OrderStatus.PLACED:
                return await self._order_already_settled(order, payment_id, log)

            self._require_order_charge(order, payment_id, log)
            await self._verify(payment_id, claimed_status, order.total_price_minor, log)

            async with self.store.atomic(order_key(order_id), account_key(order.client_id)) as tx:
                current = await tx.get_order(order_id)
                if current.status != OrderStatus.PLACED:
                    settled = None
                else:
                    self._require_order_charge(current, payment_id, log)
                    account = await tx.get_account(current.client_id)
                    if account is None:
                        raise NotFoundError("Bank card not found", code="ACCOUNT_NOT_FOUND")

                    await tx.save_account(account.debit(current.total_price_minor))
                    settled = current.transition_to(
                        OrderStatus.PAID,
                        payment_id=payment_id,
                        paid_at=datetime.utcnow(),
                    )
                    await tx.save_order(settled)

            if settled is None:
                return await self._order_already_settled(current, payment_id, log)

        except TrucksyError as e:
            await self._emit_audit(AuditEventType.CALLBACK_REJECTED, "order", order_id, payment_id,
                                   code=e.code, reason=e.message)
            raise

        await self._emit_audit(AuditEventType.PAYMENT_SETTLED, "order", order_id, payment_id,
                               amount_minor=settled.total_price_minor,
                               previous_status=OrderStatus.PLACED.value,
                               new_status=OrderStatus.PAID.value)
        log.info("order_paid", amount_minor=settled.total_price_minor)

        await self._publish_order_paid(settled, payment_id, message, log)

        return ReconciliationResult(
            subject_kind="order",
            subject_id=order_id,
            payment_id=payment_id,
            outcome=ReconciliationOutcome.SETTLED,
            amount_minor=settled.total_price_minor,
            status_text=f"Order paid successfully: status: {message}",
        )

    @staticmethod
    def _require_order_charge(order: Order, payment_id: str, log):
        """The callback must name the charge create_order started for this order."""
        if order.payment_id != payment_id:
            log.warning("callback_payment_mismatch", expected_payment_id=order.payment_id)
            raise PaymentMismatchError("The payment does not belong to this order")

    async def _order_already_settled(self, order: Order, payment_id: str, log) -> ReconciliationResult:
        log.info("order_callback_replayed", status=order.status.value)
        await self._emit_audit(AuditEventType.CALLBACK_REPLAYED, "order", order.order_id, payment_id,
                               status=order.status.value)
        return ReconciliationResult(
            subject_kind="order",
            subject_id=order.order_id,
            payment_id=order.payment_id or payment_id,
            outcome=ReconciliationOutcome.ALREADY_SETTLED,
            amount_minor=order.total_price_minor,
            status_text=f"Order already paid: status: {order.status.value}",
        )

    async def _publish_order_paid(self, order: Order, payment_id: str, message: Optional[str], log):
        try:
            truck = await self.store.get_truck(order.truck_id)
            if truck is None:
                log.warning("order_paid_event_skipped", reason="truck_missing")
                return
            await self.event_bus.publish(OrderEvent(
                event_type=EventType.ORDER_PAID,
                correlation_id=payment_id,
                order=order,
                food_truck=truck,
                client=await self.store.get_client(order.client_id),
                owner=await self.store.get_owner(truck.owner_id),
                gateway_message=message,
            ))
        except Exception as e:
            log.warning("order_paid_event_failed", error=str(e))

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def reconcile_subscription(
        self,
        owner_id: int,
        payment_id: str,
        claimed_status: Optional[str],
        message: Optional[str] = None,
    ) -> ReconciliationResult:
        if not payment_id:
            raise InvalidRequestError("Missing payment id", code="MISSING_PAYMENT_ID")

        log = self._get_logger(payment_id, owner_id=owner_id)
        log.info("subscription_callback_received", claimed_status=claimed_status)
        await self._emit_audit(AuditEventType.CALLBACK_RECEIVED, "subscription", owner_id, payment_id,
                               claimed_status=claimed_status, message=message)

        fee = self.subscription_fee_minor
        try:
            owner = await self.store.get_owner(owner_id)
            if owner is None:
                raise NotFoundError("Owner not found", code="OWNER_NOT_FOUND")

            today = self.today()
            if self._subscription_settled(owner, payment_id, today):
                return await self._subscription_already_settled(owner, payment_id, log)

            self._require_subscription_charge(owner, payment_id, log)
            await self._verify(payment_id, claimed_status, fee, log)

            async with self.store.atomic(owner_key(owner_id), account_key(owner_id)) as tx:
                current = await tx.get_owner(owner_id)
                today = self.today()
                if self._subscription_settled(current, payment_id, today):
                    activated = None
                else:
                    self._require_subscription_charge(current, payment_id, log)
                    account = await tx.get_account(owner_id)
                    if account is None:
                        raise NotFoundError("Bank card not found", code="ACCOUNT_NOT_FOUND")

                    await tx.save_account(account.debit(fee))
                    activated = current.model_copy(update={
                        "subscription": current.subscription.activated(today, payment_id),
                    })
                    await tx.save_owner(activated)

            if activated is None:
                return await self._subscription_already_settled(current, payment_id, log)

        except TrucksyError as e:
            await self._emit_audit(AuditEventType.CALLBACK_REJECTED, "subscription", owner_id, payment_id,
                                   code=e.code, reason=e.message)
            raise

        subscription = activated.subscription
        await self._emit_audit(AuditEventType.SUBSCRIPTION_ACTIVATED, "subscription", owner_id, payment_id,
                               amount_minor=fee,
                               start_date=subscription.start_date.isoformat(),
                               end_date=subscription.end_date.isoformat())
        log.info("subscription_activated",
                 amount_minor=fee,
                 end_date=subscription.end_date.isoformat())

        try:
            await self.event_bus.publish(SubscriptionActivatedEvent(
                correlation_id=payment_id,
                owner=activated,
                subscription=subscription,
                fee_minor=fee,
                gateway_message=message,
            ))
        except Exception as e:
            log.warning("subscription_event_failed", error=str(e))

        status_text = f"Subscribed successfully: Monthly, status: {message}"
        return ReconciliationResult(
            subject_kind="subscription",
            subject_id=owner_id,
            payment_id=payment_id,
            outcome=ReconciliationOutcome.SETTLED,
            amount_minor=fee,
            status_text=status_text,
            subscription=SubscriptionSnapshot.of(subscription, status_text, today),
        )

    @staticmethod
    def _subscription_settled(owner: Owner, payment_id: str, today: date) -> bool:
        """Active period running, or this exact payment was already consumed."""
        subscription = owner.subscription
        return subscription.is_active_on(today) or subscription.payment_id == payment_id

    @staticmethod
    def _require_subscription_charge(owner: Owner, payment_id: str, log):
        pending = owner.subscription.pending_payment_id
        if pending != payment_id:
            log.warning("callback_payment_mismatch", expected_payment_id=pending)
            raise PaymentMismatchError("The payment does not belong to a pending subscription charge")

    async def _subscription_already_settled(self, owner: Owner, payment_id: str, log) -> ReconciliationResult:
        log.info("subscription_callback_replayed",
                 end_date=str(owner.subscription.end_date))
        await self._emit_audit(AuditEventType.CALLBACK_REPLAYED, "subscription", owner.owner_id, payment_id)
        status_text = describe(owner.subscription)
        return ReconciliationResult(
            subject_kind="subscription",
            subject_id=owner.owner_id,
            payment_id=owner.subscription.payment_id or payment_id,
            outcome=ReconciliationOutcome.ALREADY_SETTLED,
            amount_minor=self.subscription_fee_minor,
            status_text=status_text,
            subscription=SubscriptionSnapshot.of(owner.subscription, status_text, self.today()),
        )
