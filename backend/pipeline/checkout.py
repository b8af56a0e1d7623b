# pipeline/checkout.py
# ============================================================================
# TRUCKSY PAYMENTS — CHECKOUT SERVICE
# ============================================================================
# The operations callers invoke. Wires the aggregator, gateway client,
# reconciliation engine and both lifecycles over one store.
#
#   create_order            -> PLACED order + charge initiation
#   handle_order_callback   -> reconciliation (PLACED -> PAID)
#   advance_order_status    -> PAID -> READY -> COMPLETED
#   subscribe               -> subscription charge initiation
#   handle_subscription_callback -> reconciliation (-> ACTIVE)
#   get_subscription_status / cancel_subscription
# ============================================================================

from datetime import date
from typing import Callable, Iterable, Optional

import structlog

from config import Settings
from errors import ForbiddenError, GatewayError, NotFoundError
from pipeline.event_bus_adapter import IEventBus, InMemoryEventBus
from pipeline.gateway_client import IPaymentGateway, MoyasarGatewayClient, charge_id
from pipeline.order_aggregator import OrderAggregator
from pipeline.order_lifecycle import OrderLifecycle
from pipeline.reconciliation import ReconciliationEngine
from pipeline.subscription_lifecycle import SubscriptionLifecycle
from schemas.domain import (
    ChargeInitiation,
    ClientSummary,
    GatewayPayment,
    LineRequest,
    Order,
    OrderStatus,
    OrderView,
    ReconciliationResult,
    SubscriptionSnapshot,
    TruckSummary,
)
from services.data_hooks import NotificationHooks
from services.notifications import build_senders
from storage.repositories import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    ITrucksyStore,
    InMemoryAuditLog,
    InMemoryTrucksyStore,
    order_key,
)


class CheckoutService:
    """
    Payment core facade.

    Example:
        checkout = CheckoutService(store, gateway, bus, audit, settings)
        initiation = await checkout.create_order(client_id=3, truck_id=1,
                                                 requests=[{"itemId": 10, "quantity": 2}])
        # payer completes the charge; gateway calls back
        result = await checkout.handle_order_callback(initiation.subject_id, "pay_1", "paid", "APPROVED")
    """

    def __init__(
        self,
        store: ITrucksyStore,
        gateway: IPaymentGateway,
        event_bus: IEventBus,
        audit_log: IAuditLog,
        settings: Settings,
        today: Callable[[], date] = date.today,
        senders: Iterable = (),
    ):
        self.store = store
        self.gateway = gateway
        self.event_bus = event_bus
        self.audit = audit_log
        self.settings = settings

        self.aggregator = OrderAggregator(store, currency=settings.currency)
        self.orders = OrderLifecycle(store, event_bus, audit_log)
        self.subscriptions = SubscriptionLifecycle(store, gateway, audit_log, settings, today=today)
        self.reconciliation = ReconciliationEngine(
            store,
            gateway,
            event_bus,
            audit_log,
            subscription_fee_minor=settings.subscription_fee_minor,
            currency=settings.currency,
            today=today,
        )
        self._senders = list(senders)
        self._logger = structlog.get_logger(component="checkout")

    async def close(self):
        """Release the HTTP clients held by the gateway and the notification senders."""
        for resource in [self.gateway, *self._senders]:
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                self._logger.warning("resource_close_failed", resource=type(resource).__name__, error=str(e))

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order(
        self,
        client_id: int,
        truck_id: int,
        requests: Iterable[LineRequest],
    ) -> ChargeInitiation:
        order, account = await self.aggregator.build_order(client_id, truck_id, requests)

        callback_url = self.settings.order_callback_url(order.order_id)
        try:
            response = await self.gateway.initiate_charge(order.total_price_minor, account, callback_url)
        except GatewayError:
            # The PLACED order stays; it can only be paid through a verified callback
            self._logger.warning("order_charge_failed", order_id=order.order_id)
            raise

        payment_id = charge_id(response)
        async with self.store.atomic(order_key(order.order_id)) as tx:
            current = await tx.get_order(order.order_id)
            await tx.save_order(current.model_copy(update={"payment_id": payment_id}))

        await self.audit.append(AuditLogEntry(
            correlation_id=payment_id,
            event_type=AuditEventType.CHARGE_INITIATED,
            entity_type="order",
            entity_id=str(order.order_id),
            metadata={"amount_minor": order.total_price_minor},
            actor="client",
        ))

        return ChargeInitiation(
            subject_id=order.order_id,
            amount_minor=order.total_price_minor,
            callback_url=callback_url,
            gateway_response=response,
        )

    async def handle_order_callback(
        self,
        order_id: int,
        payment_id: str,
        status: Optional[str],
        message: Optional[str] = None,
    ) -> ReconciliationResult:
        return await self.reconciliation.reconcile_order(order_id, payment_id, status, message)

    async def get_payment_status(self, payment_id: str) -> GatewayPayment:
        return await self.gateway.query_status(payment_id)

    async def advance_order_status(
        self,
        owner_id: int,
        truck_id: int,
        order_id: int,
        target: OrderStatus,
    ) -> Order:
        return await self.orders.advance(owner_id, truck_id, order_id, target)

    async def list_orders_for_truck(self, owner_id: int, truck_id: int) -> list[OrderView]:
        await self._require_owned_truck(owner_id, truck_id)
        orders = await self.store.list_orders_for_truck(truck_id)
        return [await self._owner_view(order) for order in orders]

    async def list_orders_for_client(self, client_id: int) -> list[OrderView]:
        if await self.store.get_client(client_id) is None:
            raise NotFoundError("Client not found", code="CLIENT_NOT_FOUND")
        orders = await self.store.list_orders_for_client(client_id)
        return [await self._client_view(order) for order in orders]

    async def get_order_for_truck(self, owner_id: int, truck_id: int, order_id: int) -> OrderView:
        await self._require_owned_truck(owner_id, truck_id)
        order = await self.store.get_order(order_id)
        if order is None or order.truck_id != truck_id:
            raise NotFoundError("Order not found for this food truck", code="ORDER_NOT_FOUND")
        return await self._owner_view(order)

    async def _require_owned_truck(self, owner_id: int, truck_id: int):
        truck = await self.store.get_truck(truck_id)
        if truck is None:
            raise NotFoundError("Food truck not found", code="TRUCK_NOT_FOUND")
        if truck.owner_id != owner_id:
            raise ForbiddenError("Owner does not own this food truck")
        return truck

    async def _owner_view(self, order: Order) -> OrderView:
        client = await self.store.get_client(order.client_id)
        return OrderView(
            order_id=order.order_id,
            status=order.status,
            total_price_minor=order.total_price_minor,
            lines=order.lines,
            client=ClientSummary(
                client_id=order.client_id,
                username=client.username if client else None,
                email=client.email if client else None,
                phone=client.phone_number if client else None,
            ),
        )

    async def _client_view(self, order: Order) -> OrderView:
        truck = await self.store.get_truck(order.truck_id)
        return OrderView(
            order_id=order.order_id,
            status=order.status,
            total_price_minor=order.total_price_minor,
            lines=order.lines,
            food_truck=TruckSummary(
                truck_id=truck.truck_id,
                name=truck.name,
                category=truck.category,
                status=truck.status,
            ) if truck else None,
        )

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    async def subscribe(self, owner_id: int) -> ChargeInitiation:
        return await self.subscriptions.subscribe(owner_id)

    async def handle_subscription_callback(
        self,
        owner_id: int,
        payment_id: str,
        status: Optional[str],
        message: Optional[str] = None,
    ) -> ReconciliationResult:
        return await self.reconciliation.reconcile_subscription(owner_id, payment_id, status, message)

    async def get_subscription_status(self, owner_id: int) -> SubscriptionSnapshot:
        return await self.subscriptions.get_status(owner_id)

    async def cancel_subscription(self, owner_id: int) -> SubscriptionSnapshot:
        return await self.subscriptions.cancel(owner_id)


# =============================================================================
# WIRING
# =============================================================================

async def create_checkout_service(settings: Settings) -> CheckoutService:
    """Build the service and its collaborators from settings."""
    if settings.storage_backend == "postgres":
        from database import init_database
        from storage.postgres import PostgresAuditLog, PostgresTrucksyStore

        await init_database(settings.database_url)
        store: ITrucksyStore = PostgresTrucksyStore()
        audit: IAuditLog = PostgresAuditLog()
    else:
        store = InMemoryTrucksyStore()
        audit = InMemoryAuditLog()

    bus = InMemoryEventBus(history_size=0)
    text_sender, mail_sender = build_senders(settings)
    await NotificationHooks(text_sender, mail_sender, currency=settings.currency).register(bus)

    return CheckoutService(
        store=store,
        gateway=MoyasarGatewayClient.from_settings(settings),
        event_bus=bus,
        audit_log=audit,
        settings=settings,
        senders=(text_sender, mail_sender),
    )
