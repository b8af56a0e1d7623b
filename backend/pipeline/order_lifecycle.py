# pipeline/order_lifecycle.py
# ============================================================================
# TRUCKSY PAYMENTS — ORDER LIFECYCLE
# ============================================================================
#   PLACED -> PAID -> READY -> COMPLETED
# PLACED -> PAID belongs to the reconciliation engine; owners drive the rest.
# ============================================================================

import structlog

from errors import ForbiddenError, InvalidTransitionError, NotFoundError
from pipeline.event_bus_adapter import IEventBus
from schemas.domain import Order, OrderStatus
from schemas.event_definitions import EventType, OrderEvent
from storage.repositories import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    ITrucksyStore,
    order_key,
)

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PLACED: {OrderStatus.PAID},
    OrderStatus.PAID: {OrderStatus.READY},
    OrderStatus.READY: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
}

# Targets an owner may request; PAID only comes from a verified callback
OWNER_TARGETS = {OrderStatus.READY, OrderStatus.COMPLETED}

_EVENT_FOR_STATUS = {
    OrderStatus.READY: EventType.ORDER_READY,
    OrderStatus.COMPLETED: EventType.ORDER_COMPLETED,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class OrderLifecycle:

    def __init__(self, store: ITrucksyStore, event_bus: IEventBus, audit_log: IAuditLog):
        self.store = store
        self.event_bus = event_bus
        self.audit = audit_log
        self._logger = structlog.get_logger(component="order_lifecycle")

    async def advance(
        self,
        owner_id: int,
        truck_id: int,
        order_id: int,
        target: OrderStatus,
    ) -> Order:
        """Move an order forward on behalf of the truck's owner."""
        try:
            target = OrderStatus(target)
        except ValueError:
            raise InvalidTransitionError(f"Unknown order status: {target}")
        if target not in OWNER_TARGETS:
            raise InvalidTransitionError(f"Orders cannot be moved to {target.value} by an owner")

        truck = await self.store.get_truck(truck_id)
        if truck is None:
            raise NotFoundError("Food truck not found", code="TRUCK_NOT_FOUND")
        if truck.owner_id != owner_id:
            raise ForbiddenError("Owner does not own this food truck")

        async with self.store.atomic(order_key(order_id)) as tx:
            order = await tx.get_order(order_id)
            if order is None or order.truck_id != truck_id:
                raise NotFoundError("Order not found for this food truck", code="ORDER_NOT_FOUND")

            if not can_transition(order.status, target):
                self._logger.info("order_transition_rejected",
                                  order_id=order_id,
                                  current_status=order.status.value,
                                  target_status=target.value)
                raise InvalidTransitionError(
                    f"Only {self._required_status(target)} orders can be marked as {target.value}"
                )

            advanced = order.transition_to(target)
            await tx.save_order(advanced)

        self._logger.info("order_status_changed",
                          order_id=order_id,
                          truck_id=truck_id,
                          previous_status=order.status.value,
                          new_status=target.value)

        await self.audit.append(AuditLogEntry(
            correlation_id=f"order-{order_id}",
            event_type=AuditEventType.ORDER_STATUS_CHANGED,
            entity_type="order",
            entity_id=str(order_id),
            metadata={"previous_status": order.status.value, "new_status": target.value},
            actor="owner",
        ))

        await self._publish(advanced, truck)
        return advanced

    @staticmethod
    def _required_status(target: OrderStatus) -> str:
        for source, targets in ALLOWED_TRANSITIONS.items():
            if target in targets:
                return source.value
        return "?"

    async def _publish(self, order: Order, truck) -> None:
        try:
            await self.event_bus.publish(OrderEvent(
                event_type=_EVENT_FOR_STATUS[order.status],
                correlation_id=f"order-{order.order_id}",
                order=order,
                food_truck=truck,
                client=await self.store.get_client(order.client_id),
            ))
        except Exception as e:
            self._logger.warning("order_event_failed", order_id=order.order_id, error=str(e))
