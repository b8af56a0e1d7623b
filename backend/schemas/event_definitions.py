# schemas/event_definitions.py
# ============================================================================
# TRUCKSY PAYMENTS — POST-COMMIT EVENTS
# ============================================================================
# Emitted after a state transition has committed. Consumers are best-effort:
# nothing they do can roll back or fail the transition that produced them.
# ============================================================================

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from schemas.domain import Client, FoodTruck, Order, Owner, Subscription


class EventType(str, Enum):
    ORDER_PAID = "order.paid"
    ORDER_READY = "order.ready"
    ORDER_COMPLETED = "order.completed"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"


class BaseEvent(BaseModel):
    """Base event schema"""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str = "trucksy"

    @computed_field
    @property
    def routing_key(self) -> str:
        return self.event_type.value


class OrderEvent(BaseEvent):
    """Order transition with everything a notifier needs, loaded at emit time."""
    order: Order
    food_truck: FoodTruck
    client: Optional[Client] = None
    owner: Optional[Owner] = None
    gateway_message: Optional[str] = None


class SubscriptionActivatedEvent(BaseEvent):
    event_type: EventType = EventType.SUBSCRIPTION_ACTIVATED
    owner: Owner
    subscription: Subscription
    fee_minor: int
    gateway_message: Optional[str] = None
