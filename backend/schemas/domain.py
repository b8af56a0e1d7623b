# schemas/domain.py
# ============================================================================
# TRUCKSY PAYMENTS — DOMAIN MODELS
# ============================================================================
# Orders, ledger accounts and subscriptions. All money is integer minor units.
# ============================================================================

import calendar
from datetime import date, datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from errors import InsufficientFundsError


def format_minor(amount_minor: int, currency: str = "SAR") -> str:
    """4500 -> '45.00 SAR'"""
    sign = "-" if amount_minor < 0 else ""
    whole, cents = divmod(abs(amount_minor), 100)
    return f"{sign}{whole}.{cents:02d} {currency}"


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamped to the end of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


# ============================================================================
# SECTION 1: CATALOG AND USERS
# ============================================================================

class TruckStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class FoodTruck(BaseModel):
    truck_id: int
    owner_id: int
    name: str
    category: Optional[str] = None
    status: TruckStatus = TruckStatus.OPEN


class Item(BaseModel):
    """Catalog entry. Only looked up here, never managed."""
    item_id: int
    truck_id: int
    name: str
    price_minor: int = Field(ge=0)
    is_available: bool = True


class Client(BaseModel):
    client_id: int
    username: str
    email: Optional[str] = None
    phone_number: Optional[str] = None


class LedgerAccount(BaseModel):
    """
    Bank card attached to a user, with a single spendable balance.

    Debited only by the reconciliation engine, after the gateway has
    confirmed the matching charge as paid.
    """
    user_id: int
    holder_name: str
    number: str
    cvc: str
    month: int = Field(ge=1, le=12)
    year: int
    balance_minor: int = Field(ge=0)

    @property
    def masked_number(self) -> str:
        return f"****{self.number[-4:]}"

    def can_cover(self, amount_minor: int) -> bool:
        return self.balance_minor >= amount_minor

    def debit(self, amount_minor: int) -> "LedgerAccount":
        """Return a copy with the amount taken off. Never goes negative."""
        if amount_minor < 0:
            raise ValueError("debit amount must be non-negative")
        if not self.can_cover(amount_minor):
            raise InsufficientFundsError(
                f"Insufficient funds. Required: {format_minor(amount_minor)}"
            )
        return self.model_copy(update={"balance_minor": self.balance_minor - amount_minor})


# ============================================================================
# SECTION 2: SUBSCRIPTIONS
# ============================================================================

class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "UNSUBSCRIBED"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"


class Subscription(BaseModel):
    is_subscribed: bool = False
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    payment_id: Optional[str] = None
    # Charge started by subscribe, awaiting its callback
    pending_payment_id: Optional[str] = None

    def is_active_on(self, today: date) -> bool:
        return self.is_subscribed and self.end_date is not None and self.end_date > today

    def is_expired_on(self, today: date) -> bool:
        """Flagged as subscribed but the paid period is over."""
        return self.is_subscribed and not self.is_active_on(today)

    def state_on(self, today: date) -> SubscriptionState:
        if self.is_active_on(today):
            return SubscriptionState.ACTIVE
        if self.is_subscribed:
            return SubscriptionState.EXPIRED
        return SubscriptionState.UNSUBSCRIBED

    def activated(self, today: date, payment_id: Optional[str] = None) -> "Subscription":
        return Subscription(
            is_subscribed=True,
            start_date=today,
            end_date=add_months(today, 1),
            payment_id=payment_id,
        )

    def downgraded(self) -> "Subscription":
        """Drop the flag but keep the dates for history."""
        return self.model_copy(update={"is_subscribed": False})

    def awaiting(self, payment_id: str) -> "Subscription":
        return self.model_copy(update={"pending_payment_id": payment_id})


class Owner(BaseModel):
    owner_id: int
    username: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    subscription: Subscription = Field(default_factory=Subscription)


class SubscriptionSnapshot(BaseModel):
    """What get-subscription-status returns."""
    status: str
    state: SubscriptionState
    is_subscribed: bool
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @classmethod
    def of(cls, subscription: Subscription, status: str, today: date) -> "SubscriptionSnapshot":
        return cls(
            status=status,
            state=subscription.state_on(today),
            is_subscribed=subscription.is_subscribed,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
        )


# ============================================================================
# SECTION 3: ORDERS
# ============================================================================

class OrderStatus(str, Enum):
    PLACED = "PLACED"
    PAID = "PAID"
    READY = "READY"
    COMPLETED = "COMPLETED"


class LineRequest(BaseModel):
    """One (item, quantity) entry as submitted by the client."""
    model_config = ConfigDict(populate_by_name=True)

    item_id: int = Field(alias="itemId")
    quantity: int


class OrderLine(BaseModel):
    item_id: int
    item_name: str
    quantity: int = Field(ge=1)
    unit_price_minor: int = Field(ge=0)

    @computed_field
    @property
    def line_total_minor(self) -> int:
        return self.unit_price_minor * self.quantity


class Order(BaseModel):
    """Priced order. Total is frozen at creation; only the status moves."""
    order_id: Optional[int] = None
    client_id: int
    truck_id: int
    status: OrderStatus = OrderStatus.PLACED
    previous_status: Optional[OrderStatus] = None
    lines: List[OrderLine] = Field(default_factory=list)
    total_price_minor: int = Field(ge=0)
    payment_id: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    paid_at: Optional[datetime] = None

    version: int = 1

    def transition_to(self, new_status: OrderStatus, **changes) -> "Order":
        """Copy with the new status and a bumped version."""
        return self.model_copy(update={
            "previous_status": self.status,
            "status": new_status,
            "updated_at": datetime.utcnow(),
            "version": self.version + 1,
            **changes,
        })


class ClientSummary(BaseModel):
    client_id: int
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class TruckSummary(BaseModel):
    truck_id: int
    name: str
    category: Optional[str] = None
    status: TruckStatus


class OrderView(BaseModel):
    """Order as shown to a truck owner (with client) or a client (with truck)."""
    order_id: int
    status: OrderStatus
    total_price_minor: int
    lines: List[OrderLine]
    client: Optional[ClientSummary] = None
    food_truck: Optional[TruckSummary] = None


# ============================================================================
# SECTION 4: GATEWAY AND RECONCILIATION PAYLOADS
# ============================================================================

class GatewayPayment(BaseModel):
    """The gateway's own record of a payment, decoded from its JSON."""
    payment_id: str
    status: str
    amount_minor: int
    currency: Optional[str] = None
    message: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status.casefold() == "paid"


class ChargeInitiation(BaseModel):
    """Returned by create-order and subscribe: where the payer goes next."""
    subject_id: int
    amount_minor: int
    callback_url: str
    gateway_response: dict


class ReconciliationOutcome(str, Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"


class ReconciliationResult(BaseModel):
    subject_kind: Literal["order", "subscription"]
    subject_id: int
    payment_id: str
    outcome: ReconciliationOutcome
    amount_minor: int
    status_text: str
    subscription: Optional[SubscriptionSnapshot] = None
