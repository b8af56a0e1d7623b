import asyncio
from datetime import date, timedelta

import pytest

from config import Settings
from errors import GatewayError
from pipeline.checkout import CheckoutService
from pipeline.event_bus_adapter import InMemoryEventBus
from pipeline.gateway_client import IPaymentGateway
from schemas.domain import (
    Client,
    FoodTruck,
    GatewayPayment,
    Item,
    LedgerAccount,
    Owner,
    Subscription,
    TruckStatus,
)
from services.data_hooks import NotificationHooks
from services.notifications import InMemoryOutbox
from storage.repositories import InMemoryAuditLog, InMemoryTrucksyStore

TODAY = date(2026, 3, 15)

OWNER_ID = 1
OTHER_OWNER_ID = 2
EXPIRED_OWNER_ID = 3
CLIENT_ID = 5
CARDLESS_CLIENT_ID = 6

TRUCK_ID = 10
CLOSED_TRUCK_ID = 11
OTHER_TRUCK_ID = 12

TACO_ID = 100
NACHOS_ID = 101
CHURROS_ID = 102
BURGER_ID = 200


class FakeGateway(IPaymentGateway):
    """Records charges; answers status queries from what the test settled."""

    def __init__(self):
        self.payments: dict[str, GatewayPayment] = {}
        self.charges: list[dict] = []
        self.status_queries: list[str] = []
        self.fail_charges = False
        self.closed = 0

    def settle(self, payment_id: str, status: str, amount_minor: int):
        self.payments[payment_id] = GatewayPayment(
            payment_id=payment_id, status=status, amount_minor=amount_minor, currency="SAR"
        )

    async def initiate_charge(self, amount_minor, instrument, callback_url):
        if self.fail_charges:
            raise GatewayError("Payment gateway unreachable")
        payment_id = f"pay_{len(self.charges) + 1}"
        self.charges.append({
            "id": payment_id,
            "amount": amount_minor,
            "callback_url": callback_url,
            "card": instrument.number,
        })
        return {
            "id": payment_id,
            "status": "initiated",
            "amount": amount_minor,
            "source": {"transaction_url": f"https://gateway.test/pay/{payment_id}"},
        }

    async def close(self):
        self.closed += 1

    async def query_status(self, payment_id):
        self.status_queries.append(payment_id)
        # Yield so concurrent callbacks really interleave
        await asyncio.sleep(0)
        if payment_id not in self.payments:
            raise GatewayError("Unknown payment")
        return self.payments[payment_id]


class Clock:
    def __init__(self, today: date):
        self.current = today

    def __call__(self) -> date:
        return self.current


async def seed(store: InMemoryTrucksyStore):
    await store.save_owner(Owner(
        owner_id=OWNER_ID, username="tacoowner",
        email="owner@example.com", phone_number="+966500000001",
    ))
    await store.save_owner(Owner(owner_id=OTHER_OWNER_ID, username="burgerowner"))
    await store.save_owner(Owner(
        owner_id=EXPIRED_OWNER_ID, username="lapsed",
        subscription=Subscription(
            is_subscribed=True,
            start_date=TODAY - timedelta(days=32),
            end_date=TODAY - timedelta(days=1),
            payment_id="pay_old",
        ),
    ))
    await store.save_account(LedgerAccount(
        user_id=OWNER_ID, holder_name="Taco Owner", number="4111111111111111",
        cvc="123", month=12, year=2030, balance_minor=2000,
    ))
    await store.save_account(LedgerAccount(
        user_id=EXPIRED_OWNER_ID, holder_name="Lapsed Owner", number="4000000000000002",
        cvc="321", month=1, year=2031, balance_minor=10000,
    ))

    await store.save_truck(FoodTruck(truck_id=TRUCK_ID, owner_id=OWNER_ID, name="Taco Loco", category="Mexican"))
    await store.save_truck(FoodTruck(
        truck_id=CLOSED_TRUCK_ID, owner_id=OWNER_ID, name="Night Bites", status=TruckStatus.CLOSED,
    ))
    await store.save_truck(FoodTruck(truck_id=OTHER_TRUCK_ID, owner_id=OTHER_OWNER_ID, name="Burger Bus"))

    await store.save_item(Item(item_id=TACO_ID, truck_id=TRUCK_ID, name="Taco", price_minor=1500))
    await store.save_item(Item(item_id=NACHOS_ID, truck_id=TRUCK_ID, name="Nachos", price_minor=1500))
    await store.save_item(Item(
        item_id=CHURROS_ID, truck_id=TRUCK_ID, name="Churros", price_minor=800, is_available=False,
    ))
    await store.save_item(Item(item_id=BURGER_ID, truck_id=OTHER_TRUCK_ID, name="Burger", price_minor=2500))

    await store.save_client(Client(
        client_id=CLIENT_ID, username="hungry",
        email="client@example.com", phone_number="+966500000005",
    ))
    await store.save_client(Client(client_id=CARDLESS_CLIENT_ID, username="nocard"))
    await store.save_account(LedgerAccount(
        user_id=CLIENT_ID, holder_name="Hungry Client", number="5200000000000007",
        cvc="456", month=6, year=2029, balance_minor=5000,
    ))


@pytest.fixture
def settings():
    return Settings(public_base_url="https://trucksy.test", subscription_fee_minor=3000)


@pytest.fixture
def store():
    store = InMemoryTrucksyStore()
    asyncio.run(seed(store))
    return store


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def outbox():
    return InMemoryOutbox()


@pytest.fixture
def clock():
    return Clock(TODAY)


@pytest.fixture
def checkout(store, gateway, bus, audit, settings, outbox, clock):
    asyncio.run(NotificationHooks(outbox, outbox, today=clock).register(bus))
    return CheckoutService(store, gateway, bus, audit, settings, today=clock)


# Order used across tests: 2 tacos + 1 nachos = 45.00 SAR
STANDARD_LINES = [
    {"itemId": TACO_ID, "quantity": 2},
    {"itemId": NACHOS_ID, "quantity": 1},
]


async def place_standard_order(checkout: CheckoutService):
    return await checkout.create_order(CLIENT_ID, TRUCK_ID, STANDARD_LINES)


async def place_and_pay(checkout: CheckoutService, gateway: FakeGateway):
    initiation = await place_standard_order(checkout)
    payment_id = initiation.gateway_response["id"]
    gateway.settle(payment_id, "paid", initiation.amount_minor)
    await checkout.handle_order_callback(initiation.subject_id, payment_id, "paid", "APPROVED")
    return initiation.subject_id, payment_id
