import asyncio
from datetime import date

import pytest

from conftest import (
    CLIENT_ID,
    EXPIRED_OWNER_ID,
    OWNER_ID,
    TACO_ID,
    TRUCK_ID,
    place_and_pay,
    place_standard_order,
)
from errors import (
    AmountMismatchError,
    GatewayError,
    InsufficientFundsError,
    NotFoundError,
    PaymentMismatchError,
    PaymentNotPaidError,
    StatusMismatchError,
)
from schemas.domain import GatewayPayment, LedgerAccount, OrderStatus, ReconciliationOutcome, SubscriptionState
from schemas.event_definitions import EventType
from storage.repositories import AuditEventType


def test_verified_callback_pays_order_and_debits_once(checkout, gateway, store, bus, outbox):
    async def scenario():
        initiation = await place_standard_order(checkout)
        payment_id = initiation.gateway_response["id"]
        gateway.settle(payment_id, "paid", 4500)

        result = await checkout.handle_order_callback(initiation.subject_id, payment_id, "paid", "APPROVED")
        await bus.drain()
        return initiation, result

    initiation, result = asyncio.run(scenario())

    assert result.outcome == ReconciliationOutcome.SETTLED
    assert result.amount_minor == 4500
    assert result.status_text == "Order paid successfully: status: APPROVED"

    order = asyncio.run(store.get_order(initiation.subject_id))
    assert order.status == OrderStatus.PAID
    assert order.payment_id == "pay_1"
    assert order.paid_at is not None
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 500

    assert [e.event_type for e in bus.get_published_events()] == [EventType.ORDER_PAID]
    assert outbox.texts[0].phone_number == "+966500000001"
    assert outbox.texts[0].message == (
        "New Order Received! Order #1 from Taco Loco. Total: 45.00 SAR. "
        "Check your dashboard for details."
    )
    assert outbox.mails[0].to == "client@example.com"
    assert outbox.mails[0].filename == "Trucksy-Invoice-1.html"


def test_order_charge_uses_client_card_and_callback_url(checkout, gateway):
    initiation = asyncio.run(place_standard_order(checkout))

    assert gateway.charges == [{
        "id": "pay_1",
        "amount": 4500,
        "callback_url": "https://trucksy.test/api/v1/order/callback/1",
        "card": "5200000000000007",
    }]
    assert initiation.callback_url == "https://trucksy.test/api/v1/order/callback/1"


def test_failed_charge_leaves_order_placed(checkout, gateway, store):
    gateway.fail_charges = True

    with pytest.raises(GatewayError):
        asyncio.run(place_standard_order(checkout))

    order = asyncio.run(store.get_order(1))
    assert order.status == OrderStatus.PLACED
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 5000


def test_status_mismatch_changes_nothing(checkout, gateway, store, audit):
    async def scenario():
        initiation = await place_standard_order(checkout)
        gateway.settle("pay_1", "failed", 4500)
        with pytest.raises(StatusMismatchError):
            await checkout.handle_order_callback(initiation.subject_id, "pay_1", "paid", "APPROVED")
        return await audit.get_by_correlation_id("pay_1")

    entries = asyncio.run(scenario())

    assert asyncio.run(store.get_order(1)).status == OrderStatus.PLACED
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 5000
    rejected = [e for e in entries if e.event_type == AuditEventType.CALLBACK_REJECTED]
    assert rejected[0].metadata["code"] == "STATUS_MISMATCH"


def test_amount_mismatch_changes_nothing(checkout, gateway, store):
    async def scenario():
        await place_standard_order(checkout)
        gateway.settle("pay_1", "paid", 100)
        with pytest.raises(AmountMismatchError):
            await checkout.handle_order_callback(1, "pay_1", "paid", "APPROVED")

    asyncio.run(scenario())

    assert asyncio.run(store.get_order(1)).status == OrderStatus.PLACED
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 5000


def test_status_comparison_ignores_case(checkout, gateway, store):
    async def scenario():
        await place_standard_order(checkout)
        gateway.settle("pay_1", "paid", 4500)
        return await checkout.handle_order_callback(1, "pay_1", "PAID", "APPROVED")

    assert asyncio.run(scenario()).outcome == ReconciliationOutcome.SETTLED


def test_unpaid_payment_is_rejected(checkout, gateway, store):
    async def scenario():
        await place_standard_order(checkout)
        gateway.settle("pay_1", "failed", 4500)
        with pytest.raises(PaymentNotPaidError):
            await checkout.handle_order_callback(1, "pay_1", "failed", "DECLINED")

    asyncio.run(scenario())

    assert asyncio.run(store.get_order(1)).status == OrderStatus.PLACED


def test_unknown_order(checkout):
    with pytest.raises(NotFoundError):
        asyncio.run(checkout.handle_order_callback(999, "pay_x", "paid"))


def test_replayed_callback_is_a_noop(checkout, gateway, store, bus):
    async def scenario():
        order_id, payment_id = await place_and_pay(checkout, gateway)
        replay = await checkout.handle_order_callback(order_id, payment_id, "paid", "APPROVED")
        await bus.drain()
        return replay

    replay = asyncio.run(scenario())

    assert replay.outcome == ReconciliationOutcome.ALREADY_SETTLED
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 500
    # The replay is answered from local state
    assert gateway.status_queries == ["pay_1"]
    assert len(bus.get_published_events()) == 1


def test_concurrent_callbacks_debit_once(checkout, gateway, store, bus, audit):
    async def scenario():
        initiation = await place_standard_order(checkout)
        gateway.settle("pay_1", "paid", 4500)
        results = await asyncio.gather(
            checkout.handle_order_callback(initiation.subject_id, "pay_1", "paid", "APPROVED"),
            checkout.handle_order_callback(initiation.subject_id, "pay_1", "paid", "APPROVED"),
        )
        await bus.drain()
        return results, await audit.get_by_entity("order", "1")

    results, entries = asyncio.run(scenario())

    assert sorted(r.outcome for r in results) == [
        ReconciliationOutcome.ALREADY_SETTLED,
        ReconciliationOutcome.SETTLED,
    ]
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 500
    assert len(bus.get_published_events()) == 1
    assert sum(1 for e in entries if e.event_type == AuditEventType.PAYMENT_SETTLED) == 1


def test_concurrent_orders_never_overdraw(checkout, gateway, store):
    # Two 45.00 orders against one 50.00 balance: only one can settle
    async def scenario():
        first = await place_standard_order(checkout)
        second = await place_standard_order(checkout)
        gateway.settle("pay_1", "paid", 4500)
        gateway.settle("pay_2", "paid", 4500)
        return await asyncio.gather(
            checkout.handle_order_callback(first.subject_id, "pay_1", "paid"),
            checkout.handle_order_callback(second.subject_id, "pay_2", "paid"),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    assert sum(1 for r in results if isinstance(r, InsufficientFundsError)) == 1
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 500
    statuses = sorted(o.status.value for o in asyncio.run(store.list_orders_for_truck(TRUCK_ID)))
    assert statuses == ["PAID", "PLACED"]


def test_notification_failure_does_not_undo_payment(checkout, gateway, store, bus, outbox, monkeypatch):
    async def broken_send(*args, **kwargs):
        raise RuntimeError("whatsapp down")

    monkeypatch.setattr(outbox, "send_text", broken_send)

    async def scenario():
        result = await place_and_pay(checkout, gateway)
        await bus.drain()
        return result

    order_id, _ = asyncio.run(scenario())

    assert asyncio.run(store.get_order(order_id)).status == OrderStatus.PAID
    # The invoice mail still goes out
    assert len(outbox.mails) == 1


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

def fund_owner(store, balance_minor=10000):
    asyncio.run(store.save_account(LedgerAccount(
        user_id=OWNER_ID, holder_name="Taco Owner", number="4111111111111111",
        cvc="123", month=12, year=2030, balance_minor=balance_minor,
    )))


def test_verified_subscription_callback_activates(checkout, gateway, store, bus, outbox):
    fund_owner(store)

    async def scenario():
        initiation = await checkout.subscribe(OWNER_ID)
        payment_id = initiation.gateway_response["id"]
        gateway.settle(payment_id, "paid", 3000)
        result = await checkout.handle_subscription_callback(OWNER_ID, payment_id, "paid", "APPROVED")
        await bus.drain()
        return result

    result = asyncio.run(scenario())

    assert result.outcome == ReconciliationOutcome.SETTLED
    assert result.status_text == "Subscribed successfully: Monthly, status: APPROVED"
    assert result.subscription.state == SubscriptionState.ACTIVE
    assert result.subscription.start_date == date(2026, 3, 15)
    assert result.subscription.end_date == date(2026, 4, 15)

    assert asyncio.run(store.get_account(OWNER_ID)).balance_minor == 7000
    owner = asyncio.run(store.get_owner(OWNER_ID))
    assert owner.subscription.is_subscribed
    assert owner.subscription.payment_id == "pay_1"

    assert outbox.mails[0].filename == f"Trucksy-Subscription-Invoice-{OWNER_ID}.html"
    assert outbox.texts[-1].message == "Your Trucksy Premium subscription is active until 2026-04-15."


def test_subscription_amount_must_equal_fee(checkout, gateway, store):
    fund_owner(store)

    async def scenario():
        await checkout.subscribe(OWNER_ID)
        gateway.settle("pay_1", "paid", 1500)
        with pytest.raises(AmountMismatchError):
            await checkout.handle_subscription_callback(OWNER_ID, "pay_1", "paid")

    asyncio.run(scenario())

    assert not asyncio.run(store.get_owner(OWNER_ID)).subscription.is_subscribed
    assert asyncio.run(store.get_account(OWNER_ID)).balance_minor == 10000


def test_subscription_replay_after_cancel_is_a_noop(checkout, gateway, store):
    fund_owner(store)

    async def scenario():
        await checkout.subscribe(OWNER_ID)
        gateway.settle("pay_1", "paid", 3000)
        await checkout.handle_subscription_callback(OWNER_ID, "pay_1", "paid")
        await checkout.cancel_subscription(OWNER_ID)
        return await checkout.handle_subscription_callback(OWNER_ID, "pay_1", "paid")

    replay = asyncio.run(scenario())

    assert replay.outcome == ReconciliationOutcome.ALREADY_SETTLED
    assert asyncio.run(store.get_account(OWNER_ID)).balance_minor == 7000
    assert not asyncio.run(store.get_owner(OWNER_ID)).subscription.is_subscribed


def test_new_payment_renews_expired_subscription(checkout, gateway, store):
    async def scenario():
        initiation = await checkout.subscribe(EXPIRED_OWNER_ID)
        payment_id = initiation.gateway_response["id"]
        gateway.settle(payment_id, "paid", 3000)
        return await checkout.handle_subscription_callback(EXPIRED_OWNER_ID, payment_id, "paid")

    result = asyncio.run(scenario())

    assert result.outcome == ReconciliationOutcome.SETTLED
    assert result.subscription.end_date == date(2026, 4, 15)
    assert asyncio.run(store.get_account(EXPIRED_OWNER_ID)).balance_minor == 7000
    owner = asyncio.run(store.get_owner(EXPIRED_OWNER_ID))
    assert owner.subscription.payment_id == "pay_1"
    assert owner.subscription.pending_payment_id is None


def test_insufficient_funds_at_callback_aborts(checkout, gateway, store):
    fund_owner(store)
    asyncio.run(checkout.subscribe(OWNER_ID))
    # Balance dropped to 20.00 between subscribe and callback
    fund_owner(store, balance_minor=2000)
    gateway.settle("pay_1", "paid", 3000)

    with pytest.raises(InsufficientFundsError):
        asyncio.run(checkout.handle_subscription_callback(OWNER_ID, "pay_1", "paid"))

    assert asyncio.run(store.get_account(OWNER_ID)).balance_minor == 2000
    assert not asyncio.run(store.get_owner(OWNER_ID)).subscription.is_subscribed


# ---------------------------------------------------------------------------
# Payment correlation
# ---------------------------------------------------------------------------

def test_charge_id_is_stored_on_the_placed_order(checkout, store):
    asyncio.run(place_standard_order(checkout))

    order = asyncio.run(store.get_order(1))
    assert order.status == OrderStatus.PLACED
    assert order.payment_id == "pay_1"


def test_payment_of_one_order_cannot_settle_another(checkout, gateway, store, audit):
    async def scenario():
        first = await place_standard_order(checkout)
        second = await place_standard_order(checkout)
        gateway.settle("pay_1", "paid", 4500)
        await checkout.handle_order_callback(first.subject_id, "pay_1", "paid", "APPROVED")
        with pytest.raises(PaymentMismatchError):
            await checkout.handle_order_callback(second.subject_id, "pay_1", "paid", "APPROVED")
        return second.subject_id, await audit.get_by_entity("order", str(second.subject_id))

    second_id, entries = asyncio.run(scenario())

    second = asyncio.run(store.get_order(second_id))
    assert second.status == OrderStatus.PLACED
    assert second.payment_id == "pay_2"
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 500
    rejected = [e for e in entries if e.event_type == AuditEventType.CALLBACK_REJECTED]
    assert rejected[0].metadata["code"] == "PAYMENT_MISMATCH"


def test_order_payment_cannot_activate_a_subscription(checkout, gateway, store):
    # A settled 30.00 order payment replayed against the subscription callback
    async def scenario():
        initiation = await checkout.create_order(CLIENT_ID, TRUCK_ID, [{"itemId": TACO_ID, "quantity": 2}])
        gateway.settle("pay_1", "paid", 3000)
        await checkout.handle_order_callback(initiation.subject_id, "pay_1", "paid")
        with pytest.raises(PaymentMismatchError):
            await checkout.handle_subscription_callback(EXPIRED_OWNER_ID, "pay_1", "paid", "APPROVED")

    asyncio.run(scenario())

    assert asyncio.run(store.get_account(EXPIRED_OWNER_ID)).balance_minor == 10000
    owner = asyncio.run(store.get_owner(EXPIRED_OWNER_ID))
    assert owner.subscription.payment_id == "pay_old"
    assert owner.subscription.end_date < date(2026, 3, 15)


def test_only_the_latest_subscription_charge_activates(checkout, gateway, store):
    fund_owner(store)

    async def scenario():
        await checkout.subscribe(OWNER_ID)
        await checkout.subscribe(OWNER_ID)
        gateway.settle("pay_1", "paid", 3000)
        with pytest.raises(PaymentMismatchError):
            await checkout.handle_subscription_callback(OWNER_ID, "pay_1", "paid")

    asyncio.run(scenario())

    owner = asyncio.run(store.get_owner(OWNER_ID))
    assert owner.subscription.pending_payment_id == "pay_2"
    assert not owner.subscription.is_subscribed
    assert asyncio.run(store.get_account(OWNER_ID)).balance_minor == 10000


def test_gateway_record_for_another_payment_is_rejected(checkout, gateway, store):
    async def scenario():
        await place_standard_order(checkout)
        gateway.payments["pay_1"] = GatewayPayment(
            payment_id="pay_other", status="paid", amount_minor=4500, currency="SAR",
        )
        with pytest.raises(PaymentMismatchError):
            await checkout.handle_order_callback(1, "pay_1", "paid")

    asyncio.run(scenario())

    assert asyncio.run(store.get_order(1)).status == OrderStatus.PLACED
    assert asyncio.run(store.get_account(CLIENT_ID)).balance_minor == 5000
