import asyncio
import base64
from datetime import date
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest

from config import Settings
from pipeline.event_bus_adapter import InMemoryEventBus
from schemas.domain import Client, FoodTruck, Order, OrderLine, OrderStatus, Owner, Subscription
from schemas.event_definitions import EventType, OrderEvent, SubscriptionActivatedEvent
from services.data_hooks import NotificationHooks
from services.invoices import (
    order_invoice_fields,
    render_order_invoice,
    subscription_invoice_fields,
)
from services.notifications import InMemoryOutbox, SendGridMailSender, WhatsAppSender, build_senders

TRUCK = FoodTruck(truck_id=10, owner_id=1, name="Taco Loco")
CLIENT = Client(client_id=5, username="hungry", email="client@example.com", phone_number="+966500000005")
OWNER = Owner(owner_id=1, username="tacoowner", email="owner@example.com", phone_number="+966500000001")
ORDER = Order(
    order_id=7,
    client_id=5,
    truck_id=10,
    status=OrderStatus.PAID,
    payment_id="pay_7",
    lines=[OrderLine(item_id=100, item_name="Taco <Special>", quantity=2, unit_price_minor=1500)],
    total_price_minor=3000,
)


def test_order_invoice_fields_and_document():
    fields = order_invoice_fields(ORDER, TRUCK, CLIENT, "pay_7", date(2026, 3, 15))

    assert fields["orderId"] == 7
    assert fields["paymentId"] == "pay_7"
    assert fields["clientName"] == "hungry"
    assert fields["orderLines"][0]["lineTotal"] == "30.00 SAR"
    assert fields["totalPriceFormatted"] == "30.00 SAR"

    document = render_order_invoice(fields).decode("utf-8")
    assert "Invoice #7" in document
    assert "Taco &lt;Special&gt;" in document
    assert "30.00 SAR" in document


def test_subscription_invoice_id_and_billing_date():
    subscription = Subscription().activated(date(2026, 3, 15), "pay_s")

    fields = subscription_invoice_fields(OWNER, subscription, 3000, "pay_s", date(2026, 3, 15))

    assert fields["subscriptionId"] == "SUB-1-2026"
    assert fields["subscriptionPlan"] == "Monthly Premium"
    assert fields["subscriptionFee"] == "30.00 SAR"
    assert fields["nextBillingDate"] == "2026-04-15"


def test_hooks_skip_missing_contact_details():
    outbox = InMemoryOutbox()
    hooks = NotificationHooks(outbox, outbox)
    silent_client = CLIENT.model_copy(update={"phone_number": "  ", "email": None})

    asyncio.run(hooks.on_order_ready(OrderEvent(
        event_type=EventType.ORDER_READY, order=ORDER, food_truck=TRUCK, client=silent_client,
    )))
    asyncio.run(hooks.on_order_paid(OrderEvent(
        event_type=EventType.ORDER_PAID, order=ORDER, food_truck=TRUCK, client=silent_client,
    )))

    assert outbox.texts == []
    assert outbox.mails == []


def test_subscription_hook_sends_invoice_and_text():
    outbox = InMemoryOutbox()
    hooks = NotificationHooks(outbox, outbox, today=lambda: date(2026, 3, 15))
    subscription = Subscription().activated(date(2026, 3, 15), "pay_s")

    asyncio.run(hooks.on_subscription_activated(SubscriptionActivatedEvent(
        owner=OWNER, subscription=subscription, fee_minor=3000, gateway_message="APPROVED",
    )))

    assert outbox.mails[0].to == "owner@example.com"
    assert outbox.mails[0].subject == "Your Trucksy Subscription Invoice - Welcome to Premium!"
    assert b"SUB-1-2026" in outbox.mails[0].attachment
    assert outbox.texts[0].message == "Your Trucksy Premium subscription is active until 2026-04-15."


def test_handler_errors_never_reach_the_publisher():
    bus = InMemoryEventBus()
    calls = []

    async def broken(event):
        raise RuntimeError("mail down")

    async def healthy(event):
        calls.append(event.event_id)

    async def scenario():
        await bus.subscribe([EventType.ORDER_READY], broken)
        await bus.subscribe([EventType.ORDER_READY], healthy)
        published = await bus.publish(OrderEvent(
            event_type=EventType.ORDER_READY, order=ORDER, food_truck=TRUCK,
        ))
        await bus.drain()
        return published

    assert asyncio.run(scenario()) is True
    assert len(calls) == 1


def test_unsubscribe_stops_delivery():
    bus = InMemoryEventBus()
    calls = []

    async def handler(event):
        calls.append(event)

    async def scenario():
        sub_id = await bus.subscribe([EventType.ORDER_COMPLETED], handler)
        assert await bus.unsubscribe(sub_id)
        await bus.publish(OrderEvent(event_type=EventType.ORDER_COMPLETED, order=ORDER, food_truck=TRUCK))
        await bus.drain()

    asyncio.run(scenario())

    assert calls == []
    assert len(bus.get_published_events()) == 1


def test_whatsapp_sender_posts_token_recipient_and_body():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["form"] = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        return httpx.Response(200, json={"sent": "true"})

    sender = WhatsAppSender("https://wa.test/instance1/", "tok", transport=httpx.MockTransport(handler))

    async def scenario():
        try:
            await sender.send_text("+966500000005", "hello")
        finally:
            await sender.close()

    asyncio.run(scenario())

    assert seen["url"] == "https://wa.test/instance1/messages/chat"
    assert seen["form"] == {"token": "tok", "to": "+966500000005", "body": "hello"}


def test_whatsapp_sender_raises_on_http_error():
    sender = WhatsAppSender("https://wa.test", "tok",
                            transport=httpx.MockTransport(lambda request: httpx.Response(401)))

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(sender.send_text("+966500000005", "hello"))


def test_unconfigured_senders_share_the_outbox():
    text_sender, mail_sender = build_senders(Settings())

    assert isinstance(text_sender, InMemoryOutbox)
    assert text_sender is mail_sender


def test_configured_mail_goes_through_sendgrid():
    _, mail_sender = build_senders(Settings(sendgrid_api_key="SG.test"))

    assert isinstance(mail_sender, SendGridMailSender)


class RecordingSendGrid:
    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message.get())
        return SimpleNamespace(status_code=202, headers={"X-Message-Id": "msg_1"})


def test_sendgrid_sender_attaches_invoice():
    client = RecordingSendGrid()
    sender = SendGridMailSender("SG.test", mail_from="billing@trucksy.app", client=client)

    asyncio.run(sender.send_email_with_attachment(
        "client@example.com", "Your invoice", "<p>Thanks</p>", "Trucksy-Invoice-7.html", b"<html>7</html>",
    ))

    body = client.sent[0]
    assert body["from"]["email"] == "billing@trucksy.app"
    assert body["subject"] == "Your invoice"
    assert body["personalizations"][0]["to"] == [{"email": "client@example.com"}]
    assert body["content"] == [{"type": "text/html", "value": "<p>Thanks</p>"}]
    attachment = body["attachments"][0]
    assert attachment["filename"] == "Trucksy-Invoice-7.html"
    assert attachment["type"] == "text/html"
    assert attachment["disposition"] == "attachment"
    assert base64.b64decode(attachment["content"]) == b"<html>7</html>"


def test_event_history_is_bounded():
    bus = InMemoryEventBus(history_size=2)

    async def scenario():
        for event_type in (EventType.ORDER_PAID, EventType.ORDER_READY, EventType.ORDER_COMPLETED):
            await bus.publish(OrderEvent(event_type=event_type, order=ORDER, food_truck=TRUCK))

    asyncio.run(scenario())

    assert [e.event_type for e in bus.get_published_events()] == [
        EventType.ORDER_READY,
        EventType.ORDER_COMPLETED,
    ]


def test_history_can_be_disabled():
    bus = InMemoryEventBus(history_size=0)

    asyncio.run(bus.publish(OrderEvent(event_type=EventType.ORDER_PAID, order=ORDER, food_truck=TRUCK)))

    assert bus.get_published_events() == []
