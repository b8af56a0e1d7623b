# services/data_hooks.py
# ============================================================================
# TRUCKSY PAYMENTS — NOTIFICATION HOOKS
# ============================================================================
# Event-bus handlers that run after a payment or status change committed.
# Every send is best-effort: failures are logged and swallowed.
# ============================================================================

from datetime import date
from typing import Callable, Optional

import structlog

from pipeline.event_bus_adapter import IEventBus
from schemas.domain import format_minor
from schemas.event_definitions import EventType, OrderEvent, SubscriptionActivatedEvent
from services.invoices import (
    order_email_html,
    order_invoice_fields,
    render_order_invoice,
    render_subscription_invoice,
    subscription_email_html,
    subscription_invoice_fields,
)
from services.notifications import IMailSender, ITextSender

logger = structlog.get_logger(component="data_hooks")


class NotificationHooks:

    def __init__(
        self,
        text_sender: ITextSender,
        mail_sender: IMailSender,
        currency: str = "SAR",
        today: Callable[[], date] = date.today,
    ):
        self.texts = text_sender
        self.mail = mail_sender
        self.currency = currency
        self.today = today

    async def register(self, bus: IEventBus) -> list[str]:
        return [
            await bus.subscribe([EventType.ORDER_PAID], self.on_order_paid),
            await bus.subscribe([EventType.ORDER_READY], self.on_order_ready),
            await bus.subscribe([EventType.ORDER_COMPLETED], self.on_order_completed),
            await bus.subscribe([EventType.SUBSCRIPTION_ACTIVATED], self.on_subscription_activated),
        ]

    async def _text(self, phone: Optional[str], message: str, **context) -> None:
        if not phone or not phone.strip():
            return
        try:
            await self.texts.send_text(phone, message)
        except Exception as e:
            logger.warning("text_notification_failed", error=str(e), **context)

    async def _mail(self, to: Optional[str], subject: str, html: str, filename: str,
                    render: Callable[[], bytes], **context) -> None:
        if not to or not to.strip():
            return
        try:
            await self.mail.send_email_with_attachment(to, subject, html, filename, render())
        except Exception as e:
            logger.warning("invoice_email_failed", error=str(e), **context)

    async def on_order_paid(self, event: OrderEvent) -> None:
        """Alert the truck owner and mail the client an invoice."""
        order, truck = event.order, event.food_truck

        if event.owner is not None:
            await self._text(
                event.owner.phone_number,
                f"New Order Received! Order #{order.order_id} from {truck.name}. "
                f"Total: {format_minor(order.total_price_minor, self.currency)}. "
                "Check your dashboard for details.",
                order_id=order.order_id,
            )

        if event.client is not None:
            fields = order_invoice_fields(
                order, truck, event.client, order.payment_id or event.correlation_id,
                self.today(), self.currency,
            )
            await self._mail(
                event.client.email,
                f"Your Trucksy order invoice #{order.order_id}",
                order_email_html(order, event.gateway_message, self.currency),
                f"Trucksy-Invoice-{order.order_id}.html",
                lambda: render_order_invoice(fields),
                order_id=order.order_id,
            )

    async def on_order_ready(self, event: OrderEvent) -> None:
        if event.client is None:
            return
        truck_name = event.food_truck.name or "Food Truck"
        await self._text(
            event.client.phone_number,
            f"Your order #{event.order.order_id} from {truck_name} is READY for pickup.",
            order_id=event.order.order_id,
        )

    async def on_order_completed(self, event: OrderEvent) -> None:
        if event.client is None:
            return
        truck_name = event.food_truck.name or "Food Truck"
        await self._text(
            event.client.phone_number,
            f"Your order #{event.order.order_id} from {truck_name} is COMPLETED. Enjoy!",
            order_id=event.order.order_id,
        )

    async def on_subscription_activated(self, event: SubscriptionActivatedEvent) -> None:
        owner, subscription = event.owner, event.subscription
        fields = subscription_invoice_fields(
            owner, subscription, event.fee_minor,
            subscription.payment_id or event.correlation_id,
            self.today(), self.currency,
        )

        await self._mail(
            owner.email,
            "Your Trucksy Subscription Invoice - Welcome to Premium!",
            subscription_email_html(fields),
            f"Trucksy-Subscription-Invoice-{owner.owner_id}.html",
            lambda: render_subscription_invoice(fields),
            owner_id=owner.owner_id,
        )
        await self._text(
            owner.phone_number,
            f"Your Trucksy Premium subscription is active until {fields['nextBillingDate']}.",
            owner_id=owner.owner_id,
        )
