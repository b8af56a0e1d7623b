# pipeline/subscription_lifecycle.py
# ============================================================================
# TRUCKSY PAYMENTS — SUBSCRIPTION LIFECYCLE
# ============================================================================
#   UNSUBSCRIBED --(verified payment)--> ACTIVE(end_date)
#   ACTIVE --(end_date reached, seen on read)--> EXPIRED -> UNSUBSCRIBED
#   ACTIVE --(cancel)--> UNSUBSCRIBED
# Activation itself is done by the reconciliation engine.
# ============================================================================

from datetime import date
from typing import Callable

import structlog

from config import Settings
from errors import (
    InsufficientFundsError,
    MissingPaymentInstrumentError,
    NotFoundError,
    SubscriptionActiveError,
)
from pipeline.gateway_client import IPaymentGateway, charge_id
from schemas.domain import ChargeInitiation, Subscription, SubscriptionSnapshot, format_minor
from storage.repositories import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    ITrucksyStore,
    owner_key,
)

STATUS_VALID = "Subscription is valid"
STATUS_NEVER_SUBSCRIBED = "You are not subscribed yet"
STATUS_ENDED = "Subscription ended, please subscribe again"


def describe(subscription: Subscription) -> str:
    if subscription.is_subscribed:
        return STATUS_VALID
    if subscription.end_date is None:
        return STATUS_NEVER_SUBSCRIBED
    return STATUS_ENDED


class SubscriptionLifecycle:

    def __init__(
        self,
        store: ITrucksyStore,
        gateway: IPaymentGateway,
        audit_log: IAuditLog,
        settings: Settings,
        today: Callable[[], date] = date.today,
    ):
        self.store = store
        self.gateway = gateway
        self.audit = audit_log
        self.settings = settings
        self.today = today
        self._logger = structlog.get_logger(component="subscription_lifecycle")

    async def subscribe(self, owner_id: int) -> ChargeInitiation:
        """
        Start a subscription charge.

        Nothing is debited here; the balance check only keeps a doomed charge
        from reaching the gateway. The debit happens on the verified callback.
        """
        fee = self.settings.subscription_fee_minor

        owner = await self.store.get_owner(owner_id)
        if owner is None:
            raise NotFoundError("Owner not found", code="OWNER_NOT_FOUND")

        account = await self.store.get_account(owner_id)
        if account is None:
            raise MissingPaymentInstrumentError("Add a bank card to continue payment")

        if owner.subscription.is_active_on(self.today()):
            raise SubscriptionActiveError("The current subscription is still active (not expired)")

        if not account.can_cover(fee):
            self._logger.info("subscribe_rejected_insufficient_funds",
                              owner_id=owner_id,
                              fee_minor=fee)
            raise InsufficientFundsError(
                f"Insufficient funds. Required: {format_minor(fee, self.settings.currency)} for subscription"
            )

        callback_url = self.settings.subscription_callback_url(owner_id)
        response = await self.gateway.initiate_charge(fee, account, callback_url)

        # Only this charge may activate the subscription; a newer one replaces it
        payment_id = charge_id(response)
        async with self.store.atomic(owner_key(owner_id)) as tx:
            current = await tx.get_owner(owner_id)
            await tx.save_owner(current.model_copy(update={
                "subscription": current.subscription.awaiting(payment_id),
            }))

        await self.audit.append(AuditLogEntry(
            correlation_id=payment_id,
            event_type=AuditEventType.CHARGE_INITIATED,
            entity_type="subscription",
            entity_id=str(owner_id),
            metadata={"amount_minor": fee},
            actor="owner",
        ))
        self._logger.info("subscription_charge_initiated",
                          owner_id=owner_id,
                          payment_id=payment_id,
                          fee_minor=fee)

        return ChargeInitiation(
            subject_id=owner_id,
            amount_minor=fee,
            callback_url=callback_url,
            gateway_response=response,
        )

    async def get_status(self, owner_id: int) -> SubscriptionSnapshot:
        """Current snapshot. Persists the downgrade if the period is over."""
        owner = await self.store.get_owner(owner_id)
        if owner is None:
            raise NotFoundError("Owner not found", code="OWNER_NOT_FOUND")

        today = self.today()
        subscription = owner.subscription

        if subscription.is_expired_on(today):
            downgraded = False
            async with self.store.atomic(owner_key(owner_id)) as tx:
                current = await tx.get_owner(owner_id)
                if current.subscription.is_expired_on(today):
                    current = current.model_copy(update={
                        "subscription": current.subscription.downgraded(),
                    })
                    await tx.save_owner(current)
                    downgraded = True
                subscription = current.subscription

            # A concurrent read may have persisted the downgrade first
            if downgraded:
                self._logger.info("subscription_expired",
                                  owner_id=owner_id,
                                  end_date=subscription.end_date.isoformat() if subscription.end_date else None)
                await self.audit.append(AuditLogEntry(
                    correlation_id=f"owner-{owner_id}",
                    event_type=AuditEventType.SUBSCRIPTION_EXPIRED,
                    entity_type="subscription",
                    entity_id=str(owner_id),
                ))

        return SubscriptionSnapshot.of(subscription, describe(subscription), today)

    async def cancel(self, owner_id: int) -> SubscriptionSnapshot:
        """Drop to UNSUBSCRIBED now. No refund for the remaining period."""
        async with self.store.atomic(owner_key(owner_id)) as tx:
            owner = await tx.get_owner(owner_id)
            if owner is None:
                raise NotFoundError("Owner not found", code="OWNER_NOT_FOUND")

            owner = owner.model_copy(update={"subscription": owner.subscription.downgraded()})
            await tx.save_owner(owner)

        self._logger.info("subscription_cancelled", owner_id=owner_id)
        await self.audit.append(AuditLogEntry(
            correlation_id=f"owner-{owner_id}",
            event_type=AuditEventType.SUBSCRIPTION_CANCELLED,
            entity_type="subscription",
            entity_id=str(owner_id),
            actor="owner",
        ))

        return SubscriptionSnapshot.of(owner.subscription, describe(owner.subscription), self.today())
