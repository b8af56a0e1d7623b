"""
Postgres-backed store
=====================
Same contract as InMemoryTrucksyStore. A unit of work is one database
transaction; rows it reads are taken with SELECT ... FOR UPDATE so two
callbacks for the same order (or two debits of the same card) serialize
on the row lock.
"""

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import asyncpg
import structlog

from database import Database
from schemas.domain import (
    Client,
    FoodTruck,
    Item,
    LedgerAccount,
    Order,
    OrderLine,
    Owner,
    Subscription,
)
from storage.repositories import AuditLogEntry, IAuditLog, ITransaction, ITrucksyStore

logger = structlog.get_logger(component="postgres_store")


# =============================================================================
# ROW MAPPING
# =============================================================================

def _truck_from_row(row: asyncpg.Record) -> FoodTruck:
    return FoodTruck(
        truck_id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        category=row["category"],
        status=row["status"],
    )


def _item_from_row(row: asyncpg.Record) -> Item:
    return Item(
        item_id=row["id"],
        truck_id=row["food_truck_id"],
        name=row["name"],
        price_minor=row["price_minor"],
        is_available=row["is_available"],
    )


def _client_from_row(row: asyncpg.Record) -> Client:
    return Client(
        client_id=row["id"],
        username=row["username"],
        email=row["email"],
        phone_number=row["phone_number"],
    )


def _owner_from_row(row: asyncpg.Record) -> Owner:
    return Owner(
        owner_id=row["id"],
        username=row["username"],
        email=row["email"],
        phone_number=row["phone_number"],
        subscription=Subscription(
            is_subscribed=row["subscribed"],
            start_date=row["subscription_start_date"],
            end_date=row["subscription_end_date"],
            payment_id=row["subscription_payment_id"],
            pending_payment_id=row["subscription_pending_payment_id"],
        ),
    )


def _account_from_row(row: asyncpg.Record) -> LedgerAccount:
    return LedgerAccount(
        user_id=row["user_id"],
        holder_name=row["holder_name"],
        number=row["number"],
        cvc=row["cvc"],
        month=row["month"],
        year=row["year"],
        balance_minor=row["balance_minor"],
    )


def _order_from_row(row: asyncpg.Record) -> Order:
    lines = row["lines"]
    if isinstance(lines, str):
        lines = json.loads(lines)
    return Order(
        order_id=row["id"],
        client_id=row["client_id"],
        truck_id=row["food_truck_id"],
        status=row["status"],
        previous_status=row["previous_status"],
        lines=[OrderLine(**line) for line in lines],
        total_price_minor=row["total_price_minor"],
        payment_id=row["payment_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        paid_at=row["paid_at"],
        version=row["version"],
    )


def _lines_json(order: Order) -> str:
    return json.dumps([
        line.model_dump(include={"item_id", "item_name", "quantity", "unit_price_minor"})
        for line in order.lines
    ])


# =============================================================================
# TRANSACTION
# =============================================================================

class PostgresTransaction(ITransaction):

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def get_order(self, order_id: int) -> Optional[Order]:
        row = await self._conn.fetchrow(
            "SELECT * FROM orders WHERE id = $1 FOR UPDATE", order_id
        )
        return _order_from_row(row) if row else None

    async def get_owner(self, owner_id: int) -> Optional[Owner]:
        row = await self._conn.fetchrow(
            "SELECT * FROM owners WHERE id = $1 FOR UPDATE", owner_id
        )
        return _owner_from_row(row) if row else None

    async def get_account(self, user_id: int) -> Optional[LedgerAccount]:
        row = await self._conn.fetchrow(
            "SELECT * FROM bank_cards WHERE user_id = $1 FOR UPDATE", user_id
        )
        return _account_from_row(row) if row else None

    async def save_order(self, order: Order) -> Order:
        await self._conn.execute(
            """
            UPDATE orders
            SET status = $1, previous_status = $2, payment_id = $3,
                updated_at = $4, paid_at = $5, version = $6
            WHERE id = $7
            """,
            order.status.value,
            order.previous_status.value if order.previous_status else None,
            order.payment_id,
            order.updated_at,
            order.paid_at,
            order.version,
            order.order_id,
        )
        return order

    async def save_owner(self, owner: Owner) -> Owner:
        sub = owner.subscription
        await self._conn.execute(
            """
            UPDATE owners
            SET subscribed = $1, subscription_start_date = $2,
                subscription_end_date = $3, subscription_payment_id = $4,
                subscription_pending_payment_id = $5
            WHERE id = $6
            """,
            sub.is_subscribed,
            sub.start_date,
            sub.end_date,
            sub.payment_id,
            sub.pending_payment_id,
            owner.owner_id,
        )
        return owner

    async def save_account(self, account: LedgerAccount) -> LedgerAccount:
        await self._conn.execute(
            "UPDATE bank_cards SET balance_minor = $1 WHERE user_id = $2",
            account.balance_minor,
            account.user_id,
        )
        return account


# =============================================================================
# STORE
# =============================================================================

class PostgresTrucksyStore(ITrucksyStore):
    """Store over the shared Database pool"""

    async def get_truck(self, truck_id: int) -> Optional[FoodTruck]:
        row = await Database.fetch_one("SELECT * FROM food_trucks WHERE id = $1", truck_id)
        return _truck_from_row(row) if row else None

    async def get_item(self, item_id: int) -> Optional[Item]:
        row = await Database.fetch_one("SELECT * FROM items WHERE id = $1", item_id)
        return _item_from_row(row) if row else None

    async def get_client(self, client_id: int) -> Optional[Client]:
        row = await Database.fetch_one("SELECT * FROM clients WHERE id = $1", client_id)
        return _client_from_row(row) if row else None

    async def get_owner(self, owner_id: int) -> Optional[Owner]:
        row = await Database.fetch_one("SELECT * FROM owners WHERE id = $1", owner_id)
        return _owner_from_row(row) if row else None

    async def get_account(self, user_id: int) -> Optional[LedgerAccount]:
        row = await Database.fetch_one("SELECT * FROM bank_cards WHERE user_id = $1", user_id)
        return _account_from_row(row) if row else None

    async def get_order(self, order_id: int) -> Optional[Order]:
        row = await Database.fetch_one("SELECT * FROM orders WHERE id = $1", order_id)
        return _order_from_row(row) if row else None

    async def list_orders_for_truck(self, truck_id: int) -> list[Order]:
        rows = await Database.fetch_all(
            "SELECT * FROM orders WHERE food_truck_id = $1 ORDER BY id DESC", truck_id
        )
        return [_order_from_row(row) for row in rows]

    async def list_orders_for_client(self, client_id: int) -> list[Order]:
        rows = await Database.fetch_all(
            "SELECT * FROM orders WHERE client_id = $1 ORDER BY id DESC", client_id
        )
        return [_order_from_row(row) for row in rows]

    async def add_order(self, order: Order) -> Order:
        row = await Database.fetch_one(
            """
            INSERT INTO orders
            (client_id, food_truck_id, status, lines, total_price_minor,
             created_at, updated_at, version)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING id
            """,
            order.client_id,
            order.truck_id,
            order.status.value,
            _lines_json(order),
            order.total_price_minor,
            order.created_at,
            order.updated_at,
            order.version,
        )
        return order.model_copy(update={"order_id": row["id"]})

    @asynccontextmanager
    async def atomic(self, *keys: str) -> AsyncIterator[ITransaction]:
        # Row locks taken by the transaction's reads do the serializing
        async with Database.acquire() as conn:
            async with conn.transaction():
                yield PostgresTransaction(conn)


class PostgresAuditLog(IAuditLog):
    """Audit trail in the system_events table"""

    async def append(self, entry: AuditLogEntry) -> None:
        await Database.execute(
            """
            INSERT INTO system_events
            (id, correlation_id, timestamp, event_type, entity_type, entity_id, payload, actor)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            entry.log_id,
            entry.correlation_id,
            entry.timestamp,
            entry.event_type.value,
            entry.entity_type,
            entry.entity_id,
            json.dumps(entry.metadata, default=str),
            entry.actor,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await Database.fetch_all(
            "SELECT * FROM system_events WHERE correlation_id = $1 ORDER BY timestamp",
            correlation_id,
        )
        return [self._entry_from_row(row) for row in rows]

    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM system_events
            WHERE entity_type = $1 AND entity_id = $2
            ORDER BY timestamp
            """,
            entity_type,
            entity_id,
        )
        return [self._entry_from_row(row) for row in rows]

    @staticmethod
    def _entry_from_row(row: asyncpg.Record) -> AuditLogEntry:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return AuditLogEntry(
            log_id=str(row["id"]),
            correlation_id=row["correlation_id"],
            event_type=row["event_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            metadata=payload,
            timestamp=row["timestamp"],
            actor=row["actor"],
        )
