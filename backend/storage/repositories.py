"""
Storage - Interfaces and In-Memory Implementation
==================================================
Persistence seams for the payment core:
- ITrucksyStore: catalog/user lookups, order persistence, atomic unit of work
- ITransaction: reads-for-update and buffered writes inside one unit of work
- IAuditLog: append-only trail of every callback and transition

The in-memory store serializes work per subject key with one asyncio.Lock
per key (the Postgres store uses row locks instead) and applies buffered
writes only when the unit of work exits cleanly.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Optional

from pydantic import BaseModel, Field

from schemas.domain import Client, FoodTruck, Item, LedgerAccount, Order, Owner


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def owner_key(owner_id: int) -> str:
    return f"owner:{owner_id}"


def account_key(user_id: int) -> str:
    return f"account:{user_id}"


# =============================================================================
# AUDIT MODELS
# =============================================================================

class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status_changed"
    CHARGE_INITIATED = "charge.initiated"
    CALLBACK_RECEIVED = "callback.received"
    CALLBACK_REJECTED = "callback.rejected"
    CALLBACK_REPLAYED = "callback.replayed"
    PAYMENT_SETTLED = "payment.settled"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "subscription", "callback"
    entity_id: str
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    actor: str = "system"  # "system", "gateway", "owner", "client"


# =============================================================================
# INTERFACES
# =============================================================================

class ITransaction(ABC):
    """One atomic unit of work. Reads here see (and lock) the latest state."""

    @abstractmethod
    async def get_order(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_owner(self, owner_id: int) -> Optional[Owner]:
        pass

    @abstractmethod
    async def get_account(self, user_id: int) -> Optional[LedgerAccount]:
        pass

    @abstractmethod
    async def save_order(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def save_owner(self, owner: Owner) -> Owner:
        pass

    @abstractmethod
    async def save_account(self, account: LedgerAccount) -> LedgerAccount:
        pass


class ITrucksyStore(ABC):
    """Everything the payment core reads and writes."""

    @abstractmethod
    async def get_truck(self, truck_id: int) -> Optional[FoodTruck]:
        pass

    @abstractmethod
    async def get_item(self, item_id: int) -> Optional[Item]:
        pass

    @abstractmethod
    async def get_client(self, client_id: int) -> Optional[Client]:
        pass

    @abstractmethod
    async def get_owner(self, owner_id: int) -> Optional[Owner]:
        pass

    @abstractmethod
    async def get_account(self, user_id: int) -> Optional[LedgerAccount]:
        pass

    @abstractmethod
    async def get_order(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders_for_truck(self, truck_id: int) -> list[Order]:
        """Newest first."""
        pass

    @abstractmethod
    async def list_orders_for_client(self, client_id: int) -> list[Order]:
        """Newest first."""
        pass

    @abstractmethod
    async def add_order(self, order: Order) -> Order:
        """Insert a new order and return it with its assigned id."""
        pass

    @abstractmethod
    def atomic(self, *keys: str) -> "AsyncIterator[ITransaction]":
        """
        Async context manager around one unit of work.

        ``keys`` name the subjects being mutated (see order_key, owner_key,
        account_key). Work on overlapping keys is serialized. Writes become
        visible together on clean exit and are discarded on exception.
        """
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class _InMemoryTransaction(ITransaction):

    def __init__(self, store: "InMemoryTrucksyStore"):
        self._store = store
        self._orders: dict[int, Order] = {}
        self._owners: dict[int, Owner] = {}
        self._accounts: dict[int, LedgerAccount] = {}

    async def get_order(self, order_id: int) -> Optional[Order]:
        if order_id in self._orders:
            return self._orders[order_id].model_copy(deep=True)
        return await self._store.get_order(order_id)

    async def get_owner(self, owner_id: int) -> Optional[Owner]:
        if owner_id in self._owners:
            return self._owners[owner_id].model_copy(deep=True)
        return await self._store.get_owner(owner_id)

    async def get_account(self, user_id: int) -> Optional[LedgerAccount]:
        if user_id in self._accounts:
            return self._accounts[user_id].model_copy(deep=True)
        return await self._store.get_account(user_id)

    async def save_order(self, order: Order) -> Order:
        if order.order_id is None:
            raise ValueError("save_order needs a persisted order; use add_order")
        self._orders[order.order_id] = order.model_copy(deep=True)
        return order

    async def save_owner(self, owner: Owner) -> Owner:
        self._owners[owner.owner_id] = owner.model_copy(deep=True)
        return owner

    async def save_account(self, account: LedgerAccount) -> LedgerAccount:
        self._accounts[account.user_id] = account.model_copy(deep=True)
        return account

    def apply(self) -> None:
        self._store._orders.update(self._orders)
        self._store._owners.update(self._owners)
        self._store._accounts.update(self._accounts)


class InMemoryTrucksyStore(ITrucksyStore):
    """In-memory store with per-subject locking"""

    def __init__(self):
        self._trucks: dict[int, FoodTruck] = {}
        self._items: dict[int, Item] = {}
        self._clients: dict[int, Client] = {}
        self._owners: dict[int, Owner] = {}
        self._accounts: dict[int, LedgerAccount] = {}
        self._orders: dict[int, Order] = {}
        self._next_order_id = 1

        self._lock = asyncio.Lock()
        self._subject_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._subject_locks_mutex = asyncio.Lock()

    @staticmethod
    def _copy(entity):
        return entity.model_copy(deep=True) if entity is not None else None

    # --- seeding (catalog and users are managed elsewhere) ---

    async def save_truck(self, truck: FoodTruck) -> FoodTruck:
        async with self._lock:
            self._trucks[truck.truck_id] = self._copy(truck)
            return truck

    async def save_item(self, item: Item) -> Item:
        async with self._lock:
            self._items[item.item_id] = self._copy(item)
            return item

    async def save_client(self, client: Client) -> Client:
        async with self._lock:
            self._clients[client.client_id] = self._copy(client)
            return client

    async def save_owner(self, owner: Owner) -> Owner:
        async with self._lock:
            self._owners[owner.owner_id] = self._copy(owner)
            return owner

    async def save_account(self, account: LedgerAccount) -> LedgerAccount:
        async with self._lock:
            self._accounts[account.user_id] = self._copy(account)
            return account

    # --- reads ---

    async def get_truck(self, truck_id: int) -> Optional[FoodTruck]:
        async with self._lock:
            return self._copy(self._trucks.get(truck_id))

    async def get_item(self, item_id: int) -> Optional[Item]:
        async with self._lock:
            return self._copy(self._items.get(item_id))

    async def get_client(self, client_id: int) -> Optional[Client]:
        async with self._lock:
            return self._copy(self._clients.get(client_id))

    async def get_owner(self, owner_id: int) -> Optional[Owner]:
        async with self._lock:
            return self._copy(self._owners.get(owner_id))

    async def get_account(self, user_id: int) -> Optional[LedgerAccount]:
        async with self._lock:
            return self._copy(self._accounts.get(user_id))

    async def get_order(self, order_id: int) -> Optional[Order]:
        async with self._lock:
            return self._copy(self._orders.get(order_id))

    async def list_orders_for_truck(self, truck_id: int) -> list[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.truck_id == truck_id]
            return [self._copy(o) for o in sorted(orders, key=lambda o: o.order_id, reverse=True)]

    async def list_orders_for_client(self, client_id: int) -> list[Order]:
        async with self._lock:
            orders = [o for o in self._orders.values() if o.client_id == client_id]
            return [self._copy(o) for o in sorted(orders, key=lambda o: o.order_id, reverse=True)]

    # --- writes ---

    async def add_order(self, order: Order) -> Order:
        async with self._lock:
            stored = order.model_copy(update={"order_id": self._next_order_id}, deep=True)
            self._next_order_id += 1
            self._orders[stored.order_id] = stored
            return self._copy(stored)

    async def _get_subject_lock(self, key: str) -> asyncio.Lock:
        """Get or create lock for a subject key"""
        async with self._subject_locks_mutex:
            return self._subject_locks[key]

    @asynccontextmanager
    async def atomic(self, *keys: str) -> AsyncIterator[ITransaction]:
        # Sorted acquisition so overlapping key sets cannot deadlock
        locks = [await self._get_subject_lock(key) for key in sorted(set(keys))]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)

            tx = _InMemoryTransaction(self)
            yield tx
            async with self._lock:
                tx.apply()
        finally:
            for lock in reversed(acquired):
                lock.release()


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def get_by_entity(self, entity_type: str, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [
                e for e in self._logs
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
