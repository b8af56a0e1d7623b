# storage/__init__.py
# ============================================================================
# TRUCKSY PAYMENTS — STORAGE MODULE
# ============================================================================
# Store and audit-log interfaces with in-memory and Postgres backends
# ============================================================================

from storage.repositories import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    ITransaction,
    ITrucksyStore,
    InMemoryAuditLog,
    InMemoryTrucksyStore,
    account_key,
    order_key,
    owner_key,
)

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "IAuditLog",
    "ITransaction",
    "ITrucksyStore",
    "InMemoryAuditLog",
    "InMemoryTrucksyStore",
    "account_key",
    "order_key",
    "owner_key",
]
