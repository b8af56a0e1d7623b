"""
Database Module
===============
AsyncPG connection pool and schema migrations for the Postgres backend.

Tables:
- food_trucks, items, clients, owners, bank_cards: read by the payment core
- orders: written by order creation and the lifecycle
- system_events: the audit trail of callbacks and transitions

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

from config import get_settings

logger = structlog.get_logger(component="database")


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, dsn: Optional[str] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        settings = get_settings()
        try:
            cls._pool = await asyncpg.create_pool(
                dsn or settings.database_url,
                min_size=settings.db_min_pool_size,
                max_size=settings.db_max_pool_size,
            )
            cls._initialized = True
            logger.info("Database connection pool initialized")

            await cls._run_migrations()

        except Exception as e:
            logger.error("Failed to initialize database", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("Database connection pool closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            """
            CREATE TABLE IF NOT EXISTS food_trucks (
                id SERIAL PRIMARY KEY,
                owner_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                category VARCHAR(50),
                status VARCHAR(10) NOT NULL DEFAULT 'OPEN'
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS items (
                id SERIAL PRIMARY KEY,
                food_truck_id INTEGER NOT NULL REFERENCES food_trucks(id),
                name TEXT NOT NULL,
                price_minor BIGINT NOT NULL CHECK (price_minor >= 0),
                is_available BOOLEAN NOT NULL DEFAULT TRUE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS clients (
                id SERIAL PRIMARY KEY,
                username VARCHAR(50) NOT NULL,
                email TEXT,
                phone_number VARCHAR(20)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS owners (
                id SERIAL PRIMARY KEY,
                username VARCHAR(50) NOT NULL,
                email TEXT,
                phone_number VARCHAR(20),
                subscribed BOOLEAN NOT NULL DEFAULT FALSE,
                subscription_start_date DATE,
                subscription_end_date DATE,
                subscription_payment_id VARCHAR(255),
                subscription_pending_payment_id VARCHAR(255)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS bank_cards (
                user_id INTEGER PRIMARY KEY,
                holder_name TEXT NOT NULL,
                number VARCHAR(19) NOT NULL,
                cvc VARCHAR(4) NOT NULL,
                month INTEGER NOT NULL,
                year INTEGER NOT NULL,
                balance_minor BIGINT NOT NULL CHECK (balance_minor >= 0)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS orders (
                id SERIAL PRIMARY KEY,
                client_id INTEGER NOT NULL,
                food_truck_id INTEGER NOT NULL REFERENCES food_trucks(id),
                status VARCHAR(20) NOT NULL DEFAULT 'PLACED',
                previous_status VARCHAR(20),
                lines JSONB NOT NULL DEFAULT '[]',
                total_price_minor BIGINT NOT NULL CHECK (total_price_minor >= 0),
                payment_id VARCHAR(255),
                created_at TIMESTAMP NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
                paid_at TIMESTAMP,
                version INTEGER NOT NULL DEFAULT 1
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS system_events (
                id UUID PRIMARY KEY,
                correlation_id VARCHAR(64) NOT NULL,
                timestamp TIMESTAMP NOT NULL DEFAULT NOW(),
                event_type VARCHAR(50) NOT NULL,
                entity_type VARCHAR(20) NOT NULL,
                entity_id VARCHAR(64) NOT NULL,
                payload JSONB NOT NULL DEFAULT '{}',
                actor VARCHAR(20) NOT NULL DEFAULT 'system'
            )
            """,

            "ALTER TABLE owners ADD COLUMN IF NOT EXISTS subscription_pending_payment_id VARCHAR(255)",

            "CREATE INDEX IF NOT EXISTS idx_orders_truck ON orders(food_truck_id, id DESC)",
            "CREATE INDEX IF NOT EXISTS idx_orders_client ON orders(client_id, id DESC)",
            "CREATE INDEX IF NOT EXISTS idx_events_correlation ON system_events(correlation_id)",
            "CREATE INDEX IF NOT EXISTS idx_events_entity ON system_events(entity_type, entity_id)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    if "already exists" not in str(e):
                        logger.warning("Migration warning", error=str(e))

        logger.info("Database migrations complete")


async def init_database(dsn: Optional[str] = None):
    """Initialize database on app startup"""
    await Database.initialize(dsn)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
