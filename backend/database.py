"""
Database Module - The Black Box
================================
Persistence layer for the order/payment backend.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Schema migrations for products, orders, order items, payment intents,
  refunds and the system_events audit table (The Black Box)
- A transaction() context manager for multi-statement units of work

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

from config import CommerceConfig
from errors import StorageError

# Configure logger
logger = structlog.get_logger().bind(component="database")


MIGRATIONS = [
    # Catalog slice + inventory ledger
    """
    CREATE TABLE IF NOT EXISTS products (
        id VARCHAR(64) PRIMARY KEY,
        name TEXT NOT NULL,
        image_url TEXT,
        price NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
        inventory_count INTEGER NOT NULL DEFAULT 0 CHECK (inventory_count >= 0),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,

    # Orders table
    """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID PRIMARY KEY,
        order_number VARCHAR(40) NOT NULL UNIQUE,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_status VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_method VARCHAR(10) NOT NULL DEFAULT 'card',
        external_payment_reference VARCHAR(255),
        payment_error TEXT,
        customer_email VARCHAR(255) NOT NULL,
        customer_name VARCHAR(255) NOT NULL,
        customer_phone VARCHAR(50),
        shipping_address JSONB NOT NULL,
        billing_address JSONB NOT NULL,
        subtotal NUMERIC(12, 2) NOT NULL CHECK (subtotal >= 0),
        tax NUMERIC(12, 2) NOT NULL CHECK (tax >= 0),
        shipping NUMERIC(12, 2) NOT NULL CHECK (shipping >= 0),
        total NUMERIC(12, 2) NOT NULL CHECK (total >= 0),
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        notes TEXT,
        tracking_number VARCHAR(255),
        carrier_name VARCHAR(100),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        paid_at TIMESTAMPTZ,
        shipped_at TIMESTAMPTZ,
        delivered_at TIMESTAMPTZ,
        cancelled_at TIMESTAMPTZ,
        refunded_at TIMESTAMPTZ
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS order_items (
        id UUID PRIMARY KEY,
        order_id UUID NOT NULL REFERENCES orders(id),
        product_id VARCHAR(64) NOT NULL,
        product_name TEXT NOT NULL,
        product_image TEXT,
        quantity INTEGER NOT NULL CHECK (quantity >= 1),
        unit_price NUMERIC(12, 2) NOT NULL,
        line_total NUMERIC(12, 2) NOT NULL
    )
    """,

    # Payment Intent Registry
    """
    CREATE TABLE IF NOT EXISTS payment_intents (
        id VARCHAR(255) PRIMARY KEY,
        order_id UUID REFERENCES orders(id),
        payment_method VARCHAR(10) NOT NULL DEFAULT 'card',
        amount NUMERIC(12, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        status VARCHAR(30) NOT NULL,
        customer_email VARCHAR(255),
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    """
    CREATE TABLE IF NOT EXISTS refunds (
        id VARCHAR(255) PRIMARY KEY,
        payment_intent_id VARCHAR(255) NOT NULL REFERENCES payment_intents(id),
        amount NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
        reason TEXT,
        status VARCHAR(20) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # THE BLACK BOX: Unified event log
    """
    CREATE TABLE IF NOT EXISTS system_events (
        id UUID PRIMARY KEY,
        correlation_id VARCHAR(64),
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        event_type VARCHAR(50) NOT NULL,
        entity_type VARCHAR(30) NOT NULL,
        entity_id VARCHAR(255),
        payload JSONB NOT NULL DEFAULT '{}',
        severity VARCHAR(10) DEFAULT 'INFO'
    )
    """,

    # Create indexes
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_email ON orders(customer_email)",
    "CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_intents_order ON payment_intents(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_refunds_intent ON refunds(payment_intent_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_correlation ON system_events(correlation_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_type ON system_events(event_type)",
    "CREATE INDEX IF NOT EXISTS idx_events_timestamp ON system_events(timestamp DESC)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(self, config: CommerceConfig):
        self._config = config
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self):
        """Initialize the connection pool"""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self._config.database_url,
                min_size=self._config.db_min_pool_size,
                max_size=self._config.db_max_pool_size,
                command_timeout=self._config.db_command_timeout,
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("database_connect_failed", error=str(e))
            raise StorageError("Could not connect to the database") from e

        logger.info(
            "database_pool_initialized",
            min_size=self._config.db_min_pool_size,
            max_size=self._config.db_max_pool_size,
        )

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if not self._pool:
            await self.connect()

        async with self._pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        """Acquire a connection and run the block inside one transaction"""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetch_value(self, query: str, *args):
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def run_migrations(self):
        """Run database migrations"""
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_skipped", error=str(e))

        logger.info("database_migrations_complete", count=len(MIGRATIONS))
