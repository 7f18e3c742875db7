"""
Async Postgres: orders (current state per order, sub-records as JSONB),
order_status_history (append-only audit trail) and products (stock ledger).
"""
import json

import asyncpg

from brandmart.config import settings

_pool: asyncpg.Pool | None = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    for typename in ("json", "jsonb"):
        await conn.set_type_codec(
            typename,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=10,
            command_timeout=60,
            init=_init_connection,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("CREATE SEQUENCE IF NOT EXISTS order_number_seq START 1;")
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS products (
                product_id VARCHAR(64) PRIMARY KEY,
                title TEXT NOT NULL,
                price NUMERIC(12, 2) NOT NULL,
                image TEXT,
                sku VARCHAR(128),
                shipping_category VARCHAR(128),
                weight_kg DOUBLE PRECISION NOT NULL DEFAULT 1,
                dimensions JSONB NOT NULL DEFAULT '{}'::jsonb,
                hsn_code VARCHAR(32),
                stock INT NOT NULL DEFAULT 0 CHECK (stock >= 0),
                reserved_stock INT NOT NULL DEFAULT 0,
                total_sales INT NOT NULL DEFAULT 0,
                status VARCHAR(32) NOT NULL DEFAULT 'active',
                last_stock_update TIMESTAMPTZ
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                order_id VARCHAR(64) PRIMARY KEY,
                order_number VARCHAR(32) NOT NULL UNIQUE,
                user_id VARCHAR(64) NOT NULL,
                status VARCHAR(32) NOT NULL,
                customer JSONB NOT NULL,
                items JSONB NOT NULL,
                shipping_address JSONB NOT NULL,
                billing_address JSONB,
                payment_method VARCHAR(16) NOT NULL,
                payment_details JSONB NOT NULL DEFAULT '{}'::jsonb,
                shipment_details JSONB,
                items_price NUMERIC(12, 2) NOT NULL,
                shipping_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
                tax_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
                total_price NUMERIC(12, 2) NOT NULL,
                currency VARCHAR(8) NOT NULL DEFAULT 'INR',
                paid_at TIMESTAMPTZ,
                shipped_at TIMESTAMPTZ,
                delivered_at TIMESTAMPTZ,
                cancelled_at TIMESTAMPTZ,
                cancellation_reason TEXT,
                order_notes TEXT,
                insurance BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_user_status ON orders(user_id, status);
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_gateway_order_id
            ON orders((payment_details->>'gateway_order_id'));
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_awb_number
            ON orders((shipment_details->>'awb_number'));
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_status_history (
                id BIGSERIAL PRIMARY KEY,
                order_id VARCHAR(64) NOT NULL REFERENCES orders(order_id),
                status VARCHAR(32) NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                updated_by VARCHAR(64) NOT NULL,
                notes TEXT
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_status_history_order_id
            ON order_status_history(order_id, id);
        """)


async def next_order_number(conn: asyncpg.Connection) -> str:
    value = await conn.fetchval("SELECT nextval('order_number_seq');")
    return f"ORD{value:06d}"
