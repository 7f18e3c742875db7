"""
Inventory Ledger: product stock with a conditional decrement.

try_decrement() is one UPDATE whose WHERE clause carries the "stock >= quantity"
predicate, so concurrent callers for the same product serialize on the row lock
and stock can never go negative. The out_of_stock flip happens in the same
statement.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import asyncpg

from brandmart.models import Product

logger = logging.getLogger(__name__)

OUT_OF_STOCK = "out_of_stock"


@dataclass(frozen=True)
class DecrementResult:
    ok: bool
    remaining_stock: int


class InventoryLedger(Protocol):
    async def get_products(self, product_ids: Iterable[str]) -> dict[str, Product]: ...

    async def try_decrement(self, product_id: str, quantity: int) -> DecrementResult: ...

    async def set_stock(self, product_id: str, stock: int) -> Product | None: ...


class PostgresInventoryLedger:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def get_products(self, product_ids: Iterable[str]) -> dict[str, Product]:
        ids = list(dict.fromkeys(product_ids))
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM products WHERE product_id = ANY($1::varchar[]);",
                ids,
            )
        return {r["product_id"]: Product.model_validate(dict(r)) for r in rows}

    async def try_decrement(self, product_id: str, quantity: int) -> DecrementResult:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        async with self.pool.acquire() as conn:
            remaining = await conn.fetchval(
                """
                UPDATE products
                SET stock = stock - $2,
                    total_sales = total_sales + $2,
                    status = CASE WHEN stock - $2 = 0 THEN $3 ELSE status END,
                    last_stock_update = NOW()
                WHERE product_id = $1 AND stock >= $2
                RETURNING stock;
                """,
                product_id,
                quantity,
                OUT_OF_STOCK,
            )
            if remaining is not None:
                if remaining == 0:
                    logger.warning("Product %s is now out of stock", product_id)
                return DecrementResult(ok=True, remaining_stock=remaining)
            current = await conn.fetchval(
                "SELECT stock FROM products WHERE product_id = $1;", product_id
            )
        return DecrementResult(ok=False, remaining_stock=current or 0)

    async def set_stock(self, product_id: str, stock: int) -> Product | None:
        if stock < 0:
            raise ValueError("stock must be >= 0")
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE products
                SET stock = $2,
                    status = CASE
                        WHEN $2 = 0 THEN $3
                        WHEN status = $3 THEN 'active'
                        ELSE status
                    END,
                    last_stock_update = NOW()
                WHERE product_id = $1
                RETURNING *;
                """,
                product_id,
                stock,
                OUT_OF_STOCK,
            )
        return Product.model_validate(dict(row)) if row else None
