"""
Order Store: persistence of order documents.

Current-state fields live in the orders row; PaymentFacts and ShipmentFacts are
JSONB sub-documents patched with a shallow merge; the status history is its own
append-only table. Status changes go through transition(), a single
conditional UPDATE guarded by the set of statuses the move is allowed from, so
the "already moved?" check and the write cannot interleave with a concurrent
request.
"""
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

import asyncpg
from pydantic_core import to_jsonable_python

from brandmart.db import next_order_number
from brandmart.models import Order, OrderStatus, StatusHistoryEntry, utcnow

# Scalar columns a transition may set alongside the new status
TRANSITION_FIELDS = frozenset({
    "paid_at",
    "shipped_at",
    "delivered_at",
    "cancelled_at",
    "cancellation_reason",
})

_SELECT_ORDER = """
    SELECT o.*,
        COALESCE((
            SELECT json_agg(json_build_object(
                'status', h.status,
                'timestamp', h.timestamp,
                'updated_by', h.updated_by,
                'notes', h.notes
            ) ORDER BY h.id)
            FROM order_status_history h
            WHERE h.order_id = o.order_id
        ), '[]'::json) AS status_history
    FROM orders o
"""


class OrderStore(Protocol):
    async def next_order_number(self) -> str: ...

    async def insert(self, order: Order) -> None: ...

    async def get(self, order_id: str) -> Order | None: ...

    async def get_by_number(self, order_number: str) -> Order | None: ...

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Order | None: ...

    async def list_for_user(self, user_id: str) -> list[Order]: ...

    async def list_all(
        self,
        statuses: Iterable[OrderStatus] | None = None,
        limit: int | None = None,
    ) -> list[Order]: ...

    async def transition(
        self,
        order_id: str,
        from_statuses: Iterable[OrderStatus],
        to_status: OrderStatus,
        *,
        fields: dict[str, Any] | None = None,
        payment: dict[str, Any] | None = None,
        shipment: dict[str, Any] | None = None,
    ) -> Order | None:
        """Move to to_status only if the current status is in from_statuses.
        Returns the updated order, or None when the guard did not match."""
        ...

    async def update_facts(
        self,
        order_id: str,
        *,
        payment: dict[str, Any] | None = None,
        shipment: dict[str, Any] | None = None,
    ) -> Order | None: ...

    async def append_history(self, order_id: str, entry: StatusHistoryEntry) -> None: ...


def _row_to_order(row: asyncpg.Record) -> Order:
    data = dict(row)
    return Order.model_validate(data)


class PostgresOrderStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def next_order_number(self) -> str:
        async with self.pool.acquire() as conn:
            return await next_order_number(conn)

    async def insert(self, order: Order) -> None:
        doc = order.model_dump(mode="json")
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO orders (
                        order_id, order_number, user_id, status, customer, items,
                        shipping_address, billing_address, payment_method,
                        payment_details, shipment_details,
                        items_price, shipping_price, tax_price, total_price, currency,
                        order_notes, insurance, created_at, updated_at
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                            $12, $13, $14, $15, $16, $17, $18, $19, $19);
                    """,
                    order.order_id,
                    order.order_number,
                    order.user_id,
                    order.status.value,
                    doc["customer"],
                    doc["items"],
                    doc["shipping_address"],
                    doc["billing_address"],
                    order.payment_method.value,
                    doc["payment_details"],
                    doc["shipment_details"],
                    order.items_price,
                    order.shipping_price,
                    order.tax_price,
                    order.total_price,
                    order.currency,
                    order.order_notes,
                    order.insurance,
                    order.created_at,
                )
                for entry in order.status_history:
                    await self._insert_history(conn, order.order_id, entry)

    async def _fetch_one(self, where: str, *args: Any) -> Order | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"{_SELECT_ORDER} WHERE {where};", *args)
        return _row_to_order(row) if row else None

    async def get(self, order_id: str) -> Order | None:
        return await self._fetch_one("o.order_id = $1", order_id)

    async def get_by_number(self, order_number: str) -> Order | None:
        return await self._fetch_one("o.order_number = $1", order_number)

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Order | None:
        return await self._fetch_one(
            "o.payment_details->>'gateway_order_id' = $1", gateway_order_id
        )

    async def list_for_user(self, user_id: str) -> list[Order]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"{_SELECT_ORDER} WHERE o.user_id = $1 ORDER BY o.created_at DESC;",
                user_id,
            )
        return [_row_to_order(r) for r in rows]

    async def list_all(
        self,
        statuses: Iterable[OrderStatus] | None = None,
        limit: int | None = None,
    ) -> list[Order]:
        query = _SELECT_ORDER
        args: list[Any] = []
        if statuses is not None:
            args.append([s.value for s in statuses])
            query += " WHERE o.status = ANY($1::varchar[])"
        query += " ORDER BY o.created_at DESC"
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query + ";", *args)
        return [_row_to_order(r) for r in rows]

    async def transition(
        self,
        order_id: str,
        from_statuses: Iterable[OrderStatus],
        to_status: OrderStatus,
        *,
        fields: dict[str, Any] | None = None,
        payment: dict[str, Any] | None = None,
        shipment: dict[str, Any] | None = None,
    ) -> Order | None:
        sets, args = self._patch_clauses(fields, payment, shipment)
        args.append(to_status.value)
        sets.append(f"status = ${len(args)}")
        args.append(order_id)
        id_param = len(args)
        args.append([s.value for s in from_statuses])
        from_param = len(args)
        async with self.pool.acquire() as conn:
            updated = await conn.fetchval(
                f"""
                UPDATE orders SET {", ".join(sets)}, updated_at = NOW()
                WHERE order_id = ${id_param} AND status = ANY(${from_param}::varchar[])
                RETURNING order_id;
                """,
                *args,
            )
        if updated is None:
            return None
        return await self.get(order_id)

    async def update_facts(
        self,
        order_id: str,
        *,
        payment: dict[str, Any] | None = None,
        shipment: dict[str, Any] | None = None,
    ) -> Order | None:
        sets, args = self._patch_clauses(None, payment, shipment)
        if not sets:
            return await self.get(order_id)
        args.append(order_id)
        async with self.pool.acquire() as conn:
            updated = await conn.fetchval(
                f"""
                UPDATE orders SET {", ".join(sets)}, updated_at = NOW()
                WHERE order_id = ${len(args)}
                RETURNING order_id;
                """,
                *args,
            )
        if updated is None:
            return None
        return await self.get(order_id)

    async def append_history(self, order_id: str, entry: StatusHistoryEntry) -> None:
        async with self.pool.acquire() as conn:
            await self._insert_history(conn, order_id, entry)

    @staticmethod
    async def _insert_history(
        conn: asyncpg.Connection, order_id: str, entry: StatusHistoryEntry
    ) -> None:
        await conn.execute(
            """
            INSERT INTO order_status_history (order_id, status, timestamp, updated_by, notes)
            VALUES ($1, $2, $3, $4, $5);
            """,
            order_id,
            entry.status.value,
            entry.timestamp,
            entry.updated_by,
            entry.notes,
        )

    @staticmethod
    def _patch_clauses(
        fields: dict[str, Any] | None,
        payment: dict[str, Any] | None,
        shipment: dict[str, Any] | None,
    ) -> tuple[list[str], list[Any]]:
        sets: list[str] = []
        args: list[Any] = []
        for column, value in (fields or {}).items():
            if column not in TRANSITION_FIELDS:
                raise ValueError(f"Column not settable by a transition: {column}")
            args.append(value)
            sets.append(f"{column} = ${len(args)}")
        if payment:
            args.append(to_jsonable_python(payment))
            sets.append(f"payment_details = payment_details || ${len(args)}::jsonb")
        if shipment:
            args.append(to_jsonable_python(shipment))
            sets.append(
                f"shipment_details = COALESCE(shipment_details, '{{}}'::jsonb) || ${len(args)}::jsonb"
            )
        return sets, args


def history_entry(status: OrderStatus, updated_by: str, notes: str | None = None,
                  timestamp: datetime | None = None) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        status=status,
        timestamp=timestamp or utcnow(),
        updated_by=updated_by,
        notes=notes,
    )
