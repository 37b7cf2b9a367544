# storage/postgres.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — POSTGRES STORES
# ============================================================================
# asyncpg implementations of the storage interfaces. Every asyncpg failure is
# translated into StorageError; status transitions are conditional UPDATEs.
# ============================================================================

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg
import structlog

from database import Database
from errors import NotFoundError, OrderNumberConflict, StorageError
from schemas.orders import (
    Address,
    AuditEventType,
    AuditLogEntry,
    IntentStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentIntentRecord,
    PaymentStatus,
    Product,
    RefundRecord,
    RefundStatus,
)
from storage.interfaces import (
    MUTABLE_ORDER_FIELDS,
    IAuditLog,
    IInventoryLedger,
    IOrderRepository,
    IPaymentIntentRepository,
    IRefundRepository,
)

logger = structlog.get_logger().bind(component="postgres_store")


# command_timeout raises asyncio.TimeoutError, a dropped connection OSError or InterfaceError
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, asyncio.TimeoutError, OSError)


@asynccontextmanager
async def _storage_errors(operation: str):
    """Translate driver errors into StorageError."""
    try:
        yield
    except DRIVER_ERRORS as e:
        logger.error("storage_operation_failed", operation=operation, error=str(e),
                     error_type=type(e).__name__)
        raise StorageError(f"Storage failure during {operation}") from e


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _order_from_row(row: asyncpg.Record, items: Optional[List[asyncpg.Record]] = None) -> Order:
    data = dict(row)
    data["id"] = str(data["id"])
    data["shipping_address"] = Address(**_json(data["shipping_address"]))
    data["billing_address"] = Address(**_json(data["billing_address"]))
    data["items"] = [_item_from_row(r) for r in (items or [])]
    return Order(**data)


def _item_from_row(row: asyncpg.Record) -> OrderItem:
    data = dict(row)
    data["id"] = str(data["id"])
    data["order_id"] = str(data["order_id"])
    return OrderItem(**data)


def _intent_from_row(row: asyncpg.Record) -> PaymentIntentRecord:
    data = dict(row)
    if data.get("order_id") is not None:
        data["order_id"] = str(data["order_id"])
    return PaymentIntentRecord(**data)


# =============================================================================
# ORDERS
# =============================================================================

ORDER_INSERT = """
    INSERT INTO orders (
        id, order_number, status, payment_status, payment_method,
        external_payment_reference, customer_email, customer_name, customer_phone,
        shipping_address, billing_address, subtotal, tax, shipping, total,
        currency, notes, created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19)
"""

ITEM_INSERT = """
    INSERT INTO order_items (
        id, order_id, product_id, product_name, product_image,
        quantity, unit_price, line_total
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
"""


class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Database):
        self._db = db

    async def create(self, order: Order) -> Order:
        try:
            async with _storage_errors("create_order"):
                async with self._db.transaction() as conn:
                    await conn.execute(
                        ORDER_INSERT,
                        order.id,
                        order.order_number,
                        order.status.value,
                        order.payment_status.value,
                        order.payment_method.value,
                        order.external_payment_reference,
                        order.customer_email,
                        order.customer_name,
                        order.customer_phone,
                        order.shipping_address.model_dump_json(),
                        order.billing_address.model_dump_json(),
                        order.subtotal,
                        order.tax,
                        order.shipping,
                        order.total,
                        order.currency,
                        order.notes,
                        order.created_at,
                        order.updated_at,
                    )
                    await conn.executemany(
                        ITEM_INSERT,
                        [
                            (
                                item.id, item.order_id, item.product_id, item.product_name,
                                item.product_image, item.quantity, item.unit_price, item.line_total,
                            )
                            for item in order.items
                        ],
                    )
        except StorageError as e:
            cause = e.__cause__
            if isinstance(cause, asyncpg.UniqueViolationError) and "order_number" in str(cause):
                raise OrderNumberConflict(f"Order number {order.order_number} already exists") from cause
            raise
        return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with _storage_errors("get_order"):
            async with self._db.acquire() as conn:
                row = await conn.fetchrow("SELECT * FROM orders WHERE id = $1::uuid", order_id)
                if row is None:
                    return None
                items = await conn.fetch(
                    "SELECT * FROM order_items WHERE order_id = $1::uuid ORDER BY product_name",
                    order_id,
                )
        return _order_from_row(row, items)

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        conditions = []
        params: List[Any] = []

        if status:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        if email:
            params.append(email)
            conditions.append(f"customer_email = ${len(params)}")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with _storage_errors("list_orders"):
            async with self._db.acquire() as conn:
                total = await conn.fetchval(f"SELECT COUNT(*) FROM orders {where_clause}", *params)
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM orders
                    {where_clause}
                    ORDER BY created_at DESC
                    LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                    """,
                    *params, limit, (page - 1) * limit,
                )
                items = await conn.fetch(
                    "SELECT * FROM order_items WHERE order_id = ANY($1::uuid[])",
                    [row["id"] for row in rows],
                )

        by_order: Dict[str, List[asyncpg.Record]] = {}
        for item in items:
            by_order.setdefault(str(item["order_id"]), []).append(item)
        return [_order_from_row(row, by_order.get(str(row["id"]))) for row in rows], total

    async def compare_and_update(
        self,
        order_id: str,
        expected_statuses: Iterable[OrderStatus],
        updates: Dict[str, Any],
        expected_payment_statuses: Optional[Iterable[PaymentStatus]] = None,
    ) -> Optional[Order]:
        unknown = set(updates) - MUTABLE_ORDER_FIELDS
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")

        set_clauses = ["updated_at = NOW()"]
        params: List[Any] = []
        for key, value in updates.items():
            params.append(_db_value(value))
            set_clauses.append(f"{key} = ${len(params)}")

        params.append(order_id)
        conditions = [f"id = ${len(params)}::uuid"]
        params.append([s.value for s in expected_statuses])
        conditions.append(f"status = ANY(${len(params)}::varchar[])")
        if expected_payment_statuses is not None:
            params.append([s.value for s in expected_payment_statuses])
            conditions.append(f"payment_status = ANY(${len(params)}::varchar[])")

        query = f"""
            UPDATE orders
            SET {', '.join(set_clauses)}
            WHERE {' AND '.join(conditions)}
            RETURNING id
        """

        async with _storage_errors("update_order"):
            row = await self._db.fetch_one(query, *params)
        if row is None:
            return None
        return await self.get(order_id)

    async def find_stale_pending(self, older_than: datetime, limit: int) -> List[Order]:
        async with _storage_errors("find_stale_pending"):
            rows = await self._db.fetch_all(
                """
                SELECT * FROM orders
                WHERE status = 'pending'
                  AND external_payment_reference IS NOT NULL
                  AND updated_at < $1
                ORDER BY updated_at
                LIMIT $2
                """,
                older_than,
                limit,
            )
        return [_order_from_row(row) for row in rows]


# =============================================================================
# INVENTORY LEDGER
# =============================================================================

class PostgresInventoryLedger(IInventoryLedger):

    def __init__(self, db: Database):
        self._db = db

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        async with _storage_errors("get_products"):
            rows = await self._db.fetch_all(
                "SELECT id, name, image_url, price, inventory_count FROM products WHERE id = ANY($1::varchar[])",
                list(set(product_ids)),
            )
        return {row["id"]: Product(**dict(row)) for row in rows}

    async def adjust(self, product_id: str, delta: int) -> int:
        async with _storage_errors("adjust_inventory"):
            new_count = await self._db.fetch_value(
                """
                UPDATE products
                SET inventory_count = GREATEST(0, inventory_count + $1), updated_at = NOW()
                WHERE id = $2
                RETURNING inventory_count
                """,
                delta,
                product_id,
            )
        if new_count is None:
            raise NotFoundError(f"Product {product_id} not found")
        return new_count


# =============================================================================
# PAYMENT INTENT REGISTRY
# =============================================================================

class PostgresPaymentIntentRepository(IPaymentIntentRepository):

    def __init__(self, db: Database):
        self._db = db

    async def get(self, intent_id: str) -> Optional[PaymentIntentRecord]:
        async with _storage_errors("get_intent"):
            row = await self._db.fetch_one("SELECT * FROM payment_intents WHERE id = $1", intent_id)
        return _intent_from_row(row) if row else None

    async def save(self, record: PaymentIntentRecord) -> PaymentIntentRecord:
        async with _storage_errors("save_intent"):
            await self._db.execute(
                """
                INSERT INTO payment_intents (
                    id, order_id, payment_method, amount, currency, status,
                    customer_email, error_message, created_at, updated_at
                )
                VALUES ($1, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE
                SET order_id = EXCLUDED.order_id,
                    status = EXCLUDED.status,
                    error_message = EXCLUDED.error_message,
                    updated_at = NOW()
                """,
                record.id,
                record.order_id,
                record.payment_method.value,
                record.amount,
                record.currency,
                record.status.value,
                record.customer_email,
                record.error_message,
                record.created_at,
                record.updated_at,
            )
        return record

    async def link_order(self, intent_id: str, order_id: str) -> Optional[PaymentIntentRecord]:
        async with _storage_errors("link_intent"):
            row = await self._db.fetch_one(
                """
                UPDATE payment_intents
                SET order_id = $2::uuid, updated_at = NOW()
                WHERE id = $1 AND (order_id IS NULL OR order_id = $2::uuid)
                RETURNING *
                """,
                intent_id,
                order_id,
            )
        return _intent_from_row(row) if row else None

    async def update_status(
        self,
        intent_id: str,
        status: IntentStatus,
        error_message: Optional[str] = None,
    ) -> Optional[PaymentIntentRecord]:
        async with _storage_errors("update_intent_status"):
            row = await self._db.fetch_one(
                """
                UPDATE payment_intents
                SET status = $2,
                    error_message = COALESCE($3, error_message),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING *
                """,
                intent_id,
                status.value,
                error_message,
            )
        return _intent_from_row(row) if row else None


class PostgresRefundRepository(IRefundRepository):

    def __init__(self, db: Database):
        self._db = db

    async def save(self, refund: RefundRecord) -> RefundRecord:
        async with _storage_errors("save_refund"):
            await self._db.execute(
                """
                INSERT INTO refunds (id, payment_intent_id, amount, reason, status, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE
                SET status = EXCLUDED.status, updated_at = NOW()
                """,
                refund.id,
                refund.payment_intent_id,
                refund.amount,
                refund.reason,
                refund.status.value,
                refund.created_at,
                refund.updated_at,
            )
        return refund

    async def list_for_intent(self, intent_id: str) -> List[RefundRecord]:
        async with _storage_errors("list_refunds"):
            rows = await self._db.fetch_all(
                "SELECT * FROM refunds WHERE payment_intent_id = $1 ORDER BY created_at",
                intent_id,
            )
        return [RefundRecord(**dict(row)) for row in rows]

    async def update_status(self, refund_id: str, status: RefundStatus) -> Optional[RefundRecord]:
        async with _storage_errors("update_refund_status"):
            row = await self._db.fetch_one(
                "UPDATE refunds SET status = $2, updated_at = NOW() WHERE id = $1 RETURNING *",
                refund_id,
                status.value,
            )
        return RefundRecord(**dict(row)) if row else None


# =============================================================================
# THE BLACK BOX
# =============================================================================

class PostgresAuditLog(IAuditLog):
    """system_events backed audit log"""

    def __init__(self, db: Database):
        self._db = db

    async def append(self, entry: AuditLogEntry) -> None:
        async with _storage_errors("append_audit"):
            await self._db.execute(
                """
                INSERT INTO system_events
                (id, correlation_id, timestamp, event_type, entity_type, entity_id, payload, severity)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                entry.id,
                entry.correlation_id,
                entry.timestamp,
                entry.event_type.value,
                entry.entity_type,
                entry.entity_id,
                json.dumps(entry.payload, default=str),
                entry.severity,
            )

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        async with _storage_errors("get_audit"):
            rows = await self._db.fetch_all(
                "SELECT * FROM system_events WHERE correlation_id = $1 ORDER BY timestamp",
                correlation_id,
            )
        return [self._entry_from_row(row) for row in rows]

    async def recent(
        self,
        event_types: Optional[List[str]] = None,
        severity: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditLogEntry]:
        conditions = []
        params: List[Any] = []

        if event_types:
            params.append(event_types)
            conditions.append(f"event_type = ANY(${len(params)})")
        if severity:
            params.append(severity)
            conditions.append(f"severity = ${len(params)}")

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        async with _storage_errors("recent_audit"):
            rows = await self._db.fetch_all(
                f"""
                SELECT * FROM system_events
                {where_clause}
                ORDER BY timestamp DESC
                LIMIT ${len(params)}
                """,
                *params,
            )
        return [self._entry_from_row(row) for row in rows]

    @staticmethod
    def _entry_from_row(row: asyncpg.Record) -> AuditLogEntry:
        data = dict(row)
        data["id"] = str(data["id"])
        data["event_type"] = AuditEventType(data["event_type"])
        data["payload"] = _json(data["payload"]) or {}
        return AuditLogEntry(**data)
