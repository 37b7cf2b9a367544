# storage/memory.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — IN-MEMORY STORES
# ============================================================================
# asyncio.Lock-guarded implementations of the storage interfaces. Used by the
# test suite and by STORAGE_BACKEND=memory local runs.
# ============================================================================

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from errors import NotFoundError, OrderNumberConflict
from schemas.orders import (
    AuditLogEntry,
    IntentStatus,
    Order,
    OrderStatus,
    PaymentIntentRecord,
    PaymentStatus,
    Product,
    RefundRecord,
    RefundStatus,
    utcnow,
)
from storage.interfaces import (
    MUTABLE_ORDER_FIELDS,
    IAuditLog,
    IInventoryLedger,
    IOrderRepository,
    IPaymentIntentRepository,
    IRefundRepository,
)


class InMemoryOrderRepository(IOrderRepository):
    """Thread-safe in-memory order repository"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._numbers: set[str] = set()
        self._lock = asyncio.Lock()

    async def create(self, order: Order) -> Order:
        async with self._lock:
            if order.order_number in self._numbers:
                raise OrderNumberConflict(f"Order number {order.order_number} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            self._numbers.add(order.order_number)
            return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        async with self._lock:
            matches = [
                o for o in self._orders.values()
                if (status is None or o.status == status)
                and (email is None or o.customer_email == email)
            ]
        matches.sort(key=lambda o: o.created_at, reverse=True)
        offset = (page - 1) * limit
        return [o.model_copy(deep=True) for o in matches[offset:offset + limit]], len(matches)

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

        async with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status not in set(expected_statuses):
                return None
            if expected_payment_statuses is not None and order.payment_status not in set(expected_payment_statuses):
                return None

            updated = order.model_copy(update={**updates, "updated_at": utcnow()}, deep=True)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def find_stale_pending(self, older_than: datetime, limit: int) -> List[Order]:
        async with self._lock:
            stale = [
                o for o in self._orders.values()
                if o.status == OrderStatus.PENDING
                and o.external_payment_reference
                and o.updated_at < older_than
            ]
        stale.sort(key=lambda o: o.updated_at)
        return [o.model_copy(deep=True) for o in stale[:limit]]


class InMemoryInventoryLedger(IInventoryLedger):

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self._products: dict[str, Product] = {p.id: p for p in (products or [])}
        self._lock = asyncio.Lock()

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        async with self._lock:
            return {pid: self._products[pid] for pid in set(product_ids) if pid in self._products}

    async def adjust(self, product_id: str, delta: int) -> int:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found")
            new_count = max(0, product.inventory_count + delta)
            self._products[product_id] = product.model_copy(update={"inventory_count": new_count})
            return new_count


class InMemoryPaymentIntentRepository(IPaymentIntentRepository):

    def __init__(self):
        self._intents: dict[str, PaymentIntentRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, intent_id: str) -> Optional[PaymentIntentRecord]:
        async with self._lock:
            return self._intents.get(intent_id)

    async def save(self, record: PaymentIntentRecord) -> PaymentIntentRecord:
        async with self._lock:
            self._intents[record.id] = record
            return record

    async def link_order(self, intent_id: str, order_id: str) -> Optional[PaymentIntentRecord]:
        async with self._lock:
            record = self._intents.get(intent_id)
            if record is None or (record.order_id and record.order_id != order_id):
                return None
            record = record.model_copy(update={"order_id": order_id, "updated_at": utcnow()})
            self._intents[intent_id] = record
            return record

    async def update_status(
        self,
        intent_id: str,
        status: IntentStatus,
        error_message: Optional[str] = None,
    ) -> Optional[PaymentIntentRecord]:
        async with self._lock:
            record = self._intents.get(intent_id)
            if record is None:
                return None
            changes = {"status": status, "updated_at": utcnow()}
            if error_message is not None:
                changes["error_message"] = error_message
            record = record.model_copy(update=changes)
            self._intents[intent_id] = record
            return record


class InMemoryRefundRepository(IRefundRepository):

    def __init__(self):
        self._refunds: dict[str, RefundRecord] = {}
        self._lock = asyncio.Lock()

    async def save(self, refund: RefundRecord) -> RefundRecord:
        async with self._lock:
            self._refunds[refund.id] = refund
            return refund

    async def list_for_intent(self, intent_id: str) -> List[RefundRecord]:
        async with self._lock:
            refunds = [r for r in self._refunds.values() if r.payment_intent_id == intent_id]
        return sorted(refunds, key=lambda r: r.created_at)

    async def update_status(self, refund_id: str, status: RefundStatus) -> Optional[RefundRecord]:
        async with self._lock:
            refund = self._refunds.get(refund_id)
            if refund is None:
                return None
            refund = refund.model_copy(update={"status": status, "updated_at": utcnow()})
            self._refunds[refund_id] = refund
            return refund


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            if entry.correlation_id:
                self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))

    async def recent(
        self,
        event_types: Optional[List[str]] = None,
        severity: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditLogEntry]:
        async with self._lock:
            entries = [
                e for e in reversed(self._logs)
                if (not event_types or e.event_type.value in event_types)
                and (severity is None or e.severity == severity)
            ]
        return entries[:limit]
