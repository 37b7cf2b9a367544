"""Tests for the in-memory stores and the Postgres error boundary."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import asyncpg
import pytest

from errors import NotFoundError, OrderNumberConflict, StorageError
from schemas.orders import (
    Address,
    AuditEventType,
    AuditLogEntry,
    IntentStatus,
    Order,
    OrderStatus,
    PaymentIntentRecord,
    Product,
    utcnow,
)
from storage.memory import (
    InMemoryAuditLog,
    InMemoryInventoryLedger,
    InMemoryOrderRepository,
    InMemoryPaymentIntentRepository,
)
from storage.postgres import PostgresInventoryLedger, PostgresOrderRepository


def make_order(number: str, email: str = "ada@example.com") -> Order:
    address = Address(street="1 Main St", city="Austin", state="TX", zip="78701")
    return Order(
        order_number=number,
        customer_email=email,
        customer_name="Ada Lovelace",
        shipping_address=address,
        billing_address=address,
        subtotal=Decimal("10.00"),
        tax=Decimal("0.83"),
        shipping=Decimal("9.99"),
        total=Decimal("20.82"),
    )


class TestInventoryLedger:
    async def test_adjust_clamps_at_zero(self):
        ledger = InMemoryInventoryLedger([Product(id="p1", name="P", price=Decimal("1.00"), inventory_count=2)])

        assert await ledger.adjust("p1", -5) == 0
        assert await ledger.adjust("p1", 3) == 3

    async def test_unknown_product(self):
        ledger = InMemoryInventoryLedger()

        with pytest.raises(NotFoundError):
            await ledger.adjust("missing", -1)

    async def test_get_products_skips_unknown(self):
        ledger = InMemoryInventoryLedger([Product(id="p1", name="P", price=Decimal("1.00"))])

        found = await ledger.get_products(["p1", "p2"])

        assert list(found) == ["p1"]


class TestOrderRepository:
    async def test_duplicate_order_number(self):
        repo = InMemoryOrderRepository()
        await repo.create(make_order("OB-1"))

        with pytest.raises(OrderNumberConflict):
            await repo.create(make_order("OB-1"))

    async def test_compare_and_update_checks_expected_status(self):
        repo = InMemoryOrderRepository()
        order = await repo.create(make_order("OB-1"))

        missed = await repo.compare_and_update(order.id, [OrderStatus.PROCESSING], {"status": OrderStatus.SHIPPED})
        hit = await repo.compare_and_update(order.id, [OrderStatus.PENDING], {"status": OrderStatus.CANCELLED})

        assert missed is None
        assert hit.status == OrderStatus.CANCELLED
        assert hit.updated_at >= order.updated_at

    async def test_compare_and_update_rejects_immutable_fields(self):
        repo = InMemoryOrderRepository()
        order = await repo.create(make_order("OB-1"))

        with pytest.raises(ValueError):
            await repo.compare_and_update(order.id, [OrderStatus.PENDING], {"total": Decimal("0.00")})

    async def test_returned_orders_are_copies(self):
        repo = InMemoryOrderRepository()
        order = await repo.create(make_order("OB-1"))

        fetched = await repo.get(order.id)
        fetched.status = OrderStatus.DELIVERED

        assert (await repo.get(order.id)).status == OrderStatus.PENDING

    async def test_list_filters_and_paginates(self):
        repo = InMemoryOrderRepository()
        for i in range(5):
            await repo.create(make_order(f"OB-{i}"))
        await repo.create(make_order("OB-other", email="grace@example.com"))

        page, total = await repo.list_orders(email="ada@example.com", page=2, limit=2)

        assert total == 5
        assert len(page) == 2
        assert all(o.customer_email == "ada@example.com" for o in page)

    async def test_find_stale_pending_needs_payment_reference(self):
        repo = InMemoryOrderRepository()
        await repo.create(make_order("OB-1"))
        referenced = make_order("OB-2")
        referenced.external_payment_reference = "pi_1"
        await repo.create(referenced)

        stale = await repo.find_stale_pending(utcnow() + timedelta(minutes=1), limit=10)

        assert [o.order_number for o in stale] == ["OB-2"]


class TestPaymentIntentRepository:
    async def test_link_order_refuses_second_order(self):
        repo = InMemoryPaymentIntentRepository()
        await repo.save(PaymentIntentRecord(id="pi_1", amount=Decimal("10.00")))

        first = await repo.link_order("pi_1", "order-a")
        second = await repo.link_order("pi_1", "order-b")

        assert first.order_id == "order-a"
        assert second is None

    async def test_update_status_unknown_intent(self):
        repo = InMemoryPaymentIntentRepository()

        assert await repo.update_status("pi_missing", IntentStatus.SUCCEEDED) is None


class TestAuditLog:
    async def test_recent_is_newest_first_and_filtered(self):
        log = InMemoryAuditLog()
        for i in range(3):
            await log.append(AuditLogEntry(
                correlation_id="req-1",
                event_type=AuditEventType.RECONCILIATION_DISCREPANCY,
                entity_type="order",
                entity_id=f"order-{i}",
                severity="CRITICAL",
            ))
        await log.append(AuditLogEntry(
            event_type=AuditEventType.ORDER_CREATED,
            entity_type="order",
            entity_id="order-x",
        ))

        recent = await log.recent(event_types=["reconciliation.discrepancy"], limit=2)

        assert [e.entity_id for e in recent] == ["order-2", "order-1"]
        assert len(await log.get_by_correlation_id("req-1")) == 3


class TestDriverErrorTranslation:
    """The Postgres stores never leak raw driver exceptions."""

    class StalledDatabase:
        def __init__(self, error):
            self.error = error

        async def fetch_value(self, *args):
            raise self.error

        async def fetch_all(self, *args):
            raise self.error

    @pytest.mark.parametrize("error", [
        asyncio.TimeoutError(),
        ConnectionResetError("connection reset by peer"),
        asyncpg.InterfaceError("connection is closed"),
    ])
    async def test_adjust(self, error):
        ledger = PostgresInventoryLedger(self.StalledDatabase(error))

        with pytest.raises(StorageError, match="adjust_inventory") as exc_info:
            await ledger.adjust("prod-widget", 1)

        assert exc_info.value.__cause__ is error

    async def test_stale_scan_timeout(self):
        repo = PostgresOrderRepository(self.StalledDatabase(asyncio.TimeoutError()))

        with pytest.raises(StorageError, match="find_stale_pending"):
            await repo.find_stale_pending(utcnow(), 10)
