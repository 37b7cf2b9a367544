# storage/interfaces.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — PERSISTENCE INTERFACES
# ============================================================================
# Abstractions for the Postgres / in-memory swap. Services depend on these,
# never on a concrete store.
# ============================================================================

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

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
)


# Columns a status transition may touch. Everything else on an order is
# written once at creation.
MUTABLE_ORDER_FIELDS = frozenset({
    "status",
    "payment_status",
    "payment_method",
    "external_payment_reference",
    "payment_error",
    "tracking_number",
    "carrier_name",
    "paid_at",
    "shipped_at",
    "delivered_at",
    "cancelled_at",
    "refunded_at",
})


class IOrderRepository(ABC):
    """Order store"""

    @abstractmethod
    async def create(self, order: Order) -> Order:
        """Insert the order and its items as one unit.

        Raises OrderNumberConflict when the order number is already taken,
        StorageError on any other write failure.
        """

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        """Newest first. Returns (page of orders, total matching)."""

    @abstractmethod
    async def compare_and_update(
        self,
        order_id: str,
        expected_statuses: Iterable[OrderStatus],
        updates: Dict[str, Any],
        expected_payment_statuses: Optional[Iterable[PaymentStatus]] = None,
    ) -> Optional[Order]:
        """Apply `updates` only if the order is still in one of the expected
        states. Returns the updated order, or None when the precondition
        no longer holds (or the order does not exist)."""

    @abstractmethod
    async def find_stale_pending(self, older_than: datetime, limit: int) -> List[Order]:
        """Pending orders with a payment reference, last touched before `older_than`."""


class IInventoryLedger(ABC):
    """Product slice + stock counts"""

    @abstractmethod
    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        pass

    @abstractmethod
    async def adjust(self, product_id: str, delta: int) -> int:
        """Atomically add `delta`, clamped at zero. Returns the new count.

        Raises NotFoundError for an unknown product, StorageError on failure.
        """


class IPaymentIntentRepository(ABC):
    """Payment Intent Registry"""

    @abstractmethod
    async def get(self, intent_id: str) -> Optional[PaymentIntentRecord]:
        pass

    @abstractmethod
    async def save(self, record: PaymentIntentRecord) -> PaymentIntentRecord:
        """Insert or replace."""

    @abstractmethod
    async def link_order(self, intent_id: str, order_id: str) -> Optional[PaymentIntentRecord]:
        """Link to an order unless already linked to a different one.
        Returns None when the link was refused."""

    @abstractmethod
    async def update_status(
        self,
        intent_id: str,
        status: IntentStatus,
        error_message: Optional[str] = None,
    ) -> Optional[PaymentIntentRecord]:
        pass


class IRefundRepository(ABC):

    @abstractmethod
    async def save(self, refund: RefundRecord) -> RefundRecord:
        pass

    @abstractmethod
    async def list_for_intent(self, intent_id: str) -> List[RefundRecord]:
        pass

    @abstractmethod
    async def update_status(self, refund_id: str, status: RefundStatus) -> Optional[RefundRecord]:
        pass


class IAuditLog(ABC):
    """Append-only audit log"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        pass

    @abstractmethod
    async def recent(
        self,
        event_types: Optional[List[str]] = None,
        severity: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditLogEntry]:
        """Newest first."""
