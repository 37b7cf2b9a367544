# storage/__init__.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory and Postgres implementations
# ============================================================================

from storage.interfaces import (
    IAuditLog,
    IInventoryLedger,
    IOrderRepository,
    IPaymentIntentRepository,
    IRefundRepository,
)
from storage.memory import (
    InMemoryAuditLog,
    InMemoryInventoryLedger,
    InMemoryOrderRepository,
    InMemoryPaymentIntentRepository,
    InMemoryRefundRepository,
)

__all__ = [
    # Interfaces
    "IAuditLog",
    "IInventoryLedger",
    "IOrderRepository",
    "IPaymentIntentRepository",
    "IRefundRepository",
    # In-memory
    "InMemoryAuditLog",
    "InMemoryInventoryLedger",
    "InMemoryOrderRepository",
    "InMemoryPaymentIntentRepository",
    "InMemoryRefundRepository",
]
