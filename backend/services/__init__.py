# services/__init__.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — SERVICES MODULE
# ============================================================================
# Pricing, lifecycle, order creation and payment reconciliation
# ============================================================================

from services.pricing import PricingEngine
from services.lifecycle import Trigger, VALID_STATE_PAIRS
from services.audit import AuditTrail
from services.order_service import OrderService, CreatedOrder
from services.reconciliation import (
    Action,
    OutcomeKind,
    PaymentOutcome,
    ReconciliationEngine,
    ReconciliationResult,
)

__all__ = [
    # Pricing
    "PricingEngine",
    # Lifecycle
    "Trigger",
    "VALID_STATE_PAIRS",
    # Audit
    "AuditTrail",
    # Orders
    "OrderService",
    "CreatedOrder",
    # Reconciliation
    "Action",
    "OutcomeKind",
    "PaymentOutcome",
    "ReconciliationEngine",
    "ReconciliationResult",
]
