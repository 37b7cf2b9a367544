# gateways/__init__.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — PAYMENT GATEWAY ADAPTERS
# ============================================================================
# Card rail (Stripe) and wallet rail (PayPal) behind one adapter contract
# ============================================================================

from gateways.base import (
    GatewayEvent,
    GatewayEventKind,
    IntentHandle,
    IntentSnapshot,
    PaymentGatewayAdapter,
    RefundResult,
)
from gateways.paypal_gateway import PayPalGateway
from gateways.stripe_gateway import StripeGateway

__all__ = [
    "GatewayEvent",
    "GatewayEventKind",
    "IntentHandle",
    "IntentSnapshot",
    "PaymentGatewayAdapter",
    "RefundResult",
    "PayPalGateway",
    "StripeGateway",
]
