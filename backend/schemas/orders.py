# schemas/orders.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — DOMAIN MODELS
# ============================================================================
# Orders, items, payment intents, refunds, products and audit entries.
# Money is Decimal quantized to cents; JSON output renders it as a number.
# ============================================================================

import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, computed_field
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated


CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Quantize to cents with round-half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: float(v), return_type=float, when_used="json"),
]


class DomainModel(BaseModel):
    """snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    WALLET = "wallet"

    @classmethod
    def _missing_(cls, value):
        # Storefront clients still send processor names
        legacy = {"stripe": cls.CARD, "paypal": cls.WALLET}
        if isinstance(value, str):
            return legacy.get(value.lower())
        return None


class IntentStatus(str, Enum):
    """Mirror of the processor's intent vocabulary."""
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class RefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_FULFILLMENT_UPDATED = "order.fulfillment_updated"
    ORDER_PAYMENT_OVERRIDDEN = "order.payment_overridden"
    INVENTORY_RESTORE_FAILED = "inventory.restore_failed"
    PAYMENT_INTENT_CREATED = "payment.intent_created"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_REJECTED = "webhook.rejected"
    RECONCILIATION_DISCREPANCY = "reconciliation.discrepancy"


# =============================================================================
# VALUE OBJECTS
# =============================================================================

class Address(DomainModel):
    street: str
    city: str
    state: str
    zip: str
    country: str = "USA"


class Totals(DomainModel):
    subtotal: Money
    tax: Money
    shipping: Money
    total: Money


class Product(DomainModel):
    """The slice of a catalog product the order core reads."""
    id: str
    name: str
    price: Money
    image_url: Optional[str] = None
    inventory_count: int = Field(default=0, ge=0)


# =============================================================================
# ORDER
# =============================================================================

class OrderItem(DomainModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    product_id: str
    product_name: str
    product_image: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: Money
    line_total: Money


class Order(DomainModel):
    """Core order entity"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str

    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CARD
    external_payment_reference: Optional[str] = None
    payment_error: Optional[str] = None

    customer_email: str
    customer_name: str
    customer_phone: Optional[str] = None
    shipping_address: Address
    billing_address: Address

    subtotal: Money
    tax: Money
    shipping: Money
    total: Money
    currency: str = "USD"
    notes: Optional[str] = None

    tracking_number: Optional[str] = None
    carrier_name: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    items: List[OrderItem] = Field(default_factory=list)

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.payment_status in (
            PaymentStatus.PAID,
            PaymentStatus.PARTIALLY_REFUNDED,
            PaymentStatus.REFUNDED,
        )


# =============================================================================
# PAYMENT INTENT REGISTRY
# =============================================================================

class PaymentIntentRecord(DomainModel):
    id: str  # processor-assigned
    order_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CARD
    amount: Money
    currency: str = "USD"
    status: IntentStatus = IntentStatus.REQUIRES_ACTION
    customer_email: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RefundRecord(DomainModel):
    id: str  # processor-assigned
    payment_intent_id: str
    amount: Money
    reason: Optional[str] = None
    status: RefundStatus = RefundStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# AUDIT LOG (the black box)
# =============================================================================

class AuditLogEntry(DomainModel):
    """Immutable audit log entry"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    event_type: AuditEventType
    entity_type: str  # "order", "payment_intent", "refund", "webhook", "product"
    entity_id: Optional[str] = None
    severity: str = "INFO"
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
