# schemas/api_models.py
# ============================================================================
# ORDER RECONCILIATION BACKEND — HTTP REQUEST / RESPONSE MODELS
# ============================================================================
# camelCase on the wire, snake_case in Python.
# ============================================================================

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from schemas.orders import (
    Address,
    AuditLogEntry,
    Money,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Totals,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# ORDERS
# =============================================================================

class CartItem(CamelModel):
    # Price and name in the cart are display-only; the catalog is authoritative
    id: str = Field(min_length=1, validation_alias=AliasChoices("id", "productId", "product_id"))
    quantity: int = Field(ge=1)


class CustomerInfo(CamelModel):
    email: EmailStr
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: Optional[str] = None


class ShippingInfo(CamelModel):
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    country: str = "USA"
    billing_address: Optional[Address] = None
    notes: Optional[str] = None

    def to_address(self) -> Address:
        return Address(street=self.address, city=self.city, state=self.state, zip=self.zip_code, country=self.country)


class CreateOrderRequest(CamelModel):
    items: List[CartItem] = Field(min_length=1)
    customer_info: CustomerInfo
    shipping_info: ShippingInfo
    payment_method: PaymentMethod = PaymentMethod.CARD
    payment_intent_id: Optional[str] = None


class CreateOrderResponse(CamelModel):
    success: bool = True
    order_id: str
    order_number: str
    totals: Totals
    message: str = "Order created successfully"


class OrderResponse(CamelModel):
    success: bool = True
    order: Order
    message: Optional[str] = None


class Pagination(CamelModel):
    total: int
    page: int
    limit: int
    pages: int


class OrderListResponse(CamelModel):
    success: bool = True
    orders: List[Order]
    pagination: Pagination


class UpdateStatusRequest(CamelModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    carrier_name: Optional[str] = None


class UpdatePaymentRequest(CamelModel):
    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None


# =============================================================================
# PAYMENTS
# =============================================================================

class IntentItem(CamelModel):
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "productId", "product_id"))
    unit_price: Decimal = Field(ge=0, validation_alias=AliasChoices("price", "unitPrice", "unit_price"))
    quantity: int = Field(ge=1)


class CreateIntentRequest(CamelModel):
    items: List[IntentItem] = Field(min_length=1)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    customer_email: Optional[EmailStr] = None
    order_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.CARD


class CreateIntentResponse(CamelModel):
    success: bool = True
    client_secret: Optional[str] = None
    intent_id: str
    amount: Money


class ConfirmPaymentRequest(CamelModel):
    intent_id: str = Field(min_length=1, validation_alias=AliasChoices("intentId", "paymentIntentId", "intent_id"))
    order_id: Optional[str] = None


class ConfirmPaymentResponse(CamelModel):
    success: bool
    status: str
    message: str
    order_id: Optional[str] = None


class RefundRequest(CamelModel):
    intent_id: str = Field(min_length=1, validation_alias=AliasChoices("intentId", "paymentIntentId", "intent_id"))
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None


class RefundResponse(CamelModel):
    success: bool = True
    refund_id: str
    status: str
    amount: Money


class WebhookAck(CamelModel):
    received: bool = True


class PaymentConfigResponse(CamelModel):
    publishable_key: Optional[str] = None
    wallet_client_id: Optional[str] = None
    currency: str


class DiscrepancyListResponse(CamelModel):
    success: bool = True
    discrepancies: List[AuditLogEntry]


class ErrorResponse(CamelModel):
    success: bool = False
    message: str
    details: Optional[List[Dict[str, Any]]] = None
