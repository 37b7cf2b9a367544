"""
Order Service
=============
Turns a checkout request into a durable order and owns the admin-facing
mutations (fulfillment, cancellation, payment override).

Creation order matters: validate -> price -> insert order + items -> link
intent -> decrement inventory. Inventory is touched last so that a failed
insert never leaves stock decremented.
"""

import math
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

import structlog
from pydantic import BaseModel

from config import CommerceConfig
from errors import (
    CommerceError,
    ConflictError,
    NotFoundError,
    OrderNumberConflict,
    OrderValidationError,
    StorageError,
)
from schemas.api_models import CreateOrderRequest, Pagination
from schemas.orders import (
    AuditEventType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Totals,
    to_money,
    utcnow,
)
from services import lifecycle
from services.audit import AuditTrail
from services.lifecycle import Trigger
from services.pricing import PricingEngine
from storage.interfaces import IInventoryLedger, IOrderRepository, IPaymentIntentRepository

logger = structlog.get_logger().bind(component="order_service")


BASE36 = string.digits + string.ascii_uppercase
DEFAULT_CARRIER = "USPS"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def generate_order_number() -> str:
    """OB-<base36 epoch millis>-<3 random chars>; sorts by creation time."""
    stamp = to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(BASE36) for _ in range(3))
    return f"OB-{stamp}-{suffix}"


@dataclass
class _Line:
    unit_price: Decimal
    quantity: int


class CreatedOrder(BaseModel):
    order_id: str
    order_number: str
    totals: Totals


class OrderService:
    def __init__(
        self,
        config: CommerceConfig,
        orders: IOrderRepository,
        inventory: IInventoryLedger,
        intents: IPaymentIntentRepository,
        pricing: PricingEngine,
        audit: AuditTrail,
        number_generator=generate_order_number,
    ):
        self.config = config
        self.orders = orders
        self.inventory = inventory
        self.intents = intents
        self.pricing = pricing
        self.audit = audit
        self._next_number = number_generator

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_order(self, request: CreateOrderRequest) -> CreatedOrder:
        log = logger.bind(customer_email=request.customer_info.email)

        product_ids = [item.id for item in request.items]
        products = await self.inventory.get_products(product_ids)
        unknown = sorted({pid for pid in product_ids if pid not in products})
        if unknown:
            raise OrderValidationError(
                f"Unknown product(s): {', '.join(unknown)}",
                details=[{"field": "items", "productId": pid, "message": "Product not found"} for pid in unknown],
            )

        lines = [_Line(products[i.id].price, i.quantity) for i in request.items]
        totals = self.pricing.price(lines)

        intent = None
        if request.payment_intent_id:
            intent = await self.intents.get(request.payment_intent_id)
            if intent is not None:
                if intent.amount != totals.total:
                    raise ConflictError(
                        f"Payment intent amount {intent.amount} does not match order total {totals.total}",
                        current_state=intent.status.value,
                    )
                if intent.order_id:
                    raise ConflictError(
                        f"Payment intent {intent.id} is already linked to another order",
                        current_state=intent.status.value,
                    )

        order_id = str(uuid.uuid4())
        items = [
            OrderItem(
                order_id=order_id,
                product_id=i.id,
                product_name=products[i.id].name,
                product_image=products[i.id].image_url,
                quantity=i.quantity,
                unit_price=products[i.id].price,
                line_total=to_money(products[i.id].price * i.quantity),
            )
            for i in request.items
        ]

        customer = request.customer_info
        shipping_info = request.shipping_info
        shipping_address = shipping_info.to_address()

        order = await self._insert_with_unique_number(
            lambda number: Order(
                id=order_id,
                order_number=number,
                payment_method=request.payment_method,
                external_payment_reference=request.payment_intent_id,
                customer_email=customer.email,
                customer_name=f"{customer.first_name} {customer.last_name}",
                customer_phone=customer.phone,
                shipping_address=shipping_address,
                billing_address=shipping_info.billing_address or shipping_address,
                subtotal=totals.subtotal,
                tax=totals.tax,
                shipping=totals.shipping,
                total=totals.total,
                currency=self.config.currency,
                notes=shipping_info.notes,
                items=items,
            ),
            log,
        )

        if intent is not None and await self.intents.link_order(intent.id, order.id) is None:
            log.warning("intent_link_refused", intent_id=intent.id, order_id=order.id)

        await self._decrement_inventory(order, log)

        await self.audit.emit(
            AuditEventType.ORDER_CREATED,
            "order",
            order.id,
            order_number=order.order_number,
            total=str(order.total),
            item_count=len(items),
            payment_method=order.payment_method.value,
        )
        log.info("order_created", order_id=order.id, order_number=order.order_number, total=str(order.total))

        return CreatedOrder(order_id=order.id, order_number=order.order_number, totals=totals)

    async def _insert_with_unique_number(self, build, log) -> Order:
        attempts = self.config.order_number_max_attempts
        for attempt in range(1, attempts + 1):
            order = build(self._next_number())
            try:
                return await self.orders.create(order)
            except OrderNumberConflict:
                log.warning("order_number_collision", order_number=order.order_number, attempt=attempt)

        raise StorageError(f"Could not allocate a unique order number after {attempts} attempts")

    async def _decrement_inventory(self, order: Order, log) -> None:
        applied: List[OrderItem] = []
        try:
            for item in order.items:
                await self.inventory.adjust(item.product_id, -item.quantity)
                applied.append(item)
        except CommerceError as e:
            log.error("inventory_decrement_failed", order_id=order.id, error=e.message,
                      compensating=len(applied))
            await self._restore_inventory(order, applied)
            await self.orders.compare_and_update(
                order.id,
                [OrderStatus.PENDING],
                {"status": OrderStatus.CANCELLED, "cancelled_at": utcnow()},
            )
            raise StorageError("Inventory update failed; order was cancelled") from e

    async def _restore_inventory(self, order: Order, items: List[OrderItem]) -> int:
        """Best effort per item. Returns the number of items that failed to restore."""
        failures = 0
        for item in items:
            try:
                await self.inventory.adjust(item.product_id, item.quantity)
            except Exception as e:
                # One item must not block the rest
                failures += 1
                logger.error("inventory_restore_failed", order_id=order.id, product_id=item.product_id,
                             quantity=item.quantity, error=str(e), error_type=type(e).__name__,
                             exc_info=not isinstance(e, CommerceError))
                await self.audit.emit(
                    AuditEventType.INVENTORY_RESTORE_FAILED,
                    "product",
                    item.product_id,
                    severity="ERROR",
                    order_id=order.id,
                    quantity=item.quantity,
                    error=str(e),
                )
        return failures

    # =========================================================================
    # READ
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        email: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Order], Pagination]:
        orders, total = await self.orders.list_orders(status=status, email=email, page=page, limit=limit)
        pagination = Pagination(total=total, page=page, limit=limit, pages=math.ceil(total / limit) if limit else 0)
        return orders, pagination

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def cancel_order(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        cancelled = await lifecycle.fire(self.orders, order, Trigger.CANCEL)

        failures = await self._restore_inventory(cancelled, cancelled.items)

        await self.audit.emit(
            AuditEventType.ORDER_CANCELLED,
            "order",
            order.id,
            previous_status=order.status.value,
            payment_status=cancelled.payment_status.value,
            restore_failures=failures,
        )
        logger.info("order_cancelled", order_id=order.id, previous_status=order.status.value,
                    restore_failures=failures)
        return cancelled

    async def update_fulfillment(
        self,
        order_id: str,
        status: OrderStatus,
        tracking_number: Optional[str] = None,
        carrier_name: Optional[str] = None,
    ) -> Order:
        if status == OrderStatus.CANCELLED:
            return await self.cancel_order(order_id)

        order = await self.get_order(order_id)

        if status == OrderStatus.SHIPPED:
            if not tracking_number:
                raise OrderValidationError(
                    "Tracking number is required to mark an order shipped",
                    details=[{"field": "trackingNumber", "message": "Field required"}],
                )
            updated = await lifecycle.fire(
                self.orders, order, Trigger.SHIP,
                tracking_number=tracking_number,
                carrier_name=carrier_name or DEFAULT_CARRIER,
            )
        elif status == OrderStatus.DELIVERED:
            updated = await lifecycle.fire(self.orders, order, Trigger.DELIVER)
        else:
            raise OrderValidationError(
                f"Status {status.value} is set by payment reconciliation, not fulfillment",
                details=[{"field": "status", "message": "Expected shipped, delivered or cancelled"}],
            )

        await self.audit.emit(
            AuditEventType.ORDER_FULFILLMENT_UPDATED,
            "order",
            order.id,
            previous_status=order.status.value,
            status=updated.status.value,
            tracking_number=updated.tracking_number,
            carrier_name=updated.carrier_name,
        )
        return updated

    async def override_payment_status(
        self,
        order_id: str,
        payment_status: PaymentStatus,
        payment_intent_id: Optional[str] = None,
    ) -> Order:
        """Admin correction of the payment axis. Still bound by the lifecycle."""
        order = await self.get_order(order_id)
        if order.payment_status == payment_status:
            return order

        triggers = {
            PaymentStatus.PAID: Trigger.PAYMENT_SUCCEEDED,
            PaymentStatus.FAILED: Trigger.PAYMENT_FAILED,
            PaymentStatus.REFUNDED: Trigger.FULL_REFUND,
            PaymentStatus.PARTIALLY_REFUNDED: Trigger.PARTIAL_REFUND,
        }
        trigger = triggers.get(payment_status)
        if trigger is None:
            raise OrderValidationError(
                f"Payment status cannot be set back to {payment_status.value}",
                details=[{"field": "paymentStatus", "message": "Not an admin-settable value"}],
            )

        extra = {}
        if payment_intent_id:
            extra["external_payment_reference"] = payment_intent_id
        if trigger == Trigger.PAYMENT_FAILED:
            extra["payment_error"] = "Marked failed by administrator"

        updated = await lifecycle.fire(self.orders, order, trigger, **extra)

        await self.audit.emit(
            AuditEventType.ORDER_PAYMENT_OVERRIDDEN,
            "order",
            order.id,
            severity="WARNING",
            previous_payment_status=order.payment_status.value,
            payment_status=updated.payment_status.value,
            status=updated.status.value,
            payment_intent_id=payment_intent_id,
        )
        return updated
