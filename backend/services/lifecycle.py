"""
Order Lifecycle State Machine
=============================
Owns the joint (status, payment_status) transitions of an order.

Each trigger names the states it may fire from and what it writes. Applying a
trigger is a compare-and-set against the order store, so two concurrent
triggers on the same order cannot both win.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Type

from errors import ConflictError, NotFoundError, OrderNotCancellableError
from schemas.orders import Order, OrderStatus, PaymentStatus, utcnow
from storage.interfaces import IOrderRepository


class Trigger(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CANCEL = "cancel"
    SHIP = "ship"
    DELIVER = "deliver"
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"


S = OrderStatus
P = PaymentStatus

PAID_STATUSES = frozenset({S.PROCESSING, S.SHIPPED, S.DELIVERED})
REFUNDABLE_PAYMENT = frozenset({P.PAID, P.PARTIALLY_REFUNDED})

TERMINAL_STATUSES = frozenset({S.CANCELLED, S.DELIVERED})
TERMINAL_PAYMENT_STATUSES = frozenset({P.REFUNDED})


@dataclass(frozen=True)
class Transition:
    from_statuses: FrozenSet[OrderStatus]
    to_status: Optional[OrderStatus] = None  # None = unchanged
    to_payment_status: Optional[PaymentStatus] = None
    from_payment_statuses: Optional[FrozenSet[PaymentStatus]] = None
    stamp: Optional[str] = None
    clears: FrozenSet[str] = field(default_factory=frozenset)

    def allows(self, status: OrderStatus, payment_status: PaymentStatus) -> bool:
        if status not in self.from_statuses:
            return False
        return self.from_payment_statuses is None or payment_status in self.from_payment_statuses

    def updates(self, now: datetime, **extra: Any) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if self.to_status is not None:
            changes["status"] = self.to_status
        if self.to_payment_status is not None:
            changes["payment_status"] = self.to_payment_status
        if self.stamp:
            changes[self.stamp] = now
        for name in self.clears:
            changes[name] = None
        changes.update(extra)
        return changes


TRANSITIONS: Dict[Trigger, Transition] = {
    Trigger.PAYMENT_SUCCEEDED: Transition(
        from_statuses=frozenset({S.PENDING, S.PAYMENT_FAILED}),
        from_payment_statuses=frozenset({P.PENDING, P.FAILED}),
        to_status=S.PROCESSING,
        to_payment_status=P.PAID,
        stamp="paid_at",
        clears=frozenset({"payment_error"}),
    ),
    Trigger.PAYMENT_FAILED: Transition(
        from_statuses=frozenset({S.PENDING}),
        from_payment_statuses=frozenset({P.PENDING}),
        to_status=S.PAYMENT_FAILED,
        to_payment_status=P.FAILED,
    ),
    Trigger.CANCEL: Transition(
        from_statuses=frozenset({S.PENDING, S.PROCESSING, S.PAYMENT_FAILED}),
        to_status=S.CANCELLED,
        stamp="cancelled_at",
    ),
    Trigger.SHIP: Transition(
        from_statuses=frozenset({S.PROCESSING}),
        to_status=S.SHIPPED,
        stamp="shipped_at",
    ),
    Trigger.DELIVER: Transition(
        from_statuses=frozenset({S.SHIPPED}),
        to_status=S.DELIVERED,
        stamp="delivered_at",
    ),
    Trigger.FULL_REFUND: Transition(
        from_statuses=PAID_STATUSES,
        from_payment_statuses=REFUNDABLE_PAYMENT,
        to_payment_status=P.REFUNDED,
        stamp="refunded_at",
    ),
    Trigger.PARTIAL_REFUND: Transition(
        from_statuses=PAID_STATUSES,
        from_payment_statuses=REFUNDABLE_PAYMENT,
        to_payment_status=P.PARTIALLY_REFUNDED,
        stamp="refunded_at",
    ),
}


# Every (status, payment_status) pair an order can legally sit in
VALID_STATE_PAIRS = frozenset(
    {(S.PENDING, P.PENDING), (S.PAYMENT_FAILED, P.FAILED)}
    | {(s, p) for s in PAID_STATUSES for p in (P.PAID, P.PARTIALLY_REFUNDED, P.REFUNDED)}
    | {(S.CANCELLED, p) for p in PaymentStatus}
)


_REJECTIONS: Dict[Trigger, Type[ConflictError]] = {
    Trigger.CANCEL: OrderNotCancellableError,
}


def is_valid_pair(status: OrderStatus, payment_status: PaymentStatus) -> bool:
    return (status, payment_status) in VALID_STATE_PAIRS


def can_fire(order: Order, trigger: Trigger) -> bool:
    return TRANSITIONS[trigger].allows(order.status, order.payment_status)


def _reject(order: Order, trigger: Trigger) -> ConflictError:
    error_cls = _REJECTIONS.get(trigger, ConflictError)
    if trigger == Trigger.CANCEL:
        message = f"Cannot cancel order with status: {order.status.value}"
    else:
        message = (
            f"Cannot apply {trigger.value} to order in state "
            f"{order.status.value}/{order.payment_status.value}"
        )
    return error_cls(message, current_state=order.status.value)


async def fire(
    orders: IOrderRepository,
    order: Order,
    trigger: Trigger,
    now: Optional[datetime] = None,
    **extra: Any,
) -> Order:
    """Apply `trigger` to `order` as a compare-and-set.

    Raises ConflictError (OrderNotCancellableError for CANCEL) when the order
    is not in a state the trigger can fire from, including when another writer
    moved it first.
    """
    transition = TRANSITIONS[trigger]
    if not transition.allows(order.status, order.payment_status):
        raise _reject(order, trigger)

    updated = await orders.compare_and_update(
        order.id,
        transition.from_statuses,
        transition.updates(now or utcnow(), **extra),
        transition.from_payment_statuses,
    )
    if updated is not None:
        return updated

    # Lost the race: report against the state that won
    current = await orders.get(order.id)
    if current is None:
        raise NotFoundError(f"Order {order.id} not found")
    raise _reject(current, trigger)
