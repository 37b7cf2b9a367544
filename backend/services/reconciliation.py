"""
Reconciliation Engine
=====================
Decides the true state of an order when the storefront, the card processor
and the wallet processor disagree.

Three entry points feed one routine:
- confirm(): the client says "I paid", we ask the processor
- handle_webhook(): the processor tells us, signed
- sweep_order(): a background pass over orders stuck in pending

apply_payment_outcome() is serialized per intent id and every order write is
a compare-and-set, so replays and out-of-order deliveries are safe. An
outcome that does not fit the order's state is never applied and never
dropped: it comes back as a DISCREPANCY and is written to the audit log.
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from config import CommerceConfig
from errors import ConflictError, NotFoundError, OrderValidationError, UpstreamPaymentError, WebhookSignatureError
from gateways.base import GatewayEvent, GatewayEventKind, IntentHandle, PaymentGatewayAdapter, RefundResult
from schemas.api_models import CreateIntentRequest
from schemas.orders import (
    AuditEventType,
    AuditLogEntry,
    IntentStatus,
    Order,
    OrderStatus,
    PaymentIntentRecord,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
    RefundStatus,
    to_money,
)
from services import lifecycle
from services.audit import AuditTrail
from services.lifecycle import Trigger
from services.pricing import PricingEngine
from storage.interfaces import IOrderRepository, IPaymentIntentRepository, IRefundRepository

logger = structlog.get_logger().bind(component="reconciliation")


class Action(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DISCREPANCY = "discrepancy"
    IGNORED = "ignored"


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentOutcome(BaseModel):
    """What a processor says happened to one intent."""
    kind: OutcomeKind
    intent_id: str
    source: str  # "confirm" | "webhook" | "sweeper"
    amount: Optional[Decimal] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    order_hint: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    error_message: Optional[str] = None
    reference: Optional[str] = None  # processor event id
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    amount_refunded: Optional[Decimal] = None


class ReconciliationResult(BaseModel):
    action: Action
    order_id: Optional[str] = None
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    detail: str = ""

    @classmethod
    def for_order(cls, action: Action, order: Order, detail: str = "") -> "ReconciliationResult":
        return cls(
            action=action,
            order_id=order.id,
            status=order.status,
            payment_status=order.payment_status,
            detail=detail,
        )


OUTCOME_BY_EVENT = {
    GatewayEventKind.INTENT_SUCCEEDED: OutcomeKind.SUCCEEDED,
    GatewayEventKind.INTENT_FAILED: OutcomeKind.FAILED,
    GatewayEventKind.CHARGE_REFUNDED: OutcomeKind.REFUNDED,
}

OPEN_REFUND_STATUSES = (RefundStatus.PENDING, RefundStatus.SUCCEEDED)

OutcomeHandler = Callable[[Order, PaymentOutcome, Optional[PaymentIntentRecord]], Awaitable[ReconciliationResult]]


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class ReconciliationEngine:
    def __init__(
        self,
        config: CommerceConfig,
        orders: IOrderRepository,
        intents: IPaymentIntentRepository,
        refunds: IRefundRepository,
        gateways: Mapping[PaymentMethod, PaymentGatewayAdapter],
        pricing: PricingEngine,
        audit: AuditTrail,
    ):
        self.config = config
        self.orders = orders
        self.intents = intents
        self.refunds = refunds
        self.gateways = dict(gateways)
        self.pricing = pricing
        self.audit = audit

        self._handlers: Dict[OutcomeKind, OutcomeHandler] = {
            OutcomeKind.SUCCEEDED: self._on_succeeded,
            OutcomeKind.FAILED: self._on_failed,
            OutcomeKind.REFUNDED: self._on_refunded,
        }

        # Intent and order locks (serialize reconciliation within this process)
        self._intent_locks = KeyedLocks()
        self._order_locks = KeyedLocks()

    def gateway(self, method: PaymentMethod) -> PaymentGatewayAdapter:
        adapter = self.gateways.get(method)
        if adapter is None:
            raise OrderValidationError(f"Payment method {method.value} is not available")
        return adapter

    async def _flag(
        self,
        outcome: PaymentOutcome,
        detail: str,
        order: Optional[Order] = None,
    ) -> ReconciliationResult:
        """Record a discrepancy. Nothing is applied."""
        logger.error(
            "reconciliation_discrepancy",
            intent_id=outcome.intent_id,
            order_id=order.id if order else None,
            outcome=outcome.kind.value,
            source=outcome.source,
            detail=detail,
        )
        await self.audit.emit(
            AuditEventType.RECONCILIATION_DISCREPANCY,
            "order" if order else "payment_intent",
            order.id if order else outcome.intent_id,
            severity="CRITICAL",
            intent_id=outcome.intent_id,
            outcome=outcome.kind.value,
            source=outcome.source,
            amount=str(outcome.amount) if outcome.amount is not None else None,
            order_status=order.status.value if order else None,
            order_payment_status=order.payment_status.value if order else None,
            detail=detail,
        )
        if order is None:
            return ReconciliationResult(action=Action.DISCREPANCY, detail=detail)
        return ReconciliationResult.for_order(Action.DISCREPANCY, order, detail)

    # =========================================================================
    # CREATE INTENT
    # =========================================================================

    async def create_payment_intent(self, request: CreateIntentRequest) -> IntentHandle:
        amount = self.pricing.intent_amount(request.items, request.shipping, request.tax)

        order = None
        if request.order_id:
            order = await self.orders.get(request.order_id)
            if order is None:
                raise NotFoundError(f"Order {request.order_id} not found")
            if order.status not in (OrderStatus.PENDING, OrderStatus.PAYMENT_FAILED):
                raise ConflictError(
                    f"Order {order.order_number} is {order.status.value} and cannot take a new payment",
                    current_state=order.status.value,
                )
            if amount != order.total:
                raise ConflictError(
                    f"Intent amount {amount} does not match order total {order.total}",
                    current_state=order.status.value,
                )

        customer_email = request.customer_email or (order.customer_email if order else None)
        adapter = self.gateway(request.payment_method)
        handle = await adapter.create_intent(
            amount,
            self.config.currency,
            {"orderId": request.order_id, "customerEmail": customer_email},
        )

        await self.intents.save(PaymentIntentRecord(
            id=handle.intent_id,
            order_id=order.id if order else None,
            payment_method=request.payment_method,
            amount=amount,
            currency=self.config.currency,
            status=handle.status,
            customer_email=customer_email,
        ))

        if order is not None:
            linked = await self.orders.compare_and_update(
                order.id,
                [OrderStatus.PENDING, OrderStatus.PAYMENT_FAILED],
                {"external_payment_reference": handle.intent_id, "payment_method": request.payment_method},
            )
            if linked is None:
                logger.warning("intent_link_lost_race", order_id=order.id, intent_id=handle.intent_id)

        await self.audit.emit(
            AuditEventType.PAYMENT_INTENT_CREATED,
            "payment_intent",
            handle.intent_id,
            order_id=request.order_id,
            amount=str(amount),
            payment_method=request.payment_method.value,
        )
        return handle

    # =========================================================================
    # ENTRY POINT A: CONFIRM
    # =========================================================================

    async def confirm(self, intent_id: str, order_id: Optional[str] = None) -> ReconciliationResult:
        record = await self.intents.get(intent_id)
        order = None
        if order_id:
            order = await self.orders.get(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            if record and record.order_id and record.order_id != order_id:
                raise ConflictError(
                    f"Payment intent {intent_id} belongs to a different order",
                    current_state=record.status.value,
                )

        if record:
            method = record.payment_method
        elif order:
            method = order.payment_method
        else:
            method = PaymentMethod.CARD

        try:
            return await self._sync(intent_id, order_id, method, source="confirm")
        except UpstreamPaymentError as e:
            logger.warning("confirm_upstream_failed", intent_id=intent_id, order_id=order_id, error=e.message)
            await self.apply_payment_outcome(PaymentOutcome(
                kind=OutcomeKind.FAILED,
                intent_id=intent_id,
                source="confirm",
                order_hint=order_id,
                payment_method=method,
                error_message=e.message,
            ))
            raise

    async def _sync(
        self,
        intent_id: str,
        order_hint: Optional[str],
        method: PaymentMethod,
        source: str,
    ) -> ReconciliationResult:
        """Ask the processor for the intent's state and apply it if final."""
        snapshot = await self.gateway(method).capture_intent(intent_id)

        if snapshot.status == IntentStatus.SUCCEEDED:
            kind = OutcomeKind.SUCCEEDED
        elif snapshot.status == IntentStatus.FAILED:
            kind = OutcomeKind.FAILED
        else:
            await self.intents.update_status(intent_id, snapshot.status)
            return ReconciliationResult(
                action=Action.IGNORED,
                order_id=order_hint or snapshot.metadata.get("orderId"),
                detail=f"Payment status: {snapshot.status.value}",
            )

        return await self.apply_payment_outcome(PaymentOutcome(
            kind=kind,
            intent_id=intent_id,
            source=source,
            amount=snapshot.amount,
            metadata=snapshot.metadata,
            order_hint=order_hint,
            payment_method=method,
            error_message=snapshot.error_message,
        ))

    # =========================================================================
    # ENTRY POINT B: WEBHOOKS
    # =========================================================================

    async def handle_webhook(
        self,
        method: PaymentMethod,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> ReconciliationResult:
        adapter = self.gateway(method)
        try:
            event = await adapter.parse_webhook(payload, headers)
        except WebhookSignatureError as e:
            await self.audit.emit(
                AuditEventType.WEBHOOK_REJECTED,
                "webhook",
                None,
                severity="WARNING",
                rail=method.value,
                reason=e.message,
            )
            raise

        await self.audit.emit(
            AuditEventType.WEBHOOK_RECEIVED,
            "webhook",
            event.event_id,
            rail=method.value,
            processor_event=event.event_type,
            intent_id=event.intent_id,
        )

        kind = OUTCOME_BY_EVENT.get(event.kind)
        if kind is None:
            logger.info("webhook_ignored", event_type=event.event_type, rail=method.value)
            return ReconciliationResult(action=Action.IGNORED, detail=f"Unhandled event type: {event.event_type}")

        if not event.intent_id:
            logger.warning("webhook_without_intent", event_type=event.event_type, event_id=event.event_id)
            return ReconciliationResult(action=Action.IGNORED, detail="Event carries no payment reference")

        return await self.apply_payment_outcome(self._outcome_from_event(kind, event, method))

    @staticmethod
    def _outcome_from_event(kind: OutcomeKind, event: GatewayEvent, method: PaymentMethod) -> PaymentOutcome:
        return PaymentOutcome(
            kind=kind,
            intent_id=event.intent_id,
            source="webhook",
            amount=event.amount,
            metadata=event.metadata,
            payment_method=method,
            error_message=event.error_message,
            reference=event.event_id,
            refund_id=event.refund_id,
            refund_amount=event.refund_amount,
            amount_refunded=event.amount_refunded,
        )

    # =========================================================================
    # ENTRY POINT C: SWEEPER
    # =========================================================================

    async def sweep_order(self, order: Order) -> ReconciliationResult:
        if not order.external_payment_reference:
            return ReconciliationResult.for_order(Action.IGNORED, order, "No payment reference")
        return await self._sync(order.external_payment_reference, order.id, order.payment_method, source="sweeper")

    # =========================================================================
    # APPLY
    # =========================================================================

    async def apply_payment_outcome(self, outcome: PaymentOutcome) -> ReconciliationResult:
        async with self._intent_locks.hold(outcome.intent_id):
            result = await self._apply_locked(outcome)

        logger.info(
            "payment_outcome_applied",
            intent_id=outcome.intent_id,
            outcome=outcome.kind.value,
            source=outcome.source,
            action=result.action.value,
            order_id=result.order_id,
        )
        return result

    async def _apply_locked(self, outcome: PaymentOutcome) -> ReconciliationResult:
        record = await self.intents.get(outcome.intent_id)

        if record is not None:
            record = await self._record_intent_status(record, outcome)

        order_id = (
            (record.order_id if record else None)
            or outcome.metadata.get("orderId")
            or outcome.order_hint
        )
        if not order_id:
            logger.warning("outcome_without_order", intent_id=outcome.intent_id, outcome=outcome.kind.value)
            return ReconciliationResult(action=Action.IGNORED, detail="Payment intent is not linked to an order")

        order = await self.orders.get(order_id)
        if order is None:
            if outcome.kind == OutcomeKind.FAILED:
                return ReconciliationResult(action=Action.IGNORED, detail=f"Order {order_id} not found")
            return await self._flag(outcome, f"Payment outcome references unknown order {order_id}")

        if record is None:
            record = await self._backfill_intent(outcome, order)
        elif record.order_id is None:
            record = await self.intents.link_order(record.id, order.id) or record

        # Two intents for one order (a retry after failure) must not race
        async with self._order_locks.hold(order.id):
            order = await self.orders.get(order.id) or order
            return await self._handlers[outcome.kind](order, outcome, record)

    async def _record_intent_status(self, record: PaymentIntentRecord, outcome: PaymentOutcome) -> PaymentIntentRecord:
        if outcome.kind == OutcomeKind.SUCCEEDED:
            if record.status in (IntentStatus.SUCCEEDED, IntentStatus.REFUNDED, IntentStatus.PARTIALLY_REFUNDED):
                return record
            status = IntentStatus.SUCCEEDED
        elif outcome.kind == OutcomeKind.FAILED:
            if record.status not in (IntentStatus.REQUIRES_ACTION, IntentStatus.PROCESSING, IntentStatus.FAILED):
                return record
            status = IntentStatus.FAILED
        else:
            # Refund status is settled once the cumulative total is known
            return record
        return await self.intents.update_status(record.id, status, outcome.error_message) or record

    async def _backfill_intent(self, outcome: PaymentOutcome, order: Order) -> Optional[PaymentIntentRecord]:
        """Register an intent the registry never saw (created client-side)."""
        if outcome.kind == OutcomeKind.FAILED and outcome.source == "confirm" and outcome.amount is None:
            return None
        status = {
            OutcomeKind.SUCCEEDED: IntentStatus.SUCCEEDED,
            OutcomeKind.FAILED: IntentStatus.FAILED,
            OutcomeKind.REFUNDED: IntentStatus.SUCCEEDED,
        }[outcome.kind]
        record = PaymentIntentRecord(
            id=outcome.intent_id,
            order_id=order.id,
            payment_method=outcome.payment_method or order.payment_method,
            amount=outcome.amount if outcome.amount is not None else order.total,
            currency=order.currency,
            status=status,
            customer_email=order.customer_email,
            error_message=outcome.error_message,
        )
        logger.info("intent_backfilled", intent_id=record.id, order_id=order.id, source=outcome.source)
        return await self.intents.save(record)

    # -------------------------------------------------------------------------
    # Outcome handlers
    # -------------------------------------------------------------------------

    async def _on_succeeded(
        self,
        order: Order,
        outcome: PaymentOutcome,
        record: Optional[PaymentIntentRecord],
    ) -> ReconciliationResult:
        if lifecycle.can_fire(order, Trigger.PAYMENT_SUCCEEDED):
            paid = outcome.amount if outcome.amount is not None else (record.amount if record else None)
            if paid is not None and to_money(paid) != order.total:
                return await self._flag(outcome, f"Paid amount {paid} does not match order total {order.total}", order)

            try:
                updated = await lifecycle.fire(
                    self.orders, order, Trigger.PAYMENT_SUCCEEDED,
                    external_payment_reference=outcome.intent_id,
                )
            except ConflictError:
                # Another writer moved the order first; judge against its state
                fresh = await self.orders.get(order.id)
                return await self._classify_late_success(fresh, outcome)

            await self.audit.emit(
                AuditEventType.PAYMENT_CONFIRMED,
                "order",
                order.id,
                intent_id=outcome.intent_id,
                source=outcome.source,
                amount=str(paid) if paid is not None else None,
                previous_status=order.status.value,
            )
            return ReconciliationResult.for_order(Action.APPLIED, updated, "Payment confirmed")

        return await self._classify_late_success(order, outcome)

    async def _classify_late_success(self, order: Order, outcome: PaymentOutcome) -> ReconciliationResult:
        if order.status in lifecycle.PAID_STATUSES and order.payment_status in (
            PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED,
        ):
            if order.external_payment_reference and order.external_payment_reference != outcome.intent_id:
                return await self._flag(
                    outcome,
                    f"Second payment for order already paid by {order.external_payment_reference}",
                    order,
                )
            return ReconciliationResult.for_order(Action.DUPLICATE, order, "Payment already recorded")

        return await self._flag(
            outcome,
            f"Payment succeeded for order in state {order.status.value}/{order.payment_status.value}",
            order,
        )

    async def _on_failed(
        self,
        order: Order,
        outcome: PaymentOutcome,
        record: Optional[PaymentIntentRecord],
    ) -> ReconciliationResult:
        error_message = outcome.error_message or "Payment failed"

        if order.status == OrderStatus.PAYMENT_FAILED:
            return ReconciliationResult.for_order(Action.DUPLICATE, order, "Failure already recorded")

        if lifecycle.can_fire(order, Trigger.PAYMENT_FAILED):
            try:
                updated = await lifecycle.fire(
                    self.orders, order, Trigger.PAYMENT_FAILED,
                    payment_error=error_message,
                )
            except ConflictError:
                fresh = await self.orders.get(order.id)
                if fresh.status == OrderStatus.PAYMENT_FAILED:
                    return ReconciliationResult.for_order(Action.DUPLICATE, fresh, "Failure already recorded")
                return await self._flag(
                    outcome, f"Payment failed for order in state {fresh.status.value}", fresh,
                )

            await self.audit.emit(
                AuditEventType.PAYMENT_FAILED,
                "order",
                order.id,
                severity="WARNING",
                intent_id=outcome.intent_id,
                source=outcome.source,
                error=error_message,
            )
            return ReconciliationResult.for_order(Action.APPLIED, updated, error_message)

        return await self._flag(
            outcome,
            f"Payment failed for order in state {order.status.value}/{order.payment_status.value}",
            order,
        )

    async def _on_refunded(
        self,
        order: Order,
        outcome: PaymentOutcome,
        record: Optional[PaymentIntentRecord],
    ) -> ReconciliationResult:
        intent_amount = record.amount if record else order.total
        refunds = await self._settle_refund_records(outcome, record)
        local_total = sum((r.amount for r in refunds if r.status in OPEN_REFUND_STATUSES), Decimal("0.00"))
        refunded_total = max(local_total, outcome.amount_refunded or Decimal("0.00"))

        full = refunded_total >= intent_amount
        target = PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED

        if record is not None:
            await self.intents.update_status(
                record.id,
                IntentStatus.REFUNDED if full else IntentStatus.PARTIALLY_REFUNDED,
            )

        if order.payment_status == target or order.payment_status == PaymentStatus.REFUNDED:
            return ReconciliationResult.for_order(Action.DUPLICATE, order, "Refund already reflected")

        trigger = Trigger.FULL_REFUND if full else Trigger.PARTIAL_REFUND
        if not lifecycle.can_fire(order, trigger):
            return await self._flag(
                outcome,
                f"Refund for order in state {order.status.value}/{order.payment_status.value}",
                order,
            )

        try:
            updated = await lifecycle.fire(self.orders, order, trigger)
        except ConflictError:
            fresh = await self.orders.get(order.id)
            if fresh.payment_status in (target, PaymentStatus.REFUNDED):
                return ReconciliationResult.for_order(Action.DUPLICATE, fresh, "Refund already reflected")
            return await self._flag(outcome, f"Refund for order in state {fresh.status.value}", fresh)

        await self.audit.emit(
            AuditEventType.PAYMENT_REFUNDED,
            "order",
            order.id,
            intent_id=outcome.intent_id,
            source=outcome.source,
            refund_id=outcome.refund_id,
            refunded_total=str(refunded_total),
            payment_status=updated.payment_status.value,
        )
        return ReconciliationResult.for_order(Action.APPLIED, updated, f"Refunded {refunded_total}")

    async def _settle_refund_records(
        self,
        outcome: PaymentOutcome,
        record: Optional[PaymentIntentRecord],
    ) -> List[RefundRecord]:
        """Mark the notified refund succeeded, recording it if it was issued outside this system."""
        if record is None:
            return []

        refunds = await self.refunds.list_for_intent(record.id)
        known = {r.id: r for r in refunds}

        if outcome.refund_id and outcome.refund_id in known:
            if known[outcome.refund_id].status != RefundStatus.SUCCEEDED:
                await self.refunds.update_status(outcome.refund_id, RefundStatus.SUCCEEDED)
        else:
            local_total = sum((r.amount for r in refunds if r.status in OPEN_REFUND_STATUSES), Decimal("0.00"))
            amount = outcome.refund_amount
            if amount is None and outcome.amount_refunded is not None:
                amount = outcome.amount_refunded - local_total
            if amount is not None and amount > 0:
                refund_id = outcome.refund_id or f"ext_{outcome.reference or outcome.intent_id}"
                logger.warning("external_refund_recorded", intent_id=record.id, refund_id=refund_id,
                               amount=str(amount))
                await self.refunds.save(RefundRecord(
                    id=refund_id,
                    payment_intent_id=record.id,
                    amount=to_money(amount),
                    reason="issued outside storefront",
                    status=RefundStatus.SUCCEEDED,
                ))

        return await self.refunds.list_for_intent(record.id)

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> Tuple[RefundResult, Order]:
        record = await self.intents.get(intent_id)
        if record is None:
            raise NotFoundError(f"Payment intent {intent_id} not found")
        if not record.order_id:
            raise ConflictError(f"Payment intent {intent_id} is not linked to an order",
                                current_state=record.status.value)

        async with self._intent_locks.hold(intent_id):
            order = await self.orders.get(record.order_id)
            if order is None:
                raise NotFoundError(f"Order {record.order_id} not found")
            if not lifecycle.can_fire(order, Trigger.FULL_REFUND):
                raise ConflictError(
                    f"Cannot refund order in state {order.status.value}/{order.payment_status.value}",
                    current_state=order.status.value,
                )

            refunds = await self.refunds.list_for_intent(intent_id)
            already = sum((r.amount for r in refunds if r.status in OPEN_REFUND_STATUSES), Decimal("0.00"))
            remaining = record.amount - already
            if remaining <= 0:
                raise ConflictError("Payment has already been fully refunded", current_state=order.payment_status.value)

            if amount is not None:
                amount = to_money(amount)
                if amount <= 0 or amount > remaining:
                    raise ConflictError(
                        f"Refund amount {amount} exceeds refundable balance {remaining}",
                        current_state=order.payment_status.value,
                    )

            result = await self.gateway(record.payment_method).create_refund(intent_id, amount, reason)
            await self.refunds.save(RefundRecord(
                id=result.refund_id,
                payment_intent_id=intent_id,
                amount=result.amount if result.amount > 0 else (amount or remaining),
                reason=reason,
                status=result.status,
            ))

            if result.status != RefundStatus.SUCCEEDED:
                logger.info("refund_not_settled", intent_id=intent_id, refund_id=result.refund_id,
                            status=result.status.value)
                return result, order

            refunded_total = already + (amount if amount is not None else remaining)
            partial = amount is not None and refunded_total < record.amount
            trigger = Trigger.PARTIAL_REFUND if partial else Trigger.FULL_REFUND

            updated = await lifecycle.fire(self.orders, order, trigger)
            await self.intents.update_status(
                intent_id,
                IntentStatus.PARTIALLY_REFUNDED if partial else IntentStatus.REFUNDED,
            )

        await self.audit.emit(
            AuditEventType.PAYMENT_REFUNDED,
            "order",
            order.id,
            intent_id=intent_id,
            source="refund",
            refund_id=result.refund_id,
            amount=str(result.amount),
            refunded_total=str(refunded_total),
            payment_status=updated.payment_status.value,
            reason=reason,
        )
        return result, updated

    # =========================================================================
    # DISCREPANCIES
    # =========================================================================

    async def list_discrepancies(self, limit: int = 50) -> List[AuditLogEntry]:
        return await self.audit.log.recent(
            event_types=[AuditEventType.RECONCILIATION_DISCREPANCY.value],
            limit=limit,
        )
