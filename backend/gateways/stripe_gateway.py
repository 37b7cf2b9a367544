"""
Card rail adapter (Stripe)
==========================
PaymentIntents + Refunds through the stripe SDK. The SDK is synchronous, so
every call runs in a worker thread under a timeout.

pip install stripe
"""

import asyncio
import json
from decimal import Decimal
from functools import partial
from typing import Any, Dict, Mapping, Optional

import stripe
import structlog

from config import CommerceConfig
from errors import UpstreamPaymentError, WebhookSignatureError
from gateways.base import (
    GatewayEvent,
    GatewayEventKind,
    IntentHandle,
    IntentSnapshot,
    PaymentGatewayAdapter,
    RefundResult,
)
from schemas.orders import IntentStatus, PaymentMethod, RefundStatus, to_money

logger = structlog.get_logger().bind(component="stripe_gateway")


INTENT_STATUS_MAP = {
    "requires_payment_method": IntentStatus.REQUIRES_ACTION,
    "requires_confirmation": IntentStatus.REQUIRES_ACTION,
    "requires_action": IntentStatus.REQUIRES_ACTION,
    "requires_capture": IntentStatus.REQUIRES_ACTION,
    "processing": IntentStatus.PROCESSING,
    "succeeded": IntentStatus.SUCCEEDED,
    "canceled": IntentStatus.FAILED,
}

REFUND_STATUS_MAP = {
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.CANCELED,
}

EVENT_KIND_MAP = {
    "payment_intent.succeeded": GatewayEventKind.INTENT_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventKind.INTENT_FAILED,
    "charge.refunded": GatewayEventKind.CHARGE_REFUNDED,
}

# Stripe only accepts these refund reasons; anything else travels in metadata
STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def to_cents(amount: Decimal) -> int:
    return int(to_money(amount) * 100)


def from_cents(cents: Optional[int]) -> Decimal:
    return to_money(Decimal(cents or 0) / 100)


def _intent_status(intent: Mapping[str, Any]) -> IntentStatus:
    status = intent.get("status")
    # A declined attempt sends the intent back to requires_payment_method
    if status == "requires_payment_method" and intent.get("last_payment_error"):
        return IntentStatus.FAILED
    return INTENT_STATUS_MAP.get(status, IntentStatus.REQUIRES_ACTION)


def _metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    metadata = obj.get("metadata") or {}
    return {str(k): str(metadata[k]) for k in metadata.keys()}


class StripeGateway(PaymentGatewayAdapter):
    method = PaymentMethod.CARD
    name = "stripe"

    def __init__(self, config: CommerceConfig, client=stripe):
        self._api_key = config.stripe_secret_key
        self._webhook_secret = config.stripe_webhook_secret
        self._timeout = config.processor_timeout_seconds
        self._stripe = client

    async def _call(self, operation: str, fn, **kwargs):
        """Run a blocking SDK call off the event loop."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(partial(fn, api_key=self._api_key, **kwargs)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("stripe_timeout", operation=operation, timeout=self._timeout)
            raise UpstreamPaymentError(f"Card processor timed out during {operation}", processor=self.name) from e
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            logger.warning("stripe_error", operation=operation, error=str(e),
                           error_type=type(e).__name__, code=code)
            raise UpstreamPaymentError(
                e.user_message or f"Card processor rejected {operation}",
                processor=self.name,
                decline_code=code,
            ) from e

    def _snapshot(self, intent: Mapping[str, Any]) -> IntentSnapshot:
        error = intent.get("last_payment_error") or {}
        return IntentSnapshot(
            intent_id=intent["id"],
            status=_intent_status(intent),
            amount=from_cents(intent.get("amount")),
            metadata=_metadata(intent),
            error_message=error.get("message"),
            decline_code=error.get("decline_code") or error.get("code"),
        )

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, Any],
    ) -> IntentHandle:
        intent = await self._call(
            "create_intent",
            self._stripe.PaymentIntent.create,
            amount=to_cents(amount),
            currency=currency.lower(),
            metadata={k: str(v) for k, v in metadata.items() if v is not None},
            automatic_payment_methods={"enabled": True},
        )
        logger.info("stripe_intent_created", intent_id=intent["id"], amount=str(amount))
        return IntentHandle(
            intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            amount=from_cents(intent.get("amount")),
            status=_intent_status(intent),
        )

    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        intent = await self._call("retrieve_intent", self._stripe.PaymentIntent.retrieve, id=intent_id)
        return self._snapshot(intent)

    async def capture_intent(self, intent_id: str) -> IntentSnapshot:
        # Card intents are confirmed client-side and captured automatically
        return await self.retrieve_intent(intent_id)

    async def create_refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        params: Dict[str, Any] = {"payment_intent": intent_id}
        if amount is not None:
            params["amount"] = to_cents(amount)
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        else:
            params["reason"] = "requested_by_customer"
            if reason:
                params["metadata"] = {"reason": reason}

        refund = await self._call("create_refund", self._stripe.Refund.create, **params)
        logger.info("stripe_refund_created", intent_id=intent_id, refund_id=refund["id"],
                    status=refund.get("status"))
        return RefundResult(
            refund_id=refund["id"],
            amount=from_cents(refund.get("amount")),
            status=REFUND_STATUS_MAP.get(refund.get("status"), RefundStatus.PENDING),
        )

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        signature = headers.get("stripe-signature")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        # CRITICAL: Verify signature BEFORE parsing
        try:
            self._stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise WebhookSignatureError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning("webhook_payload_invalid", error=str(e))
            raise WebhookSignatureError("Invalid webhook payload") from e

        event = json.loads(payload)
        event_type = event.get("type", "unknown")
        obj = event.get("data", {}).get("object", {})
        kind = EVENT_KIND_MAP.get(event_type, GatewayEventKind.UNKNOWN)

        parsed = GatewayEvent(kind=kind, event_id=event.get("id", "unknown"), event_type=event_type)

        if kind in (GatewayEventKind.INTENT_SUCCEEDED, GatewayEventKind.INTENT_FAILED):
            error = obj.get("last_payment_error") or {}
            parsed.intent_id = obj.get("id")
            parsed.amount = from_cents(obj.get("amount_received") or obj.get("amount"))
            parsed.metadata = _metadata(obj)
            parsed.error_message = error.get("message")

        elif kind == GatewayEventKind.CHARGE_REFUNDED:
            refunds = (obj.get("refunds") or {}).get("data") or []
            parsed.intent_id = obj.get("payment_intent")
            parsed.amount = from_cents(obj.get("amount"))
            parsed.metadata = _metadata(obj)
            parsed.amount_refunded = from_cents(obj.get("amount_refunded"))
            if refunds:
                parsed.refund_id = refunds[0].get("id")
                parsed.refund_amount = from_cents(refunds[0].get("amount"))

        return parsed
