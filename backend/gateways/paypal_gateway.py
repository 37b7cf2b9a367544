"""
Wallet rail adapter (PayPal)
============================
PayPal Orders v2 over httpx with OAuth client-credentials. A PayPal order id
plays the role of the intent id; the storefront order id travels in the
purchase unit's custom_id.

Webhooks are verified by PayPal itself through verify-webhook-signature,
against the webhook id configured for this deployment.
"""

import json
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx
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

logger = structlog.get_logger().bind(component="paypal_gateway")


ORDER_STATUS_MAP = {
    "CREATED": IntentStatus.REQUIRES_ACTION,
    "SAVED": IntentStatus.REQUIRES_ACTION,
    "APPROVED": IntentStatus.REQUIRES_ACTION,
    "PAYER_ACTION_REQUIRED": IntentStatus.REQUIRES_ACTION,
    "COMPLETED": IntentStatus.SUCCEEDED,
    "VOIDED": IntentStatus.FAILED,
}

CAPTURE_STATUS_MAP = {
    "COMPLETED": IntentStatus.SUCCEEDED,
    "PENDING": IntentStatus.PROCESSING,
    "DECLINED": IntentStatus.FAILED,
    "FAILED": IntentStatus.FAILED,
    "REFUNDED": IntentStatus.REFUNDED,
    "PARTIALLY_REFUNDED": IntentStatus.PARTIALLY_REFUNDED,
}

REFUND_STATUS_MAP = {
    "COMPLETED": RefundStatus.SUCCEEDED,
    "PENDING": RefundStatus.PENDING,
    "FAILED": RefundStatus.FAILED,
    "CANCELLED": RefundStatus.CANCELED,
}

EVENT_KIND_MAP = {
    "PAYMENT.CAPTURE.COMPLETED": GatewayEventKind.INTENT_SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": GatewayEventKind.INTENT_FAILED,
    "PAYMENT.CAPTURE.DECLINED": GatewayEventKind.INTENT_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": GatewayEventKind.CHARGE_REFUNDED,
}

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _money(amount: Optional[Mapping[str, Any]]) -> Optional[Decimal]:
    if not amount or amount.get("value") is None:
        return None
    return to_money(amount["value"])


def _first_capture(order: Mapping[str, Any]) -> Dict[str, Any]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return {}


def _link(resource: Mapping[str, Any], rel: str) -> Optional[str]:
    for link in resource.get("links") or []:
        if link.get("rel") == rel:
            return link.get("href")
    return None


class PayPalGateway(PaymentGatewayAdapter):
    method = PaymentMethod.WALLET
    name = "paypal"

    def __init__(self, config: CommerceConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._client_id = config.paypal_client_id
        self._client_secret = config.paypal_client_secret
        self._webhook_id = config.paypal_webhook_id
        self._client = httpx.AsyncClient(
            base_url=config.paypal_api_base,
            timeout=config.processor_timeout_seconds,
            transport=transport,
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not self._client_id or not self._client_secret:
            raise UpstreamPaymentError("Wallet processor credentials are not configured", processor=self.name)

        data = await self._send(
            "oauth_token",
            "POST",
            "/v1/oauth2/token",
            authenticated=False,
            auth=(self._client_id, self._client_secret),
            data={"grant_type": "client_credentials"},
        )
        self._token = data["access_token"]
        # Refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._token

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        authenticated: bool = True,
        **kwargs,
    ) -> Dict[str, Any]:
        headers = kwargs.pop("headers", {})
        if authenticated:
            headers["Authorization"] = f"Bearer {await self._access_token()}"

        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("paypal_timeout", operation=operation)
            raise UpstreamPaymentError(f"Wallet processor timed out during {operation}", processor=self.name) from e
        except httpx.HTTPError as e:
            logger.error("paypal_transport_error", operation=operation, error=str(e))
            raise UpstreamPaymentError(f"Wallet processor unreachable during {operation}", processor=self.name) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            details = body.get("details") or [{}]
            issue = details[0].get("issue") or body.get("name") or body.get("error")
            logger.warning("paypal_error", operation=operation, status_code=response.status_code, issue=issue)
            raise UpstreamPaymentError(
                body.get("message") or f"Wallet processor rejected {operation}",
                processor=self.name,
                decline_code=issue,
            )

        return response.json() if response.content else {}

    # =========================================================================
    # ADAPTER OPERATIONS
    # =========================================================================

    def _snapshot(self, order: Mapping[str, Any]) -> IntentSnapshot:
        units = order.get("purchase_units") or [{}]
        capture = _first_capture(order)

        if capture:
            status = CAPTURE_STATUS_MAP.get(capture.get("status"), IntentStatus.PROCESSING)
        else:
            status = ORDER_STATUS_MAP.get(order.get("status"), IntentStatus.REQUIRES_ACTION)

        metadata = {}
        custom_id = units[0].get("custom_id") or capture.get("custom_id")
        if custom_id:
            metadata["orderId"] = custom_id

        error_message = None
        if status == IntentStatus.FAILED:
            reason = (capture.get("status_details") or {}).get("reason")
            error_message = f"Capture {capture.get('status', order.get('status'))}" + (f": {reason}" if reason else "")

        return IntentSnapshot(
            intent_id=order["id"],
            status=status,
            amount=_money(units[0].get("amount")) or _money(capture.get("amount")) or Decimal("0.00"),
            metadata=metadata,
            error_message=error_message,
        )

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Mapping[str, Any],
    ) -> IntentHandle:
        unit: Dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": str(to_money(amount))},
        }
        if metadata.get("orderId"):
            unit["custom_id"] = str(metadata["orderId"])

        order = await self._send(
            "create_intent",
            "POST",
            "/v2/checkout/orders",
            json={"intent": "CAPTURE", "purchase_units": [unit]},
            headers={"Prefer": "return=representation"},
        )
        logger.info("paypal_order_created", intent_id=order["id"], amount=str(amount))
        return IntentHandle(
            intent_id=order["id"],
            client_secret=_link(order, "approve") or _link(order, "payer-action"),
            amount=to_money(amount),
            status=ORDER_STATUS_MAP.get(order.get("status"), IntentStatus.REQUIRES_ACTION),
        )

    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        order = await self._send("retrieve_intent", "GET", f"/v2/checkout/orders/{intent_id}")
        return self._snapshot(order)

    async def capture_intent(self, intent_id: str) -> IntentSnapshot:
        order = await self._send("retrieve_intent", "GET", f"/v2/checkout/orders/{intent_id}")
        if order.get("status") != "APPROVED":
            return self._snapshot(order)

        captured = await self._send(
            "capture_intent",
            "POST",
            f"/v2/checkout/orders/{intent_id}/capture",
            json={},
            headers={"Prefer": "return=representation"},
        )
        logger.info("paypal_order_captured", intent_id=intent_id, status=captured.get("status"))
        return self._snapshot(captured)

    async def create_refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        order = await self._send("retrieve_intent", "GET", f"/v2/checkout/orders/{intent_id}")
        capture = _first_capture(order)
        if not capture.get("id"):
            raise UpstreamPaymentError(f"Wallet order {intent_id} has no capture to refund", processor=self.name)

        body: Dict[str, Any] = {}
        if amount is not None:
            currency = (capture.get("amount") or {}).get("currency_code", "USD")
            body["amount"] = {"value": str(to_money(amount)), "currency_code": currency}
        if reason:
            body["note_to_payer"] = reason[:255]

        refund = await self._send(
            "create_refund",
            "POST",
            f"/v2/payments/captures/{capture['id']}/refund",
            json=body,
            headers={"Prefer": "return=representation"},
        )
        logger.info("paypal_refund_created", intent_id=intent_id, refund_id=refund["id"],
                    status=refund.get("status"))
        return RefundResult(
            refund_id=refund["id"],
            amount=_money(refund.get("amount")) or _money(capture.get("amount")) or Decimal("0.00"),
            status=REFUND_STATUS_MAP.get(refund.get("status"), RefundStatus.PENDING),
        )

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        transmission = {field: headers.get(header) for field, header in TRANSMISSION_HEADERS.items()}
        missing = [TRANSMISSION_HEADERS[f] for f, v in transmission.items() if not v]
        if missing:
            raise WebhookSignatureError(f"Missing PayPal transmission headers: {', '.join(missing)}")
        if not self._webhook_id:
            raise WebhookSignatureError("Wallet webhook id is not configured")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureError("Invalid webhook payload") from e

        verification = await self._send(
            "verify_webhook",
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={**transmission, "webhook_id": self._webhook_id, "webhook_event": event},
        )
        if verification.get("verification_status") != "SUCCESS":
            logger.warning("webhook_signature_invalid", transmission_id=transmission["transmission_id"])
            raise WebhookSignatureError("Invalid webhook signature")

        event_type = event.get("event_type", "unknown")
        resource = event.get("resource") or {}
        kind = EVENT_KIND_MAP.get(event_type, GatewayEventKind.UNKNOWN)

        parsed = GatewayEvent(kind=kind, event_id=event.get("id", "unknown"), event_type=event_type)

        if kind in (GatewayEventKind.INTENT_SUCCEEDED, GatewayEventKind.INTENT_FAILED):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            parsed.intent_id = related.get("order_id")
            parsed.amount = _money(resource.get("amount"))
            if resource.get("custom_id"):
                parsed.metadata = {"orderId": resource["custom_id"]}
            if kind == GatewayEventKind.INTENT_FAILED:
                reason = (resource.get("status_details") or {}).get("reason")
                parsed.error_message = f"Capture {resource.get('status', 'DECLINED')}" + (f": {reason}" if reason else "")

        elif kind == GatewayEventKind.CHARGE_REFUNDED:
            parsed.refund_id = resource.get("id")
            parsed.refund_amount = _money(resource.get("amount"))
            if resource.get("custom_id"):
                parsed.metadata = {"orderId": resource["custom_id"]}
            parsed.intent_id = await self._order_for_refund(resource)

        return parsed

    async def _order_for_refund(self, refund: Mapping[str, Any]) -> Optional[str]:
        """Walk refund -> capture -> order; refund resources do not carry the order id."""
        capture_url = _link(refund, "up")
        if not capture_url:
            return None
        capture_id = capture_url.rstrip("/").rsplit("/", 1)[-1]
        capture = await self._send("retrieve_capture", "GET", f"/v2/payments/captures/{capture_id}")
        related = (capture.get("supplementary_data") or {}).get("related_ids") or {}
        return related.get("order_id")
