"""Tests for the wallet rail adapter, against a mocked PayPal REST API."""

import json
from decimal import Decimal

import httpx
import pytest

from config import CommerceConfig
from errors import UpstreamPaymentError, WebhookSignatureError
from gateways.base import GatewayEventKind
from gateways.paypal_gateway import PayPalGateway
from schemas.orders import IntentStatus, RefundStatus

ORDER_ID = "5O190127TN364715T"
CAPTURE_ID = "3C679366HH908993F"

TRANSMISSION = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
    "paypal-transmission-id": "dfb3be50-fd74-11e4-8bf3-77339302725b",
    "paypal-transmission-sig": "thisisasignature",
    "paypal-transmission-time": "2026-10-17T18:04:27Z",
}


@pytest.fixture
def config():
    return CommerceConfig(
        paypal_client_id="client-id",
        paypal_client_secret="client-secret",
        paypal_webhook_id="WH-TEST",
    )


def captured_order(status="COMPLETED"):
    return {
        "id": ORDER_ID,
        "status": "COMPLETED",
        "purchase_units": [{
            "custom_id": "order-1",
            "amount": {"currency_code": "USD", "value": "64.95"},
            "payments": {"captures": [{
                "id": CAPTURE_ID,
                "status": status,
                "amount": {"currency_code": "USD", "value": "64.95"},
            }]},
        }],
    }


class PayPalStub:
    """Routes requests to canned responses and remembers what was sent."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AAF", "expires_in": 32400})
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": "not found"})
        status, body = handler(request) if callable(handler) else handler
        return httpx.Response(status, json=body)

    def sent(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
async def make_gateway(config):
    gateways = []

    def build(routes, cfg=None):
        stub = PayPalStub(routes)
        gateway = PayPalGateway(cfg or config, transport=httpx.MockTransport(stub))
        gateways.append(gateway)
        return gateway, stub

    yield build

    for gateway in gateways:
        await gateway.aclose()


class TestOrders:
    async def test_create_intent(self, make_gateway):
        gateway, stub = make_gateway({
            ("POST", "/v2/checkout/orders"): (201, {
                "id": ORDER_ID,
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{ORDER_ID}"},
                    {"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={ORDER_ID}"},
                ],
            }),
        })

        handle = await gateway.create_intent(Decimal("64.95"), "usd", {"orderId": "order-1"})

        body = json.loads(stub.sent("POST", "/v2/checkout/orders")[0].content)
        unit = body["purchase_units"][0]
        assert body["intent"] == "CAPTURE"
        assert unit["amount"] == {"currency_code": "USD", "value": "64.95"}
        assert unit["custom_id"] == "order-1"
        assert handle.intent_id == ORDER_ID
        assert handle.client_secret.endswith(f"token={ORDER_ID}")
        assert handle.status == IntentStatus.REQUIRES_ACTION

    async def test_access_token_is_cached(self, make_gateway):
        gateway, stub = make_gateway({
            ("GET", f"/v2/checkout/orders/{ORDER_ID}"): (200, {"id": ORDER_ID, "status": "CREATED"}),
        })

        await gateway.retrieve_intent(ORDER_ID)
        await gateway.retrieve_intent(ORDER_ID)

        assert len(stub.sent("POST", "/v1/oauth2/token")) == 1
        assert stub.sent("GET", f"/v2/checkout/orders/{ORDER_ID}")[0].headers["Authorization"] == "Bearer A21AAF"

    async def test_capture_approved_order(self, make_gateway):
        gateway, stub = make_gateway({
            ("GET", f"/v2/checkout/orders/{ORDER_ID}"): (200, {"id": ORDER_ID, "status": "APPROVED"}),
            ("POST", f"/v2/checkout/orders/{ORDER_ID}/capture"): (201, captured_order()),
        })

        snapshot = await gateway.capture_intent(ORDER_ID)

        assert snapshot.status == IntentStatus.SUCCEEDED
        assert snapshot.amount == Decimal("64.95")
        assert snapshot.metadata == {"orderId": "order-1"}

    async def test_unapproved_order_is_not_captured(self, make_gateway):
        gateway, stub = make_gateway({
            ("GET", f"/v2/checkout/orders/{ORDER_ID}"): (200, {"id": ORDER_ID, "status": "PAYER_ACTION_REQUIRED"}),
        })

        snapshot = await gateway.capture_intent(ORDER_ID)

        assert snapshot.status == IntentStatus.REQUIRES_ACTION
        assert not stub.sent("POST", f"/v2/checkout/orders/{ORDER_ID}/capture")

    async def test_declined_capture(self, make_gateway):
        gateway, _ = make_gateway({
            ("GET", f"/v2/checkout/orders/{ORDER_ID}"): (200, {"id": ORDER_ID, "status": "APPROVED"}),
            ("POST", f"/v2/checkout/orders/{ORDER_ID}/capture"): (422, {
                "name": "UNPROCESSABLE_ENTITY",
                "message": "The requested action could not be performed.",
                "details": [{"issue": "INSTRUMENT_DECLINED"}],
            }),
        })

        with pytest.raises(UpstreamPaymentError) as exc_info:
            await gateway.capture_intent(ORDER_ID)

        assert exc_info.value.decline_code == "INSTRUMENT_DECLINED"
        assert exc_info.value.processor == "paypal"

    async def test_missing_credentials(self, make_gateway):
        gateway, _ = make_gateway({}, cfg=CommerceConfig())

        with pytest.raises(UpstreamPaymentError, match="not configured"):
            await gateway.retrieve_intent(ORDER_ID)


class TestRefunds:
    async def test_partial_refund_targets_capture(self, make_gateway):
        gateway, stub = make_gateway({
            ("GET", f"/v2/checkout/orders/{ORDER_ID}"): (200, captured_order()),
            ("POST", f"/v2/payments/captures/{CAPTURE_ID}/refund"): (201, {
                "id": "1JU08902781691411",
                "status": "COMPLETED",
                "amount": {"currency_code": "USD", "value": "20.00"},
            }),
        })

        result = await gateway.create_refund(ORDER_ID, Decimal("20.00"), "damaged")

        body = json.loads(stub.sent("POST", f"/v2/payments/captures/{CAPTURE_ID}/refund")[0].content)
        assert body["amount"] == {"value": "20.00", "currency_code": "USD"}
        assert body["note_to_payer"] == "damaged"
        assert result.refund_id == "1JU08902781691411"
        assert result.amount == Decimal("20.00")
        assert result.status == RefundStatus.SUCCEEDED

    async def test_uncaptured_order_cannot_be_refunded(self, make_gateway):
        gateway, _ = make_gateway({
            ("GET", f"/v2/checkout/orders/{ORDER_ID}"): (200, {"id": ORDER_ID, "status": "APPROVED"}),
        })

        with pytest.raises(UpstreamPaymentError, match="no capture"):
            await gateway.create_refund(ORDER_ID)


class TestWebhooks:
    async def test_verified_capture_completed(self, make_gateway):
        gateway, stub = make_gateway({
            ("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "SUCCESS"}),
        })
        event = {
            "id": "WH-58D329510W468432D",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": CAPTURE_ID,
                "status": "COMPLETED",
                "custom_id": "order-1",
                "amount": {"currency_code": "USD", "value": "64.95"},
                "supplementary_data": {"related_ids": {"order_id": ORDER_ID}},
            },
        }

        parsed = await gateway.parse_webhook(json.dumps(event).encode(), TRANSMISSION)

        verify_body = json.loads(stub.sent("POST", "/v1/notifications/verify-webhook-signature")[0].content)
        assert verify_body["webhook_id"] == "WH-TEST"
        assert verify_body["transmission_id"] == TRANSMISSION["paypal-transmission-id"]
        assert parsed.kind == GatewayEventKind.INTENT_SUCCEEDED
        assert parsed.intent_id == ORDER_ID
        assert parsed.amount == Decimal("64.95")
        assert parsed.metadata == {"orderId": "order-1"}

    async def test_refund_event_walks_back_to_order(self, make_gateway):
        gateway, _ = make_gateway({
            ("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "SUCCESS"}),
            ("GET", f"/v2/payments/captures/{CAPTURE_ID}"): (200, {
                "id": CAPTURE_ID,
                "supplementary_data": {"related_ids": {"order_id": ORDER_ID}},
            }),
        })
        event = {
            "id": "WH-1GE84257G0350133W",
            "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "1JU08902781691411",
                "amount": {"currency_code": "USD", "value": "20.00"},
                "links": [
                    {"rel": "up", "href": f"https://api-m.sandbox.paypal.com/v2/payments/captures/{CAPTURE_ID}"},
                ],
            },
        }

        parsed = await gateway.parse_webhook(json.dumps(event).encode(), TRANSMISSION)

        assert parsed.kind == GatewayEventKind.CHARGE_REFUNDED
        assert parsed.intent_id == ORDER_ID
        assert parsed.refund_id == "1JU08902781691411"
        assert parsed.refund_amount == Decimal("20.00")

    async def test_failed_verification(self, make_gateway):
        gateway, _ = make_gateway({
            ("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "FAILURE"}),
        })

        with pytest.raises(WebhookSignatureError):
            await gateway.parse_webhook(b'{"event_type": "PAYMENT.CAPTURE.COMPLETED"}', TRANSMISSION)

    async def test_missing_transmission_headers(self, make_gateway):
        gateway, stub = make_gateway({})
        headers = {k: v for k, v in TRANSMISSION.items() if k != "paypal-transmission-sig"}

        with pytest.raises(WebhookSignatureError, match="paypal-transmission-sig"):
            await gateway.parse_webhook(b"{}", headers)

        assert not stub.requests
