"""Pytest fixtures: memory-backed services, a scripted processor rail, and an API client."""

import json
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from config import CommerceConfig
from errors import UpstreamPaymentError, WebhookSignatureError
from gateways.base import (
    GatewayEvent,
    IntentHandle,
    IntentSnapshot,
    PaymentGatewayAdapter,
    RefundResult,
)
from schemas.api_models import CreateIntentRequest, CreateOrderRequest
from schemas.orders import IntentStatus, PaymentMethod, Product, RefundStatus
from services.container import build_memory_services
from storage.memory import InMemoryInventoryLedger

ADMIN_TOKEN = "test-admin-token"
VALID_SIGNATURE = "valid"


class ScriptedGateway(PaymentGatewayAdapter):
    """Processor rail whose answers are set by the test."""

    name = "scripted"

    def __init__(self, method: PaymentMethod = PaymentMethod.CARD):
        self.method = method
        self.intents: Dict[str, IntentSnapshot] = {}
        self.refunds = []
        self.refund_status = RefundStatus.SUCCEEDED
        self._prefix = "pi" if method == PaymentMethod.CARD else "PAYPAL"

    def settle(
        self,
        intent_id: str,
        status: IntentStatus,
        amount: Optional[Decimal] = None,
        error_message: Optional[str] = None,
    ) -> None:
        snapshot = self.intents[intent_id]
        self.intents[intent_id] = snapshot.model_copy(update={
            "status": status,
            "amount": amount if amount is not None else snapshot.amount,
            "error_message": error_message,
        })

    async def create_intent(self, amount: Decimal, currency: str, metadata: Mapping[str, Any]) -> IntentHandle:
        intent_id = f"{self._prefix}_test_{len(self.intents) + 1}"
        self.intents[intent_id] = IntentSnapshot(
            intent_id=intent_id,
            status=IntentStatus.REQUIRES_ACTION,
            amount=amount,
            metadata={k: str(v) for k, v in metadata.items() if v is not None},
        )
        return IntentHandle(
            intent_id=intent_id,
            client_secret=f"{intent_id}_secret",
            amount=amount,
            status=IntentStatus.REQUIRES_ACTION,
        )

    async def retrieve_intent(self, intent_id: str) -> IntentSnapshot:
        if intent_id not in self.intents:
            raise UpstreamPaymentError(f"No such payment intent: {intent_id}", processor=self.name)
        return self.intents[intent_id]

    async def capture_intent(self, intent_id: str) -> IntentSnapshot:
        return await self.retrieve_intent(intent_id)

    async def create_refund(
        self,
        intent_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        snapshot = await self.retrieve_intent(intent_id)
        refunded = sum((r.amount for r in self.refunds if r.status == RefundStatus.SUCCEEDED), Decimal("0.00"))
        result = RefundResult(
            refund_id=f"re_test_{len(self.refunds) + 1}",
            amount=amount if amount is not None else snapshot.amount - refunded,
            status=self.refund_status,
        )
        self.refunds.append(result)
        return result

    async def parse_webhook(self, payload: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        if headers.get("x-test-signature") != VALID_SIGNATURE:
            raise WebhookSignatureError("Invalid webhook signature")
        return GatewayEvent(**json.loads(payload))


@pytest.fixture
def config() -> CommerceConfig:
    return CommerceConfig(
        storage_backend="memory",
        admin_api_token=ADMIN_TOKEN,
        stripe_publishable_key="pk_test_storefront",
        paypal_client_id="paypal-client-id",
        sweep_enabled=False,
        sweep_threshold_minutes=0,
        env="test",
    )


@pytest.fixture
def catalog():
    return [
        Product(id="prod-widget", name="Widget", price=Decimal("20.00"), inventory_count=10),
        Product(id="prod-gadget", name="Gadget", price=Decimal("60.00"), inventory_count=5),
        Product(id="prod-sticker", name="Sticker", price=Decimal("4.99"), inventory_count=100),
    ]


@pytest.fixture
def card_gateway():
    return ScriptedGateway(PaymentMethod.CARD)


@pytest.fixture
def wallet_gateway():
    return ScriptedGateway(PaymentMethod.WALLET)


@pytest.fixture
def services(config, catalog, card_gateway, wallet_gateway):
    return build_memory_services(
        config,
        gateways={PaymentMethod.CARD: card_gateway, PaymentMethod.WALLET: wallet_gateway},
        inventory=InMemoryInventoryLedger(catalog),
    )


@pytest.fixture
def order_payload():
    """Builds a checkout body as the storefront sends it (camelCase)."""

    def build(items=None, **overrides) -> Dict[str, Any]:
        payload = {
            "items": items if items is not None else [{"id": "prod-widget", "quantity": 3}],
            "customerInfo": {
                "email": "ada@example.com",
                "firstName": "Ada",
                "lastName": "Lovelace",
                "phone": "555-0100",
            },
            "shippingInfo": {
                "address": "12 Analytical Way",
                "city": "Austin",
                "state": "TX",
                "zipCode": "78701",
            },
            "paymentMethod": "card",
        }
        payload.update(overrides)
        return payload

    return build


@pytest.fixture
def order_request(order_payload):
    def build(items=None, **overrides) -> CreateOrderRequest:
        return CreateOrderRequest.model_validate(order_payload(items, **overrides))

    return build


@pytest.fixture
async def pending_order(services, order_request):
    """Three widgets: 60.00 + 4.95 tax, free shipping, 64.95 total."""
    created = await services.orders.create_order(order_request())
    return await services.orders.get_order(created.order_id)


@pytest.fixture
def intent_for():
    """Intent request that prices to exactly the order's total."""

    def build(order, method: PaymentMethod = PaymentMethod.CARD) -> CreateIntentRequest:
        return CreateIntentRequest(
            items=[{"price": order.subtotal, "quantity": 1}],
            shipping=order.shipping,
            tax=order.tax,
            order_id=order.id,
            payment_method=method,
        )

    return build


@pytest.fixture
async def paid_order(services, pending_order, intent_for, card_gateway):
    handle = await services.reconciliation.create_payment_intent(intent_for(pending_order))
    card_gateway.settle(handle.intent_id, IntentStatus.SUCCEEDED)
    await services.reconciliation.confirm(handle.intent_id, pending_order.id)
    return await services.orders.get_order(pending_order.id)


@pytest.fixture
def client(services):
    app = create_app(services=services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
