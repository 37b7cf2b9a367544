"""Tests for the FastAPI API."""

import json

from schemas.orders import IntentStatus


def place_order(client, order_payload, **overrides):
    response = client.post("/orders", json=order_payload(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def pay_order(client, card_gateway, order_id):
    order = client.get(f"/orders/{order_id}").json()["order"]
    intent = client.post("/payments/create-intent", json={
        "items": [{"price": order["subtotal"], "quantity": 1}],
        "shipping": order["shipping"],
        "tax": order["tax"],
        "orderId": order_id,
    }).json()
    card_gateway.settle(intent["intentId"], IntentStatus.SUCCEEDED)
    response = client.post("/payments/confirm", json={"paymentIntentId": intent["intentId"], "orderId": order_id})
    assert response.json()["success"] is True, response.text
    return intent["intentId"]


class TestHealthCheck:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage_backend"] == "memory"
        assert data["database_connected"] is False
        assert "X-Response-Time-Ms" in response.headers

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "req-42"})

        assert response.headers["X-Correlation-ID"] == "req-42"


class TestCreateOrder:
    def test_created(self, client, order_payload):
        response = client.post("/orders", json=order_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        assert data["orderNumber"].startswith("OB-")
        assert data["totals"] == {"subtotal": 60.0, "tax": 4.95, "shipping": 0.0, "total": 64.95}

    def test_invalid_email(self, client, order_payload):
        payload = order_payload()
        payload["customerInfo"]["email"] = "not-an-email"

        response = client.post("/orders", json=payload)

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["details"][0]["field"] == "customerInfo.email"

    def test_empty_cart(self, client, order_payload):
        response = client.post("/orders", json=order_payload(items=[]))

        assert response.status_code == 400

    def test_unknown_product(self, client, order_payload):
        response = client.post("/orders", json=order_payload(items=[{"productId": "prod-ghost", "quantity": 1}]))

        assert response.status_code == 400
        assert "prod-ghost" in response.json()["message"]

    def test_legacy_payment_method_name(self, client, order_payload):
        created = place_order(client, order_payload, paymentMethod="paypal")

        order = client.get(f"/orders/{created['orderId']}").json()["order"]
        assert order["paymentMethod"] == "wallet"


class TestGetOrder:
    def test_found(self, client, order_payload):
        created = place_order(client, order_payload)

        response = client.get(f"/orders/{created['orderId']}")

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "pending"
        assert order["paymentStatus"] == "pending"
        assert order["isPaid"] is False
        assert order["items"][0]["productName"] == "Widget"

    def test_not_found(self, client):
        response = client.get("/orders/missing")

        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Order missing not found"}


class TestAdminEndpoints:
    def test_list_requires_token(self, client):
        assert client.get("/orders").status_code == 401
        assert client.get("/orders", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_list(self, client, order_payload, admin_headers):
        place_order(client, order_payload)
        place_order(client, order_payload)

        response = client.get("/orders", params={"status": "pending", "limit": 1}, headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data["orders"]) == 1
        assert data["pagination"] == {"total": 2, "page": 1, "limit": 1, "pages": 2}

    def test_ship_paid_order(self, client, order_payload, admin_headers, card_gateway):
        order_id = place_order(client, order_payload)["orderId"]
        pay_order(client, card_gateway, order_id)

        missing_tracking = client.patch(f"/orders/{order_id}/status", json={"status": "shipped"},
                                        headers=admin_headers)
        shipped = client.patch(f"/orders/{order_id}/status",
                               json={"status": "shipped", "trackingNumber": "1Z999AA10123456784"},
                               headers=admin_headers)

        assert missing_tracking.status_code == 400
        assert shipped.status_code == 200
        order = shipped.json()["order"]
        assert order["status"] == "shipped"
        assert order["carrierName"] == "USPS"

    def test_ship_unpaid_order_conflicts(self, client, order_payload, admin_headers):
        order_id = place_order(client, order_payload)["orderId"]

        response = client.patch(f"/orders/{order_id}/status",
                                json={"status": "shipped", "trackingNumber": "1Z"}, headers=admin_headers)

        assert response.status_code == 409

    def test_payment_override(self, client, order_payload, admin_headers):
        order_id = place_order(client, order_payload)["orderId"]

        response = client.patch(f"/orders/{order_id}/payment", json={"paymentStatus": "paid"},
                                headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "processing"

    def test_refund(self, client, order_payload, admin_headers, card_gateway):
        order_id = place_order(client, order_payload)["orderId"]
        intent_id = pay_order(client, card_gateway, order_id)

        response = client.post("/payments/refund", json={"intentId": intent_id, "amount": 20.0},
                               headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "refundId": "re_test_1", "status": "succeeded", "amount": 20.0}
        order = client.get(f"/orders/{order_id}").json()["order"]
        assert order["paymentStatus"] == "partially_refunded"

    def test_refund_requires_token(self, client):
        response = client.post("/payments/refund", json={"intentId": "pi_test_1"})

        assert response.status_code == 401

    def test_discrepancies(self, client, order_payload, admin_headers, card_gateway):
        order_id = place_order(client, order_payload)["orderId"]
        order = client.get(f"/orders/{order_id}").json()["order"]
        intent = client.post("/payments/create-intent", json={
            "items": [{"price": order["subtotal"], "quantity": 1}],
            "tax": order["tax"],
            "orderId": order_id,
        }).json()
        client.delete(f"/orders/{order_id}")
        card_gateway.settle(intent["intentId"], IntentStatus.SUCCEEDED)

        confirm = client.post("/payments/confirm", json={"intentId": intent["intentId"], "orderId": order_id})
        listed = client.get("/payments/discrepancies", headers=admin_headers)

        assert confirm.json()["success"] is False
        assert listed.status_code == 200
        flagged = listed.json()["discrepancies"]
        assert len(flagged) == 1
        assert flagged[0]["eventType"] == "reconciliation.discrepancy"
        assert flagged[0]["entityId"] == order_id


class TestCancelOrder:
    def test_cancel_twice(self, client, order_payload):
        order_id = place_order(client, order_payload)["orderId"]

        first = client.delete(f"/orders/{order_id}")
        second = client.delete(f"/orders/{order_id}")

        assert first.status_code == 200
        assert first.json()["order"]["status"] == "cancelled"
        assert second.status_code == 400
        assert second.json()["message"] == "Cannot cancel order with status: cancelled"


class TestPayments:
    def test_confirm_flow(self, client, order_payload, card_gateway):
        order_id = place_order(client, order_payload)["orderId"]
        order = client.get(f"/orders/{order_id}").json()["order"]

        intent = client.post("/payments/create-intent", json={
            "items": [{"price": order["subtotal"], "quantity": 1}],
            "tax": order["tax"],
            "orderId": order_id,
        })
        assert intent.status_code == 200
        intent_id = intent.json()["intentId"]
        assert intent.json()["amount"] == 64.95

        pending = client.post("/payments/confirm", json={"intentId": intent_id, "orderId": order_id})
        assert pending.json()["success"] is False

        card_gateway.settle(intent_id, IntentStatus.SUCCEEDED)
        confirmed = client.post("/payments/confirm", json={"intentId": intent_id, "orderId": order_id})

        assert confirmed.json() == {
            "success": True,
            "status": "paid",
            "message": "Payment confirmed",
            "orderId": order_id,
        }

    def test_create_intent_total_mismatch(self, client, order_payload):
        order_id = place_order(client, order_payload)["orderId"]

        response = client.post("/payments/create-intent", json={
            "items": [{"price": 1.0, "quantity": 1}],
            "orderId": order_id,
        })

        assert response.status_code == 409

    def test_webhook_signature_rejected(self, client):
        response = client.post("/payments/webhook", content=b"{}", headers={"x-test-signature": "forged"})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_webhook_acknowledged(self, client, order_payload):
        order_id = place_order(client, order_payload)["orderId"]
        event = {
            "kind": "intent_succeeded",
            "event_id": "evt_1",
            "event_type": "payment_intent.succeeded",
            "intent_id": "pi_client_side",
            "amount": "64.95",
            "metadata": {"orderId": order_id},
        }

        response = client.post("/payments/webhook", content=json.dumps(event),
                               headers={"x-test-signature": "valid"})

        assert response.status_code == 200
        assert response.json() == {"received": True}
        order = client.get(f"/orders/{order_id}").json()["order"]
        assert order["paymentStatus"] == "paid"
        assert order["externalPaymentReference"] == "pi_client_side"

    def test_wallet_webhook_uses_wallet_rail(self, client, wallet_gateway):
        event = {"kind": "unknown", "event_id": "WH-1", "event_type": "CHECKOUT.ORDER.APPROVED"}

        response = client.post("/payments/wallet/webhook", content=json.dumps(event),
                               headers={"x-test-signature": "valid"})

        assert response.status_code == 200

    def test_payment_config(self, client):
        response = client.get("/payments/config")

        assert response.json() == {
            "publishableKey": "pk_test_storefront",
            "walletClientId": "paypal-client-id",
            "currency": "USD",
        }
