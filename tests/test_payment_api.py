import pytest
from fastapi.testclient import TestClient

from fakes import auth_header
from payment_service import app, get_payment_methods, get_settlement
from settlement import PaymentMethodService, SettlementValidator

CONSUMER = auth_header("consumer-1", "consumer")
OTHER_CONSUMER = auth_header("consumer-2", "consumer")


@pytest.fixture
def client(payment_store, cart, products, gateway):
    app.dependency_overrides[get_settlement] = lambda: SettlementValidator(payment_store, cart, products, gateway,
                                                                           tax_rate=0.15)
    app.dependency_overrides[get_payment_methods] = lambda: PaymentMethodService(gateway)
    yield TestClient(app)
    app.dependency_overrides.clear()


def payment_body(amount=43.11, method="pm_card_visa"):
    return {"amount": amount, "currency": "cad", "paymentMethodId": method, "orderId": "parent-1"}


def test_create_payment(client):
    response = client.post("/api/payments", json=payment_body(), headers=CONSUMER)

    assert response.status_code == 201
    payment = response.json()["payment"]
    assert payment["amount"] == 4311
    assert payment["currency"] == "CAD"
    assert payment["status"] == "succeeded"
    assert payment["_links"]["order"] == "api/order/parent-1"
    assert payment["_links"]["receipt"] == payment["receiptUrl"]


def test_amount_mismatch(client, products):
    response = client.post("/api/payments", json=payment_body(amount=43.12), headers=CONSUMER)

    assert response.status_code == 400
    assert response.json()["code"] == "AmountMismatch"
    assert products.decrements == []


def test_invalid_currency(client):
    body = payment_body()
    body["currency"] = "dollars"
    assert client.post("/api/payments", json=body, headers=CONSUMER).status_code == 400


def test_declined_card(client, products):
    response = client.post("/api/payments", json=payment_body(method="pm_card_chargeDeclined"), headers=CONSUMER)

    assert response.status_code == 400
    assert response.json()["code"] == "PaymentDeclined"
    assert products.stock("p-a1") == 5


def test_read_list_and_refund(client):
    payment_id = client.post("/api/payments", json=payment_body(), headers=CONSUMER).json()["payment"]["id"]

    assert client.get(f"/api/payments/{payment_id}", headers=CONSUMER).json()["payment"]["id"] == payment_id
    assert client.get(f"/api/payments/{payment_id}", headers=OTHER_CONSUMER).status_code == 404

    listing = client.get("/api/payments", headers=CONSUMER).json()
    assert listing["total"] == 1

    refund = client.post(f"/api/payments/{payment_id}/refund", headers=CONSUMER)
    assert refund.json() == {"message": "Payment refunded/canceled", "paymentId": payment_id, "newStatus": "refunded"}

    again = client.post(f"/api/payments/{payment_id}/refund", headers=CONSUMER)
    assert again.status_code == 400


class TestSavedPaymentMethods:

    def test_setup_intent(self, client):
        response = client.post("/api/payments/setup-intent", headers=CONSUMER)

        assert response.status_code == 201
        assert response.json() == {"clientSecret": "seti_cus_consumer-1_secret"}

    def test_save_list_and_set_default(self, client):
        saved = client.post("/api/payments/consumer/payment-methods",
                            json={"paymentMethodToken": "pm_card_visa", "billingDetails": {"name": "Ada"}},
                            headers=CONSUMER)

        assert saved.status_code == 201
        assert saved.json()["paymentMethod"] == {"paymentMethodId": "pm_card_visa", "brand": "visa", "last4": "4242",
                                                 "expMonth": 12, "expYear": 2030, "default": False}

        default = client.put("/api/payments/consumer/payment-methods/pm_card_visa/default", headers=CONSUMER)
        assert default.json() == {"message": "Default payment method updated."}

        methods = client.get("/api/payments/payment-methods", headers=CONSUMER).json()["paymentMethods"]
        assert [(m["id"], m["isDefault"]) for m in methods] == [("pm_card_visa", True)]
        assert client.get("/api/payments/payment-methods", headers=OTHER_CONSUMER).json() == {"paymentMethods": []}

    def test_detach(self, client):
        client.post("/api/payments/consumer/payment-methods", json={"paymentMethodToken": "pm_card_visa"},
                    headers=CONSUMER)

        response = client.delete("/api/payments/payment-methods/pm_card_visa", headers=CONSUMER)

        assert response.json() == {"detached": True, "paymentMethodId": "pm_card_visa"}
        assert client.get("/api/payments/payment-methods", headers=CONSUMER).json()["paymentMethods"] == []

    def test_cannot_touch_another_users_method(self, client):
        client.post("/api/payments/consumer/payment-methods", json={"paymentMethodToken": "pm_card_visa"},
                    headers=CONSUMER)

        assert client.delete("/api/payments/payment-methods/pm_card_visa", headers=OTHER_CONSUMER).status_code == 404
        assert client.put("/api/payments/consumer/payment-methods/pm_card_visa/default",
                          headers=OTHER_CONSUMER).status_code == 404

    def test_token_is_required(self, client):
        response = client.post("/api/payments/consumer/payment-methods", json={}, headers=CONSUMER)
        assert response.status_code == 400

    def test_gateway_outage_is_bad_gateway(self, client, gateway):
        gateway.unavailable = True
        response = client.get("/api/payments/payment-methods", headers=CONSUMER)

        assert response.status_code == 502
        assert response.json() == {"error": "Failed to list payment methods", "code": "UpstreamUnavailable"}
