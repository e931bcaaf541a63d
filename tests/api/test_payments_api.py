"""Tests for payment settlement endpoints."""

from fastapi import status
from fastapi.testclient import TestClient


def linked_payment(client: TestClient, auth_headers, code: str = "ORD-1001", total: int = 11000) -> str:
    """Place an order and link a fresh PaymentIntent to it, returning the intent id."""
    order = client.post("/orders", json={"code": code, "total": total}, headers=auth_headers).json()
    created = client.post("/preorder/payment-intents", json={"estimated_total": total}).json()
    linked = client.post(
        f"/preorder/payment-intents/{created['payment_intent_id']}/link",
        json={"order_id": order["id"], "order_code": code, "final_total": total},
    )
    assert linked.status_code == status.HTTP_200_OK
    return created["payment_intent_id"]


class TestSettlePayment:
    """Tests for POST /payments/{id}/settle."""

    def test_settles_succeeded_intent(self, client: TestClient, auth_headers, gateway, fake_stripe) -> None:
        payment_intent_id = linked_payment(client, auth_headers)
        fake_stripe.set_status(payment_intent_id, "succeeded")

        response = client.post(f"/payments/{payment_intent_id}/settle")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["transaction_id"] == payment_intent_id
        assert data["payment_id"]

        order = client.get("/orders/ORD-1001", headers=auth_headers).json()
        assert order["state"] == "PaymentSettled"
        assert [p["state"] for p in order["payments"]] == ["Settled"]

    def test_settling_twice_succeeds(self, client: TestClient, auth_headers, gateway, fake_stripe) -> None:
        payment_intent_id = linked_payment(client, auth_headers)
        fake_stripe.set_status(payment_intent_id, "succeeded")
        client.post(f"/payments/{payment_intent_id}/settle")

        response = client.post(f"/payments/{payment_intent_id}/settle")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is True
        order = client.get("/orders/ORD-1001", headers=auth_headers).json()
        assert len(order["payments"]) == 1

    def test_unpaid_intent_rejected(self, client: TestClient, auth_headers, gateway) -> None:
        payment_intent_id = linked_payment(client, auth_headers)

        response = client.post(f"/payments/{payment_intent_id}/settle")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "PAYMENT_METHOD_REQUIRED"
        assert client.get(f"/payments/{payment_intent_id}/status").json()["status"] == "failed"

    def test_unknown_payment(self, client: TestClient, gateway) -> None:
        response = client.post("/payments/pi_missing/settle")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "PAYMENT_NOT_FOUND"

    def test_stripe_not_configured(self, client: TestClient, unconfigured_gateway) -> None:
        response = client.post("/payments/pi_any/settle")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["message"] == "Payment processing service not available"


class TestStatusQueries:
    def test_status(self, client: TestClient, auth_headers, gateway) -> None:
        payment_intent_id = linked_payment(client, auth_headers)

        response = client.get(f"/payments/{payment_intent_id}/status")

        assert response.json() == {
            "payment_intent_id": payment_intent_id,
            "status": "pending",
            "is_settled": False,
        }
        assert client.get("/payments/pi_missing/status").json()["status"] == "not_found"

    def test_verify(self, client: TestClient, auth_headers, gateway, fake_stripe) -> None:
        payment_intent_id = linked_payment(client, auth_headers)
        fake_stripe.set_status(payment_intent_id, "processing")

        data = client.get(f"/payments/{payment_intent_id}/verify").json()

        assert data == {"is_valid": True, "status": "processing", "error": None}

    def test_verify_missing_intent(self, client: TestClient, gateway) -> None:
        data = client.get("/payments/pi_missing/verify").json()

        assert data["is_valid"] is False
        assert data["error"]

    def test_ownership(self, client: TestClient, auth_headers, gateway) -> None:
        payment_intent_id = linked_payment(client, auth_headers)

        owned = client.get(f"/payments/{payment_intent_id}/ownership", params={"order_code": "ORD-1001"})
        other = client.get(f"/payments/{payment_intent_id}/ownership", params={"order_code": "ORD-2"})

        assert owned.json() == {"is_valid": True, "error": None}
        assert other.json() == {
            "is_valid": False,
            "error": "Payment does not belong to the specified order",
        }

    def test_ownership_requires_order_code(self, client: TestClient) -> None:
        response = client.get("/payments/pi_1/ownership")
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
