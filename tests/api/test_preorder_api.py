"""Tests for pre-order payment endpoints."""

from fastapi import status
from fastapi.testclient import TestClient

from settlement.domain.state_machines import OrderState
from settlement.infrastructure.repositories import get_payment_repository


class TestEstimate:
    def test_estimate_adds_headroom(self, client: TestClient) -> None:
        response = client.post(
            "/preorder/estimate",
            json={
                "items": [
                    {"product_variant_id": "var-1", "quantity": 2, "unit_price": 1000},
                    {"product_variant_id": "var-2", "quantity": 1, "unit_price": 500},
                ]
            },
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"estimated_total": 2750, "item_count": 2}

    def test_negative_price_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/preorder/estimate",
            json={"items": [{"product_variant_id": "var-1", "quantity": 1, "unit_price": -1}]},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestCreatePaymentIntent:
    """Tests for POST /preorder/payment-intents."""

    def test_creates_intent(self, client: TestClient, gateway, fake_stripe) -> None:
        response = client.post("/preorder/payment-intents", json={"estimated_total": 12100})

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        intent = fake_stripe.intents[data["payment_intent_id"]]
        assert data["client_secret"] == intent["client_secret"]
        assert intent["amount"] == 12100
        assert intent["metadata"]["source"] == "pre_order_validation"

    def test_idempotency_key_reuses_intent(self, client: TestClient, gateway) -> None:
        headers = {"Idempotency-Key": "cart-1-attempt-1"}

        first = client.post("/preorder/payment-intents", json={"estimated_total": 100}, headers=headers)
        second = client.post("/preorder/payment-intents", json={"estimated_total": 100}, headers=headers)

        assert first.json()["payment_intent_id"] == second.json()["payment_intent_id"]

    def test_negative_amount(self, client: TestClient, gateway) -> None:
        response = client.post("/preorder/payment-intents", json={"estimated_total": -1})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "INVALID_AMOUNT"

    def test_stripe_not_configured(self, client: TestClient, unconfigured_gateway) -> None:
        response = client.post("/preorder/payment-intents", json={"estimated_total": 100})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["error_code"] == "SERVICE_UNAVAILABLE"

    def test_stripe_failure(self, client: TestClient, gateway, fake_stripe) -> None:
        fake_stripe.queue_error(400, "invalid_request_error", "Amount must be at least $0.50 usd")

        response = client.post("/preorder/payment-intents", json={"estimated_total": 10})

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert response.json() == {
            "error_code": "STRIPE_ERROR",
            "message": "Failed to initialize payment. Please try again.",
            "details": [],
            "request_id": response.headers["X-Request-ID"],
        }


class TestLinkPaymentIntent:
    """Tests for POST /preorder/payment-intents/{id}/link."""

    def place_order(self, client: TestClient, auth_headers, code: str = "ORD-1001") -> dict:
        response = client.post("/orders", json={"code": code, "total": 11000}, headers=auth_headers)
        assert response.status_code == status.HTTP_201_CREATED
        return response.json()

    def test_links_to_order(self, client: TestClient, auth_headers, gateway, fake_stripe) -> None:
        order = self.place_order(client, auth_headers)
        created = client.post("/preorder/payment-intents", json={"estimated_total": 12100}).json()

        response = client.post(
            f"/preorder/payment-intents/{created['payment_intent_id']}/link",
            json={"order_id": order["id"], "order_code": "ORD-1001", "final_total": 11000},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "pending"
        assert data["amount"] == 11000
        assert data["order_code"] == "ORD-1001"
        intent = fake_stripe.intents[created["payment_intent_id"]]
        assert intent["amount"] == 11000
        assert intent["metadata"]["order_code"] == "ORD-1001"

        order = client.get("/orders/ORD-1001", headers=auth_headers).json()
        assert order["state"] == OrderState.ARRANGING_PAYMENT.value
        assert order["payments"][0]["state"] == "Authorized"

    def test_unknown_order(self, client: TestClient, gateway) -> None:
        created = client.post("/preorder/payment-intents", json={"estimated_total": 100}).json()

        response = client.post(
            f"/preorder/payment-intents/{created['payment_intent_id']}/link",
            json={"order_id": "order-x", "order_code": "ORD-MISSING", "final_total": 100},
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "ORDER_NOT_FOUND"
        assert response.json()["message"] == "Failed to finalize payment setup. Please try again."

    def test_already_settled(self, client: TestClient, auth_headers, gateway) -> None:
        order = self.place_order(client, auth_headers)
        created = client.post("/preorder/payment-intents", json={"estimated_total": 12100}).json()
        link_url = f"/preorder/payment-intents/{created['payment_intent_id']}/link"
        body = {"order_id": order["id"], "order_code": "ORD-1001", "final_total": 11000}
        client.post(link_url, json=body)
        get_payment_repository().get(created["payment_intent_id"]).settle()

        response = client.post(link_url, json=body)

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error_code"] == "PAYMENT_ALREADY_SETTLED"
