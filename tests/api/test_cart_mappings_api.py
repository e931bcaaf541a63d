"""Tests for cart mapping endpoints."""

from fastapi import status
from fastapi.testclient import TestClient


def create_mapping(client: TestClient, cart_uuid: str = "cart-1") -> dict:
    response = client.post(
        "/cart-mappings",
        json={"cart_uuid": cart_uuid, "order_id": "order-1", "order_code": "ORD-1001"},
    )
    assert response.status_code == status.HTTP_201_CREATED
    return response.json()


def test_create_and_find(client: TestClient) -> None:
    created = create_mapping(client)

    by_cart = client.get("/cart-mappings/cart-1")
    by_order = client.get("/cart-mappings/by-order/ORD-1001")

    assert by_cart.json()["id"] == created["id"]
    assert by_order.json()["cart_uuid"] == "cart-1"
    assert created["completed_at"] is None


def test_duplicate_cart_conflicts(client: TestClient) -> None:
    create_mapping(client)

    response = client.post(
        "/cart-mappings",
        json={"cart_uuid": "cart-1", "order_id": "order-2", "order_code": "ORD-2"},
    )

    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["error_code"] == "CART_MAPPING_EXISTS"


def test_record_payment_intent(client: TestClient) -> None:
    create_mapping(client)

    response = client.put("/cart-mappings/cart-1/payment-intent", json={"payment_intent_id": "pi_1"})

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["payment_intent_id"] == "pi_1"


def test_complete(client: TestClient) -> None:
    create_mapping(client)

    response = client.post("/cart-mappings/cart-1/complete")

    assert response.json()["completed_at"] is not None


def test_unknown_cart(client: TestClient) -> None:
    assert client.get("/cart-mappings/missing").status_code == status.HTTP_404_NOT_FOUND
    assert client.get("/cart-mappings/by-order/ORD-X").status_code == status.HTTP_404_NOT_FOUND
    assert client.post("/cart-mappings/missing/complete").status_code == status.HTTP_404_NOT_FOUND

    response = client.put("/cart-mappings/missing/payment-intent", json={"payment_intent_id": "pi_1"})
    assert response.json()["error_code"] == "CART_MAPPING_NOT_FOUND"
