"""Tests for API middleware."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from settlement.api import middleware
from settlement.infrastructure.config import settings


class TestRequestIdMiddleware:
    """Tests for request ID correlation middleware."""

    def test_generates_request_id_if_not_provided(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        # UUID format
        assert len(response.headers["X-Request-ID"]) == 36

    def test_uses_provided_request_id(self, client: TestClient) -> None:
        custom_id = "custom-request-id-12345"
        response = client.get("/health", headers={"X-Request-ID": custom_id})
        assert response.headers["X-Request-ID"] == custom_id

    def test_request_id_in_error_body(self, auth_client: TestClient) -> None:
        response = auth_client.get("/orders/ORD-MISSING", headers={"X-Request-ID": "req-1"})

        assert response.status_code == 404
        assert response.json()["request_id"] == "req-1"


class TestApiKeyMiddleware:
    """Tests for API key authentication middleware."""

    def test_storefront_endpoints_are_public(self, client: TestClient) -> None:
        response = client.post("/preorder/estimate", json={"items": []})
        assert response.status_code == 200

        response = client.get("/payments/pi_missing/status")
        assert response.status_code == 200

    def test_webhook_endpoint_is_public(self, client: TestClient) -> None:
        """Stripe authenticates with a signature, not the API key."""
        response = client.post("/webhooks/stripe", content=b"{}")
        assert response.status_code != 401

    def test_admin_requires_auth(self, client: TestClient) -> None:
        response = client.get("/admin/payments")

        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_auth_format_rejected(self, client: TestClient) -> None:
        response = client.get("/monitoring/metrics", headers={"Authorization": "InvalidFormat"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "UNAUTHORIZED"

    def test_invalid_api_key_rejected(self, client: TestClient) -> None:
        response = client.get("/orders/ORD-1", headers={"Authorization": "Bearer invalid-key"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "INVALID_API_KEY"

    def test_valid_api_key_accepted(self, client: TestClient, auth_headers) -> None:
        response = client.get("/monitoring/metrics", headers=auth_headers)
        assert response.status_code == 200


class TestPersistenceMiddleware:
    """Tests for write-through after each request."""

    @staticmethod
    def _store(monkeypatch, flush: AsyncMock) -> None:
        monkeypatch.setattr(settings, "persistence_enabled", True)
        monkeypatch.setattr(middleware, "get_settlement_store", lambda: SimpleNamespace(flush=flush))

    def test_flushes_after_request(self, client: TestClient, monkeypatch) -> None:
        flush = AsyncMock(return_value=1)
        self._store(monkeypatch, flush)

        response = client.get("/health")

        assert response.status_code == 200
        flush.assert_awaited_once()

    def test_failed_flush_keeps_response(self, client: TestClient, monkeypatch) -> None:
        flush = AsyncMock(side_effect=SQLAlchemyError("database unavailable"))
        self._store(monkeypatch, flush)

        response = client.get("/health")

        assert response.status_code == 200
        flush.assert_awaited_once()

    def test_disabled_by_default(self, client: TestClient, monkeypatch) -> None:
        flush = AsyncMock()
        monkeypatch.setattr(middleware, "get_settlement_store", lambda: SimpleNamespace(flush=flush))

        client.get("/health")

        flush.assert_not_awaited()
