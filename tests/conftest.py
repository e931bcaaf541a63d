"""Shared fixtures for settlement tests.

Every test starts from empty in-process state. Stripe is replaced by an
in-memory fake served through ``httpx.MockTransport``, so the real
gateway code (form encoding, headers, error mapping) runs unchanged.
"""

import hashlib
import hmac
import json
import time
from typing import Any
from unittest.mock import AsyncMock
from urllib.parse import parse_qsl

import httpx
import pytest

from settlement.application import error_handling, reset_application_state
from settlement.application.error_handling import RetryConfig, StripeErrorHandler
from settlement.application.order_service import OrderService
from settlement.application.preorder_service import PreOrderService
from settlement.domain.entities import Order, PendingPayment
from settlement.domain.state_machines import OrderState
from settlement.infrastructure.config import settings
from settlement.infrastructure.stripe_gateway import StripeGateway, set_stripe_gateway

WEBHOOK_SECRET = "whsec_test_secret"


# ============================================================================
# Fake Stripe
# ============================================================================


class FakeStripe:
    """In-memory stand-in for Stripe's PaymentIntent endpoints."""

    def __init__(self) -> None:
        self.intents: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.queued_errors: list[httpx.Response] = []
        self._idempotent: dict[str, str] = {}
        self._counter = 0

    # -------------------------------------------------------------------------
    # Test Controls
    # -------------------------------------------------------------------------

    def add_intent(
        self,
        payment_intent_id: str,
        amount: int,
        status: str = "succeeded",
        currency: str = "usd",
        metadata: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        intent = {
            "id": payment_intent_id,
            "object": "payment_intent",
            "amount": amount,
            "currency": currency,
            "status": status,
            "client_secret": f"{payment_intent_id}_secret_x",
            "amount_received": amount if status == "succeeded" else 0,
            "created": int(time.time()),
            "metadata": dict(metadata or {}),
            "payment_method_types": ["card"],
        }
        self.intents[payment_intent_id] = intent
        return intent

    def set_status(self, payment_intent_id: str, status: str) -> None:
        intent = self.intents[payment_intent_id]
        intent["status"] = status
        if status == "succeeded":
            intent["amount_received"] = intent["amount"]

    def queue_error(
        self,
        status_code: int,
        error_type: str = "api_error",
        message: str = "Something went wrong",
        code: str | None = None,
        decline_code: str | None = None,
    ) -> None:
        """Make the next request fail with a Stripe error payload."""
        error: dict[str, Any] = {"type": error_type, "message": message}
        if code:
            error["code"] = code
        if decline_code:
            error["decline_code"] = decline_code
        self.queued_errors.append(httpx.Response(status_code, json={"error": error}))

    def queue_connection_error(self) -> None:
        self.queued_errors.append(httpx.Response(599))

    # -------------------------------------------------------------------------
    # Transport Handler
    # -------------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.queued_errors:
            response = self.queued_errors.pop(0)
            if response.status_code == 599:
                raise httpx.ConnectError("Connection refused", request=request)
            return response

        parts = request.url.path.strip("/").split("/")
        form = dict(parse_qsl(request.content.decode())) if request.content else {}

        if request.method == "POST" and len(parts) == 2:
            return self._create(request, form)

        payment_intent_id = parts[2]
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            return httpx.Response(
                404,
                json={
                    "error": {
                        "type": "invalid_request_error",
                        "code": "resource_missing",
                        "message": f"No such payment_intent: '{payment_intent_id}'",
                    }
                },
            )
        if request.method == "GET":
            return httpx.Response(200, json=intent)
        if len(parts) == 4 and parts[3] == "cancel":
            intent["status"] = "canceled"
            intent["cancellation_reason"] = form.get("cancellation_reason")
            return httpx.Response(200, json=intent)

        self._apply(intent, form)
        return httpx.Response(200, json=intent)

    def _create(self, request: httpx.Request, form: dict[str, str]) -> httpx.Response:
        key = request.headers.get("Idempotency-Key")
        if key and key in self._idempotent:
            return httpx.Response(200, json=self.intents[self._idempotent[key]])

        self._counter += 1
        intent = self.add_intent(
            f"pi_test_{self._counter}",
            amount=int(form["amount"]),
            status="requires_payment_method",
            currency=form.get("currency", "usd"),
        )
        self._apply(intent, form)
        if key:
            self._idempotent[key] = intent["id"]
        return httpx.Response(200, json=intent)

    @staticmethod
    def _apply(intent: dict[str, Any], form: dict[str, str]) -> None:
        for key, value in form.items():
            if key == "amount":
                intent["amount"] = int(value)
            elif key.startswith("metadata["):
                intent["metadata"][key[len("metadata[") : -1]] = value


# ============================================================================
# Webhook Helpers
# ============================================================================


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode(),
        f"{timestamp}.{payload}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(
    event_type: str,
    intent: dict[str, Any],
    event_id: str = "evt_test_1",
) -> dict[str, Any]:
    """Build a Stripe event payload around a PaymentIntent object."""
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": {"object": "payment_intent", **intent}},
    }


# ============================================================================
# Checkout Flow
# ============================================================================


class CheckoutFlow:
    """Drives the storefront flow up to a linked PaymentIntent."""

    def __init__(self, fake_stripe: FakeStripe) -> None:
        self.fake_stripe = fake_stripe

    async def create_order(
        self,
        code: str = "ORD-1001",
        total: int = 11000,
        customer_email: str | None = "shopper@example.com",
        state: OrderState = OrderState.ADDING_ITEMS,
    ) -> Order:
        result = await OrderService().create_order(
            code=code, total=total, customer_email=customer_email, state=state
        )
        assert result.success, result.error
        return result.order

    async def link(
        self,
        code: str = "ORD-1001",
        total: int = 11000,
        estimated_total: int = 12100,
    ) -> PendingPayment:
        """Place an order, create its pre-order PaymentIntent and link them."""
        order = await self.create_order(code=code, total=total)
        service = PreOrderService()
        created = await service.create_pre_order_payment_intent(estimated_total)
        assert created.success, created.error
        linked = await service.link_payment_intent_to_order(
            payment_intent_id=created.payment_intent_id,
            order_id=order.id,
            order_code=code,
            final_total=total,
            customer_email=order.customer_email,
        )
        assert linked.success, linked.error
        return linked.pending_payment

    async def paid(self, code: str = "ORD-1001", total: int = 11000) -> PendingPayment:
        """A linked payment whose PaymentIntent has succeeded at Stripe."""
        payment = await self.link(code=code, total=total)
        self.fake_stripe.set_status(payment.payment_intent_id, "succeeded")
        return payment


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_state(monkeypatch):
    """Reset singletons and retry without sleeping."""
    reset_application_state()
    set_stripe_gateway(None)
    monkeypatch.setattr(
        error_handling,
        "_error_handler",
        StripeErrorHandler(RetryConfig(), sleep=AsyncMock()),
    )
    yield
    reset_application_state()
    set_stripe_gateway(None)


@pytest.fixture
def fake_stripe() -> FakeStripe:
    """In-memory Stripe API."""
    return FakeStripe()


@pytest.fixture
def gateway(fake_stripe) -> StripeGateway:
    """Stripe gateway wired to the fake API and installed as the singleton."""
    gateway = StripeGateway(
        api_key="sk_test_123",
        base_url="https://api.stripe.test",
        transport=httpx.MockTransport(fake_stripe.handler),
    )
    set_stripe_gateway(gateway)
    return gateway


@pytest.fixture
def unconfigured_gateway() -> StripeGateway:
    """Gateway without a secret key."""
    gateway = StripeGateway(api_key="")
    set_stripe_gateway(gateway)
    return gateway


@pytest.fixture
def checkout(gateway, fake_stripe) -> CheckoutFlow:
    """Storefront checkout helper backed by the fake Stripe API."""
    return CheckoutFlow(fake_stripe)


@pytest.fixture
def webhook_secret(monkeypatch) -> str:
    """Configure the pre-order webhook signing secret."""
    monkeypatch.setattr(settings, "stripe_preorder_webhook_secret", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest.fixture
def signed():
    """Serialize an event and sign it: returns ``(body, signature_header)``."""

    def _signed(event: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[str, str]:
        body = json.dumps(event)
        return body, sign_payload(body, secret)

    return _signed


@pytest.fixture
def event():
    """Build Stripe event payloads: ``event(type, intent, event_id=...)``."""
    return make_event
