"""Tests for the pre-order PaymentIntent flow.

Tests:
- Estimated totals
- PaymentIntent creation before the order exists
- Linking the PaymentIntent to the placed order
"""

from decimal import Decimal

import pytest

from settlement.application.cart_mapping_service import CartMappingService
from settlement.application.order_service import OrderService
from settlement.application.preorder_service import PreOrderService
from settlement.application.settlement_audit import get_audit_log
from settlement.domain.state_machines import OrderPaymentState, OrderState, PaymentStatus
from settlement.domain.value_objects import CartLine
from settlement.infrastructure.repositories import get_payment_repository


class TestEstimatedTotal:
    """Tests for cart total estimation."""

    def test_estimate_uses_configured_multiplier(self, gateway) -> None:
        service = PreOrderService(estimate_multiplier=Decimal("1.2"))
        lines = [CartLine(product_variant_id="var-1", quantity=2, unit_price=5000)]

        assert service.calculate_estimated_total(lines) == 12000

    def test_default_multiplier(self, gateway) -> None:
        lines = [CartLine(product_variant_id="var-1", quantity=1, unit_price=10000)]
        assert PreOrderService().calculate_estimated_total(lines) == 11000


class TestCreatePreOrderPaymentIntent:
    """Tests for PaymentIntent creation."""

    @pytest.mark.asyncio
    async def test_creates_payment_intent(self, gateway, fake_stripe) -> None:
        result = await PreOrderService().create_pre_order_payment_intent(12100, "USD")

        assert result.success
        assert result.payment_intent_id == "pi_test_1"
        assert result.client_secret == "pi_test_1_secret_x"

        intent = fake_stripe.intents["pi_test_1"]
        assert intent["amount"] == 12100
        assert intent["currency"] == "usd"
        assert intent["metadata"]["source"] == "pre_order_validation"
        assert intent["metadata"]["estimated_total"] == "12100"

    @pytest.mark.asyncio
    async def test_enables_automatic_payment_methods(self, gateway, fake_stripe) -> None:
        await PreOrderService().create_pre_order_payment_intent(5000)

        body = fake_stripe.requests[0].content.decode()
        assert "automatic_payment_methods%5Benabled%5D=true" in body

    @pytest.mark.asyncio
    async def test_idempotency_key_reuses_payment_intent(self, gateway, fake_stripe) -> None:
        """A retried request with the same key gets the same PaymentIntent."""
        service = PreOrderService()
        first = await service.create_pre_order_payment_intent(5000, idempotency_key="cart-1")
        second = await service.create_pre_order_payment_intent(5000, idempotency_key="cart-1")

        assert first.payment_intent_id == second.payment_intent_id
        assert len(fake_stripe.intents) == 1
        assert fake_stripe.requests[0].headers["Idempotency-Key"] == "cart-1"

    @pytest.mark.asyncio
    async def test_records_created_lifecycle(self, gateway) -> None:
        result = await PreOrderService().create_pre_order_payment_intent(5000)

        events = [e.event for e in get_audit_log().entries_for(result.payment_intent_id)]
        assert events == ["lifecycle_created"]

    @pytest.mark.asyncio
    async def test_stripe_not_configured(self, unconfigured_gateway) -> None:
        result = await PreOrderService().create_pre_order_payment_intent(5000)

        assert not result.success
        assert result.error_code == "SERVICE_UNAVAILABLE"
        assert result.error == "Stripe service not available"

    @pytest.mark.asyncio
    async def test_negative_total_rejected(self, gateway, fake_stripe) -> None:
        result = await PreOrderService().create_pre_order_payment_intent(-1)

        assert not result.success
        assert result.error_code == "INVALID_AMOUNT"
        assert fake_stripe.requests == []

    @pytest.mark.asyncio
    async def test_stripe_error_is_generic_to_shopper(self, gateway, fake_stripe) -> None:
        fake_stripe.queue_error(400, "invalid_request_error", "Amount must be at least 50 cents")

        result = await PreOrderService().create_pre_order_payment_intent(10)

        assert not result.success
        assert result.error_code == "STRIPE_ERROR"
        assert result.error == "Failed to initialize payment. Please try again."


class TestLinkPaymentIntent:
    """Tests for linking a PaymentIntent to an order."""

    @pytest.mark.asyncio
    async def test_link_updates_intent_and_records_payment(self, checkout, fake_stripe) -> None:
        payment = await checkout.link(code="ORD-1001", total=11000, estimated_total=12100)

        intent = fake_stripe.intents[payment.payment_intent_id]
        assert intent["amount"] == 11000
        assert intent["metadata"]["order_code"] == "ORD-1001"
        assert intent["metadata"]["customer_email"] == "shopper@example.com"
        assert intent["metadata"]["source"] == "order_linked"
        assert intent["metadata"]["final_total"] == "11000"

        stored = get_payment_repository().get(payment.payment_intent_id)
        assert stored is not None
        assert stored.status == PaymentStatus.PENDING
        assert stored.amount == 11000
        assert stored.order_code == "ORD-1001"

    @pytest.mark.asyncio
    async def test_link_moves_order_to_arranging_payment(self, checkout) -> None:
        payment = await checkout.link()

        order = OrderService().get_by_code("ORD-1001")
        assert order.state == OrderState.ARRANGING_PAYMENT
        assert len(order.payments) == 1
        assert order.payments[0].state == OrderPaymentState.AUTHORIZED
        assert order.payments[0].transaction_id == payment.payment_intent_id

    @pytest.mark.asyncio
    async def test_guest_email_in_metadata(self, checkout, fake_stripe) -> None:
        order = await checkout.create_order(customer_email=None)
        service = PreOrderService()
        created = await service.create_pre_order_payment_intent(12100)

        await service.link_payment_intent_to_order(
            created.payment_intent_id, order.id, order.code, 11000
        )

        assert fake_stripe.intents[created.payment_intent_id]["metadata"]["customer_email"] == "guest"

    @pytest.mark.asyncio
    async def test_link_attaches_cart_mapping(self, checkout) -> None:
        order = await checkout.create_order()
        CartMappingService().create_mapping("cart-1", order.id, order.code)
        service = PreOrderService()
        created = await service.create_pre_order_payment_intent(12100)

        await service.link_payment_intent_to_order(
            created.payment_intent_id, order.id, order.code, 11000
        )

        mapping = CartMappingService().find_by_cart_uuid("cart-1")
        assert mapping.payment_intent_id == created.payment_intent_id

    @pytest.mark.asyncio
    async def test_relink_refreshes_record(self, checkout) -> None:
        """Linking the same PaymentIntent again updates the pending record."""
        payment = await checkout.link(total=11000)
        order = OrderService().get_by_code("ORD-1001")

        result = await PreOrderService().link_payment_intent_to_order(
            payment.payment_intent_id, order.id, "ORD-1001", 11500
        )

        assert result.success
        assert get_payment_repository().count() == 1
        assert get_payment_repository().get(payment.payment_intent_id).amount == 11500

    @pytest.mark.asyncio
    async def test_link_settled_payment_rejected(self, checkout) -> None:
        payment = await checkout.link()
        payment.settle()
        order = OrderService().get_by_code("ORD-1001")

        result = await PreOrderService().link_payment_intent_to_order(
            payment.payment_intent_id, order.id, "ORD-1001", 11000
        )

        assert not result.success
        assert result.error_code == "PAYMENT_ALREADY_SETTLED"

    @pytest.mark.asyncio
    async def test_unknown_order(self, gateway, fake_stripe) -> None:
        fake_stripe.add_intent("pi_1", 5000, status="requires_payment_method")

        result = await PreOrderService().link_payment_intent_to_order(
            "pi_1", "order-x", "ORD-MISSING", 5000
        )

        assert not result.success
        assert result.error_code == "ORDER_NOT_FOUND"
        assert result.error == "Failed to finalize payment setup. Please try again."

    @pytest.mark.asyncio
    async def test_unknown_payment_intent(self, checkout) -> None:
        order = await checkout.create_order()

        result = await PreOrderService().link_payment_intent_to_order(
            "pi_missing", order.id, order.code, 11000
        )

        assert not result.success
        assert result.error_code == "STRIPE_ERROR"
        assert get_payment_repository().get("pi_missing") is None

    @pytest.mark.asyncio
    async def test_order_that_cannot_arrange_payment(self, checkout, fake_stripe) -> None:
        """A cancelled order aborts the link before a record is written."""
        order = await checkout.create_order()
        await OrderService().transition_to_state(order, OrderState.CANCELLED)
        fake_stripe.add_intent("pi_1", 11000, status="requires_payment_method")

        result = await PreOrderService().link_payment_intent_to_order(
            "pi_1", order.id, order.code, 11000
        )

        assert not result.success
        assert result.error_code == "INVALID_TRANSITION"
        assert get_payment_repository().get("pi_1") is None

    @pytest.mark.asyncio
    async def test_stripe_not_configured(self, unconfigured_gateway) -> None:
        result = await PreOrderService().link_payment_intent_to_order(
            "pi_1", "order-1", "ORD-1", 11000
        )

        assert not result.success
        assert result.error_code == "SERVICE_UNAVAILABLE"
