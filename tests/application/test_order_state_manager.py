"""Tests for order state management around payment failures."""

from datetime import timedelta

import pytest

from settlement.application.order_service import OrderService
from settlement.application.order_state_manager import (
    OrderStateManager,
    target_state_for_failure,
)
from settlement.domain.state_machines import FailureType, OrderState, PaymentStatus
from settlement.domain.value_objects import PaymentFailure
from settlement.infrastructure.repositories import get_payment_repository

DECLINED = PaymentFailure(reason="Card declined", failure_type=FailureType.USER_ERROR)
TRANSIENT = PaymentFailure(
    reason="Stripe API error", failure_type=FailureType.STRIPE_ERROR, is_retryable=True
)


class TestTargetState:
    def test_retryable_gateway_errors_keep_arranging(self) -> None:
        assert target_state_for_failure(TRANSIENT) == OrderState.ARRANGING_PAYMENT
        assert (
            target_state_for_failure(
                PaymentFailure(reason="x", failure_type=FailureType.SYSTEM_ERROR, is_retryable=True)
            )
            == OrderState.ARRANGING_PAYMENT
        )

    def test_everything_else_declines(self) -> None:
        assert target_state_for_failure(DECLINED) == OrderState.PAYMENT_DECLINED
        assert (
            target_state_for_failure(
                PaymentFailure(reason="x", failure_type=FailureType.VALIDATION_ERROR, is_retryable=True)
            )
            == OrderState.PAYMENT_DECLINED
        )


class TestHandlePaymentFailure:
    """Tests for OrderStateManager.handle_payment_failure."""

    @pytest.mark.asyncio
    async def test_declined_payment(self, checkout) -> None:
        payment = await checkout.link()

        result = await OrderStateManager().handle_payment_failure(payment.payment_intent_id, DECLINED)

        assert result.success
        assert result.previous_state == "ArrangingPayment"
        assert result.new_state == "PaymentDeclined"
        assert get_payment_repository().get(payment.payment_intent_id).status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_state(self, checkout) -> None:
        payment = await checkout.link()

        result = await OrderStateManager().handle_payment_failure(payment.payment_intent_id, TRANSIENT)

        assert result.success
        assert result.new_state == "ArrangingPayment"

    @pytest.mark.asyncio
    async def test_unknown_payment(self, gateway) -> None:
        result = await OrderStateManager().handle_payment_failure("pi_missing", DECLINED)

        assert not result.success
        assert result.error == "Pending payment record not found"

    @pytest.mark.asyncio
    async def test_settled_payment_is_not_failed(self, checkout) -> None:
        payment = await checkout.link()
        payment.settle()

        result = await OrderStateManager().handle_payment_failure(payment.payment_intent_id, DECLINED)

        assert not result.success
        assert get_payment_repository().get(payment.payment_intent_id).status == PaymentStatus.SETTLED

    @pytest.mark.asyncio
    async def test_rejected_order_transition_is_reported(self, checkout) -> None:
        """The failure is recorded even when the order cannot be declined."""
        payment = await checkout.link()
        order = OrderService().get_by_code("ORD-1001")
        await OrderService().transition_to_state(order, OrderState.CANCELLED)

        result = await OrderStateManager().handle_payment_failure(payment.payment_intent_id, DECLINED)

        assert result.success
        assert result.new_state == "Cancelled"
        assert "order state transition failed" in result.error
        assert get_payment_repository().get(payment.payment_intent_id).status == PaymentStatus.FAILED


class TestResetOrderForRetry:
    """Tests for OrderStateManager.reset_order_for_retry."""

    @pytest.mark.asyncio
    async def test_reset_declined_order(self, checkout) -> None:
        payment = await checkout.link()
        manager = OrderStateManager()
        await manager.handle_payment_failure(
            payment.payment_intent_id,
            PaymentFailure(reason="x", failure_type=FailureType.VALIDATION_ERROR, is_retryable=True),
        )

        result = await manager.reset_order_for_retry(payment.payment_intent_id)

        assert result.success
        assert result.previous_state == "PaymentDeclined"
        assert result.new_state == "ArrangingPayment"
        stored = get_payment_repository().get(payment.payment_intent_id)
        assert stored.status == PaymentStatus.PENDING
        assert stored.retry_count == 1

    @pytest.mark.asyncio
    async def test_reset_pending_rejected(self, checkout) -> None:
        payment = await checkout.link()

        result = await OrderStateManager().reset_order_for_retry(payment.payment_intent_id)

        assert not result.success

    @pytest.mark.asyncio
    async def test_reset_when_order_cannot_move(self, checkout) -> None:
        payment = await checkout.link()
        manager = OrderStateManager()
        await manager.handle_payment_failure(payment.payment_intent_id, TRANSIENT)
        order = OrderService().get_by_code("ORD-1001")
        await OrderService().transition_to_state(order, OrderState.CANCELLED)

        result = await manager.reset_order_for_retry(payment.payment_intent_id)

        assert not result.success
        assert result.error.startswith("Failed to reset order state: ")


class TestStateInfoAndCleanup:
    @pytest.mark.asyncio
    async def test_get_order_state_info(self, checkout) -> None:
        payment = await checkout.link()
        manager = OrderStateManager()
        await manager.handle_payment_failure(payment.payment_intent_id, TRANSIENT)

        info = manager.get_order_state_info(payment.payment_intent_id)

        assert info == {
            "order_code": "ORD-1001",
            "order_state": "ArrangingPayment",
            "payment_status": "failed",
            "can_retry": True,
            "retry_count": 0,
        }

    def test_get_order_state_info_unknown(self) -> None:
        assert OrderStateManager().get_order_state_info("pi_missing") == {"error": "Payment not found"}

    @pytest.mark.asyncio
    async def test_cleanup_old_failed_payments(self, checkout) -> None:
        """Only old non-retryable failures are removed."""
        manager = OrderStateManager()
        old = await checkout.link(code="ORD-1")
        recent = await checkout.link(code="ORD-2")
        retryable = await checkout.link(code="ORD-3")
        await manager.handle_payment_failure(old.payment_intent_id, DECLINED)
        await manager.handle_payment_failure(recent.payment_intent_id, DECLINED)
        await manager.handle_payment_failure(retryable.payment_intent_id, TRANSIENT)
        old.failed_at -= timedelta(days=45)
        retryable.failed_at -= timedelta(days=45)

        removed = manager.cleanup_old_failed_payments(older_than_days=30)

        repo = get_payment_repository()
        assert removed == 1
        assert repo.get(old.payment_intent_id) is None
        assert repo.get(recent.payment_intent_id) is not None
        assert repo.get(retryable.payment_intent_id) is not None
