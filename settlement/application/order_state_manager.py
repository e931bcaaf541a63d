"""Order state management around payment failures and retries.

Keeps the pending payment record and the order state consistent when a
payment fails, succeeds or is reset for another attempt.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog

from settlement.application.order_service import OrderService
from settlement.domain.base import utc_now
from settlement.domain.entities import PendingPayment
from settlement.domain.exceptions import DomainError
from settlement.domain.state_machines import FailureType, OrderState, PaymentStatus
from settlement.domain.value_objects import PaymentFailure
from settlement.infrastructure.repositories import (
    PendingPaymentRepository,
    get_payment_repository,
)

logger = structlog.get_logger()


@dataclass
class OrderStateUpdateResult:
    """Outcome of an order state update.

    ``success`` reflects the payment record update; a failed order
    transition after a recorded failure is reported through ``error``
    with ``new_state`` equal to ``previous_state``.
    """

    success: bool
    previous_state: str | None = None
    new_state: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "error": self.error,
        }


def target_state_for_failure(failure: PaymentFailure) -> OrderState:
    """Retryable gateway and system errors keep the order arranging payment."""
    if failure.is_retryable and failure.failure_type in (
        FailureType.STRIPE_ERROR,
        FailureType.SYSTEM_ERROR,
    ):
        return OrderState.ARRANGING_PAYMENT
    return OrderState.PAYMENT_DECLINED


class OrderStateManager:
    """Coordinates pending payment records with order states."""

    def __init__(
        self,
        payment_repo: PendingPaymentRepository | None = None,
        order_service: OrderService | None = None,
    ) -> None:
        self.payment_repo = payment_repo or get_payment_repository()
        self.order_service = order_service or OrderService()

    async def handle_payment_failure(
        self, payment_intent_id: str, failure: PaymentFailure
    ) -> OrderStateUpdateResult:
        """Mark the payment failed and move the order to the matching state.

        Args:
            payment_intent_id: PaymentIntent id.
            failure: Failure details.

        Returns:
            OrderStateUpdateResult describing the order transition.
        """
        logger.info("Handling payment failure", payment_intent_id=payment_intent_id)
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return OrderStateUpdateResult(success=False, error="Pending payment record not found")

        try:
            payment.fail(failure)
        except DomainError as e:
            return OrderStateUpdateResult(success=False, error=e.message)
        self._save(payment)

        order = self.order_service.get_by_code(payment.order_code)
        if order is None:
            return OrderStateUpdateResult(success=False, error="Order not found")

        previous = order.state
        target = target_state_for_failure(failure)
        if previous == target:
            return OrderStateUpdateResult(
                success=True, previous_state=previous.value, new_state=previous.value
            )

        transition = await self.order_service.transition_to_state(order, target)
        if not transition.success:
            logger.error(
                "Order transition after payment failure rejected",
                order_code=order.code,
                target_state=target.value,
                error=transition.error,
            )
            return OrderStateUpdateResult(
                success=True,
                previous_state=previous.value,
                new_state=previous.value,
                error=f"Payment marked as failed but order state transition failed: {transition.error}",
            )

        logger.info(
            "Order state updated after payment failure",
            order_code=order.code,
            previous_state=previous.value,
            new_state=target.value,
            reason=failure.reason,
        )
        return OrderStateUpdateResult(
            success=True, previous_state=previous.value, new_state=target.value
        )

    async def handle_payment_success(self, payment_intent_id: str) -> OrderStateUpdateResult:
        """Report the order state after a successful payment."""
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return OrderStateUpdateResult(success=False, error="Pending payment record not found")
        order = self.order_service.get_by_code(payment.order_code)
        if order is None:
            return OrderStateUpdateResult(success=False, error="Order not found")

        if order.state != OrderState.PAYMENT_SETTLED:
            logger.info(
                "Payment succeeded but order not settled yet",
                order_code=order.code,
                order_state=order.state.value,
            )
        return OrderStateUpdateResult(
            success=True, previous_state=order.state.value, new_state=order.state.value
        )

    async def reset_order_for_retry(self, payment_intent_id: str) -> OrderStateUpdateResult:
        """Reset a failed payment to pending and put the order back to ArrangingPayment."""
        logger.info("Resetting order for payment retry", payment_intent_id=payment_intent_id)
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return OrderStateUpdateResult(success=False, error="Pending payment record not found")
        order = self.order_service.get_by_code(payment.order_code)
        if order is None:
            return OrderStateUpdateResult(success=False, error="Order not found")

        previous = order.state
        try:
            payment.reset_for_retry()
        except DomainError as e:
            return OrderStateUpdateResult(success=False, previous_state=previous.value, error=e.message)
        self._save(payment)

        if previous != OrderState.ARRANGING_PAYMENT:
            transition = await self.order_service.transition_to_state(
                order, OrderState.ARRANGING_PAYMENT
            )
            if not transition.success:
                return OrderStateUpdateResult(
                    success=False,
                    previous_state=previous.value,
                    error=f"Failed to reset order state: {transition.error}",
                )

        return OrderStateUpdateResult(
            success=True,
            previous_state=previous.value,
            new_state=OrderState.ARRANGING_PAYMENT.value,
        )

    def get_order_state_info(self, payment_intent_id: str) -> dict[str, Any]:
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return {"error": "Payment not found"}
        order = self.order_service.get_by_code(payment.order_code)
        if order is None:
            return {
                "order_code": payment.order_code,
                "payment_status": payment.status.value,
                "error": "Order not found",
            }
        return {
            "order_code": order.code,
            "order_state": order.state.value,
            "payment_status": payment.status.value,
            "can_retry": payment.can_retry,
            "retry_count": payment.retry_count,
        }

    def cleanup_old_failed_payments(self, older_than_days: int = 30) -> int:
        """Delete non-retryable failed payments that failed before the cutoff.

        Returns:
            Number of records removed.
        """
        cutoff = utc_now() - timedelta(days=older_than_days)
        stale = [
            p
            for p in self.payment_repo.list_by_status(PaymentStatus.FAILED)
            if not p.is_retryable and p.failed_at is not None and p.failed_at < cutoff
        ]
        for payment in stale:
            self.payment_repo.delete(payment.payment_intent_id)
        logger.info(
            "Cleaned up old failed payments",
            cleaned=len(stale),
            older_than_days=older_than_days,
        )
        return len(stale)

    def _save(self, payment: PendingPayment) -> None:
        for event in payment.collect_events():
            logger.info("Payment event", **event.to_dict())
        self.payment_repo.save(payment)


def get_order_state_manager() -> OrderStateManager:
    """Get order state manager instance."""
    return OrderStateManager()
