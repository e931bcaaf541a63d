"""Order application service.

Local order book standing in for the commerce engine's order process.
The settlement pipeline only needs to look orders up, move them between
payment states and attach payments, so that is all this exposes.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from settlement.domain.entities import Order, OrderPayment
from settlement.domain.exceptions import DomainError, InvalidStateTransitionError
from settlement.domain.state_machines import OrderPaymentState, OrderState
from settlement.infrastructure.repositories import OrderRepository, get_order_repository

logger = structlog.get_logger()


# ============================================================================
# Service Result Types
# ============================================================================


@dataclass
class OrderResult:
    """Result of an order operation."""

    order: Order | None = None
    success: bool = True
    error: str | None = None
    error_code: str | None = None


@dataclass
class TransitionResult:
    """Result of an order state transition."""

    order: Order | None = None
    from_state: OrderState | None = None
    to_state: OrderState | None = None
    success: bool = True
    error: str | None = None
    error_code: str | None = None


@dataclass
class AddPaymentResult:
    """Result of attaching a payment to an order."""

    payment: OrderPayment | None = None
    success: bool = True
    error: str | None = None
    error_code: str | None = None


# ============================================================================
# Order Service
# ============================================================================


class OrderService:
    """Application service for the local order book."""

    def __init__(self, order_repo: OrderRepository | None = None) -> None:
        self.order_repo = order_repo or get_order_repository()

    async def create_order(
        self,
        code: str,
        total: int,
        currency: str = "usd",
        customer_email: str | None = None,
        state: OrderState = OrderState.ADDING_ITEMS,
    ) -> OrderResult:
        """Create an order.

        Args:
            code: Unique order code.
            total: Order total in minor units.
            currency: Currency code.
            customer_email: Customer e-mail.
            state: Initial state; may be ArrangingPayment for checkouts
                that already collected shipping details.

        Returns:
            OrderResult with the created order.
        """
        if self.order_repo.get_by_code(code):
            return OrderResult(
                success=False,
                error=f"Order {code} already exists",
                error_code="ORDER_EXISTS",
            )
        try:
            order = Order.create(
                code=code, total=total, currency=currency, customer_email=customer_email
            )
            if state != OrderState.ADDING_ITEMS:
                order.transition_to(state)
        except DomainError as e:
            return OrderResult(success=False, error=e.message, error_code="INVALID_ORDER")

        order.collect_events()
        self.order_repo.save(order)
        logger.info("Order created", order_id=order.id, order_code=code, total=total, state=order.state.value)
        return OrderResult(order=order)

    def get_by_code(self, code: str) -> Order | None:
        return self.order_repo.get_by_code(code)

    def get_by_id(self, order_id: str) -> Order | None:
        return self.order_repo.get(order_id)

    async def transition_to_state(self, order: Order, target: OrderState) -> TransitionResult:
        """Move an order to another state.

        Returns:
            TransitionResult; on an invalid transition ``success`` is False
            and the order is unchanged.
        """
        previous = order.state
        if previous == target:
            return TransitionResult(order=order, from_state=previous, to_state=target)
        try:
            order.transition_to(target)
        except InvalidStateTransitionError as e:
            logger.warning(
                "Order transition rejected",
                order_code=order.code,
                from_state=previous.value,
                to_state=target.value,
            )
            return TransitionResult(
                order=order,
                from_state=previous,
                to_state=target,
                success=False,
                error=e.message,
                error_code="INVALID_TRANSITION",
            )

        for event in order.collect_events():
            logger.info("Order event", **event.to_dict())
        self.order_repo.save(order)
        return TransitionResult(order=order, from_state=previous, to_state=target)

    async def add_payment(
        self,
        order: Order,
        method: str,
        amount: int,
        state: OrderPaymentState,
        transaction_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AddPaymentResult:
        """Attach a payment to an order that is arranging or holding payment.

        Returns:
            AddPaymentResult with the payment, or an error when the order
            cannot take payments in its current state.
        """
        if not order.state.accepts_payment():
            return AddPaymentResult(
                success=False,
                error=f"Order {order.code} cannot accept payments in state {order.state.value}",
                error_code="ORDER_STATE_INVALID",
            )
        payment = order.add_payment(
            method=method,
            amount=amount,
            state=state,
            transaction_id=transaction_id,
            metadata=metadata,
        )
        order.collect_events()
        self.order_repo.save(order)
        logger.info(
            "Payment added to order",
            order_code=order.code,
            payment_id=payment.id,
            amount=amount,
            payment_state=state.value,
        )
        return AddPaymentResult(payment=payment)


# ============================================================================
# Service Factory
# ============================================================================


def get_order_service() -> OrderService:
    """Get order service instance."""
    return OrderService()
