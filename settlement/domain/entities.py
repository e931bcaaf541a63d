"""Domain entities for the settlement pipeline.

Aggregates:
- PendingPayment: a PaymentIntent linked to an order, awaiting settlement.
- CartOrderMapping: ties a storefront cart UUID to the order created from it.
- Order: local mirror of the commerce engine's order and its payments.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from settlement.domain.base import AggregateRoot, utc_now
from settlement.domain.events import (
    CartMappingCompleted,
    CartMappingCreated,
    OrderPaymentAdded,
    OrderStateChanged,
    PaymentCanceled,
    PaymentFailed,
    PaymentLinked,
    PaymentRetryReset,
    PaymentSettled,
)
from settlement.domain.exceptions import (
    InvalidAmountError,
    PaymentAlreadySettledError,
    PaymentNotRetryableError,
)
from settlement.domain.state_machines import (
    FailureType,
    OrderPaymentState,
    OrderState,
    PaymentStatus,
    validate_order_transition,
    validate_payment_transition,
)
from settlement.domain.value_objects import Money, PaymentFailure

MAX_RETRY_COUNT = 3


# ============================================================================
# Pending Payment Aggregate Root
# ============================================================================


@dataclass(kw_only=True)
class PendingPayment(AggregateRoot):
    """PaymentIntent linked to an order that has not been settled yet.

    Attributes:
        payment_intent_id: Stripe PaymentIntent id (unique).
        order_id: Order identifier.
        order_code: Human-facing order code.
        amount: Expected amount in minor units.
        currency: Lower-case currency code.
        customer_email: Customer e-mail, if known.
        status: pending, settled or failed.
        failure_reason: Message recorded on failure.
        failure_type: Failure classification.
        is_retryable: Whether the failure may be retried.
        retry_count: Number of retry resets performed.
        manual_settlement: Whether an administrator settled the payment.
        settled_by: Administrator who settled it.
        canceled_by: Administrator who canceled it.
    """

    payment_intent_id: str
    order_id: str
    order_code: str
    amount: int
    currency: str = "usd"
    customer_email: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    settled_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    failure_type: FailureType | None = None
    is_retryable: bool = False
    retry_count: int = 0
    manual_settlement: bool = False
    settled_by: str | None = None
    canceled_by: str | None = None

    @classmethod
    def create(
        cls,
        payment_intent_id: str,
        order_id: str,
        order_code: str,
        amount: int,
        currency: str = "usd",
        customer_email: str | None = None,
    ) -> "PendingPayment":
        """Create a pending payment for a freshly linked PaymentIntent.

        Raises:
            InvalidAmountError: If the amount is negative.
        """
        if amount < 0:
            raise InvalidAmountError(amount, "Payment amount cannot be negative")
        payment = cls(
            payment_intent_id=payment_intent_id,
            order_id=order_id,
            order_code=order_code,
            amount=amount,
            currency=currency.lower(),
            customer_email=customer_email,
        )
        payment._record_event(
            PaymentLinked(
                aggregate_id=payment.id,
                aggregate_type="PendingPayment",
                payment_intent_id=payment_intent_id,
                order_code=order_code,
                amount=amount,
                currency=payment.currency,
            )
        )
        return payment

    # -------------------------------------------------------------------------
    # Query Methods
    # -------------------------------------------------------------------------

    @property
    def expected(self) -> Money:
        return Money(amount=self.amount, currency=self.currency)

    @property
    def can_retry(self) -> bool:
        """A failed, retryable payment that has not exhausted its retries."""
        return (
            self.status == PaymentStatus.FAILED
            and self.is_retryable
            and self.retry_count < MAX_RETRY_COUNT
        )

    # -------------------------------------------------------------------------
    # State Transitions
    # -------------------------------------------------------------------------

    def relink(
        self,
        order_id: str,
        order_code: str,
        amount: int,
        customer_email: str | None = None,
    ) -> None:
        """Point an unsettled record at a (possibly re-created) order.

        Raises:
            PaymentAlreadySettledError: If the payment was already settled.
        """
        if self.status == PaymentStatus.SETTLED:
            raise PaymentAlreadySettledError(self.payment_intent_id)
        if amount < 0:
            raise InvalidAmountError(amount, "Payment amount cannot be negative")
        self.order_id = order_id
        self.order_code = order_code
        self.amount = amount
        self.customer_email = customer_email
        if self.status == PaymentStatus.FAILED:
            self._clear_failure()
            self.status = PaymentStatus.PENDING
        self._touch()
        self._record_event(
            PaymentLinked(
                aggregate_id=self.id,
                aggregate_type="PendingPayment",
                payment_intent_id=self.payment_intent_id,
                order_code=order_code,
                amount=amount,
                currency=self.currency,
            )
        )

    def settle(self, settled_by: str | None = None, manual: bool = False) -> None:
        """Mark the payment settled.

        Manual settlement is allowed from failed as well as pending, since an
        administrator may override a failed automatic attempt.

        Raises:
            PaymentAlreadySettledError: If already settled.
            InvalidStateTransitionError: If not in a settleable state.
        """
        if self.status == PaymentStatus.SETTLED:
            raise PaymentAlreadySettledError(self.payment_intent_id)
        if not manual:
            validate_payment_transition(self.payment_intent_id, self.status, PaymentStatus.SETTLED)
        self.status = PaymentStatus.SETTLED
        self.settled_at = utc_now()
        self.manual_settlement = manual
        self.settled_by = settled_by
        self._touch()
        self._record_event(
            PaymentSettled(
                aggregate_id=self.id,
                aggregate_type="PendingPayment",
                payment_intent_id=self.payment_intent_id,
                order_code=self.order_code,
                manual=manual,
                settled_by=settled_by,
            )
        )

    def fail(self, failure: PaymentFailure) -> None:
        """Record a failure.

        A failed payment may be failed again with fresh details; a settled
        one may not.

        Raises:
            PaymentAlreadySettledError: If already settled.
        """
        if self.status == PaymentStatus.SETTLED:
            raise PaymentAlreadySettledError(self.payment_intent_id)
        self.status = PaymentStatus.FAILED
        self.failed_at = utc_now()
        self.failure_reason = failure.reason
        self.failure_type = failure.failure_type
        self.is_retryable = failure.is_retryable
        self._touch()
        self._record_event(
            PaymentFailed(
                aggregate_id=self.id,
                aggregate_type="PendingPayment",
                payment_intent_id=self.payment_intent_id,
                order_code=self.order_code,
                reason=failure.reason,
                failure_type=failure.failure_type.value,
                is_retryable=failure.is_retryable,
            )
        )

    def reset_for_retry(self) -> None:
        """Move a failed payment back to pending and count the retry.

        Raises:
            PaymentNotRetryableError: If the payment is not failed.
        """
        if self.status != PaymentStatus.FAILED:
            raise PaymentNotRetryableError(
                self.payment_intent_id, f"status is {self.status.value}"
            )
        validate_payment_transition(self.payment_intent_id, self.status, PaymentStatus.PENDING)
        self.status = PaymentStatus.PENDING
        self._clear_failure()
        self.retry_count += 1
        self._touch()
        self._record_event(
            PaymentRetryReset(
                aggregate_id=self.id,
                aggregate_type="PendingPayment",
                payment_intent_id=self.payment_intent_id,
                retry_count=self.retry_count,
            )
        )

    def cancel(self, reason: str, canceled_by: str) -> None:
        """Cancel the payment on behalf of an administrator.

        Raises:
            PaymentAlreadySettledError: If already settled.
        """
        self.fail(
            PaymentFailure(
                reason=f"Canceled by admin: {reason}",
                failure_type=FailureType.USER_ERROR,
                is_retryable=False,
            )
        )
        self.canceled_by = canceled_by
        self._record_event(
            PaymentCanceled(
                aggregate_id=self.id,
                aggregate_type="PendingPayment",
                payment_intent_id=self.payment_intent_id,
                reason=reason,
                canceled_by=canceled_by,
            )
        )

    def _clear_failure(self) -> None:
        self.failed_at = None
        self.failure_reason = None
        self.failure_type = None
        self.is_retryable = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "payment_intent_id": self.payment_intent_id,
            "order_id": self.order_id,
            "order_code": self.order_code,
            "amount": self.amount,
            "currency": self.currency,
            "customer_email": self.customer_email,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "failure_reason": self.failure_reason,
            "failure_type": self.failure_type.value if self.failure_type else None,
            "is_retryable": self.is_retryable,
            "retry_count": self.retry_count,
            "manual_settlement": self.manual_settlement,
            "settled_by": self.settled_by,
            "canceled_by": self.canceled_by,
        }


# ============================================================================
# Cart Order Mapping Aggregate Root
# ============================================================================


@dataclass(kw_only=True)
class CartOrderMapping(AggregateRoot):
    """Maps a storefront cart to the order created for it.

    The mapping survives the client redirect of wallet and 3-D Secure
    flows, so the storefront can resolve its order when the shopper
    comes back.
    """

    cart_uuid: str
    order_id: str
    order_code: str
    payment_intent_id: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def create(
        cls,
        cart_uuid: str,
        order_id: str,
        order_code: str,
        payment_intent_id: str | None = None,
    ) -> "CartOrderMapping":
        mapping = cls(
            cart_uuid=cart_uuid,
            order_id=order_id,
            order_code=order_code,
            payment_intent_id=payment_intent_id,
        )
        mapping._record_event(
            CartMappingCreated(
                aggregate_id=mapping.id,
                aggregate_type="CartOrderMapping",
                cart_uuid=cart_uuid,
                order_code=order_code,
            )
        )
        return mapping

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def attach_payment_intent(self, payment_intent_id: str) -> None:
        self.payment_intent_id = payment_intent_id
        self._touch()

    def mark_completed(self) -> None:
        """Stamp the completion time. Completing twice keeps the first stamp."""
        if self.completed_at is not None:
            return
        self.completed_at = utc_now()
        self._touch()
        self._record_event(
            CartMappingCompleted(
                aggregate_id=self.id,
                aggregate_type="CartOrderMapping",
                cart_uuid=self.cart_uuid,
                order_code=self.order_code,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cart_uuid": self.cart_uuid,
            "order_id": self.order_id,
            "order_code": self.order_code,
            "payment_intent_id": self.payment_intent_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# ============================================================================
# Order Aggregate Root
# ============================================================================


@dataclass
class OrderPayment:
    """A payment attached to an order.

    Attributes:
        id: Payment identifier.
        method: Payment method code (e.g., 'stripe-pre-order').
        amount: Amount in minor units.
        state: Payment state.
        transaction_id: Gateway transaction id.
        metadata: Gateway-specific data.
    """

    method: str
    amount: int
    state: OrderPaymentState
    transaction_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "method": self.method,
            "amount": self.amount,
            "state": self.state.value,
            "transaction_id": self.transaction_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(kw_only=True)
class Order(AggregateRoot):
    """Order the settlement pipeline moves through the payment states.

    Attributes:
        code: Unique human-facing order code.
        state: Current order process state.
        total: Order total in minor units, tax included.
        currency: Lower-case currency code.
        customer_email: Customer e-mail, if known.
        payments: Payments attached to the order.
    """

    code: str
    total: int
    currency: str = "usd"
    customer_email: str | None = None
    state: OrderState = OrderState.ADDING_ITEMS
    payments: list[OrderPayment] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        code: str,
        total: int,
        currency: str = "usd",
        customer_email: str | None = None,
        order_id: str | None = None,
    ) -> "Order":
        if total < 0:
            raise InvalidAmountError(total, "Order total cannot be negative")
        kwargs: dict[str, Any] = {}
        if order_id:
            kwargs["id"] = order_id
        return cls(
            code=code,
            total=total,
            currency=currency.lower(),
            customer_email=customer_email,
            **kwargs,
        )

    def next_states(self) -> list[OrderState]:
        return self.state.allowed_transitions()

    def transition_to(self, target: OrderState) -> OrderState:
        """Move the order to another process state.

        Returns:
            The state the order was in before the transition.

        Raises:
            InvalidStateTransitionError: If transition is not valid.
        """
        previous = self.state
        validate_order_transition(self.code, self.state, target)
        self.state = target
        self._touch()
        self._record_event(
            OrderStateChanged(
                aggregate_id=self.id,
                aggregate_type="Order",
                order_code=self.code,
                from_state=previous.value,
                to_state=target.value,
            )
        )
        return previous

    def add_payment(
        self,
        method: str,
        amount: int,
        state: OrderPaymentState,
        transaction_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OrderPayment:
        """Attach a payment.

        An authorized or settled payment for the same transaction replaces
        the earlier entry's state rather than adding a duplicate line.
        """
        existing = self.find_payment(transaction_id) if transaction_id else None
        if existing is not None:
            existing.state = state
            existing.amount = amount
            existing.metadata.update(metadata or {})
            payment = existing
        else:
            payment = OrderPayment(
                method=method,
                amount=amount,
                state=state,
                transaction_id=transaction_id,
                metadata=dict(metadata or {}),
            )
            self.payments.append(payment)
        self._touch()
        self._record_event(
            OrderPaymentAdded(
                aggregate_id=self.id,
                aggregate_type="Order",
                order_code=self.code,
                payment_id=payment.id,
                method=method,
                amount=amount,
                state=state.value,
            )
        )
        return payment

    def find_payment(self, transaction_id: str) -> OrderPayment | None:
        for payment in self.payments:
            if payment.transaction_id == transaction_id:
                return payment
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "state": self.state.value,
            "total": self.total,
            "currency": self.currency,
            "customer_email": self.customer_email,
            "payments": [p.to_dict() for p in self.payments],
            "next_states": [s.value for s in self.next_states()],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
