"""State machines for the settlement domain.

Deterministic state machines for pending Stripe payments and for the
order process the settlement pipeline drives. Transition tables live
outside the enums so the enum members stay plain values.
"""

from enum import Enum

from settlement.domain.exceptions import InvalidStateTransitionError


# ============================================================================
# Pending Payment State Machine
# ============================================================================


class PaymentStatus(str, Enum):
    """Lifecycle of a PaymentIntent linked to an order.

    State diagram:
        PENDING ──── settle ────► SETTLED
          │  ▲
          │  │ reset_for_retry
          ▼  │
        FAILED
    """

    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        return target in _PAYMENT_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["PaymentStatus"]:
        return list(_PAYMENT_TRANSITIONS.get(self, set()))

    def is_terminal(self) -> bool:
        return len(_PAYMENT_TRANSITIONS.get(self, set())) == 0


_PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.SETTLED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING},
    PaymentStatus.SETTLED: set(),  # Terminal state
}


class FailureType(str, Enum):
    """Why a pending payment failed."""

    STRIPE_ERROR = "stripe_error"
    VALIDATION_ERROR = "validation_error"
    SYSTEM_ERROR = "system_error"
    USER_ERROR = "user_error"


# ============================================================================
# Order State Machine
# ============================================================================


class OrderState(str, Enum):
    """Order process states the settlement pipeline interacts with.

    State diagram:
        AddingItems ──► ArrangingPayment ──► PaymentAuthorized ──► PaymentSettled
                          ▲      │                  │
                          │      ▼                  │
                        PaymentDeclined ◄───────────┘

    ArrangingPayment may also settle directly. Every non-terminal state
    may move to Cancelled.
    """

    ADDING_ITEMS = "AddingItems"
    ARRANGING_PAYMENT = "ArrangingPayment"
    PAYMENT_AUTHORIZED = "PaymentAuthorized"
    PAYMENT_SETTLED = "PaymentSettled"
    PAYMENT_DECLINED = "PaymentDeclined"
    CANCELLED = "Cancelled"

    def can_transition_to(self, target: "OrderState") -> bool:
        """Check if transition to target state is valid.

        Args:
            target: Target state to transition to.

        Returns:
            True if transition is valid.
        """
        return target in _ORDER_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["OrderState"]:
        """Get list of valid target states.

        Returns:
            List of states that can be transitioned to.
        """
        return list(_ORDER_TRANSITIONS.get(self, set()))

    def is_terminal(self) -> bool:
        return len(_ORDER_TRANSITIONS.get(self, set())) == 0

    def accepts_payment(self) -> bool:
        """Check if a payment can be attached in this state.

        Returns:
            True while the order is arranging or holding an authorized payment.
        """
        return self in {OrderState.ARRANGING_PAYMENT, OrderState.PAYMENT_AUTHORIZED}


_ORDER_TRANSITIONS: dict[OrderState, set[OrderState]] = {
    OrderState.ADDING_ITEMS: {OrderState.ARRANGING_PAYMENT, OrderState.CANCELLED},
    OrderState.ARRANGING_PAYMENT: {
        OrderState.PAYMENT_AUTHORIZED,
        OrderState.PAYMENT_SETTLED,
        OrderState.PAYMENT_DECLINED,
        OrderState.ADDING_ITEMS,
        OrderState.CANCELLED,
    },
    OrderState.PAYMENT_AUTHORIZED: {
        OrderState.PAYMENT_SETTLED,
        OrderState.PAYMENT_DECLINED,
        OrderState.ARRANGING_PAYMENT,
        OrderState.CANCELLED,
    },
    OrderState.PAYMENT_DECLINED: {OrderState.ARRANGING_PAYMENT, OrderState.CANCELLED},
    OrderState.PAYMENT_SETTLED: {OrderState.CANCELLED},
    OrderState.CANCELLED: set(),  # Terminal state
}


class OrderPaymentState(str, Enum):
    """State of a single payment attached to an order."""

    AUTHORIZED = "Authorized"
    SETTLED = "Settled"
    DECLINED = "Declined"
    CANCELLED = "Cancelled"


# ============================================================================
# Stripe PaymentIntent Status
# ============================================================================


class PaymentIntentStatus(str, Enum):
    """Statuses reported by Stripe for a PaymentIntent."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"

    def settlement_message(self) -> str:
        """User-facing explanation of why this status blocks settlement."""
        return _STATUS_MESSAGES.get(
            self, f"Payment status is {self.value}. Please contact support."
        )


_STATUS_MESSAGES: dict[PaymentIntentStatus, str] = {
    PaymentIntentStatus.REQUIRES_PAYMENT_METHOD: "Payment method required. Please complete the payment process.",
    PaymentIntentStatus.REQUIRES_CONFIRMATION: "Payment requires confirmation. Please complete the payment process.",
    PaymentIntentStatus.REQUIRES_ACTION: "Payment requires additional action. Please complete the payment process.",
    PaymentIntentStatus.PROCESSING: "Payment is still processing. Please wait a moment and try again.",
    PaymentIntentStatus.REQUIRES_CAPTURE: "Payment requires capture. Please contact support.",
    PaymentIntentStatus.CANCELED: "Payment was canceled.",
}


def status_settlement_message(status: str) -> str:
    """Message for any Stripe status string, including unknown ones."""
    try:
        return PaymentIntentStatus(status).settlement_message()
    except ValueError:
        return f"Payment status is {status}. Please contact support."


# ============================================================================
# State Machine Helpers
# ============================================================================


def validate_payment_transition(
    payment_intent_id: str,
    current_status: PaymentStatus,
    target_status: PaymentStatus,
) -> None:
    """Validate and raise if a pending payment transition is invalid.

    Args:
        payment_intent_id: PaymentIntent identifier for the error message.
        current_status: Current payment status.
        target_status: Target payment status.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="PendingPayment",
            entity_id=payment_intent_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )


def validate_order_transition(
    order_code: str,
    current_state: OrderState,
    target_state: OrderState,
) -> None:
    """Validate and raise if an order state transition is invalid.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_state.can_transition_to(target_state):
        raise InvalidStateTransitionError(
            entity_type="Order",
            entity_id=order_code,
            current_state=current_state.value,
            target_state=target_state.value,
            allowed_transitions=[s.value for s in current_state.allowed_transitions()],
        )
