"""Domain events for the settlement pipeline.

Events are recorded by aggregates and drained by the application
services, which log them to the settlement audit trail.
"""

from dataclasses import dataclass
from typing import Any, ClassVar

from settlement.domain.base import DomainEvent


# ============================================================================
# Pending Payment Events
# ============================================================================


@dataclass(frozen=True)
class PaymentLinked(DomainEvent):
    """A PaymentIntent was linked to an order and is awaiting settlement."""

    event_type: ClassVar[str] = "payment.linked"

    payment_intent_id: str = ""
    order_code: str = ""
    amount: int = 0
    currency: str = "usd"

    def _payload(self) -> dict[str, Any]:
        return {
            "payment_intent_id": self.payment_intent_id,
            "order_code": self.order_code,
            "amount": self.amount,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class PaymentSettled(DomainEvent):
    """A pending payment was settled."""

    event_type: ClassVar[str] = "payment.settled"

    payment_intent_id: str = ""
    order_code: str = ""
    manual: bool = False
    settled_by: str | None = None

    def _payload(self) -> dict[str, Any]:
        return {
            "payment_intent_id": self.payment_intent_id,
            "order_code": self.order_code,
            "manual": self.manual,
            "settled_by": self.settled_by,
        }


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    """A pending payment failed."""

    event_type: ClassVar[str] = "payment.failed"

    payment_intent_id: str = ""
    order_code: str = ""
    reason: str = ""
    failure_type: str = ""
    is_retryable: bool = False

    def _payload(self) -> dict[str, Any]:
        return {
            "payment_intent_id": self.payment_intent_id,
            "order_code": self.order_code,
            "reason": self.reason,
            "failure_type": self.failure_type,
            "is_retryable": self.is_retryable,
        }


@dataclass(frozen=True)
class PaymentRetryReset(DomainEvent):
    """A failed payment was reset to pending for another attempt."""

    event_type: ClassVar[str] = "payment.retry_reset"

    payment_intent_id: str = ""
    retry_count: int = 0

    def _payload(self) -> dict[str, Any]:
        return {"payment_intent_id": self.payment_intent_id, "retry_count": self.retry_count}


@dataclass(frozen=True)
class PaymentCanceled(DomainEvent):
    """An administrator canceled a pending payment."""

    event_type: ClassVar[str] = "payment.canceled"

    payment_intent_id: str = ""
    reason: str = ""
    canceled_by: str = ""

    def _payload(self) -> dict[str, Any]:
        return {
            "payment_intent_id": self.payment_intent_id,
            "reason": self.reason,
            "canceled_by": self.canceled_by,
        }


# ============================================================================
# Cart Mapping Events
# ============================================================================


@dataclass(frozen=True)
class CartMappingCreated(DomainEvent):
    """A cart UUID was mapped to an order."""

    event_type: ClassVar[str] = "cart_mapping.created"

    cart_uuid: str = ""
    order_code: str = ""

    def _payload(self) -> dict[str, Any]:
        return {"cart_uuid": self.cart_uuid, "order_code": self.order_code}


@dataclass(frozen=True)
class CartMappingCompleted(DomainEvent):
    """The order behind a cart mapping was paid."""

    event_type: ClassVar[str] = "cart_mapping.completed"

    cart_uuid: str = ""
    order_code: str = ""

    def _payload(self) -> dict[str, Any]:
        return {"cart_uuid": self.cart_uuid, "order_code": self.order_code}


# ============================================================================
# Order Events
# ============================================================================


@dataclass(frozen=True)
class OrderStateChanged(DomainEvent):
    """An order moved between process states."""

    event_type: ClassVar[str] = "order.state_changed"

    order_code: str = ""
    from_state: str = ""
    to_state: str = ""

    def _payload(self) -> dict[str, Any]:
        return {
            "order_code": self.order_code,
            "from_state": self.from_state,
            "to_state": self.to_state,
        }


@dataclass(frozen=True)
class OrderPaymentAdded(DomainEvent):
    """A payment was attached to an order."""

    event_type: ClassVar[str] = "order.payment_added"

    order_code: str = ""
    payment_id: str = ""
    method: str = ""
    amount: int = 0
    state: str = ""

    def _payload(self) -> dict[str, Any]:
        return {
            "order_code": self.order_code,
            "payment_id": self.payment_id,
            "method": self.method,
            "amount": self.amount,
            "state": self.state,
        }


# ============================================================================
# Event Registry
# ============================================================================


EVENT_REGISTRY: dict[str, type[DomainEvent]] = {
    PaymentLinked.event_type: PaymentLinked,
    PaymentSettled.event_type: PaymentSettled,
    PaymentFailed.event_type: PaymentFailed,
    PaymentRetryReset.event_type: PaymentRetryReset,
    PaymentCanceled.event_type: PaymentCanceled,
    CartMappingCreated.event_type: CartMappingCreated,
    CartMappingCompleted.event_type: CartMappingCompleted,
    OrderStateChanged.event_type: OrderStateChanged,
    OrderPaymentAdded.event_type: OrderPaymentAdded,
}


def get_event_class(event_type: str) -> type[DomainEvent] | None:
    """Get event class by event type string.

    Args:
        event_type: Event type identifier (e.g., 'payment.settled').

    Returns:
        Event class if found, None otherwise.
    """
    return EVENT_REGISTRY.get(event_type)
