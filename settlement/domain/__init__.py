"""Domain layer - aggregates, value objects, state machines, domain events.

- **Aggregates**: PendingPayment, CartOrderMapping, Order
- **Value Objects**: Money, CartLine, PaymentFailure
- **State Machines**: PaymentStatus, OrderState, PaymentIntentStatus
- **Domain Events**: payment, cart mapping and order events
- **Exceptions**: DomainError and its subclasses

Example usage:
    from settlement.domain import PendingPayment, PaymentFailure, FailureType

    payment = PendingPayment.create("pi_123", "ord-1", "SO-1001", amount=2599)
    payment.fail(PaymentFailure("Card declined", FailureType.USER_ERROR))
"""

from settlement.domain.base import AggregateRoot, DomainEvent, ValueObject, utc_now
from settlement.domain.entities import (
    MAX_RETRY_COUNT,
    CartOrderMapping,
    Order,
    OrderPayment,
    PendingPayment,
)
from settlement.domain.events import EVENT_REGISTRY, get_event_class
from settlement.domain.exceptions import (
    CartMappingError,
    CartMappingExistsError,
    DomainError,
    DuplicateOrderError,
    InvalidAmountError,
    InvalidStateTransitionError,
    OrderError,
    OrderNotFoundError,
    PaymentAlreadySettledError,
    PaymentError,
    PaymentNotFoundError,
    PaymentNotRetryableError,
)
from settlement.domain.state_machines import (
    FailureType,
    OrderPaymentState,
    OrderState,
    PaymentIntentStatus,
    PaymentStatus,
    status_settlement_message,
)
from settlement.domain.value_objects import CartLine, Money, PaymentFailure, estimate_total

__all__ = [
    # Base
    "AggregateRoot",
    "DomainEvent",
    "ValueObject",
    "utc_now",
    # Aggregates
    "CartOrderMapping",
    "MAX_RETRY_COUNT",
    "Order",
    "OrderPayment",
    "PendingPayment",
    # Events
    "EVENT_REGISTRY",
    "get_event_class",
    # Exceptions
    "CartMappingError",
    "CartMappingExistsError",
    "DomainError",
    "DuplicateOrderError",
    "InvalidAmountError",
    "InvalidStateTransitionError",
    "OrderError",
    "OrderNotFoundError",
    "PaymentAlreadySettledError",
    "PaymentError",
    "PaymentNotFoundError",
    "PaymentNotRetryableError",
    # State machines
    "FailureType",
    "OrderPaymentState",
    "OrderState",
    "PaymentIntentStatus",
    "PaymentStatus",
    "status_settlement_message",
    # Value objects
    "CartLine",
    "Money",
    "PaymentFailure",
    "estimate_total",
]
