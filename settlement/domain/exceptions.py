"""Domain exceptions.

Business rule violations raised by aggregates, value objects and state
machines. The application layer catches ``DomainError`` and turns it
into a result object or an HTTP error.
"""

from typing import Any


class DomainError(Exception):
    """Base class for all domain exceptions."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ============================================================================
# State Machine Errors
# ============================================================================


class InvalidStateTransitionError(DomainError):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_state: str,
        target_state: str,
        allowed_transitions: list[str] | None = None,
    ) -> None:
        """Initialize invalid state transition error.

        Args:
            entity_type: Type of entity (e.g., "Order", "PendingPayment").
            entity_id: ID of the entity.
            current_state: Current state of the entity.
            target_state: Attempted target state.
            allowed_transitions: States reachable from the current one.
        """
        allowed = sorted(allowed_transitions or [])
        message = (
            f"Cannot transition {entity_type}({entity_id}) "
            f"from '{current_state}' to '{target_state}'. "
            f"Allowed transitions: {allowed}"
        )
        super().__init__(
            message,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
                "allowed_transitions": allowed,
            },
        )


# ============================================================================
# Payment Errors
# ============================================================================


class PaymentError(DomainError):
    """Base class for pending payment errors."""

    pass


class PaymentNotFoundError(PaymentError):
    """Raised when no pending payment exists for a PaymentIntent."""

    def __init__(self, payment_intent_id: str) -> None:
        super().__init__(
            "Payment not found",
            details={"payment_intent_id": payment_intent_id},
        )


class PaymentAlreadySettledError(PaymentError):
    """Raised when a settled payment is modified."""

    def __init__(self, payment_intent_id: str) -> None:
        super().__init__(
            "Payment already settled",
            details={"payment_intent_id": payment_intent_id},
        )


class PaymentNotRetryableError(PaymentError):
    """Raised when a retry is requested for a payment that cannot be retried."""

    def __init__(self, payment_intent_id: str, reason: str) -> None:
        super().__init__(
            f"Payment cannot be retried: {reason}",
            details={"payment_intent_id": payment_intent_id, "reason": reason},
        )


# ============================================================================
# Order Errors
# ============================================================================


class OrderError(DomainError):
    """Base class for order-related errors."""

    pass


class OrderNotFoundError(OrderError):
    """Raised when an order code or id does not resolve."""

    def __init__(self, order_ref: str) -> None:
        super().__init__(
            "Order not found",
            details={"order": order_ref},
        )


class DuplicateOrderError(OrderError):
    """Raised when an order code is reused."""

    def __init__(self, order_code: str) -> None:
        super().__init__(
            f"Order {order_code} already exists",
            details={"order_code": order_code},
        )


# ============================================================================
# Cart Mapping Errors
# ============================================================================


class CartMappingError(DomainError):
    """Base class for cart-to-order mapping errors."""

    pass


class CartMappingExistsError(CartMappingError):
    """Raised when a mapping already exists for a cart UUID."""

    def __init__(self, cart_uuid: str) -> None:
        super().__init__(
            f"Cart {cart_uuid} is already mapped to an order",
            details={"cart_uuid": cart_uuid},
        )


# ============================================================================
# Money Errors
# ============================================================================


class InvalidAmountError(DomainError):
    """Raised for negative amounts or quantities."""

    def __init__(self, value: int | float, reason: str) -> None:
        super().__init__(
            f"Invalid amount {value}: {reason}",
            details={"value": value, "reason": reason},
        )
