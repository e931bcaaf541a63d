"""Value objects for the settlement domain.

Amounts are integers in the currency's minor unit, as Stripe expects.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Self

from settlement.domain.base import ValueObject
from settlement.domain.exceptions import InvalidAmountError
from settlement.domain.state_machines import FailureType


# ============================================================================
# Money
# ============================================================================


@dataclass(frozen=True)
class Money(ValueObject):
    """Monetary value in minor units.

    Currency codes are stored lower-case, matching Stripe.

    Attributes:
        amount: Amount in smallest currency unit (e.g., cents).
        currency: ISO 4217 currency code.
    """

    amount: int
    currency: str = "usd"

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise InvalidAmountError(self.amount, "Money amount cannot be negative")
        object.__setattr__(self, "currency", self.currency.lower())

    @classmethod
    def zero(cls, currency: str = "usd") -> Self:
        return cls(amount=0, currency=currency)

    def differs_from(self, amount: int, tolerance: int = 1) -> bool:
        """Check whether another amount is outside the rounding tolerance.

        Args:
            amount: Amount in minor units to compare against.
            tolerance: Largest accepted absolute difference.

        Returns:
            True if ``|self.amount - amount| > tolerance``.
        """
        return abs(self.amount - amount) > tolerance

    def __str__(self) -> str:
        return f"{Decimal(self.amount) / 100:.2f} {self.currency.upper()}"


# ============================================================================
# Cart Lines
# ============================================================================


@dataclass(frozen=True)
class CartLine(ValueObject):
    """A cart line used to estimate an order total before the order exists.

    Attributes:
        product_variant_id: Variant identifier in the catalog.
        quantity: Number of units.
        unit_price: Unit price in minor units.
    """

    product_variant_id: str
    quantity: int
    unit_price: int

    def __post_init__(self) -> None:
        if self.quantity < 0:
            raise InvalidAmountError(self.quantity, "Quantity cannot be negative")
        if self.unit_price < 0:
            raise InvalidAmountError(self.unit_price, "Unit price cannot be negative")

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


def estimate_total(lines: list[CartLine], multiplier: Decimal = Decimal("1.1")) -> int:
    """Estimate an order total from cart lines.

    The subtotal is scaled by ``multiplier`` to leave headroom for tax
    and shipping, then rounded half-up to a whole minor unit.

    Args:
        lines: Cart lines to total.
        multiplier: Headroom factor applied to the subtotal.

    Returns:
        Estimated total in minor units.
    """
    subtotal = sum(line.line_total for line in lines)
    estimate = (Decimal(subtotal) * multiplier).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(estimate)


# ============================================================================
# Failure Details
# ============================================================================


@dataclass(frozen=True)
class PaymentFailure(ValueObject):
    """Why a pending payment failed and whether it may be retried.

    Attributes:
        reason: Message stored on the pending payment record.
        failure_type: Failure classification.
        is_retryable: Whether a retry may succeed.
    """

    reason: str
    failure_type: FailureType
    is_retryable: bool = False
