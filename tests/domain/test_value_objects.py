"""Tests for domain value objects."""

from decimal import Decimal

import pytest

from settlement.domain.exceptions import InvalidAmountError
from settlement.domain.state_machines import FailureType
from settlement.domain.value_objects import CartLine, Money, PaymentFailure, estimate_total


class TestMoney:
    """Tests for Money value object."""

    def test_currency_is_lower_cased(self) -> None:
        assert Money(amount=100, currency="USD").currency == "usd"

    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(InvalidAmountError):
            Money(amount=-1)

    def test_zero(self) -> None:
        assert Money.zero("eur") == Money(amount=0, currency="eur")

    def test_differs_within_tolerance(self) -> None:
        """One cent either way is rounding, not a mismatch."""
        money = Money(amount=11000)
        assert not money.differs_from(11000)
        assert not money.differs_from(11001)
        assert not money.differs_from(10999)

    def test_differs_outside_tolerance(self) -> None:
        money = Money(amount=11000)
        assert money.differs_from(11002)
        assert money.differs_from(10998)

    def test_str(self) -> None:
        assert str(Money(amount=12345, currency="usd")) == "123.45 USD"


class TestCartLine:
    """Tests for CartLine value object."""

    def test_line_total(self) -> None:
        line = CartLine(product_variant_id="var-1", quantity=3, unit_price=1250)
        assert line.line_total == 3750

    def test_negative_quantity_rejected(self) -> None:
        with pytest.raises(InvalidAmountError):
            CartLine(product_variant_id="var-1", quantity=-1, unit_price=100)

    def test_negative_price_rejected(self) -> None:
        with pytest.raises(InvalidAmountError):
            CartLine(product_variant_id="var-1", quantity=1, unit_price=-100)


class TestEstimateTotal:
    """Tests for the estimated total calculation."""

    def test_applies_ten_percent_headroom(self) -> None:
        lines = [
            CartLine(product_variant_id="var-1", quantity=2, unit_price=2500),
            CartLine(product_variant_id="var-2", quantity=1, unit_price=5000),
        ]
        assert estimate_total(lines) == 11000

    def test_rounds_half_up(self) -> None:
        """1005 * 1.1 = 1105.5 rounds up to 1106."""
        lines = [CartLine(product_variant_id="var-1", quantity=1, unit_price=1005)]
        assert estimate_total(lines) == 1106

    def test_empty_cart(self) -> None:
        assert estimate_total([]) == 0

    def test_custom_multiplier(self) -> None:
        lines = [CartLine(product_variant_id="var-1", quantity=1, unit_price=1000)]
        assert estimate_total(lines, Decimal("1.25")) == 1250


class TestPaymentFailure:
    def test_defaults_to_not_retryable(self) -> None:
        failure = PaymentFailure(reason="Declined", failure_type=FailureType.USER_ERROR)
        assert failure.is_retryable is False
