"""Tests for Stripe error classification and retry."""

from unittest.mock import AsyncMock

import pytest

from settlement.application.error_handling import (
    ErrorCategory,
    ErrorSeverity,
    RetryConfig,
    StripeErrorHandler,
    failure_type_for,
)
from settlement.domain.state_machines import FailureType
from settlement.infrastructure.stripe_gateway import StripeErrorType, StripeGatewayError


@pytest.fixture
def handler() -> StripeErrorHandler:
    return StripeErrorHandler(RetryConfig(), sleep=AsyncMock())


class TestRetryConfig:
    """Tests for exponential backoff."""

    def test_delays_double(self) -> None:
        config = RetryConfig()
        assert [config.delay_for(n) for n in (1, 2, 3)] == [1000, 2000, 4000]

    def test_delay_is_capped(self) -> None:
        config = RetryConfig(base_delay_ms=4000, max_delay_ms=10000)
        assert config.delay_for(3) == 10000


class TestStripeApiErrors:
    """Tests for classification of gateway errors."""

    @pytest.mark.parametrize(
        "error_type,error_code,retryable,category",
        [
            (StripeErrorType.CONNECTION, "STRIPE_CONNECTION_ERROR", True, ErrorCategory.NETWORK),
            (StripeErrorType.API, "STRIPE_API_ERROR", True, ErrorCategory.STRIPE),
            (StripeErrorType.AUTHENTICATION, "STRIPE_AUTH_ERROR", False, ErrorCategory.SYSTEM),
            (StripeErrorType.PERMISSION, "STRIPE_PERMISSION_ERROR", False, ErrorCategory.SYSTEM),
            (StripeErrorType.RATE_LIMIT, "STRIPE_RATE_LIMIT", True, ErrorCategory.STRIPE),
            (StripeErrorType.CARD, "CARD_DECLINED", False, ErrorCategory.USER),
        ],
    )
    def test_classification(self, handler, error_type, error_code, retryable, category) -> None:
        info = handler.handle_stripe_api_error(StripeGatewayError(error_type, "boom"), "test")

        assert info.error_code == error_code
        assert info.is_retryable is retryable
        assert info.category == category

    def test_auth_error_is_critical(self, handler) -> None:
        info = handler.handle_stripe_api_error(
            StripeGatewayError(StripeErrorType.AUTHENTICATION, "Invalid API Key"), "test"
        )
        assert info.severity == ErrorSeverity.CRITICAL
        assert info.user_message == "Payment configuration error. Please contact support."

    def test_rate_limit_delay(self, handler) -> None:
        info = handler.handle_stripe_api_error(
            StripeGatewayError(StripeErrorType.RATE_LIMIT, "slow down"), "test"
        )
        assert info.retry_delay_ms == 5000

    def test_missing_resource(self, handler) -> None:
        info = handler.handle_stripe_api_error(
            StripeGatewayError(
                StripeErrorType.INVALID_REQUEST, "No such payment_intent: 'pi_1'", code="resource_missing"
            ),
            "retrieve",
        )
        assert info.error_code == "PAYMENT_INTENT_NOT_FOUND"
        assert not info.is_retryable

    @pytest.mark.parametrize(
        "message,error_code",
        [
            ("This PaymentIntent has already succeeded", "PAYMENT_ALREADY_SUCCEEDED"),
            ("This PaymentIntent was canceled", "PAYMENT_CANCELED"),
            ("Amount must be at least 50 cents", "INVALID_AMOUNT"),
            ("Missing required param: currency", "STRIPE_INVALID_REQUEST"),
        ],
    )
    def test_invalid_request_by_message(self, handler, message, error_code) -> None:
        info = handler.handle_stripe_api_error(
            StripeGatewayError(StripeErrorType.INVALID_REQUEST, message), "test"
        )
        assert info.error_code == error_code

    def test_card_error_carries_decline_code(self, handler) -> None:
        info = handler.handle_card_error("Your card was declined.", "insufficient_funds")
        assert info.admin_message == "Card declined (insufficient_funds): Your card was declined."
        assert info.failure_type == FailureType.USER_ERROR


class TestUnsettledStatus:
    """Tests for PaymentIntents that have not succeeded."""

    @pytest.mark.parametrize("status", ["processing", "requires_action", "requires_confirmation"])
    def test_in_flight_is_retryable(self, handler, status) -> None:
        info = handler.handle_unsettled_status("pi_1", status)

        assert info.error_code == "PAYMENT_NOT_COMPLETED"
        assert info.is_retryable
        assert info.failure_type == FailureType.STRIPE_ERROR

    def test_canceled(self, handler) -> None:
        info = handler.handle_unsettled_status("pi_1", "canceled")

        assert info.error_code == "PAYMENT_CANCELED"
        assert not info.is_retryable
        assert info.admin_message == "PaymentIntent pi_1 has status canceled"

    def test_requires_payment_method(self, handler) -> None:
        info = handler.handle_unsettled_status("pi_1", "requires_payment_method")
        assert info.error_code == "PAYMENT_METHOD_REQUIRED"
        assert info.category == ErrorCategory.USER

    def test_unexpected_status(self, handler) -> None:
        info = handler.handle_unsettled_status("pi_1", "requires_capture")
        assert info.error_code == "PAYMENT_STATUS_INVALID"


class TestSettlementErrors:
    """Tests for classification of settlement failures by message."""

    @pytest.mark.parametrize(
        "message,error_code,retryable",
        [
            ("Order not found: ORD-1", "ORDER_NOT_FOUND", False),
            ("Payment pi_1 is already settled", "PAYMENT_ALREADY_SETTLED", False),
            ("Payment failed at gateway", "SETTLEMENT_FAILED", True),
            ("database is locked", "DATABASE_ERROR", True),
            ("something odd", "GENERIC_ERROR", True),
        ],
    )
    def test_classification(self, handler, message, error_code, retryable) -> None:
        info = handler.handle_settlement_error(Exception(message), "settlement")

        assert info.error_code == error_code
        assert info.is_retryable is retryable

    def test_categorize_routes_by_context(self, handler) -> None:
        error = Exception("Order not found")

        assert handler.categorize_error(error, "settle_payment").error_code == "ORDER_NOT_FOUND"
        assert handler.categorize_error(error, "create_intent").error_code == "GENERIC_ERROR"

    def test_get_retry_delay_defaults_to_base(self, handler) -> None:
        assert handler.get_retry_delay(
            StripeGatewayError(StripeErrorType.CONNECTION, "reset"), "test"
        ) == 2000
        assert handler.get_retry_delay(
            StripeGatewayError(StripeErrorType.AUTHENTICATION, "bad key"), "test"
        ) == 1000


class TestFailureTypeFor:
    def test_mapping(self) -> None:
        assert failure_type_for(ErrorCategory.STRIPE) == FailureType.STRIPE_ERROR
        assert failure_type_for(ErrorCategory.VALIDATION) == FailureType.VALIDATION_ERROR
        assert failure_type_for(ErrorCategory.USER) == FailureType.USER_ERROR
        assert failure_type_for(ErrorCategory.NETWORK) == FailureType.SYSTEM_ERROR
        assert failure_type_for(ErrorCategory.SYSTEM) == FailureType.SYSTEM_ERROR


class TestWithRetry:
    """Tests for retrying operations."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, handler) -> None:
        operation = AsyncMock(return_value="ok")

        result = await handler.with_retry(operation, "test")

        assert result.success
        assert result.result == "ok"
        assert result.attempts == 1
        handler._sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, handler) -> None:
        operation = AsyncMock(
            side_effect=[
                StripeGatewayError(StripeErrorType.CONNECTION, "reset"),
                StripeGatewayError(StripeErrorType.API, "overloaded"),
                "ok",
            ]
        )

        result = await handler.with_retry(operation, "test")

        assert result.success
        assert result.attempts == 3
        assert [e.error_code for e in result.errors] == ["STRIPE_CONNECTION_ERROR", "STRIPE_API_ERROR"]
        assert [call.args[0] for call in handler._sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_stops_on_permanent_error(self, handler) -> None:
        operation = AsyncMock(side_effect=StripeGatewayError(StripeErrorType.AUTHENTICATION, "bad key"))

        result = await handler.with_retry(operation, "test")

        assert not result.success
        assert result.attempts == 1
        assert result.error.error_code == "STRIPE_AUTH_ERROR"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, handler) -> None:
        operation = AsyncMock(side_effect=StripeGatewayError(StripeErrorType.CONNECTION, "reset"))

        result = await handler.with_retry(operation, "test", RetryConfig(max_retries=2))

        assert not result.success
        assert result.attempts == 2
        assert operation.await_count == 2
        assert handler._sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self, handler) -> None:
        operation = AsyncMock()

        result = await handler.with_retry(operation, "test", RetryConfig(max_retries=0))

        assert not result.success
        assert result.error.error_code == "GENERIC_ERROR"
        operation.assert_not_called()
