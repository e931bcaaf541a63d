"""Stripe error classification and retry.

Turns gateway and settlement exceptions into ``StripeErrorInfo`` records
carrying a user-facing message, an operator message, a retry hint and a
category, and runs async operations with exponential backoff.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog

from settlement.domain.state_machines import FailureType, PaymentIntentStatus, status_settlement_message
from settlement.infrastructure.config import settings
from settlement.infrastructure.stripe_gateway import StripeErrorType, StripeGatewayError

logger = structlog.get_logger()

T = TypeVar("T")

_IN_FLIGHT_STATUSES = frozenset(
    {
        PaymentIntentStatus.PROCESSING.value,
        PaymentIntentStatus.REQUIRES_ACTION.value,
        PaymentIntentStatus.REQUIRES_CONFIRMATION.value,
    }
)


# ============================================================================
# Error Info
# ============================================================================


class ErrorCategory(str, Enum):
    """Where an error came from."""

    NETWORK = "network"
    STRIPE = "stripe"
    VALIDATION = "validation"
    SYSTEM = "system"
    USER = "user"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class StripeErrorInfo:
    """Classified error.

    Attributes:
        user_message: Safe to show to the shopper.
        admin_message: Detailed message for operators.
        is_retryable: Whether retrying may succeed.
        retry_delay_ms: Suggested delay before retrying.
        error_code: Stable machine-readable code.
        category: Error category.
        severity: Operational severity.
    """

    user_message: str
    admin_message: str
    is_retryable: bool
    error_code: str
    category: ErrorCategory
    severity: ErrorSeverity
    retry_delay_ms: int | None = None

    @property
    def failure_type(self) -> FailureType:
        return failure_type_for(self.category)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_message": self.user_message,
            "admin_message": self.admin_message,
            "is_retryable": self.is_retryable,
            "retry_delay_ms": self.retry_delay_ms,
            "error_code": self.error_code,
            "category": self.category.value,
            "severity": self.severity.value,
        }


def failure_type_for(category: ErrorCategory) -> FailureType:
    """Map an error category to the failure type stored on a payment."""
    if category == ErrorCategory.STRIPE:
        return FailureType.STRIPE_ERROR
    if category == ErrorCategory.VALIDATION:
        return FailureType.VALIDATION_ERROR
    if category == ErrorCategory.USER:
        return FailureType.USER_ERROR
    return FailureType.SYSTEM_ERROR


@dataclass
class RetryConfig:
    """Exponential backoff policy.

    The delay before attempt ``n + 1`` is
    ``min(base_delay_ms * backoff_multiplier ** (n - 1), max_delay_ms)``.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> int:
        delay = self.base_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return int(min(delay, self.max_delay_ms))


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried operation."""

    success: bool
    attempts: int
    result: T | None = None
    error: StripeErrorInfo | None = None
    errors: list[StripeErrorInfo] = field(default_factory=list)


class SettlementError(Exception):
    """Settlement-step failure classified by its message."""

    pass


# ============================================================================
# Error Handler
# ============================================================================


class StripeErrorHandler:
    """Classifies errors and retries operations."""

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize handler.

        Args:
            retry_config: Default retry policy.
            sleep: Coroutine used to wait between attempts (seconds).
        """
        self.retry_config = retry_config or RetryConfig.from_settings()
        self._sleep = sleep or asyncio.sleep

    def handle_stripe_api_error(self, error: StripeGatewayError, context: str) -> StripeErrorInfo:
        """Classify an error returned by the Stripe gateway."""
        logger.error(
            "Stripe API error",
            context=context,
            error_type=error.error_type.value,
            error=error.message,
        )

        match error.error_type:
            case StripeErrorType.CONNECTION:
                return StripeErrorInfo(
                    user_message="Unable to connect to payment service. Please check your internet connection and try again.",
                    admin_message=f"Stripe connection error: {error.message}",
                    is_retryable=True,
                    retry_delay_ms=2000,
                    error_code="STRIPE_CONNECTION_ERROR",
                    category=ErrorCategory.NETWORK,
                    severity=ErrorSeverity.MEDIUM,
                )
            case StripeErrorType.API:
                return StripeErrorInfo(
                    user_message="Payment service is temporarily unavailable. Please try again in a few moments.",
                    admin_message=f"Stripe API error: {error.message}",
                    is_retryable=True,
                    retry_delay_ms=3000,
                    error_code="STRIPE_API_ERROR",
                    category=ErrorCategory.STRIPE,
                    severity=ErrorSeverity.MEDIUM,
                )
            case StripeErrorType.INVALID_REQUEST | StripeErrorType.IDEMPOTENCY:
                return self._handle_invalid_request(error)
            case StripeErrorType.AUTHENTICATION:
                return StripeErrorInfo(
                    user_message="Payment configuration error. Please contact support.",
                    admin_message=f"Stripe authentication error: {error.message}",
                    is_retryable=False,
                    error_code="STRIPE_AUTH_ERROR",
                    category=ErrorCategory.SYSTEM,
                    severity=ErrorSeverity.CRITICAL,
                )
            case StripeErrorType.PERMISSION:
                return StripeErrorInfo(
                    user_message="Payment processing is temporarily unavailable. Please contact support.",
                    admin_message=f"Stripe permission error: {error.message}",
                    is_retryable=False,
                    error_code="STRIPE_PERMISSION_ERROR",
                    category=ErrorCategory.SYSTEM,
                    severity=ErrorSeverity.HIGH,
                )
            case StripeErrorType.RATE_LIMIT:
                return StripeErrorInfo(
                    user_message="Too many payment requests. Please wait a moment and try again.",
                    admin_message=f"Stripe rate limit exceeded: {error.message}",
                    is_retryable=True,
                    retry_delay_ms=5000,
                    error_code="STRIPE_RATE_LIMIT",
                    category=ErrorCategory.STRIPE,
                    severity=ErrorSeverity.MEDIUM,
                )
            case StripeErrorType.CARD:
                return self.handle_card_error(error.message, error.decline_code or error.code)
        return self._handle_generic(error, context)

    def handle_card_error(self, message: str, decline_code: str | None = None) -> StripeErrorInfo:
        """Classify a declined card, as reported by Stripe or a webhook."""
        return StripeErrorInfo(
            user_message="Your payment was declined. Please use a different payment method.",
            admin_message=f"Card declined ({decline_code or 'unknown'}): {message}",
            is_retryable=False,
            error_code="CARD_DECLINED",
            category=ErrorCategory.USER,
            severity=ErrorSeverity.LOW,
        )

    def _handle_invalid_request(self, error: StripeGatewayError) -> StripeErrorInfo:
        message = error.message.lower()

        if ("payment_intent" in message and "not found" in message) or error.code == "resource_missing":
            return StripeErrorInfo(
                user_message="Payment session has expired. Please start the payment process again.",
                admin_message=f"PaymentIntent not found: {error.message}",
                is_retryable=False,
                error_code="PAYMENT_INTENT_NOT_FOUND",
                category=ErrorCategory.VALIDATION,
                severity=ErrorSeverity.LOW,
            )
        if "already succeeded" in message:
            return StripeErrorInfo(
                user_message="This payment has already been completed successfully.",
                admin_message=f"PaymentIntent already succeeded: {error.message}",
                is_retryable=False,
                error_code="PAYMENT_ALREADY_SUCCEEDED",
                category=ErrorCategory.VALIDATION,
                severity=ErrorSeverity.LOW,
            )
        if "canceled" in message:
            return StripeErrorInfo(
                user_message="This payment was canceled. Please start a new payment.",
                admin_message=f"PaymentIntent canceled: {error.message}",
                is_retryable=False,
                error_code="PAYMENT_CANCELED",
                category=ErrorCategory.USER,
                severity=ErrorSeverity.LOW,
            )
        if "amount" in message:
            return StripeErrorInfo(
                user_message="Payment amount is invalid. Please contact support.",
                admin_message=f"Invalid amount: {error.message}",
                is_retryable=False,
                error_code="INVALID_AMOUNT",
                category=ErrorCategory.VALIDATION,
                severity=ErrorSeverity.MEDIUM,
            )
        return StripeErrorInfo(
            user_message="Payment information is invalid. Please check your details and try again.",
            admin_message=f"Stripe invalid request: {error.message}",
            is_retryable=False,
            error_code="STRIPE_INVALID_REQUEST",
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.MEDIUM,
        )

    def handle_unsettled_status(self, payment_intent_id: str, status: str) -> StripeErrorInfo:
        """Classify a PaymentIntent whose Stripe status is not ``succeeded``.

        In-flight statuses are retryable so a later webhook can still settle;
        canceled and missing payment methods are the shopper's to fix.
        """
        admin_message = f"PaymentIntent {payment_intent_id} has status {status}"
        user_message = status_settlement_message(status)

        if status in _IN_FLIGHT_STATUSES:
            return StripeErrorInfo(
                user_message=user_message,
                admin_message=admin_message,
                is_retryable=True,
                retry_delay_ms=2000,
                error_code="PAYMENT_NOT_COMPLETED",
                category=ErrorCategory.STRIPE,
                severity=ErrorSeverity.LOW,
            )
        if status in (PaymentIntentStatus.CANCELED.value, PaymentIntentStatus.REQUIRES_PAYMENT_METHOD.value):
            return StripeErrorInfo(
                user_message=user_message,
                admin_message=admin_message,
                is_retryable=False,
                error_code="PAYMENT_CANCELED" if status == "canceled" else "PAYMENT_METHOD_REQUIRED",
                category=ErrorCategory.USER,
                severity=ErrorSeverity.LOW,
            )
        return StripeErrorInfo(
            user_message=user_message,
            admin_message=admin_message,
            is_retryable=False,
            error_code="PAYMENT_STATUS_INVALID",
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.MEDIUM,
        )

    def handle_validation_failure(
        self, error_code: str, user_message: str, admin_message: str
    ) -> StripeErrorInfo:
        """A PaymentIntent that does not match the pending payment record."""
        return StripeErrorInfo(
            user_message=user_message,
            admin_message=admin_message,
            is_retryable=False,
            error_code=error_code,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.HIGH,
        )

    def handle_settlement_error(self, error: Exception, context: str) -> StripeErrorInfo:
        """Classify a settlement failure by its message."""
        logger.error("Settlement error", context=context, error=str(error))
        message = str(error).lower()

        if "order not found" in message:
            return StripeErrorInfo(
                user_message="Order not found. Please contact support with your order details.",
                admin_message=f"Order not found during settlement: {error}",
                is_retryable=False,
                error_code="ORDER_NOT_FOUND",
                category=ErrorCategory.VALIDATION,
                severity=ErrorSeverity.MEDIUM,
            )
        if "already settled" in message:
            return StripeErrorInfo(
                user_message="This payment has already been processed successfully.",
                admin_message=f"Payment already settled: {error}",
                is_retryable=False,
                error_code="PAYMENT_ALREADY_SETTLED",
                category=ErrorCategory.VALIDATION,
                severity=ErrorSeverity.LOW,
            )
        if "payment failed" in message:
            return StripeErrorInfo(
                user_message="Payment processing failed. Please try again or use a different payment method.",
                admin_message=f"Payment settlement failed: {error}",
                is_retryable=True,
                retry_delay_ms=2000,
                error_code="SETTLEMENT_FAILED",
                category=ErrorCategory.STRIPE,
                severity=ErrorSeverity.MEDIUM,
            )
        if "database" in message or "transaction" in message:
            return StripeErrorInfo(
                user_message="A temporary system error occurred. Please try again.",
                admin_message=f"Database error during settlement: {error}",
                is_retryable=True,
                retry_delay_ms=1000,
                error_code="DATABASE_ERROR",
                category=ErrorCategory.SYSTEM,
                severity=ErrorSeverity.MEDIUM,
            )
        return self._handle_generic(error, context)

    def _handle_generic(self, error: Exception, context: str) -> StripeErrorInfo:
        message = str(error) or "Unknown error"
        return StripeErrorInfo(
            user_message="An unexpected error occurred. Please try again or contact support.",
            admin_message=f"{context}: {message}",
            is_retryable=True,
            retry_delay_ms=1000,
            error_code="GENERIC_ERROR",
            category=ErrorCategory.SYSTEM,
            severity=ErrorSeverity.MEDIUM,
        )

    def categorize_error(self, error: Exception, context: str) -> StripeErrorInfo:
        """Classify any exception raised while talking to Stripe or settling.

        Gateway errors are classified by Stripe error type; anything raised
        in a settlement context by its message; the rest is generic.
        """
        if isinstance(error, StripeGatewayError):
            return self.handle_stripe_api_error(error, context)
        if "settle" in context.lower():
            return self.handle_settlement_error(error, context)
        return self._handle_generic(error, context)

    def get_user_message(self, error: Exception, context: str) -> str:
        return self.categorize_error(error, context).user_message

    def is_retryable(self, error: Exception, context: str) -> bool:
        return self.categorize_error(error, context).is_retryable

    def get_retry_delay(self, error: Exception, context: str) -> int:
        info = self.categorize_error(error, context)
        return info.retry_delay_ms or self.retry_config.base_delay_ms

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: str,
        config: RetryConfig | None = None,
    ) -> RetryResult[T]:
        """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

        Args:
            operation: Zero-argument coroutine factory.
            context: Label used for logging and classification.
            config: Retry policy overriding the handler default.

        Returns:
            RetryResult with the value or the last classified error.
        """
        retry = config or self.retry_config
        errors: list[StripeErrorInfo] = []

        for attempt in range(1, retry.max_retries + 1):
            try:
                result = await operation()
                if attempt > 1:
                    logger.info("Operation succeeded after retry", context=context, attempt=attempt)
                return RetryResult(success=True, attempts=attempt, result=result, errors=errors)
            except Exception as e:
                info = self.categorize_error(e, context)
                errors.append(info)
                logger.warning(
                    "Attempt failed",
                    context=context,
                    attempt=attempt,
                    max_retries=retry.max_retries,
                    error_code=info.error_code,
                    error=info.admin_message,
                )
                if not info.is_retryable or attempt == retry.max_retries:
                    logger.error("Operation failed", context=context, attempts=attempt)
                    return RetryResult(
                        success=False, attempts=attempt, error=info, errors=errors
                    )
                await self._sleep(retry.delay_for(attempt) / 1000)

        # Only reachable with max_retries < 1
        return RetryResult(
            success=False,
            attempts=0,
            error=self._handle_generic(Exception("Unknown error"), context),
            errors=errors,
        )


# Global handler instance
_error_handler: StripeErrorHandler | None = None


def get_error_handler() -> StripeErrorHandler:
    """Get the error handler singleton."""
    global _error_handler
    if _error_handler is None:
        _error_handler = StripeErrorHandler()
    return _error_handler
