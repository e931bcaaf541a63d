"""Settlement of linked PaymentIntents.

Settling verifies a PaymentIntent with Stripe, checks it against the
pending payment record, attaches a settled payment to the order and
moves the order to PaymentSettled. Every step is counted in the
settlement metrics and written to the settlement audit trail.
"""

import asyncio
import time
import weakref
from dataclasses import dataclass
from typing import Any

import structlog

from settlement.application.cart_mapping_service import CartMappingService
from settlement.application.error_handling import (
    ErrorCategory,
    StripeErrorHandler,
    StripeErrorInfo,
    get_error_handler,
)
from settlement.application.metrics_service import (
    SettlementMetricsService,
    get_metrics_service,
)
from settlement.application.order_service import OrderService
from settlement.application.order_state_manager import OrderStateManager
from settlement.application.settlement_audit import (
    RequestContext,
    SettlementAuditLog,
    get_audit_log,
)
from settlement.domain.entities import PendingPayment
from settlement.domain.exceptions import DomainError, PaymentAlreadySettledError
from settlement.domain.state_machines import (
    OrderPaymentState,
    OrderState,
    PaymentIntentStatus,
    PaymentStatus,
)
from settlement.domain.value_objects import PaymentFailure
from settlement.infrastructure.repositories import (
    PendingPaymentRepository,
    get_payment_repository,
)
from settlement.infrastructure.stripe_gateway import (
    PaymentIntent,
    StripeGateway,
    get_stripe_gateway,
)

logger = structlog.get_logger()

ORDER_CODE_METADATA_KEY = "order_code"
AMOUNT_TOLERANCE = 1


# ============================================================================
# Service Result Types
# ============================================================================


@dataclass
class SettlementResult:
    """Result of a settlement attempt."""

    success: bool
    error: str | None = None
    error_code: str | None = None
    payment_id: str | None = None
    transaction_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "error_code": self.error_code,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
        }


@dataclass
class VerificationResult:
    """Stripe's view of a PaymentIntent."""

    is_valid: bool
    status: str | None = None
    error: str | None = None
    payment_intent: PaymentIntent | None = None


@dataclass
class OwnershipResult:
    is_valid: bool
    error: str | None = None


@dataclass
class PaymentIntentDetailsResult:
    success: bool
    payment_intent: PaymentIntent | None = None
    error: str | None = None


@dataclass
class _Verification:
    payment_intent: PaymentIntent | None = None
    error: StripeErrorInfo | None = None


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


# ============================================================================
# Per-PaymentIntent Locks
# ============================================================================


# Entries disappear once no coroutine holds or waits on the lock.
_settlement_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def settlement_lock(payment_intent_id: str) -> asyncio.Lock:
    """Lock serializing every settlement of one PaymentIntent.

    The storefront, the webhook and administrators may all try to settle
    the same PaymentIntent at once; holding this lock makes the second
    caller see the first caller's result.

    Args:
        payment_intent_id: Stripe PaymentIntent id.

    Returns:
        The lock shared by all callers for that PaymentIntent.
    """
    lock = _settlement_locks.get(payment_intent_id)
    if lock is None:
        lock = asyncio.Lock()
        _settlement_locks[payment_intent_id] = lock
    return lock


# ============================================================================
# Settlement Service
# ============================================================================


class SettlementService:
    """Settles pending payments once Stripe reports them as succeeded."""

    def __init__(
        self,
        payment_repo: PendingPaymentRepository | None = None,
        order_service: OrderService | None = None,
        cart_mapping_service: CartMappingService | None = None,
        order_state_manager: OrderStateManager | None = None,
        gateway: StripeGateway | None = None,
        error_handler: StripeErrorHandler | None = None,
        metrics: SettlementMetricsService | None = None,
        audit_log: SettlementAuditLog | None = None,
    ) -> None:
        self.payment_repo = payment_repo or get_payment_repository()
        self.order_service = order_service or OrderService()
        self.cart_mapping_service = cart_mapping_service or CartMappingService()
        self.order_state_manager = order_state_manager or OrderStateManager(
            payment_repo=self.payment_repo, order_service=self.order_service
        )
        self.gateway = gateway or get_stripe_gateway()
        self.error_handler = error_handler or get_error_handler()
        self.metrics = metrics or get_metrics_service()
        self.audit_log = audit_log or get_audit_log()

    async def settle_payment(
        self,
        payment_intent_id: str,
        context: RequestContext | None = None,
    ) -> SettlementResult:
        """Settle a linked PaymentIntent.

        Settling an already-settled payment succeeds without side effects,
        including when Stripe is unreachable or not configured. Concurrent
        calls for one PaymentIntent run one after another.

        Args:
            payment_intent_id: Stripe PaymentIntent id.
            context: Who triggered the settlement.

        Returns:
            SettlementResult; ``error`` carries a message safe to show
            to the shopper.
        """
        async with settlement_lock(payment_intent_id):
            return await self._settle_exclusively(payment_intent_id, context)

    async def _settle_exclusively(
        self,
        payment_intent_id: str,
        context: RequestContext | None,
    ) -> SettlementResult:
        started = time.perf_counter()
        # Read under the lock so a settlement that just finished is seen.
        payment = self.payment_repo.get(payment_intent_id)
        if payment is not None and payment.status == PaymentStatus.SETTLED:
            return self._already_settled(payment, started)

        if not self.gateway.is_configured:
            logger.error("Stripe not configured for settlement", payment_intent_id=payment_intent_id)
            return SettlementResult(
                success=False,
                error="Payment processing service not available",
                error_code="SERVICE_UNAVAILABLE",
            )

        logger.info("Starting settlement", payment_intent_id=payment_intent_id)

        if payment is None:
            return self._rejected(payment_intent_id, "Payment not found", "PAYMENT_NOT_FOUND", context)
        if payment.status == PaymentStatus.FAILED:
            return self._rejected(
                payment_intent_id,
                "Payment has failed and cannot be settled",
                "PAYMENT_FAILED",
                context,
            )

        order_code = payment.order_code
        attempt_id = self.metrics.record_settlement_attempt(payment_intent_id, order_code)
        self.audit_log.log_settlement_attempt_start(
            payment_intent_id, order_code, payment.amount, payment.currency, context
        )
        self.audit_log.log_database_transaction(payment_intent_id, order_code, "start")
        self.audit_log.log_idempotency_check(
            payment_intent_id, order_code, False, payment.status.value
        )

        try:
            return await self._settle(payment, attempt_id, started, context)
        except Exception as e:
            logger.exception("Unexpected settlement error", payment_intent_id=payment_intent_id)
            message = str(e) or e.__class__.__name__
            duration = _elapsed_ms(started)
            self.metrics.record_settlement_failure(
                attempt_id, payment_intent_id, order_code, message, duration, "unknown"
            )
            self.audit_log.log_settlement_failure(
                payment_intent_id, order_code, message, "unknown", duration, context
            )
            self.audit_log.log_database_transaction(
                payment_intent_id, order_code, "rollback", "unexpected error"
            )
            self._mark_failed_quietly(payment_intent_id, e)
            return SettlementResult(
                success=False,
                error="Payment settlement failed. Please try again.",
                error_code="SETTLEMENT_ERROR",
            )

    async def _settle(
        self,
        payment: PendingPayment,
        attempt_id: str,
        started: float,
        context: RequestContext | None,
    ) -> SettlementResult:
        payment_intent_id = payment.payment_intent_id
        order_code = payment.order_code

        verification = await self._verify_with_stripe(payment, context)
        intent = verification.payment_intent
        if verification.error is not None or intent is None:
            info = verification.error or self.error_handler.categorize_error(
                Exception("Unknown API error"), "stripe verification"
            )
            await self.order_state_manager.handle_payment_failure(
                payment_intent_id,
                PaymentFailure(
                    reason=info.admin_message,
                    failure_type=info.failure_type,
                    is_retryable=info.is_retryable,
                ),
            )
            duration = _elapsed_ms(started)
            self.metrics.record_settlement_failure(
                attempt_id, payment_intent_id, order_code, info.admin_message, duration, "api"
            )
            self.audit_log.log_settlement_failure(
                payment_intent_id, order_code, info.admin_message, info.category.value, duration, context
            )
            self.audit_log.log_database_transaction(
                payment_intent_id, order_code, "rollback", "stripe verification failed"
            )
            return SettlementResult(
                success=False, error=info.user_message, error_code=info.error_code
            )

        # An administrator may have settled the record while Stripe was queried.
        current = self.payment_repo.get(payment_intent_id)
        if current is not None and current.status == PaymentStatus.SETTLED:
            return self._already_settled(current, started, attempt_id)

        order = self.order_service.get_by_code(order_code)
        if order is None:
            logger.error("Order not found for settlement", order_code=order_code)
            duration = _elapsed_ms(started)
            self.metrics.record_settlement_failure(
                attempt_id, payment_intent_id, order_code, "Order not found", duration, "database"
            )
            self.audit_log.log_settlement_failure(
                payment_intent_id, order_code, "Order not found", "database", duration, context
            )
            return SettlementResult(success=False, error="Order not found", error_code="ORDER_NOT_FOUND")

        added = await self.order_service.add_payment(
            order,
            method="stripe",
            amount=intent.amount,
            state=OrderPaymentState.SETTLED,
            transaction_id=payment_intent_id,
            metadata={
                "payment_intent_id": payment_intent_id,
                "stripe_payment_status": intent.status,
                "stripe_amount": intent.amount,
                "stripe_currency": intent.currency,
            },
        )
        if not added.success:
            logger.error(
                "Adding settled payment to order failed",
                order_code=order_code,
                error=added.error,
            )
            error_message = "Payment settlement failed. Please contact support."
            duration = _elapsed_ms(started)
            self.metrics.record_settlement_failure(
                attempt_id, payment_intent_id, order_code, error_message, duration, "database"
            )
            self.audit_log.log_settlement_failure(
                payment_intent_id, order_code, added.error or error_message, "database", duration, context
            )
            self.audit_log.log_database_transaction(
                payment_intent_id, order_code, "rollback", "payment settlement failed"
            )
            self.audit_log.log_payment_intent_lifecycle(payment_intent_id, "failed", order_code)
            self._mark_failed_quietly(payment_intent_id, DomainError(added.error or error_message))
            return SettlementResult(
                success=False, error=error_message, error_code=added.error_code
            )

        try:
            payment.settle(settled_by=context.user_id if context else None)
        except PaymentAlreadySettledError:
            return self._already_settled(payment, started, attempt_id)
        self._save(payment)

        transition = await self.order_service.transition_to_state(order, OrderState.PAYMENT_SETTLED)
        if not transition.success:
            logger.warning(
                "Order not moved to PaymentSettled",
                order_code=order_code,
                order_state=order.state.value,
                error=transition.error,
            )

        mapping = self.cart_mapping_service.find_by_order_code(order_code)
        if mapping is not None:
            self.cart_mapping_service.mark_completed(mapping.cart_uuid)

        payment_id = added.payment.id if added.payment else None
        duration = _elapsed_ms(started)
        self.metrics.record_settlement_success(
            attempt_id, payment_intent_id, order_code, duration, payment_id
        )
        self.audit_log.log_settlement_success(
            payment_intent_id, order_code, payment_id, duration, intent.status, context
        )
        self.audit_log.log_database_transaction(
            payment_intent_id, order_code, "commit", "settlement successful"
        )
        self.audit_log.log_payment_intent_lifecycle(payment_intent_id, "settled", order_code)
        logger.info("Payment settled", payment_intent_id=payment_intent_id, order_code=order_code)
        return SettlementResult(success=True, payment_id=payment_id, transaction_id=payment_intent_id)

    async def _verify_with_stripe(
        self, payment: PendingPayment, context: RequestContext | None
    ) -> _Verification:
        """Retrieve the PaymentIntent and check it against the record."""
        payment_intent_id = payment.payment_intent_id
        order_code = payment.order_code
        started = time.perf_counter()

        self.metrics.record_api_verification_attempt(payment_intent_id)
        self.audit_log.log_api_verification_attempt(payment_intent_id, order_code)

        result = await self.error_handler.with_retry(
            lambda: self.gateway.retrieve_payment_intent(payment_intent_id),
            context=f"Stripe PaymentIntent retrieval for {payment_intent_id}",
        )
        if not result.success or result.result is None:
            info = result.error or self.error_handler.categorize_error(
                Exception("Unknown API error"), "stripe verification"
            )
            duration = _elapsed_ms(started)
            self.metrics.record_api_verification_failure(payment_intent_id, info.admin_message, duration)
            self.audit_log.log_api_verification_failure(
                payment_intent_id,
                order_code,
                info.admin_message,
                info.category.value,
                duration,
                retry_attempt=result.attempts or 1,
            )
            return _Verification(error=info)

        intent = result.result
        duration = _elapsed_ms(started)

        if intent.status != PaymentIntentStatus.SUCCEEDED.value:
            info = self.error_handler.handle_unsettled_status(payment_intent_id, intent.status)
            self.metrics.record_api_verification_failure(payment_intent_id, info.admin_message, duration)
            self.audit_log.log_validation_failure(
                payment_intent_id, order_code, "status", "succeeded", intent.status, context
            )
            return _Verification(payment_intent=intent, error=info)

        linked_code = intent.metadata.get(ORDER_CODE_METADATA_KEY)
        if not linked_code or linked_code != order_code:
            if not linked_code:
                info = self.error_handler.handle_validation_failure(
                    "PAYMENT_NOT_LINKED",
                    "Payment is not properly linked to an order. Please contact support.",
                    f"PaymentIntent {payment_intent_id} missing order code in metadata",
                )
            else:
                info = self.error_handler.handle_validation_failure(
                    "ORDER_MISMATCH",
                    "Payment does not belong to the expected order. Please contact support.",
                    f"PaymentIntent {payment_intent_id} belongs to order {linked_code}, expected {order_code}",
                )
            self.metrics.record_api_verification_failure(payment_intent_id, info.admin_message, duration)
            self.audit_log.log_validation_failure(
                payment_intent_id, order_code, "order", order_code, linked_code or "missing", context
            )
            return _Verification(payment_intent=intent, error=info)

        if payment.expected.differs_from(intent.amount, AMOUNT_TOLERANCE):
            info = self.error_handler.handle_validation_failure(
                "AMOUNT_MISMATCH",
                f"Payment amount ({intent.amount / 100}) does not match order total "
                f"({payment.amount / 100}). Please contact support.",
                f"PaymentIntent {payment_intent_id} amount {intent.amount} != expected {payment.amount}",
            )
            self.metrics.record_api_verification_failure(payment_intent_id, info.admin_message, duration)
            self.audit_log.log_validation_failure(
                payment_intent_id, order_code, "amount", payment.amount, intent.amount, context
            )
            return _Verification(payment_intent=intent, error=info)

        if intent.currency.lower() != payment.currency.lower():
            info = self.error_handler.handle_validation_failure(
                "CURRENCY_MISMATCH",
                "Payment currency does not match the order. Please contact support.",
                f"PaymentIntent {payment_intent_id} currency {intent.currency} != expected {payment.currency}",
            )
            self.metrics.record_api_verification_failure(payment_intent_id, info.admin_message, duration)
            self.audit_log.log_validation_failure(
                payment_intent_id, order_code, "currency", payment.currency, intent.currency, context
            )
            return _Verification(payment_intent=intent, error=info)

        self.metrics.record_api_verification_success(payment_intent_id, intent.status, duration)
        self.audit_log.log_api_verification_success(
            payment_intent_id, order_code, intent.status, intent.amount, intent.currency, duration
        )
        return _Verification(payment_intent=intent)

    def _already_settled(
        self,
        payment: PendingPayment,
        started: float,
        attempt_id: str | None = None,
    ) -> SettlementResult:
        """Report an earlier settlement as this call's success."""
        payment_intent_id = payment.payment_intent_id
        order_code = payment.order_code
        if attempt_id is None:
            attempt_id = self.metrics.record_settlement_attempt(payment_intent_id, order_code)
        self.audit_log.log_idempotency_check(
            payment_intent_id, order_code, True, payment.status.value
        )
        logger.info("Payment already settled", payment_intent_id=payment_intent_id)
        self.metrics.record_settlement_success(
            attempt_id, payment_intent_id, order_code, _elapsed_ms(started), "existing"
        )
        return SettlementResult(success=True, transaction_id=payment_intent_id)

    def _rejected(
        self,
        payment_intent_id: str,
        error: str,
        error_code: str,
        context: RequestContext | None,
    ) -> SettlementResult:
        logger.error("Payment not settleable", payment_intent_id=payment_intent_id, error=error)
        self.audit_log.log_validation_failure(
            payment_intent_id, "unknown", "status", "valid payment", error, context
        )
        return SettlementResult(success=False, error=error, error_code=error_code)

    def _mark_failed_quietly(self, payment_intent_id: str, error: Exception) -> None:
        """Record an unexpected failure; a settled record is left untouched."""
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None or payment.status == PaymentStatus.SETTLED:
            return
        info = self.error_handler.categorize_error(error, "settlement")
        try:
            payment.fail(
                PaymentFailure(
                    reason=info.admin_message,
                    failure_type=info.failure_type,
                    is_retryable=info.is_retryable,
                )
            )
        except DomainError as e:
            logger.error("Failed to mark payment failed", payment_intent_id=payment_intent_id, error=e.message)
            return
        self._save(payment)

    def _save(self, payment: PendingPayment) -> None:
        for event in payment.collect_events():
            logger.info("Payment event", **event.to_dict())
        self.payment_repo.save(payment)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def is_payment_settled(self, payment_intent_id: str) -> bool:
        payment = self.payment_repo.get(payment_intent_id)
        return payment is not None and payment.status == PaymentStatus.SETTLED

    def get_settlement_status(self, payment_intent_id: str) -> str:
        """Return ``pending``, ``settled``, ``failed`` or ``not_found``."""
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return "not_found"
        return payment.status.value

    async def verify_payment_intent_status(self, payment_intent_id: str) -> VerificationResult:
        """Read a PaymentIntent's status from Stripe without settling it."""
        if not self.gateway.is_configured:
            return VerificationResult(
                is_valid=False, error="Payment verification service not available"
            )

        result = await self.error_handler.with_retry(
            lambda: self.gateway.retrieve_payment_intent(payment_intent_id),
            context=f"Stripe PaymentIntent status check for {payment_intent_id}",
        )
        if not result.success or result.result is None:
            category = result.error.category if result.error else None
            if category == ErrorCategory.NETWORK:
                error = "Network error while checking payment status. Please check your connection and try again."
            elif category == ErrorCategory.STRIPE:
                error = "Payment verification service is temporarily unavailable. Please try again in a few moments."
            else:
                error = "Failed to verify payment status. Please try again."
            logger.error(
                "PaymentIntent status check failed",
                payment_intent_id=payment_intent_id,
                attempts=result.attempts,
            )
            return VerificationResult(is_valid=False, error=error)

        intent = result.result
        return VerificationResult(is_valid=True, status=intent.status, payment_intent=intent)

    async def validate_payment_intent_ownership(
        self, payment_intent_id: str, order_code: str
    ) -> OwnershipResult:
        """Check that a PaymentIntent's metadata names ``order_code``."""
        status = await self.verify_payment_intent_status(payment_intent_id)
        if not status.is_valid or status.payment_intent is None:
            return OwnershipResult(is_valid=False, error=status.error or "Failed to verify payment")

        linked_code = status.payment_intent.metadata.get(ORDER_CODE_METADATA_KEY)
        if not linked_code:
            return OwnershipResult(is_valid=False, error="Payment is not linked to any order")
        if linked_code != order_code:
            self.audit_log.log_validation_failure(
                payment_intent_id, order_code, "ownership", order_code, linked_code
            )
            return OwnershipResult(
                is_valid=False, error="Payment does not belong to the specified order"
            )
        return OwnershipResult(is_valid=True)

    async def get_payment_intent_details(self, payment_intent_id: str) -> PaymentIntentDetailsResult:
        if not self.gateway.is_configured:
            return PaymentIntentDetailsResult(success=False, error="Stripe client not initialized")

        result = await self.error_handler.with_retry(
            lambda: self.gateway.retrieve_payment_intent(payment_intent_id),
            context=f"Stripe PaymentIntent details retrieval for {payment_intent_id}",
        )
        if not result.success:
            return PaymentIntentDetailsResult(
                success=False,
                error=result.error.admin_message if result.error else "Failed to retrieve payment details",
            )
        return PaymentIntentDetailsResult(success=True, payment_intent=result.result)


# ============================================================================
# Service Factory
# ============================================================================


def get_settlement_service() -> SettlementService:
    """Get settlement service instance."""
    return SettlementService()
