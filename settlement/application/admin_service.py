"""Administrative tools for pending Stripe payments.

Search and inspect pending payment records, settle them by hand, reset
failed ones for another attempt, cancel them, and summarise recent
payment activity.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog

from settlement.application.cart_mapping_service import CartMappingService
from settlement.application.order_service import OrderService
from settlement.application.order_state_manager import OrderStateManager
from settlement.application.settlement_audit import SettlementAuditLog, get_audit_log
from settlement.application.settlement_service import settlement_lock
from settlement.domain.base import utc_now
from settlement.domain.entities import PendingPayment
from settlement.domain.exceptions import DomainError
from settlement.domain.state_machines import (
    OrderPaymentState,
    OrderState,
    PaymentIntentStatus,
    PaymentStatus,
)
from settlement.infrastructure.repositories import (
    PendingPaymentRepository,
    get_payment_repository,
)
from settlement.infrastructure.stripe_gateway import (
    StripeGateway,
    StripeGatewayError,
    get_stripe_gateway,
)

logger = structlog.get_logger()

DEFAULT_SEARCH_LIMIT = 50
MAX_SEARCH_LIMIT = 100

_UNSETTLEABLE_STATUSES = {
    PaymentIntentStatus.CANCELED.value,
    PaymentIntentStatus.REQUIRES_PAYMENT_METHOD.value,
}
_MANUALLY_SETTLEABLE_STATUSES = {
    PaymentIntentStatus.SUCCEEDED.value,
    PaymentIntentStatus.REQUIRES_CAPTURE.value,
}


# ============================================================================
# Types
# ============================================================================


@dataclass
class PaymentSearchFilters:
    """Filters for listing pending payment records.

    Attributes:
        status: Exact record status.
        order_code: Substring of the order code.
        payment_intent_id: Substring of the PaymentIntent id.
        date_from: Earliest creation time (inclusive).
        date_to: Latest creation time (inclusive).
        is_retryable: Retryable flag.
        limit: Page size; capped at 100.
        offset: Records to skip.
    """

    status: PaymentStatus | None = None
    order_code: str | None = None
    payment_intent_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    is_retryable: bool | None = None
    limit: int = DEFAULT_SEARCH_LIMIT
    offset: int = 0

    def matches(self, payment: PendingPayment) -> bool:
        if self.status is not None and payment.status != self.status:
            return False
        if self.order_code and self.order_code not in payment.order_code:
            return False
        if self.payment_intent_id and self.payment_intent_id not in payment.payment_intent_id:
            return False
        if self.date_from and payment.created_at < self.date_from:
            return False
        if self.date_to and payment.created_at > self.date_to:
            return False
        if self.is_retryable is not None and payment.is_retryable != self.is_retryable:
            return False
        return True


@dataclass
class AdminPaymentInfo:
    """A pending payment record enriched for the admin listing."""

    payment: PendingPayment
    stripe_status: str | None = None
    order_state: str | None = None

    @property
    def can_manual_settle(self) -> bool:
        return (
            self.payment.status != PaymentStatus.SETTLED
            and self.stripe_status in _MANUALLY_SETTLEABLE_STATUSES
        )

    @property
    def can_retry(self) -> bool:
        return self.payment.can_retry

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.payment.to_dict(),
            "stripe_status": self.stripe_status,
            "order_state": self.order_state,
            "can_manual_settle": self.can_manual_settle,
            "can_retry": self.can_retry,
        }


@dataclass
class ManualSettlementResult:
    """Outcome of an administrative action on a payment."""

    success: bool
    payment_id: str | None = None
    order_code: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "payment_id": self.payment_id,
            "order_code": self.order_code,
            "error": self.error,
            "warnings": self.warnings,
        }


# ============================================================================
# Admin Tools Service
# ============================================================================


class AdminToolsService:
    """Manual resolution and reporting for pending payments."""

    def __init__(
        self,
        payment_repo: PendingPaymentRepository | None = None,
        order_service: OrderService | None = None,
        cart_mapping_service: CartMappingService | None = None,
        order_state_manager: OrderStateManager | None = None,
        gateway: StripeGateway | None = None,
        audit_log: SettlementAuditLog | None = None,
    ) -> None:
        self.payment_repo = payment_repo or get_payment_repository()
        self.order_service = order_service or OrderService()
        self.cart_mapping_service = cart_mapping_service or CartMappingService()
        self.order_state_manager = order_state_manager or OrderStateManager(
            payment_repo=self.payment_repo, order_service=self.order_service
        )
        self.gateway = gateway or get_stripe_gateway()
        self.audit_log = audit_log or get_audit_log()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def search_payments(self, filters: PaymentSearchFilters | None = None) -> dict[str, Any]:
        """List payment records, newest first.

        Returns:
            Dictionary with ``payments`` (enriched), ``total`` and ``has_more``.
        """
        filters = filters or PaymentSearchFilters()
        limit = min(filters.limit or DEFAULT_SEARCH_LIMIT, MAX_SEARCH_LIMIT)
        offset = max(filters.offset, 0)

        matching = [p for p in self.payment_repo.list_all() if filters.matches(p)]
        page = matching[offset : offset + limit]
        payments = [await self._enrich(p) for p in page]
        return {
            "payments": payments,
            "total": len(matching),
            "has_more": offset + limit < len(matching),
        }

    async def get_payment_details(self, payment_intent_id: str) -> AdminPaymentInfo | None:
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return None
        return await self._enrich(payment)

    async def _enrich(self, payment: PendingPayment) -> AdminPaymentInfo:
        stripe_status = None
        if self.gateway.is_configured:
            try:
                intent = await self.gateway.retrieve_payment_intent(payment.payment_intent_id)
                stripe_status = intent.status
            except StripeGatewayError as e:
                logger.debug(
                    "Stripe status unavailable for listing",
                    payment_intent_id=payment.payment_intent_id,
                    error=e.message,
                )
        order = self.order_service.get_by_code(payment.order_code)
        return AdminPaymentInfo(
            payment=payment,
            stripe_status=stripe_status,
            order_state=order.state.value if order else None,
        )

    def get_payment_statistics(self, days: int = 30) -> dict[str, Any]:
        """Counts and amounts for records created in the last ``days`` days."""
        cutoff = utc_now() - timedelta(days=days)
        payments = [p for p in self.payment_repo.list_all() if p.created_at >= cutoff]
        total_amount = sum(p.amount for p in payments)
        return {
            "days": days,
            "total_payments": len(payments),
            "successful_payments": sum(1 for p in payments if p.status == PaymentStatus.SETTLED),
            "failed_payments": sum(1 for p in payments if p.status == PaymentStatus.FAILED),
            "pending_payments": sum(1 for p in payments if p.status == PaymentStatus.PENDING),
            "retryable_failures": sum(
                1 for p in payments if p.status == PaymentStatus.FAILED and p.is_retryable
            ),
            "manual_settlements": sum(1 for p in payments if p.manual_settlement),
            "total_amount": total_amount,
            "average_amount": total_amount / len(payments) if payments else 0,
        }

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def manually_settle_payment(
        self,
        payment_intent_id: str,
        admin_id: str,
        bypass_validation: bool = False,
    ) -> ManualSettlementResult:
        """Settle a payment on an administrator's authority.

        Unless ``bypass_validation`` is set, the PaymentIntent is checked
        with Stripe first: canceled intents and intents without a payment
        method are refused, other problems are returned as warnings.
        """
        logger.warning(
            "Manual settlement initiated",
            payment_intent_id=payment_intent_id,
            admin_id=admin_id,
            bypass_validation=bypass_validation,
        )
        async with settlement_lock(payment_intent_id):
            return await self._manually_settle(payment_intent_id, admin_id, bypass_validation)

    async def _manually_settle(
        self,
        payment_intent_id: str,
        admin_id: str,
        bypass_validation: bool,
    ) -> ManualSettlementResult:
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return ManualSettlementResult(success=False, error="Payment record not found")
        if payment.status == PaymentStatus.SETTLED:
            return ManualSettlementResult(success=False, error="Payment is already settled")

        order = self.order_service.get_by_code(payment.order_code)
        if order is None:
            return ManualSettlementResult(success=False, error="Order not found")

        warnings: list[str] = []
        if not bypass_validation and self.gateway.is_configured:
            try:
                intent = await self.gateway.retrieve_payment_intent(payment_intent_id)
                if intent.status != PaymentIntentStatus.SUCCEEDED.value:
                    if intent.status in _UNSETTLEABLE_STATUSES:
                        return ManualSettlementResult(
                            success=False,
                            error=f"Cannot settle payment with Stripe status '{intent.status}'",
                        )
                    warnings.append(
                        f"Stripe PaymentIntent status is '{intent.status}', not 'succeeded'"
                    )
                if payment.expected.differs_from(intent.amount):
                    warnings.append(
                        f"Amount mismatch: Stripe has {intent.amount}, local record has {payment.amount}"
                    )
            except StripeGatewayError as e:
                warnings.append(f"Could not verify with Stripe: {e.message}")

        if order.state == OrderState.PAYMENT_DECLINED:
            await self.order_service.transition_to_state(order, OrderState.ARRANGING_PAYMENT)

        added = await self.order_service.add_payment(
            order,
            method="stripe",
            amount=payment.amount,
            state=OrderPaymentState.SETTLED,
            transaction_id=payment_intent_id,
            metadata={
                "payment_intent_id": payment_intent_id,
                "manual_settlement": True,
                "settled_by": admin_id,
                "settled_at": utc_now().isoformat(),
                "warnings": warnings or None,
            },
        )
        if not added.success:
            logger.error("Manual settlement failed", payment_intent_id=payment_intent_id, error=added.error)
            return ManualSettlementResult(
                success=False, error=f"Payment settlement failed: {added.error}", warnings=warnings
            )

        try:
            payment.settle(settled_by=admin_id, manual=True)
        except DomainError as e:
            return ManualSettlementResult(success=False, error=e.message, warnings=warnings)
        self._save(payment)

        await self.order_service.transition_to_state(order, OrderState.PAYMENT_SETTLED)
        mapping = self.cart_mapping_service.find_by_order_code(order.code)
        if mapping is not None:
            self.cart_mapping_service.mark_completed(mapping.cart_uuid)

        self.audit_log.log_payment_intent_lifecycle(
            payment_intent_id, "settled", order.code, metadata={"manual": True, "settled_by": admin_id}
        )
        payment_id = added.payment.id if added.payment else None
        logger.warning(
            "Manual settlement completed",
            payment_intent_id=payment_intent_id,
            order_code=order.code,
            payment_id=payment_id,
            admin_id=admin_id,
        )
        return ManualSettlementResult(
            success=True, payment_id=payment_id, order_code=order.code, warnings=warnings
        )

    async def retry_payment_settlement(
        self, payment_intent_id: str, admin_id: str
    ) -> ManualSettlementResult:
        """Reset a failed payment so the shopper can pay again."""
        logger.info("Admin retry settlement", payment_intent_id=payment_intent_id, admin_id=admin_id)
        reset = await self.order_state_manager.reset_order_for_retry(payment_intent_id)
        if not reset.success:
            return ManualSettlementResult(
                success=False, error=f"Failed to reset order for retry: {reset.error}"
            )
        payment = self.payment_repo.get(payment_intent_id)
        return ManualSettlementResult(
            success=True,
            order_code=payment.order_code if payment else None,
            warnings=["Payment has been reset for retry. Customer should attempt payment again."],
        )

    async def cancel_payment(
        self, payment_intent_id: str, admin_id: str, reason: str
    ) -> ManualSettlementResult:
        """Fail the record as a user error and cancel the PaymentIntent at Stripe.

        A Stripe cancellation failure is reported as a warning; the local
        record stays canceled.
        """
        logger.warning(
            "Admin canceling payment",
            payment_intent_id=payment_intent_id,
            admin_id=admin_id,
            reason=reason,
        )
        payment = self.payment_repo.get(payment_intent_id)
        if payment is None:
            return ManualSettlementResult(success=False, error="Payment record not found")
        try:
            payment.cancel(reason=reason, canceled_by=admin_id)
        except DomainError as e:
            return ManualSettlementResult(success=False, error=e.message)
        self._save(payment)

        warnings = ["Payment has been canceled"]
        if self.gateway.is_configured:
            try:
                await self.gateway.cancel_payment_intent(
                    payment_intent_id, cancellation_reason="requested_by_customer"
                )
            except StripeGatewayError as e:
                logger.warning(
                    "Could not cancel PaymentIntent with Stripe",
                    payment_intent_id=payment_intent_id,
                    error=e.message,
                )
                warnings.append(f"Could not cancel PaymentIntent with Stripe: {e.message}")

        self.audit_log.log_payment_intent_lifecycle(
            payment_intent_id, "failed", payment.order_code, metadata={"canceled_by": admin_id}
        )
        return ManualSettlementResult(success=True, order_code=payment.order_code, warnings=warnings)

    def _save(self, payment: PendingPayment) -> None:
        for event in payment.collect_events():
            logger.info("Payment event", **event.to_dict())
        self.payment_repo.save(payment)


def get_admin_service() -> AdminToolsService:
    """Get admin tools service instance."""
    return AdminToolsService()
