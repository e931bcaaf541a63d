"""Pre-order PaymentIntent flow.

The storefront creates a PaymentIntent for an estimated total before any
order exists, so the payment form renders immediately. Once the order
has been placed the PaymentIntent is resized to the final total, tagged
with the order and recorded as a pending payment awaiting settlement.
"""

from dataclasses import dataclass
from decimal import Decimal

import structlog

from settlement.application.cart_mapping_service import CartMappingService
from settlement.application.order_service import OrderService
from settlement.application.settlement_audit import SettlementAuditLog, get_audit_log
from settlement.application.settlement_service import ORDER_CODE_METADATA_KEY
from settlement.domain.base import utc_now
from settlement.domain.entities import PendingPayment
from settlement.domain.exceptions import DomainError
from settlement.domain.state_machines import OrderPaymentState, OrderState, PaymentStatus
from settlement.domain.value_objects import CartLine, estimate_total
from settlement.infrastructure.config import settings
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

CREATE_FAILED_MESSAGE = "Failed to initialize payment. Please try again."
LINK_FAILED_MESSAGE = "Failed to finalize payment setup. Please try again."


# ============================================================================
# Service Result Types
# ============================================================================


@dataclass
class PreOrderIntentResult:
    """Result of creating a pre-order PaymentIntent."""

    success: bool = True
    client_secret: str | None = None
    payment_intent_id: str | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass
class LinkResult:
    """Result of linking a PaymentIntent to an order."""

    success: bool = True
    pending_payment: PendingPayment | None = None
    error: str | None = None
    error_code: str | None = None


# ============================================================================
# Pre-order Service
# ============================================================================


class PreOrderService:
    """Creates pre-order PaymentIntents and links them to placed orders."""

    def __init__(
        self,
        payment_repo: PendingPaymentRepository | None = None,
        order_service: OrderService | None = None,
        cart_mapping_service: CartMappingService | None = None,
        gateway: StripeGateway | None = None,
        audit_log: SettlementAuditLog | None = None,
        estimate_multiplier: Decimal | None = None,
    ) -> None:
        self.payment_repo = payment_repo or get_payment_repository()
        self.order_service = order_service or OrderService()
        self.cart_mapping_service = cart_mapping_service or CartMappingService()
        self.gateway = gateway or get_stripe_gateway()
        self.audit_log = audit_log or get_audit_log()
        self.estimate_multiplier = estimate_multiplier or Decimal(settings.estimate_multiplier)

    def calculate_estimated_total(self, cart_items: list[CartLine]) -> int:
        """Estimate the order total for a cart, in minor units.

        Raises:
            InvalidAmountError: If a line has a negative quantity or price.
        """
        total = estimate_total(cart_items, self.estimate_multiplier)
        logger.info("Calculated estimated total", estimated_total=total, items=len(cart_items))
        return total

    async def create_pre_order_payment_intent(
        self,
        estimated_total: int,
        currency: str = "usd",
        idempotency_key: str | None = None,
    ) -> PreOrderIntentResult:
        """Create a PaymentIntent for a cart that has no order yet.

        Args:
            estimated_total: Estimated amount in minor units.
            currency: Currency code.
            idempotency_key: Forwarded to Stripe so client retries reuse
                the same PaymentIntent.

        Returns:
            PreOrderIntentResult carrying the client secret.
        """
        if not self.gateway.is_configured:
            logger.error("Stripe not configured for pre-order payment")
            return PreOrderIntentResult(
                success=False,
                error="Stripe service not available",
                error_code="SERVICE_UNAVAILABLE",
            )
        if estimated_total < 0:
            return PreOrderIntentResult(
                success=False,
                error="Estimated total cannot be negative",
                error_code="INVALID_AMOUNT",
            )

        logger.info("Creating pre-order PaymentIntent", estimated_total=estimated_total, currency=currency)
        try:
            intent = await self.gateway.create_payment_intent(
                amount=estimated_total,
                currency=currency.lower(),
                metadata={
                    "source": "pre_order_validation",
                    "created_at": utc_now().isoformat(),
                    "estimated_total": str(estimated_total),
                },
                idempotency_key=idempotency_key,
            )
        except StripeGatewayError as e:
            logger.error("Failed to create pre-order PaymentIntent", error=e.message, error_type=e.error_type.value)
            return PreOrderIntentResult(success=False, error=CREATE_FAILED_MESSAGE, error_code="STRIPE_ERROR")

        self.audit_log.log_payment_intent_lifecycle(
            intent.id, "created", metadata={"estimated_total": estimated_total, "currency": intent.currency}
        )
        logger.info("Pre-order PaymentIntent created", payment_intent_id=intent.id)
        return PreOrderIntentResult(client_secret=intent.client_secret, payment_intent_id=intent.id)

    async def link_payment_intent_to_order(
        self,
        payment_intent_id: str,
        order_id: str,
        order_code: str,
        final_total: int,
        customer_email: str | None = None,
    ) -> LinkResult:
        """Resize a pre-order PaymentIntent to the final total and tie it to an order.

        Linking the same PaymentIntent again refreshes its pending record,
        unless that record has already been settled.

        Args:
            payment_intent_id: PaymentIntent created for the cart.
            order_id: Order identifier.
            order_code: Order code written to the PaymentIntent metadata.
            final_total: Final order total in minor units.
            customer_email: Customer e-mail; ``guest`` when absent.

        Returns:
            LinkResult with the pending payment record.
        """
        if not self.gateway.is_configured:
            logger.error("Stripe not configured for payment linking", payment_intent_id=payment_intent_id)
            return LinkResult(
                success=False,
                error="Stripe service not available",
                error_code="SERVICE_UNAVAILABLE",
            )

        logger.info(
            "Linking PaymentIntent to order",
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            final_total=final_total,
        )

        order = self.order_service.get_by_code(order_code)
        if order is None:
            logger.error("Order not found for payment link", order_code=order_code)
            return LinkResult(success=False, error=LINK_FAILED_MESSAGE, error_code="ORDER_NOT_FOUND")

        existing = self.payment_repo.get(payment_intent_id)
        if existing is not None and existing.status == PaymentStatus.SETTLED:
            logger.warning("PaymentIntent already settled", payment_intent_id=payment_intent_id)
            return LinkResult(success=False, error=LINK_FAILED_MESSAGE, error_code="PAYMENT_ALREADY_SETTLED")

        try:
            await self.gateway.update_payment_intent(
                payment_intent_id,
                amount=final_total,
                metadata={
                    ORDER_CODE_METADATA_KEY: order_code,
                    "order_id": order_id,
                    "customer_email": customer_email or "guest",
                    "source": "order_linked",
                    "final_total": str(final_total),
                    "linked_at": utc_now().isoformat(),
                },
            )
        except StripeGatewayError as e:
            logger.error(
                "Failed to update PaymentIntent",
                payment_intent_id=payment_intent_id,
                error=e.message,
                error_type=e.error_type.value,
            )
            return LinkResult(success=False, error=LINK_FAILED_MESSAGE, error_code="STRIPE_ERROR")

        if order.state != OrderState.ARRANGING_PAYMENT:
            transition = await self.order_service.transition_to_state(order, OrderState.ARRANGING_PAYMENT)
            if not transition.success:
                logger.error(
                    "Order could not move to ArrangingPayment",
                    order_code=order_code,
                    order_state=order.state.value,
                    error=transition.error,
                )
                return LinkResult(success=False, error=LINK_FAILED_MESSAGE, error_code="INVALID_TRANSITION")

        added = await self.order_service.add_payment(
            order,
            method="stripe",
            amount=final_total,
            state=OrderPaymentState.AUTHORIZED,
            transaction_id=payment_intent_id,
            metadata={
                "payment_intent_id": payment_intent_id,
                "payment_intent_amount_received": final_total,
            },
        )
        if not added.success:
            logger.error("Failed to add payment to order", order_code=order_code, error=added.error)
            return LinkResult(success=False, error=LINK_FAILED_MESSAGE, error_code=added.error_code)

        try:
            if existing is None:
                payment = PendingPayment.create(
                    payment_intent_id=payment_intent_id,
                    order_id=order_id,
                    order_code=order_code,
                    amount=final_total,
                    currency=order.currency,
                    customer_email=customer_email,
                )
            else:
                payment = existing
                payment.relink(
                    order_id=order_id,
                    order_code=order_code,
                    amount=final_total,
                    customer_email=customer_email,
                )
        except DomainError as e:
            logger.error("Pending payment not recorded", payment_intent_id=payment_intent_id, error=e.message)
            return LinkResult(success=False, error=LINK_FAILED_MESSAGE, error_code="PENDING_PAYMENT_INVALID")

        for event in payment.collect_events():
            logger.info("Payment event", **event.to_dict())
        self.payment_repo.save(payment)

        mapping = self.cart_mapping_service.find_by_order_code(order_code)
        if mapping is not None:
            self.cart_mapping_service.update_with_payment_intent(mapping.cart_uuid, payment_intent_id)

        self.audit_log.log_payment_intent_lifecycle(
            payment_intent_id,
            "linked",
            order_code=order_code,
            metadata={"final_total": final_total, "order_id": order_id},
        )
        logger.info("PaymentIntent linked to order", payment_intent_id=payment_intent_id, order_code=order_code)
        return LinkResult(pending_payment=payment)


# ============================================================================
# Service Factory
# ============================================================================


def get_preorder_service() -> PreOrderService:
    """Get pre-order service instance."""
    return PreOrderService()
