"""API schemas for the settlement service.

Pydantic models for request/response validation and serialization.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from settlement.domain.entities import CartOrderMapping, Order, PendingPayment
from settlement.domain.state_machines import OrderState, PaymentStatus


# ============================================================================
# Common Schemas
# ============================================================================


class ErrorDetail(BaseModel):
    """Detailed error information."""

    field: str | None = Field(default=None, description="Field that caused the error")
    message: str = Field(..., description="Error message")


class ErrorResponse(BaseModel):
    """Standard error response.

    All API errors follow this format for consistency.
    """

    error_code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: list[ErrorDetail] = Field(
        default_factory=list, description="Additional error details"
    )
    request_id: str | None = Field(
        default=None, description="Request ID for correlation"
    )


# ============================================================================
# Pre-order Schemas
# ============================================================================


class CartLineSchema(BaseModel):
    """A cart line used for the pre-order estimate."""

    product_variant_id: str = Field(..., min_length=1, description="Catalog variant identifier")
    quantity: int = Field(..., ge=0, description="Number of units")
    unit_price: int = Field(..., ge=0, description="Unit price in minor units")


class EstimateRequest(BaseModel):
    """Request to estimate an order total from cart lines."""

    items: list[CartLineSchema] = Field(..., description="Cart lines")


class EstimateResponse(BaseModel):
    """Estimated total with headroom for tax and shipping."""

    estimated_total: int = Field(..., description="Estimated total in minor units")
    item_count: int = Field(..., description="Number of cart lines")


class PaymentIntentCreateRequest(BaseModel):
    """Request to create a pre-order PaymentIntent."""

    estimated_total: int = Field(..., description="Estimated amount in minor units")
    currency: str = Field(default="usd", min_length=3, max_length=3, description="Currency code")


class PaymentIntentCreateResponse(BaseModel):
    """Client secret for the storefront payment form."""

    client_secret: str = Field(..., description="PaymentIntent client secret")
    payment_intent_id: str = Field(..., description="PaymentIntent id")


class PaymentIntentLinkRequest(BaseModel):
    """Request to tie a pre-order PaymentIntent to a placed order."""

    order_id: str = Field(..., min_length=1, description="Order identifier")
    order_code: str = Field(..., min_length=1, description="Order code")
    final_total: int = Field(..., ge=0, description="Final order total in minor units")
    customer_email: str | None = Field(default=None, description="Customer e-mail")


# ============================================================================
# Pending Payment Schemas
# ============================================================================


class PendingPaymentResponse(BaseModel):
    """A PaymentIntent awaiting (or past) settlement."""

    id: str
    payment_intent_id: str
    order_id: str
    order_code: str
    amount: int
    currency: str
    customer_email: str | None = None
    status: PaymentStatus
    created_at: datetime
    settled_at: datetime | None = None
    failed_at: datetime | None = None
    failure_reason: str | None = None
    failure_type: str | None = None
    is_retryable: bool = False
    retry_count: int = 0
    manual_settlement: bool = False
    settled_by: str | None = None
    canceled_by: str | None = None

    @classmethod
    def from_entity(cls, payment: PendingPayment) -> "PendingPaymentResponse":
        return cls(
            id=payment.id,
            payment_intent_id=payment.payment_intent_id,
            order_id=payment.order_id,
            order_code=payment.order_code,
            amount=payment.amount,
            currency=payment.currency,
            customer_email=payment.customer_email,
            status=payment.status,
            created_at=payment.created_at,
            settled_at=payment.settled_at,
            failed_at=payment.failed_at,
            failure_reason=payment.failure_reason,
            failure_type=payment.failure_type.value if payment.failure_type else None,
            is_retryable=payment.is_retryable,
            retry_count=payment.retry_count,
            manual_settlement=payment.manual_settlement,
            settled_by=payment.settled_by,
            canceled_by=payment.canceled_by,
        )


class SettlementResponse(BaseModel):
    """Outcome of a settlement request."""

    success: bool
    payment_id: str | None = None
    transaction_id: str | None = None
    error: str | None = None
    error_code: str | None = None


class SettlementStatusResponse(BaseModel):
    """Local settlement status of a PaymentIntent."""

    payment_intent_id: str
    status: str = Field(..., description="pending, settled, failed or not_found")
    is_settled: bool


class VerificationResponse(BaseModel):
    """Stripe-side status of a PaymentIntent."""

    is_valid: bool
    status: str | None = None
    error: str | None = None


class OwnershipResponse(BaseModel):
    """Whether a PaymentIntent belongs to an order."""

    is_valid: bool
    error: str | None = None


# ============================================================================
# Order Schemas
# ============================================================================


class OrderCreateRequest(BaseModel):
    """Request to record an order in the local order book."""

    code: str = Field(..., min_length=1, max_length=64, description="Unique order code")
    total: int = Field(..., ge=0, description="Order total in minor units")
    currency: str = Field(default="usd", min_length=3, max_length=3)
    customer_email: str | None = None
    state: OrderState = Field(default=OrderState.ADDING_ITEMS, description="Initial state")


class OrderPaymentSchema(BaseModel):
    """A payment attached to an order."""

    id: str
    method: str
    amount: int
    state: str
    transaction_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class OrderResponse(BaseModel):
    """Order with its payments and reachable states."""

    id: str
    code: str
    state: OrderState
    total: int
    currency: str
    customer_email: str | None = None
    payments: list[OrderPaymentSchema] = Field(default_factory=list)
    next_states: list[OrderState] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, order: Order) -> "OrderResponse":
        return cls(
            id=order.id,
            code=order.code,
            state=order.state,
            total=order.total,
            currency=order.currency,
            customer_email=order.customer_email,
            payments=[
                OrderPaymentSchema(
                    id=p.id,
                    method=p.method,
                    amount=p.amount,
                    state=p.state.value,
                    transaction_id=p.transaction_id,
                    metadata=p.metadata,
                    created_at=p.created_at,
                )
                for p in order.payments
            ],
            next_states=order.next_states(),
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


# ============================================================================
# Cart Mapping Schemas
# ============================================================================


class CartMappingCreateRequest(BaseModel):
    """Request to map a storefront cart to an order."""

    cart_uuid: str = Field(..., min_length=1, description="Storefront cart UUID")
    order_id: str = Field(..., min_length=1)
    order_code: str = Field(..., min_length=1)
    payment_intent_id: str | None = None


class CartMappingPaymentIntentRequest(BaseModel):
    """Request to record the PaymentIntent used for a cart."""

    payment_intent_id: str = Field(..., min_length=1)


class CartMappingResponse(BaseModel):
    """Cart-to-order mapping."""

    id: str
    cart_uuid: str
    order_id: str
    order_code: str
    payment_intent_id: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @classmethod
    def from_entity(cls, mapping: CartOrderMapping) -> "CartMappingResponse":
        return cls(
            id=mapping.id,
            cart_uuid=mapping.cart_uuid,
            order_id=mapping.order_id,
            order_code=mapping.order_code,
            payment_intent_id=mapping.payment_intent_id,
            created_at=mapping.created_at,
            updated_at=mapping.updated_at,
            completed_at=mapping.completed_at,
        )


# ============================================================================
# Admin Schemas
# ============================================================================


class ManualSettleRequest(BaseModel):
    """Request to settle a payment on an administrator's authority."""

    admin_id: str = Field(..., min_length=1, description="Administrator performing the action")
    bypass_validation: bool = Field(
        default=False, description="Skip the Stripe status and amount checks"
    )


class AdminActionRequest(BaseModel):
    """Request carrying the acting administrator."""

    admin_id: str = Field(..., min_length=1)


class CancelPaymentRequest(AdminActionRequest):
    """Request to cancel a payment."""

    reason: str = Field(..., min_length=1, max_length=500)


class AdminActionResponse(BaseModel):
    """Outcome of an administrative action."""

    success: bool
    payment_id: str | None = None
    order_code: str | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


class AdminPaymentResponse(PendingPaymentResponse):
    """Pending payment enriched with Stripe and order state."""

    stripe_status: str | None = None
    order_state: str | None = None
    can_manual_settle: bool = False
    can_retry: bool = False


class AdminPaymentsListResponse(BaseModel):
    """Page of payment records."""

    items: list[AdminPaymentResponse]
    total: int
    has_more: bool


# ============================================================================
# Monitoring Schemas
# ============================================================================


class MonitoringToggleRequest(BaseModel):
    """Request to enable or disable scheduled monitoring."""

    enabled: bool
