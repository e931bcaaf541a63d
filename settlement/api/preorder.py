"""Pre-order payment API endpoints.

Provides endpoints for the storefront checkout:
- POST /preorder/estimate - estimated total for a cart
- POST /preorder/payment-intents - PaymentIntent before the order exists
- POST /preorder/payment-intents/{id}/link - tie it to the placed order
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, status

from settlement.api.errors import api_error
from settlement.api.schemas import (
    ErrorResponse,
    EstimateRequest,
    EstimateResponse,
    PaymentIntentCreateRequest,
    PaymentIntentCreateResponse,
    PaymentIntentLinkRequest,
    PendingPaymentResponse,
)
from settlement.application.preorder_service import PreOrderService, get_preorder_service
from settlement.domain.value_objects import CartLine

router = APIRouter(prefix="/preorder", tags=["Pre-order"])


# ============================================================================
# Dependencies
# ============================================================================


def get_service() -> PreOrderService:
    """Get pre-order service."""
    return get_preorder_service()


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "/estimate",
    response_model=EstimateResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Estimate order total",
    description="Estimate a cart's total with headroom for tax and shipping.",
)
async def estimate_total(
    request: EstimateRequest,
    service: Annotated[PreOrderService, Depends(get_service)],
) -> EstimateResponse:
    lines = [
        CartLine(
            product_variant_id=item.product_variant_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
        )
        for item in request.items
    ]

    return EstimateResponse(
        estimated_total=service.calculate_estimated_total(lines),
        item_count=len(lines),
    )


@router.post(
    "/payment-intents",
    response_model=PaymentIntentCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Create pre-order PaymentIntent",
    description="Create a PaymentIntent for an estimated total before the order exists.",
)
async def create_payment_intent(
    request: PaymentIntentCreateRequest,
    service: Annotated[PreOrderService, Depends(get_service)],
    idempotency_key: Annotated[str | None, Header()] = None,
) -> PaymentIntentCreateResponse:
    """Create a pre-order PaymentIntent.

    An ``Idempotency-Key`` header is forwarded to Stripe, so a retried
    request returns the PaymentIntent created by the first one.

    Args:
        request: Estimated total and currency.
        service: Pre-order service.
        idempotency_key: Optional client idempotency key.

    Returns:
        Client secret and PaymentIntent id.

    Raises:
        HTTPException: If Stripe is unavailable or rejects the request.
    """
    result = await service.create_pre_order_payment_intent(
        estimated_total=request.estimated_total,
        currency=request.currency,
        idempotency_key=idempotency_key,
    )
    if not result.success or not result.client_secret or not result.payment_intent_id:
        raise api_error(result.error_code, result.error, default_code="STRIPE_ERROR")

    return PaymentIntentCreateResponse(
        client_secret=result.client_secret,
        payment_intent_id=result.payment_intent_id,
    )


@router.post(
    "/payment-intents/{payment_intent_id}/link",
    response_model=PendingPaymentResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Link PaymentIntent to order",
    description="Resize a pre-order PaymentIntent to the final total and link it to the order.",
)
async def link_payment_intent(
    payment_intent_id: str,
    request: PaymentIntentLinkRequest,
    service: Annotated[PreOrderService, Depends(get_service)],
) -> PendingPaymentResponse:
    """Link a pre-order PaymentIntent to a placed order.

    Args:
        payment_intent_id: PaymentIntent created for the cart.
        request: Order reference and final total.
        service: Pre-order service.

    Returns:
        The pending payment record awaiting settlement.

    Raises:
        HTTPException: If the order is unknown, the payment is already
            settled or Stripe rejects the update.
    """
    result = await service.link_payment_intent_to_order(
        payment_intent_id=payment_intent_id,
        order_id=request.order_id,
        order_code=request.order_code,
        final_total=request.final_total,
        customer_email=request.customer_email,
    )
    if not result.success or result.pending_payment is None:
        raise api_error(result.error_code, result.error, default_code="LINK_FAILED")

    return PendingPaymentResponse.from_entity(result.pending_payment)
