"""Payment settlement API endpoints.

Provides:
- POST /payments/{id}/settle - settle a linked PaymentIntent
- GET /payments/{id}/status - local settlement status
- GET /payments/{id}/verify - PaymentIntent status at Stripe
- GET /payments/{id}/ownership - whether it belongs to an order
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from settlement.api.errors import api_error
from settlement.api.schemas import (
    ErrorResponse,
    OwnershipResponse,
    SettlementResponse,
    SettlementStatusResponse,
    VerificationResponse,
)
from settlement.application.settlement_audit import RequestContext
from settlement.application.settlement_service import (
    SettlementService,
    get_settlement_service,
)

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_service() -> SettlementService:
    """Get settlement service."""
    return get_settlement_service()


@router.post(
    "/{payment_intent_id}/settle",
    response_model=SettlementResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Settle payment",
    description="Verify a linked PaymentIntent with Stripe and settle it against its order.",
)
async def settle_payment(
    payment_intent_id: str,
    request: Request,
    service: Annotated[SettlementService, Depends(get_service)],
) -> SettlementResponse:
    """Settle a payment once the shopper's PaymentIntent has succeeded.

    Settling an already-settled payment succeeds again without side effects.

    Args:
        payment_intent_id: Stripe PaymentIntent id.
        request: The incoming request.
        service: Settlement service.

    Returns:
        Settlement outcome with the order payment id.

    Raises:
        HTTPException: With the shopper-facing message if settlement fails.
    """
    context = RequestContext(
        ip_address=request.client.host if request.client else None,
        source="api",
    )
    result = await service.settle_payment(payment_intent_id, context)
    if not result.success:
        raise api_error(result.error_code, result.error, default_code="SETTLEMENT_FAILED")

    return SettlementResponse(**result.to_dict())


@router.get(
    "/{payment_intent_id}/status",
    response_model=SettlementStatusResponse,
    summary="Get settlement status",
)
async def get_settlement_status(
    payment_intent_id: str,
    service: Annotated[SettlementService, Depends(get_service)],
) -> SettlementStatusResponse:
    settlement_status = service.get_settlement_status(payment_intent_id)
    return SettlementStatusResponse(
        payment_intent_id=payment_intent_id,
        status=settlement_status,
        is_settled=settlement_status == "settled",
    )


@router.get(
    "/{payment_intent_id}/verify",
    response_model=VerificationResponse,
    summary="Check PaymentIntent status at Stripe",
)
async def verify_payment_intent(
    payment_intent_id: str,
    service: Annotated[SettlementService, Depends(get_service)],
) -> VerificationResponse:
    result = await service.verify_payment_intent_status(payment_intent_id)
    return VerificationResponse(is_valid=result.is_valid, status=result.status, error=result.error)


@router.get(
    "/{payment_intent_id}/ownership",
    response_model=OwnershipResponse,
    summary="Check PaymentIntent ownership",
)
async def check_ownership(
    payment_intent_id: str,
    service: Annotated[SettlementService, Depends(get_service)],
    order_code: str = Query(..., min_length=1, description="Order the payment should belong to"),
) -> OwnershipResponse:
    result = await service.validate_payment_intent_ownership(payment_intent_id, order_code)
    return OwnershipResponse(is_valid=result.is_valid, error=result.error)
