"""Admin API endpoints for pending payments.

Provides:
- GET /admin/payments - search payment records
- GET /admin/payments/statistics - counts and amounts
- GET /admin/payments/{id} - record with Stripe and order state
- GET /admin/payments/{id}/order-state - order state for a payment
- POST /admin/payments/{id}/settle - manual settlement
- POST /admin/payments/{id}/retry - reset a failed payment for retry
- POST /admin/payments/{id}/cancel - cancel a payment
- POST /admin/payments/cleanup - purge old non-retryable failures
- GET /admin/webhook-events/{id} - stored Stripe event
"""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from settlement.api.schemas import (
    AdminActionRequest,
    AdminActionResponse,
    AdminPaymentResponse,
    AdminPaymentsListResponse,
    CancelPaymentRequest,
    ErrorResponse,
    ManualSettleRequest,
    PendingPaymentResponse,
)
from settlement.application.admin_service import (
    MAX_SEARCH_LIMIT,
    AdminPaymentInfo,
    AdminToolsService,
    ManualSettlementResult,
    PaymentSearchFilters,
    get_admin_service,
)
from settlement.application.order_state_manager import (
    OrderStateManager,
    get_order_state_manager,
)
from settlement.application.webhook_service import WebhookService, get_webhook_service
from settlement.domain.state_machines import PaymentStatus

router = APIRouter(prefix="/admin", tags=["Admin"])


# ============================================================================
# Dependencies
# ============================================================================


def get_service() -> AdminToolsService:
    """Get admin tools service."""
    return get_admin_service()


def get_state_manager() -> OrderStateManager:
    return get_order_state_manager()


def get_webhooks() -> WebhookService:
    return get_webhook_service()


# ============================================================================
# Converters
# ============================================================================


def info_to_response(info: AdminPaymentInfo) -> AdminPaymentResponse:
    """Convert AdminPaymentInfo to AdminPaymentResponse."""
    base = PendingPaymentResponse.from_entity(info.payment)
    return AdminPaymentResponse(
        **base.model_dump(),
        stripe_status=info.stripe_status,
        order_state=info.order_state,
        can_manual_settle=info.can_manual_settle,
        can_retry=info.can_retry,
    )


def action_response(result: ManualSettlementResult) -> AdminActionResponse:
    """Convert an action result, raising for failures."""
    if not result.success:
        not_found = result.error == "Payment record not found"
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND if not_found else status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "PAYMENT_NOT_FOUND" if not_found else "ADMIN_ACTION_FAILED",
                "message": result.error or "Action failed",
            },
        )
    return AdminActionResponse(**result.to_dict())


# ============================================================================
# Queries
# ============================================================================


@router.get(
    "/payments",
    response_model=AdminPaymentsListResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Search payments",
)
async def search_payments(
    service: Annotated[AdminToolsService, Depends(get_service)],
    payment_status: PaymentStatus | None = Query(default=None, alias="status"),
    order_code: str | None = Query(default=None, description="Order code contains"),
    payment_intent_id: str | None = Query(default=None, description="PaymentIntent id contains"),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    is_retryable: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=MAX_SEARCH_LIMIT),
    offset: int = Query(default=0, ge=0),
) -> AdminPaymentsListResponse:
    """Search payment records, newest first, with Stripe status attached."""
    result = await service.search_payments(
        PaymentSearchFilters(
            status=payment_status,
            order_code=order_code,
            payment_intent_id=payment_intent_id,
            date_from=date_from,
            date_to=date_to,
            is_retryable=is_retryable,
            limit=limit,
            offset=offset,
        )
    )
    return AdminPaymentsListResponse(
        items=[info_to_response(info) for info in result["payments"]],
        total=result["total"],
        has_more=result["has_more"],
    )


@router.get(
    "/payments/statistics",
    response_model=dict,
    summary="Payment statistics",
)
async def payment_statistics(
    service: Annotated[AdminToolsService, Depends(get_service)],
    days: int = Query(default=30, ge=1, le=365),
) -> dict[str, Any]:
    return service.get_payment_statistics(days)


@router.post(
    "/payments/cleanup",
    response_model=dict,
    summary="Purge old failed payments",
    description="Delete non-retryable failed payment records older than the cutoff.",
)
async def cleanup_failed_payments(
    manager: Annotated[OrderStateManager, Depends(get_state_manager)],
    older_than_days: int = Query(default=30, ge=1),
) -> dict[str, Any]:
    removed = manager.cleanup_old_failed_payments(older_than_days)
    return {"removed": removed, "older_than_days": older_than_days}


@router.get(
    "/payments/{payment_intent_id}",
    response_model=AdminPaymentResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get payment details",
)
async def get_payment(
    payment_intent_id: str,
    service: Annotated[AdminToolsService, Depends(get_service)],
) -> AdminPaymentResponse:
    info = await service.get_payment_details(payment_intent_id)
    if info is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error_code": "PAYMENT_NOT_FOUND",
                "message": f"Payment not found: {payment_intent_id}",
            },
        )
    return info_to_response(info)


@router.get(
    "/payments/{payment_intent_id}/order-state",
    response_model=dict,
    summary="Get order state for a payment",
)
async def get_order_state(
    payment_intent_id: str,
    manager: Annotated[OrderStateManager, Depends(get_state_manager)],
) -> dict[str, Any]:
    return manager.get_order_state_info(payment_intent_id)


# ============================================================================
# Actions
# ============================================================================


@router.post(
    "/payments/{payment_intent_id}/settle",
    response_model=AdminActionResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Settle payment manually",
)
async def manually_settle(
    payment_intent_id: str,
    request: ManualSettleRequest,
    service: Annotated[AdminToolsService, Depends(get_service)],
) -> AdminActionResponse:
    """Settle a payment on an administrator's authority.

    Stripe checks are skipped with ``bypass_validation``; otherwise
    anything short of a refusal comes back as a warning.
    """
    result = await service.manually_settle_payment(
        payment_intent_id,
        admin_id=request.admin_id,
        bypass_validation=request.bypass_validation,
    )
    return action_response(result)


@router.post(
    "/payments/{payment_intent_id}/retry",
    response_model=AdminActionResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Reset payment for retry",
)
async def retry_settlement(
    payment_intent_id: str,
    request: AdminActionRequest,
    service: Annotated[AdminToolsService, Depends(get_service)],
) -> AdminActionResponse:
    result = await service.retry_payment_settlement(payment_intent_id, admin_id=request.admin_id)
    return action_response(result)


@router.post(
    "/payments/{payment_intent_id}/cancel",
    response_model=AdminActionResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Cancel payment",
)
async def cancel_payment(
    payment_intent_id: str,
    request: CancelPaymentRequest,
    service: Annotated[AdminToolsService, Depends(get_service)],
) -> AdminActionResponse:
    result = await service.cancel_payment(
        payment_intent_id, admin_id=request.admin_id, reason=request.reason
    )
    return action_response(result)


# ============================================================================
# Webhook Events
# ============================================================================


@router.get(
    "/webhook-events/{event_id}",
    response_model=dict,
    responses={404: {"model": ErrorResponse}},
    summary="Get webhook event",
)
async def get_webhook_event(
    event_id: str,
    service: Annotated[WebhookService, Depends(get_webhooks)],
) -> dict[str, Any]:
    event_data = await service.event_log.get(event_id)
    if event_data is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "EVENT_NOT_FOUND", "message": f"Event not found: {event_id}"},
        )
    return event_data
