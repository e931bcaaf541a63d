"""Stripe webhook receiver.

Provides:
- POST /webhooks/stripe - receive PaymentIntent events
- Stripe-Signature verification over the raw body
- Deduplication by event id

Events that fail processing answer 500 so Stripe redelivers them.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from settlement.api.schemas import ErrorResponse
from settlement.application.webhook_service import (
    EventStatus,
    WebhookNotConfiguredError,
    WebhookService,
    WebhookSignatureError,
    get_webhook_service,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_service() -> WebhookService:
    """Get webhook service."""
    return get_webhook_service()


@router.post(
    "/stripe",
    responses={
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Receive Stripe webhook",
    description="Receive PaymentIntent events for pre-order payments.",
)
async def receive_stripe_webhook(
    request: Request,
    service: Annotated[WebhookService, Depends(get_service)],
    stripe_signature: Annotated[str | None, Header()] = None,
) -> Any:
    """Verify and process a Stripe event.

    Duplicate events are acknowledged with status ``duplicate``.

    Args:
        request: The incoming request; its raw body is verified.
        service: Webhook service.
        stripe_signature: Stripe-Signature header.

    Returns:
        Processing result.

    Raises:
        HTTPException: If the endpoint is not configured or the
            signature is invalid.
    """
    body = await request.body()

    try:
        event = service.construct_event(body, stripe_signature)
    except WebhookNotConfiguredError as e:
        logger.error("Stripe webhook secret not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error_code": "WEBHOOK_NOT_CONFIGURED", "message": str(e)},
        ) from e
    except WebhookSignatureError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "INVALID_SIGNATURE", "message": str(e)},
        ) from e

    result = await service.process_event(event)
    if result.status == EventStatus.FAILED:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error_code": "WEBHOOK_PROCESSING_FAILED",
                "message": result.message,
                "details": [],
                "request_id": getattr(request.state, "request_id", None),
            },
        )
    return result.to_dict()
