"""Order book API endpoints.

Provides:
- POST /orders - record an order
- GET /orders/{code} - order details, payments and reachable states
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from settlement.api.errors import api_error
from settlement.api.schemas import ErrorResponse, OrderCreateRequest, OrderResponse
from settlement.application.order_service import OrderService, get_order_service

router = APIRouter(prefix="/orders", tags=["Orders"])


def get_service() -> OrderService:
    """Get order service."""
    return get_order_service()


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Create order",
    description="Record an order placed by the commerce engine.",
)
async def create_order(
    request: OrderCreateRequest,
    service: Annotated[OrderService, Depends(get_service)],
) -> OrderResponse:
    result = await service.create_order(
        code=request.code,
        total=request.total,
        currency=request.currency,
        customer_email=request.customer_email,
        state=request.state,
    )
    if not result.success or result.order is None:
        raise api_error(result.error_code, result.error, default_code="INVALID_ORDER")
    return OrderResponse.from_entity(result.order)


@router.get(
    "/{code}",
    response_model=OrderResponse,
    responses={
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Get order details",
)
async def get_order(
    code: str,
    service: Annotated[OrderService, Depends(get_service)],
) -> OrderResponse:
    """Get an order by its code.

    Raises:
        HTTPException: If order not found.
    """
    order = service.get_by_code(code)
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "ORDER_NOT_FOUND", "message": f"Order not found: {code}"},
        )
    return OrderResponse.from_entity(order)
