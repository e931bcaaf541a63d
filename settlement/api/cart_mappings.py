"""Cart mapping API endpoints.

The storefront records which order it created for a cart, so it can
resolve the order again when the shopper returns from a wallet or
3-D Secure redirect.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from settlement.api.schemas import (
    CartMappingCreateRequest,
    CartMappingPaymentIntentRequest,
    CartMappingResponse,
    ErrorResponse,
)
from settlement.application.cart_mapping_service import (
    CartMappingService,
    get_cart_mapping_service,
)
from settlement.domain.exceptions import CartMappingExistsError

router = APIRouter(prefix="/cart-mappings", tags=["Cart Mappings"])


# ============================================================================
# Dependencies
# ============================================================================


def get_service() -> CartMappingService:
    """Get cart mapping service."""
    return get_cart_mapping_service()


def _not_found(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error_code": "CART_MAPPING_NOT_FOUND", "message": message},
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "",
    response_model=CartMappingResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
    summary="Map cart to order",
)
async def create_mapping(
    request: CartMappingCreateRequest,
    service: Annotated[CartMappingService, Depends(get_service)],
) -> CartMappingResponse:
    """Record the order created for a cart.

    Raises:
        HTTPException: If the cart is already mapped.
    """
    try:
        mapping = service.create_mapping(
            cart_uuid=request.cart_uuid,
            order_id=request.order_id,
            order_code=request.order_code,
            payment_intent_id=request.payment_intent_id,
        )
    except CartMappingExistsError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "CART_MAPPING_EXISTS", "message": e.message},
        ) from e
    return CartMappingResponse.from_entity(mapping)


@router.get(
    "/by-order/{order_code}",
    response_model=CartMappingResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Find mapping by order code",
)
async def get_mapping_by_order(
    order_code: str,
    service: Annotated[CartMappingService, Depends(get_service)],
) -> CartMappingResponse:
    mapping = service.find_by_order_code(order_code)
    if mapping is None:
        raise _not_found(f"No cart mapping for order {order_code}")
    return CartMappingResponse.from_entity(mapping)


@router.get(
    "/{cart_uuid}",
    response_model=CartMappingResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Find mapping by cart",
)
async def get_mapping(
    cart_uuid: str,
    service: Annotated[CartMappingService, Depends(get_service)],
) -> CartMappingResponse:
    mapping = service.find_by_cart_uuid(cart_uuid)
    if mapping is None:
        raise _not_found(f"No cart mapping for cart {cart_uuid}")
    return CartMappingResponse.from_entity(mapping)


@router.put(
    "/{cart_uuid}/payment-intent",
    response_model=CartMappingResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Record the cart's PaymentIntent",
)
async def update_payment_intent(
    cart_uuid: str,
    request: CartMappingPaymentIntentRequest,
    service: Annotated[CartMappingService, Depends(get_service)],
) -> CartMappingResponse:
    mapping = service.update_with_payment_intent(cart_uuid, request.payment_intent_id)
    if mapping is None:
        raise _not_found(f"No cart mapping for cart {cart_uuid}")
    return CartMappingResponse.from_entity(mapping)


@router.post(
    "/{cart_uuid}/complete",
    response_model=CartMappingResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Mark the cart's checkout completed",
)
async def complete_mapping(
    cart_uuid: str,
    service: Annotated[CartMappingService, Depends(get_service)],
) -> CartMappingResponse:
    mapping = service.mark_completed(cart_uuid)
    if mapping is None:
        raise _not_found(f"No cart mapping for cart {cart_uuid}")
    return CartMappingResponse.from_entity(mapping)
