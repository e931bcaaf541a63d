"""Mapping from service error codes to HTTP errors."""

from fastapi import HTTPException, status

ERROR_STATUS_CODES: dict[str, int] = {
    "SERVICE_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "PAYMENT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PAYMENT_INTENT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CART_MAPPING_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "ORDER_EXISTS": status.HTTP_409_CONFLICT,
    "CART_MAPPING_EXISTS": status.HTTP_409_CONFLICT,
    "PAYMENT_ALREADY_SETTLED": status.HTTP_409_CONFLICT,
    "PAYMENT_FAILED": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "ORDER_STATE_INVALID": status.HTTP_409_CONFLICT,
    "STRIPE_ERROR": status.HTTP_502_BAD_GATEWAY,
    "STRIPE_API_ERROR": status.HTTP_502_BAD_GATEWAY,
    "STRIPE_CONNECTION_ERROR": status.HTTP_502_BAD_GATEWAY,
    "STRIPE_RATE_LIMIT": status.HTTP_502_BAD_GATEWAY,
    "SETTLEMENT_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "DATABASE_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def api_error(
    error_code: str | None,
    message: str | None,
    default_code: str = "BAD_REQUEST",
    default_message: str = "Request failed",
) -> HTTPException:
    """Build the HTTPException for a failed service result.

    Codes without an explicit mapping become 400 Bad Request.
    """
    code = error_code or default_code
    return HTTPException(
        status_code=ERROR_STATUS_CODES.get(code, status.HTTP_400_BAD_REQUEST),
        detail={"error_code": code, "message": message or default_message},
    )
