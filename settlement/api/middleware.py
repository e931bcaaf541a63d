"""API middleware for the settlement service.

Provides:
- API key authentication for back-office routes
- Request ID correlation
- Error handling
- Write-through persistence
"""

import time
from typing import Callable
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

from settlement.infrastructure.config import settings
from settlement.infrastructure.persistence import get_settlement_store

logger = structlog.get_logger()


# ============================================================================
# Request ID Middleware
# ============================================================================


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID for correlation.

    Generates or extracts a request ID and adds it to:
    - Request state for access in handlers
    - Response headers for client correlation
    - Log context for tracing
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Process request with correlation ID.

        Args:
            request: Incoming request.
            call_next: Next middleware/handler.

        Returns:
            Response with request ID header.
        """
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start_time = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=getattr(response, "status_code", 500),
                duration_ms=round(duration_ms, 2),
            )
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers[self.HEADER_NAME] = request_id
        return response


# ============================================================================
# API Key Authentication Middleware
# ============================================================================


# Back-office prefixes; storefront routes and the Stripe webhook stay public
PROTECTED_PREFIXES = ("/admin", "/monitoring", "/orders")


def _unauthorized(error_code: str, message: str) -> JSONResponse:
    """Build a 401 response in the API error format.

    Args:
        error_code: Machine-readable error code.
        message: Human-readable message.

    Returns:
        JSON response asking for Bearer credentials.
    """
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error_code": error_code, "message": message, "details": []},
        headers={"WWW-Authenticate": "Bearer"},
    )


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """Middleware for API key authentication.

    Requires ``Authorization: Bearer <api_key>`` on the back-office
    routes: admin tools, monitoring and the order book.
    """

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Check the API key on back-office routes.

        Args:
            request: Incoming request.
            call_next: Next middleware/handler.

        Returns:
            Handler response, or 401 if the key is missing or wrong.
        """
        path = request.url.path.rstrip("/")
        if not path.startswith(PROTECTED_PREFIXES):
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header:
            logger.warning("Missing authorization header", path=path, method=request.method)
            return _unauthorized("UNAUTHORIZED", "Missing Authorization header")

        parts = auth_header.split(" ", 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            logger.warning("Invalid authorization format", path=path, method=request.method)
            return _unauthorized(
                "UNAUTHORIZED", "Invalid Authorization header format. Use 'Bearer <api_key>'"
            )

        if parts[1] != settings.admin_api_key:
            logger.warning("Invalid API key", path=path, method=request.method)
            return _unauthorized("INVALID_API_KEY", "Invalid API key")

        request.state.authenticated = True
        return await call_next(request)


# ============================================================================
# Error Handling Middleware
# ============================================================================


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches unhandled exceptions and returns standardized error responses."""

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Run the handler and convert uncaught exceptions to a 500.

        Args:
            request: Incoming request.
            call_next: Next middleware/handler.

        Returns:
            Handler response or a standardized error response.
        """
        try:
            return await call_next(request)
        except Exception as e:
            request_id = getattr(request.state, "request_id", None)
            logger.exception(
                "Unhandled exception",
                path=request.url.path,
                method=request.method,
                error=str(e),
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error_code": "INTERNAL_ERROR",
                    "message": "An internal error occurred",
                    "details": [],
                    "request_id": request_id,
                },
            )


# ============================================================================
# Persistence Middleware
# ============================================================================


class PersistenceMiddleware(BaseHTTPMiddleware):
    """Flushes repository changes to the database after each request."""

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        """Run the handler, then write through what it changed.

        A failed write is logged and the changes stay queued for the next
        request, so the client still gets the handler's response.

        Args:
            request: Incoming request.
            call_next: Next middleware/handler.

        Returns:
            Handler response.
        """
        response = await call_next(request)
        if settings.persistence_enabled:
            try:
                await get_settlement_store().flush()
            except SQLAlchemyError as e:
                logger.error("Settlement state not persisted", path=request.url.path, error=str(e))
        return response


# ============================================================================
# Middleware Setup
# ============================================================================


def setup_middleware(app: FastAPI) -> None:
    """Configure all middleware for the application.

    Middleware is added in reverse order (last added = first executed).

    Args:
        app: FastAPI application instance.
    """
    # Write-through persistence (innermost, right after the handler)
    app.add_middleware(PersistenceMiddleware)

    # Error handling (outermost - catches all errors)
    app.add_middleware(ErrorHandlerMiddleware)

    # API key authentication
    app.add_middleware(ApiKeyMiddleware)

    # Request ID correlation (innermost for handlers)
    app.add_middleware(RequestIdMiddleware)
