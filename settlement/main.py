"""Settlement service main application module.

This module initializes the FastAPI application and configures
logging, middleware, routers, and startup/shutdown events.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from settlement.api import (
    admin_router,
    cart_mappings_router,
    health_router,
    monitoring_router,
    orders_router,
    payments_router,
    preorder_router,
    webhooks_router,
)
from settlement.api.middleware import setup_middleware
from settlement.application.monitor_service import get_monitor
from settlement.domain.exceptions import DomainError
from settlement.infrastructure.config import settings
from settlement.infrastructure.database import dispose_engine
from settlement.infrastructure.persistence import get_settlement_store
from settlement.infrastructure.stripe_gateway import get_stripe_gateway


def configure_logging() -> None:
    """Configure structlog on top of stdlib logging.

    Renders JSON when ``log_json`` is set, readable console output otherwise.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(message)s",
        stream=sys.stderr,
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup and shutdown events.

    Args:
        app: The FastAPI application instance.

    Yields:
        None after startup, cleanup happens after yield.
    """
    # Startup
    logger.info(
        "Starting settlement service",
        version=settings.api_version,
        debug=settings.debug,
        stripe_configured=settings.stripe_enabled,
        webhook_configured=bool(settings.webhook_signing_secret),
        persistence_enabled=settings.persistence_enabled,
    )
    if not settings.stripe_enabled:
        logger.warning("STRIPE_SECRET_KEY not set; Stripe operations are unavailable")

    if settings.persistence_enabled:
        await get_settlement_store().load()

    monitor = get_monitor()
    if settings.monitor_enabled:
        monitor.start()

    yield

    # Shutdown
    logger.info("Shutting down settlement service")
    await monitor.stop()
    if settings.persistence_enabled:
        await get_settlement_store().flush()
    await get_stripe_gateway().close()
    await dispose_engine()


app = FastAPI(
    title="Stripe Settlement Service",
    description="Pre-order Stripe PaymentIntents and their settlement against orders",
    version=settings.api_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware (must be added before custom middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup custom middleware (request ID, API key auth, error handling)
setup_middleware(app)

# Include routers
app.include_router(health_router, tags=["Health"])
app.include_router(preorder_router)
app.include_router(payments_router)
app.include_router(cart_mappings_router)
app.include_router(orders_router)
app.include_router(webhooks_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


# ============================================================================
# Custom Exception Handlers
# ============================================================================


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    request_id = getattr(request.state, "request_id", None)

    detail = exc.detail
    if isinstance(detail, dict):
        error_code = detail.get("error_code", "ERROR")
        message = detail.get("message", str(detail))
        details = detail.get("details", [])
    else:
        error_code = "ERROR"
        message = str(detail)
        details = []

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": message,
            "details": details,
            "request_id": request_id,
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render domain rule violations that escaped a service as 400s."""
    request_id = getattr(request.state, "request_id", None)
    logger.warning("Domain error", path=request.url.path, error=exc.message)

    return JSONResponse(
        status_code=400,
        content={
            "error_code": "DOMAIN_ERROR",
            "message": exc.message,
            "details": [{"field": key, "message": str(value)} for key, value in exc.details.items()],
            "request_id": request_id,
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with consistent format."""
    request_id = getattr(request.state, "request_id", None)

    logger.exception(
        "Unhandled exception in handler",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An internal error occurred",
            "details": [],
            "request_id": request_id,
        },
    )
