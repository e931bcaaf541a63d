"""Health check endpoints.

Provides endpoints for monitoring service health and readiness.
"""

from fastapi import APIRouter
from pydantic import BaseModel

from settlement.infrastructure.config import settings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    service: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness check response schema."""

    status: str
    stripe_configured: bool
    webhook_configured: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health.

    Returns:
        Health status with service name and version.
    """
    return HealthResponse(
        status="healthy",
        service="stripe-settlement",
        version=settings.api_version,
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check() -> ReadinessResponse:
    """Check if service is ready to settle payments.

    Without a Stripe secret key the service still answers, but every
    Stripe-dependent operation reports the service as unavailable.
    """
    stripe_configured = settings.stripe_enabled
    return ReadinessResponse(
        status="ready" if stripe_configured else "degraded",
        stripe_configured=stripe_configured,
        webhook_configured=bool(settings.webhook_signing_secret),
    )
