"""API layer module.

Contains FastAPI routers and request/response schemas.
"""

from settlement.api.admin import router as admin_router
from settlement.api.cart_mappings import router as cart_mappings_router
from settlement.api.health import router as health_router
from settlement.api.monitoring import router as monitoring_router
from settlement.api.orders import router as orders_router
from settlement.api.payments import router as payments_router
from settlement.api.preorder import router as preorder_router
from settlement.api.webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "cart_mappings_router",
    "health_router",
    "monitoring_router",
    "orders_router",
    "payments_router",
    "preorder_router",
    "webhooks_router",
]
