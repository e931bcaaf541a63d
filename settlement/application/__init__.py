"""Application layer module.

Contains application services (use cases) that orchestrate
domain logic, the Stripe gateway and the repositories.
"""

from settlement.application.admin_service import AdminToolsService, get_admin_service
from settlement.application.alerting_service import (
    SettlementAlertingService,
    get_alerting_service,
    reset_alerting_service,
)
from settlement.application.cart_mapping_service import (
    CartMappingService,
    get_cart_mapping_service,
)
from settlement.application.error_handling import StripeErrorHandler, get_error_handler
from settlement.application.metrics_service import (
    SettlementMetricsService,
    get_metrics_service,
    reset_metrics_service,
)
from settlement.application.monitor_service import (
    SettlementMonitor,
    get_monitor,
    reset_monitor,
)
from settlement.application.order_service import OrderService, get_order_service
from settlement.application.order_state_manager import (
    OrderStateManager,
    get_order_state_manager,
)
from settlement.application.preorder_service import PreOrderService, get_preorder_service
from settlement.application.settlement_audit import (
    SettlementAuditLog,
    get_audit_log,
    reset_audit_log,
)
from settlement.application.settlement_service import (
    SettlementService,
    get_settlement_service,
)
from settlement.application.webhook_service import (
    WebhookService,
    get_webhook_service,
    reset_webhook_service,
)
from settlement.infrastructure.repositories import reset_repositories


def reset_application_state() -> None:
    """Drop every in-process singleton (for testing)."""
    reset_repositories()
    reset_metrics_service()
    reset_audit_log()
    reset_alerting_service()
    reset_monitor()
    reset_webhook_service()


__all__ = [
    "AdminToolsService",
    "get_admin_service",
    "SettlementAlertingService",
    "get_alerting_service",
    "CartMappingService",
    "get_cart_mapping_service",
    "StripeErrorHandler",
    "get_error_handler",
    "SettlementMetricsService",
    "get_metrics_service",
    "SettlementMonitor",
    "get_monitor",
    "OrderService",
    "get_order_service",
    "OrderStateManager",
    "get_order_state_manager",
    "PreOrderService",
    "get_preorder_service",
    "SettlementAuditLog",
    "get_audit_log",
    "SettlementService",
    "get_settlement_service",
    "WebhookService",
    "get_webhook_service",
    "reset_application_state",
]
