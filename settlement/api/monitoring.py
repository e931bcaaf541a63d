"""Settlement monitoring API endpoints.

Exposes the settlement metrics, health report, alert state, audit
summaries and controls for the background monitor.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query

from settlement.api.schemas import MonitoringToggleRequest
from settlement.application.alerting_service import (
    SettlementAlertingService,
    get_alerting_service,
)
from settlement.application.metrics_service import (
    SettlementMetricsService,
    get_metrics_service,
)
from settlement.application.monitor_service import SettlementMonitor, get_monitor
from settlement.application.settlement_audit import SettlementAuditLog, get_audit_log
from settlement.domain.base import utc_now

router = APIRouter(prefix="/monitoring", tags=["Monitoring"])

Metrics = Annotated[SettlementMetricsService, Depends(get_metrics_service)]
Alerting = Annotated[SettlementAlertingService, Depends(get_alerting_service)]
Monitor = Annotated[SettlementMonitor, Depends(get_monitor)]
AuditLog = Annotated[SettlementAuditLog, Depends(get_audit_log)]


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ============================================================================
# Metrics
# ============================================================================


@router.get("/metrics", response_model=dict, summary="Settlement metrics")
async def get_metrics(metrics: Metrics) -> dict[str, Any]:
    return metrics.get_metrics_summary()


@router.get("/health", response_model=dict, summary="Settlement health report")
async def get_health_report(metrics: Metrics) -> dict[str, Any]:
    return metrics.generate_health_report()


@router.get("/daily", response_model=dict, summary="Daily statistics")
async def get_daily_stats(
    metrics: Metrics,
    day: date | None = Query(default=None, description="UTC day; today by default"),
) -> dict[str, Any]:
    report_day = day or utc_now().date()
    return {"date": report_day.isoformat(), "stats": metrics.get_daily_stats(report_day)}


@router.get("/database", response_model=dict, summary="Pending payment table statistics")
async def get_database_stats(metrics: Metrics) -> dict[str, Any]:
    return metrics.get_database_stats()


@router.post("/reset", response_model=dict, summary="Reset settlement metrics")
async def reset_metrics(metrics: Metrics) -> dict[str, Any]:
    metrics.reset_metrics()
    return {"success": True, "message": "Settlement metrics reset"}


# ============================================================================
# Alerts
# ============================================================================


@router.get("/alerts", response_model=dict, summary="Alert states and recent alerts")
async def get_alerts(
    alerting: Alerting,
    limit: int = Query(default=20, ge=1, le=100),
) -> dict[str, Any]:
    return {
        **alerting.get_alert_states(),
        "recent": [alert.to_dict() for alert in alerting.history[-limit:]],
    }


@router.post("/alerts/check", response_model=dict, summary="Evaluate alert conditions now")
async def check_alerts(alerting: Alerting) -> dict[str, Any]:
    sent = await alerting.check_and_send_alerts()
    return {"sent": [alert.to_dict() for alert in sent]}


@router.post("/alerts/reset", response_model=dict, summary="Reset alert states and cooldowns")
async def reset_alerts(alerting: Alerting) -> dict[str, Any]:
    alerting.reset_alert_states()
    return {"success": True, "message": "Alert states reset"}


# ============================================================================
# Audit
# ============================================================================


@router.get("/summary", response_model=dict, summary="Settlement audit summary")
async def get_settlement_summary(
    audit_log: AuditLog,
    start: datetime | None = Query(default=None, description="Defaults to seven days ago"),
    end: datetime | None = Query(default=None, description="Defaults to now"),
) -> dict[str, Any]:
    period_end = _as_utc(end) if end else utc_now()
    period_start = _as_utc(start) if start else period_end - timedelta(days=7)
    return audit_log.generate_settlement_summary(period_start, period_end)


@router.get("/audit/{payment_intent_id}", response_model=dict, summary="Audit trail for a payment")
async def get_audit_trail(payment_intent_id: str, audit_log: AuditLog) -> dict[str, Any]:
    return {
        "payment_intent_id": payment_intent_id,
        "entries": [entry.to_dict() for entry in audit_log.entries_for(payment_intent_id)],
    }


# ============================================================================
# Monitor Control
# ============================================================================


@router.get("/status", response_model=dict, summary="Background monitor status")
async def get_monitor_status(monitor: Monitor) -> dict[str, Any]:
    return monitor.get_monitoring_status()


@router.put("/enabled", response_model=dict, summary="Enable or disable scheduled monitoring")
async def set_monitoring_enabled(request: MonitoringToggleRequest, monitor: Monitor) -> dict[str, Any]:
    monitor.set_monitoring_enabled(request.enabled)
    return monitor.get_monitoring_status()


@router.post("/trigger", response_model=dict, summary="Run a health check now")
async def trigger_health_check(monitor: Monitor) -> dict[str, Any]:
    return await monitor.trigger_health_check()


@router.get("/report", response_model=dict, summary="Immediate monitoring report")
async def get_immediate_report(monitor: Monitor) -> dict[str, Any]:
    return monitor.generate_immediate_report()


@router.get("/reports/daily", response_model=dict, summary="Daily settlement report")
async def get_daily_report(
    monitor: Monitor,
    day: date | None = Query(default=None, description="UTC day; yesterday by default"),
) -> dict[str, Any]:
    return monitor.generate_daily_report(day)
