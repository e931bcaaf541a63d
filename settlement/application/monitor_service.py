"""Background settlement monitor.

Runs as an asyncio task started from the application lifespan:
- a health check with alerting every ``monitor_interval_seconds``
- a daily report for the previous UTC day, after 01:00 UTC
- a weekly summary from the audit trail, on Sundays after 02:00 UTC
"""

import asyncio
from collections.abc import Callable
from datetime import date, datetime, timedelta
from typing import Any

import structlog

from settlement.application.alerting_service import (
    SettlementAlertingService,
    get_alerting_service,
)
from settlement.application.metrics_service import (
    SettlementMetricsService,
    get_metrics_service,
)
from settlement.application.settlement_audit import SettlementAuditLog, get_audit_log
from settlement.domain.base import utc_now
from settlement.infrastructure.config import settings

logger = structlog.get_logger()

DAILY_REPORT_HOUR = 1
WEEKLY_REPORT_HOUR = 2
WEEKLY_REPORT_WEEKDAY = 6  # Sunday


class SettlementMonitor:
    """Periodic health checks and reports for the settlement pipeline."""

    def __init__(
        self,
        metrics: SettlementMetricsService | None = None,
        alerting: SettlementAlertingService | None = None,
        audit_log: SettlementAuditLog | None = None,
        interval_seconds: float | None = None,
        enabled: bool | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.metrics = metrics or get_metrics_service()
        self.alerting = alerting or get_alerting_service()
        self.audit_log = audit_log or get_audit_log()
        self.interval_seconds = interval_seconds or settings.monitor_interval_seconds
        self.enabled = settings.monitor_enabled if enabled is None else enabled
        self._clock = clock
        self._is_running = False
        self._task: asyncio.Task[None] | None = None
        self._last_health_check: datetime | None = None
        self._last_daily_report: date | None = None
        self._last_weekly_report: date | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the background loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return
        self.log_system_status()
        self._task = asyncio.create_task(self._run(), name="settlement-monitor")
        logger.info("Settlement monitor started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Settlement monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_scheduled()

    async def run_scheduled(self) -> None:
        """Run whatever is due: the health check, then any pending reports."""
        await self.perform_health_check()
        now = self._clock()
        if self.enabled and now.hour >= DAILY_REPORT_HOUR and self._last_daily_report != now.date():
            self.generate_daily_report()
            self._last_daily_report = now.date()
        if (
            self.enabled
            and now.weekday() == WEEKLY_REPORT_WEEKDAY
            and now.hour >= WEEKLY_REPORT_HOUR
            and self._last_weekly_report != now.date()
        ):
            self.perform_weekly_summary()
            self._last_weekly_report = now.date()

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def perform_health_check(self) -> bool:
        """Check alerts once; skipped when disabled or a check is running.

        Returns:
            True if the check ran.
        """
        if not self.enabled or self._is_running:
            return False
        self._is_running = True
        try:
            await self.alerting.check_and_send_alerts()
            stats = self.metrics.get_metrics_summary()["settlement_stats"]
            self._last_health_check = self._clock()
            logger.debug(
                "Health check complete",
                success_rate=round(stats["success_rate"], 4),
                consecutive_failures=stats["consecutive_failures"],
            )
        except Exception as e:
            logger.error("Health check failed", error=str(e))
        finally:
            self._is_running = False
        return True

    def generate_daily_report(self, day: date | None = None) -> dict[str, Any]:
        """Log and return the report for ``day`` (yesterday by default)."""
        report_day = day or (self._clock() - timedelta(days=1)).date()
        daily = self.metrics.get_daily_stats(report_day)
        db_stats = self.metrics.get_database_stats()
        health = self.metrics.generate_health_report()
        oldest = db_stats["oldest_pending_payment"]

        report = {
            "date": report_day.isoformat(),
            "daily_stats": daily,
            "health_status": health["status"],
            "total_pending_payments": db_stats["total_pending_payments"],
            "payments_last_24_hours": db_stats["payments_last_24_hours"],
            "oldest_pending_age_hours": (
                round((self._clock() - oldest).total_seconds() / 3600, 1) if oldest else None
            ),
            "recommendations": health["recommendations"],
        }
        if daily is None:
            logger.info("Daily settlement report: no activity", **report)
        else:
            logger.info("Daily settlement report", **report)
        return report

    def perform_weekly_summary(self) -> dict[str, Any]:
        """Log and return the audit summary for the last seven days."""
        end = self._clock()
        summary = self.audit_log.generate_settlement_summary(end - timedelta(days=7), end)
        logger.info(
            "Weekly settlement report",
            **summary["summary"],
            error_breakdown=summary["error_breakdown"],
        )
        return summary

    def log_system_status(self) -> None:
        health = self.metrics.generate_health_report()
        stats = self.metrics.get_metrics_summary()["settlement_stats"]
        logger.info(
            "Settlement system status",
            health_status=health["status"],
            attempts=stats["attempts"],
            success_rate=round(stats["success_rate"], 4),
        )
        if health["status"] != "healthy":
            logger.warning(
                "Settlement issues detected",
                summary=health["summary"],
                recommendations=health["recommendations"],
            )

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def set_monitoring_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info("Settlement monitoring toggled", enabled=enabled)

    def get_monitoring_status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "is_running": self._is_running,
            "task_active": self._task is not None and not self._task.done(),
            "interval_seconds": self.interval_seconds,
            "last_health_check": (
                self._last_health_check.isoformat() if self._last_health_check else None
            ),
        }

    async def trigger_health_check(self) -> dict[str, Any]:
        """Run the alert checks now, regardless of the enabled flag."""
        logger.info("Manual health check triggered")
        try:
            await self.alerting.check_and_send_alerts()
            report = self.metrics.generate_health_report()
        except Exception as e:
            logger.error("Manual health check failed", error=str(e))
            return {"success": False, "message": f"Health check failed: {e}"}
        self._last_health_check = self._clock()
        return {
            "success": True,
            "message": f"Health check completed. Status: {report['status']}",
            "health_report": report,
        }

    def generate_immediate_report(self) -> dict[str, Any]:
        db_stats = self.metrics.get_database_stats()
        oldest = db_stats["oldest_pending_payment"]
        return {
            "timestamp": self._clock().isoformat(),
            "metrics": self.metrics.get_metrics_summary(),
            "database_stats": {
                **db_stats,
                "oldest_pending_payment": oldest.isoformat() if oldest else None,
            },
            "health_report": self.metrics.generate_health_report(),
            "alert_states": self.alerting.get_alert_states(),
        }


# Global monitor instance
_monitor: SettlementMonitor | None = None


def get_monitor() -> SettlementMonitor:
    """Get the settlement monitor singleton."""
    global _monitor
    if _monitor is None:
        _monitor = SettlementMonitor()
    return _monitor


def reset_monitor() -> None:
    global _monitor
    _monitor = None
