"""Settlement alerting.

Checks the settlement metrics against alert thresholds, emits alerts as
structured log events and sends a recovery notice once a condition
clears. Each alert type has a cooldown so a persisting condition is not
reported on every check.
"""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

import structlog

from settlement.application.metrics_service import (
    SettlementMetricsService,
    get_metrics_service,
)
from settlement.domain.base import utc_now

logger = structlog.get_logger()

AlertSeverity = Literal["info", "warning", "critical"]

ALERT_COOLDOWNS: dict[str, timedelta] = {
    "consecutive_failures": timedelta(minutes=5),
    "high_error_rate": timedelta(minutes=10),
    "slow_settlement": timedelta(minutes=15),
    "stuck_payments": timedelta(minutes=30),
    "high_volume": timedelta(minutes=60),
}
DEFAULT_COOLDOWN = timedelta(minutes=5)


@dataclass
class Alert:
    """An alert or recovery notice."""

    type: str
    severity: AlertSeverity
    title: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    actions: list[str] = field(default_factory=list)
    recovery: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "details": self.details,
            "actions": self.actions,
            "recovery": self.recovery,
            "timestamp": self.timestamp.isoformat(),
        }


def _initial_states() -> dict[str, bool]:
    return {key: False for key in ALERT_COOLDOWNS}


class SettlementAlertingService:
    """Raises alerts from settlement metrics with per-type cooldowns."""

    def __init__(
        self,
        metrics: SettlementMetricsService | None = None,
        clock: Callable[[], datetime] = utc_now,
        history_size: int = 100,
    ) -> None:
        self.metrics = metrics or get_metrics_service()
        self._clock = clock
        self._states = _initial_states()
        self._last_alert_times: dict[str, datetime] = {}
        self._history: deque[Alert] = deque(maxlen=history_size)

    @property
    def history(self) -> list[Alert]:
        """Alerts and recoveries sent, oldest first."""
        return list(self._history)

    async def check_and_send_alerts(self) -> list[Alert]:
        """Evaluate all alert conditions.

        Returns:
            Alerts and recovery notices sent during this check.
        """
        sent_before = len(self._history)
        try:
            report = self.metrics.generate_health_report()
            stats = self.metrics.get_metrics_summary()["settlement_stats"]
            db_stats = self.metrics.get_database_stats()

            self._check_consecutive_failures(stats["consecutive_failures"])
            self._check_high_error_rate(stats["success_rate"], stats["attempts"])
            self._check_slow_settlement(stats["average_time_ms"])
            self._check_stuck_payments(db_stats)
            self._check_high_volume(db_stats["total_pending_payments"])

            if report["status"] == "critical":
                self._send_critical_system_alert(report)
        except Exception as e:
            logger.error("Error checking alerts", error=str(e))

        sent = len(self._history) - sent_before
        return self.history[-sent:] if sent else []

    # -------------------------------------------------------------------------
    # Conditions
    # -------------------------------------------------------------------------

    def _check_consecutive_failures(self, consecutive_failures: int) -> None:
        threshold = self.metrics.thresholds.consecutive_failures
        key = "consecutive_failures"
        if consecutive_failures >= threshold and not self._in_cooldown(key):
            self._send(
                key,
                Alert(
                    type=key,
                    severity="critical",
                    title="Consecutive Stripe Settlement Failures",
                    message=(
                        f"{consecutive_failures} consecutive settlement failures detected. "
                        "Immediate investigation required."
                    ),
                    details={"consecutive_failures": consecutive_failures, "threshold": threshold},
                    actions=[
                        "Check Stripe API status and connectivity",
                        "Review recent error logs for patterns",
                        "Verify database connectivity",
                        "Check for configuration changes",
                    ],
                ),
            )
        elif consecutive_failures == 0 and self._states[key]:
            self._recover(
                key,
                "Stripe Settlement Failures Resolved",
                "Consecutive settlement failures have been resolved. System is operating normally.",
            )

    def _check_high_error_rate(self, success_rate: float, attempts: int) -> None:
        error_rate = 1 - success_rate
        threshold = self.metrics.thresholds.error_rate
        min_attempts = self.metrics.thresholds.min_attempts_for_error_rate
        key = "high_error_rate"
        if error_rate > threshold and attempts >= min_attempts and not self._in_cooldown(key):
            failed = round(error_rate * attempts)
            self._send(
                key,
                Alert(
                    type=key,
                    severity="warning",
                    title="High Stripe Settlement Error Rate",
                    message=(
                        f"Settlement error rate is {error_rate * 100:.1f}% "
                        f"({failed}/{attempts} attempts failed)"
                    ),
                    details={
                        "error_rate": error_rate * 100,
                        "threshold": threshold * 100,
                        "total_attempts": attempts,
                        "failed_attempts": failed,
                    },
                    actions=[
                        "Review recent error patterns",
                        "Check Stripe API performance",
                        "Verify payment validation logic",
                        "Monitor for improvement over next hour",
                    ],
                ),
            )
        elif error_rate <= threshold and self._states[key]:
            self._recover(
                key,
                "Stripe Settlement Error Rate Normalized",
                f"Error rate has returned to normal levels: {error_rate * 100:.1f}%",
            )

    def _check_slow_settlement(self, average_time_ms: float) -> None:
        threshold = self.metrics.thresholds.avg_settlement_time_ms
        key = "slow_settlement"
        if average_time_ms > threshold and not self._in_cooldown(key):
            self._send(
                key,
                Alert(
                    type=key,
                    severity="warning",
                    title="Slow Stripe Settlement Performance",
                    message=(
                        f"Average settlement time is {average_time_ms / 1000:.1f} seconds "
                        f"(threshold: {threshold / 1000:g} seconds)"
                    ),
                    details={"average_time_ms": average_time_ms, "threshold_ms": threshold},
                    actions=[
                        "Check Stripe API response times",
                        "Monitor database performance",
                        "Review network connectivity",
                        "Check for resource constraints",
                    ],
                ),
            )
        elif average_time_ms <= threshold and self._states[key]:
            self._recover(
                key,
                "Stripe Settlement Performance Improved",
                f"Settlement times have improved to {average_time_ms / 1000:.1f} seconds",
            )

    def _check_stuck_payments(self, db_stats: dict[str, Any]) -> None:
        key = "stuck_payments"
        oldest: datetime | None = db_stats["oldest_pending_payment"]
        if oldest is not None:
            age_hours = (self._clock() - oldest).total_seconds() / 3600
            threshold = self.metrics.thresholds.stuck_payment_hours
            if age_hours > threshold and not self._in_cooldown(key):
                self._send(
                    key,
                    Alert(
                        type=key,
                        severity="warning",
                        title="Old Pending Stripe Payments Detected",
                        message=(
                            f"Oldest pending payment is {age_hours:.1f} hours old. "
                            f"{db_stats['total_pending_payments']} total pending payments."
                        ),
                        details={
                            "oldest_payment_age_hours": age_hours,
                            "threshold": threshold,
                            "total_pending_payments": db_stats["total_pending_payments"],
                            "pending_by_status": db_stats["pending_by_status"],
                        },
                        actions=[
                            "Review stuck payment records",
                            "Check for failed webhook deliveries",
                            "Manually investigate oldest payments",
                            "Consider implementing cleanup job",
                        ],
                    ),
                )
        elif self._states[key]:
            self._recover(
                key,
                "Stuck Stripe Payments Resolved",
                "No old pending payments detected. All payments are processing normally.",
            )

    def _check_high_volume(self, total_pending: int) -> None:
        threshold = self.metrics.thresholds.max_pending_records
        key = "high_volume"
        if total_pending > threshold and not self._in_cooldown(key):
            self._send(
                key,
                Alert(
                    type=key,
                    severity="warning",
                    title="High Volume of Pending Stripe Payments",
                    message=f"{total_pending} pending payments detected (threshold: {threshold})",
                    details={"total_pending_payments": total_pending, "threshold": threshold},
                    actions=[
                        "Monitor settlement processing rate",
                        "Check for processing bottlenecks",
                        "Review recent traffic patterns",
                        "Consider scaling resources if needed",
                    ],
                ),
            )
        elif total_pending <= threshold and self._states[key]:
            self._recover(
                key,
                "Pending Payment Volume Normalized",
                f"Pending payment volume has returned to normal: {total_pending} payments",
            )

    def _send_critical_system_alert(self, report: dict[str, Any]) -> None:
        key = "critical_system"
        if self._in_cooldown(key):
            return
        self._send(
            key,
            Alert(
                type=key,
                severity="critical",
                title="CRITICAL: Stripe Settlement System Issues",
                message=report["summary"],
                details={
                    "status": report["status"],
                    "recommendations": report["recommendations"],
                },
                actions=list(report["recommendations"]),
            ),
        )

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def _send(self, key: str, alert: Alert) -> None:
        alert.timestamp = self._clock()
        log = logger.error if alert.severity == "critical" else logger.warning
        log("Settlement alert", **alert.to_dict())
        self._history.append(alert)
        self._last_alert_times[key] = self._clock()
        if key in self._states:
            self._states[key] = True

    def _recover(self, key: str, title: str, message: str) -> None:
        alert = Alert(
            type=f"{key}_resolved",
            severity="info",
            title=title,
            message=message,
            recovery=True,
            timestamp=self._clock(),
        )
        logger.info("Settlement alert resolved", **alert.to_dict())
        self._history.append(alert)
        self._states[key] = False

    def _cooldown(self, key: str) -> timedelta:
        return ALERT_COOLDOWNS.get(key, DEFAULT_COOLDOWN)

    def _in_cooldown(self, key: str) -> bool:
        last = self._last_alert_times.get(key)
        if last is None:
            return False
        return self._clock() - last < self._cooldown(key)

    def get_alert_states(self) -> dict[str, Any]:
        """Active alert flags and remaining cooldown per alert type, in milliseconds."""
        now = self._clock()
        cooldowns = {
            key: max(0, int((self._cooldown(key) - (now - last)).total_seconds() * 1000))
            for key, last in self._last_alert_times.items()
        }
        return {"states": dict(self._states), "cooldowns": cooldowns}

    def reset_alert_states(self) -> None:
        """Clear every alert state and cooldown.

        The next matching condition alerts immediately.
        """
        self._states = _initial_states()
        self._last_alert_times.clear()
        logger.info("Alert states and cooldowns reset")


# Global alerting instance
_alerting_service: SettlementAlertingService | None = None


def get_alerting_service() -> SettlementAlertingService:
    """Get the alerting service singleton."""
    global _alerting_service
    if _alerting_service is None:
        _alerting_service = SettlementAlertingService()
    return _alerting_service


def reset_alerting_service() -> None:
    global _alerting_service
    _alerting_service = None
