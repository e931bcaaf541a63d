"""Settlement metrics.

In-process counters for settlement and Stripe verification attempts,
running averages, per-day statistics and the health report derived from
them and from the pending payment table.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Literal
from uuid import uuid4

import structlog

from settlement.domain.base import utc_now
from settlement.domain.state_machines import PaymentStatus
from settlement.infrastructure.repositories import (
    PendingPaymentRepository,
    get_payment_repository,
)

logger = structlog.get_logger()

HealthStatus = Literal["healthy", "warning", "critical"]


# ============================================================================
# Thresholds and Counters
# ============================================================================


@dataclass(frozen=True)
class AlertThresholds:
    """Limits beyond which the settlement pipeline is considered unhealthy."""

    error_rate: float = 0.05
    consecutive_failures: int = 3
    avg_settlement_time_ms: float = 10000
    daily_failure_threshold: int = 10
    min_attempts_for_error_rate: int = 10
    max_pending_records: int = 100
    stuck_payment_hours: float = 24


@dataclass
class DailyStats:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    total_time_ms: float = 0

    def to_dict(self, day: str) -> dict[str, Any]:
        return {
            "date": day,
            "attempts": self.attempts,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.successes / self.attempts if self.attempts else 0,
            "average_time_ms": self.total_time_ms / self.attempts if self.attempts else 0,
        }


@dataclass
class _Counters:
    settlement_attempts: int = 0
    settlement_successes: int = 0
    settlement_failures: int = 0
    api_verification_attempts: int = 0
    api_verification_successes: int = 0
    api_verification_failures: int = 0
    average_settlement_time_ms: float = 0
    consecutive_failures: int = 0
    last_failure_time: datetime | None = None
    last_reset_time: datetime = field(default_factory=utc_now)
    daily: dict[str, DailyStats] = field(default_factory=dict)


# ============================================================================
# Metrics Service
# ============================================================================


class SettlementMetricsService:
    """Tracks settlement outcomes and reports on pipeline health."""

    def __init__(
        self,
        payment_repo: PendingPaymentRepository | None = None,
        thresholds: AlertThresholds | None = None,
    ) -> None:
        self.payment_repo = payment_repo or get_payment_repository()
        self.thresholds = thresholds or AlertThresholds()
        self._counters = _Counters()

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record_settlement_attempt(self, payment_intent_id: str, order_code: str) -> str:
        """Count an attempt and return an id correlating its outcome."""
        attempt_id = f"{payment_intent_id}_{uuid4().hex[:12]}"
        self._counters.settlement_attempts += 1
        logger.info(
            "Settlement attempt started",
            attempt_id=attempt_id,
            payment_intent_id=payment_intent_id,
            order_code=order_code,
        )
        return attempt_id

    def record_settlement_success(
        self,
        attempt_id: str,
        payment_intent_id: str,
        order_code: str,
        duration_ms: float,
        payment_id: str | None = None,
    ) -> None:
        """Count a successful settlement.

        Resets the consecutive failure streak and folds the duration into
        the running average.

        Args:
            attempt_id: Id returned by ``record_settlement_attempt``.
            payment_intent_id: Stripe PaymentIntent id.
            order_code: Order the payment settled.
            duration_ms: Time the attempt took.
            payment_id: Order payment id, or ``"existing"`` for an earlier settlement.
        """
        c = self._counters
        c.settlement_successes += 1
        c.consecutive_failures = 0
        # Running average over successful settlements only
        c.average_settlement_time_ms += (
            duration_ms - c.average_settlement_time_ms
        ) / c.settlement_successes
        self._update_daily(success=True, duration_ms=duration_ms)
        logger.info(
            "Settlement succeeded",
            attempt_id=attempt_id,
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            duration_ms=round(duration_ms, 1),
            payment_id=payment_id,
            success_rate=round(self.success_rate, 4),
        )

    def record_settlement_failure(
        self,
        attempt_id: str,
        payment_intent_id: str,
        order_code: str,
        error: str,
        duration_ms: float,
        error_category: str | None = None,
    ) -> None:
        """Count a failed settlement and log any alert condition it triggers.

        Args:
            attempt_id: Id returned by ``record_settlement_attempt``.
            payment_intent_id: Stripe PaymentIntent id.
            order_code: Order the payment belongs to.
            error: Failure description.
            duration_ms: Time the attempt took.
            error_category: Failure stage such as ``api`` or ``database``.
        """
        c = self._counters
        c.settlement_failures += 1
        c.consecutive_failures += 1
        c.last_failure_time = utc_now()
        self._update_daily(success=False, duration_ms=duration_ms)
        logger.error(
            "Settlement failed",
            attempt_id=attempt_id,
            payment_intent_id=payment_intent_id,
            order_code=order_code,
            duration_ms=round(duration_ms, 1),
            error=error,
            error_category=error_category or "unknown",
        )
        self._log_alert_conditions()

    def record_api_verification_attempt(self, payment_intent_id: str) -> None:
        """Count a Stripe PaymentIntent retrieval."""
        self._counters.api_verification_attempts += 1
        logger.debug("Stripe verification attempt", payment_intent_id=payment_intent_id)

    def record_api_verification_success(
        self, payment_intent_id: str, status: str, duration_ms: float
    ) -> None:
        """Count a retrieval whose PaymentIntent passed every check.

        Args:
            payment_intent_id: Stripe PaymentIntent id.
            status: Stripe status of the PaymentIntent.
            duration_ms: Time the verification took.
        """
        self._counters.api_verification_successes += 1
        logger.info(
            "Stripe verification succeeded",
            payment_intent_id=payment_intent_id,
            status=status,
            duration_ms=round(duration_ms, 1),
        )

    def record_api_verification_failure(
        self, payment_intent_id: str, error: str, duration_ms: float
    ) -> None:
        """Count a failed retrieval or a PaymentIntent that failed a check.

        Args:
            payment_intent_id: Stripe PaymentIntent id.
            error: Failure description.
            duration_ms: Time the verification took.
        """
        self._counters.api_verification_failures += 1
        logger.error(
            "Stripe verification failed",
            payment_intent_id=payment_intent_id,
            error=error,
            duration_ms=round(duration_ms, 1),
        )

    def _update_daily(self, success: bool, duration_ms: float) -> None:
        day = utc_now().date().isoformat()
        stats = self._counters.daily.setdefault(day, DailyStats())
        stats.attempts += 1
        stats.total_time_ms += duration_ms
        if success:
            stats.successes += 1
        else:
            stats.failures += 1

    def _log_alert_conditions(self) -> None:
        alerts = self._alerts()
        c = self._counters
        if alerts["consecutive_failures"]:
            logger.error(
                "Consecutive settlement failures",
                consecutive_failures=c.consecutive_failures,
                last_failure_time=c.last_failure_time.isoformat() if c.last_failure_time else None,
            )
        if alerts["high_error_rate"] and c.settlement_attempts >= self.thresholds.min_attempts_for_error_rate:
            logger.error(
                "High settlement error rate",
                error_rate=round(1 - self.success_rate, 4),
                failures=c.settlement_failures,
                attempts=c.settlement_attempts,
            )
        if alerts["slow_settlement"]:
            logger.warning(
                "Slow settlement",
                average_time_ms=round(c.average_settlement_time_ms),
                threshold_ms=self.thresholds.avg_settlement_time_ms,
            )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def success_rate(self) -> float:
        """Settlement success rate; 1.0 before any attempt."""
        c = self._counters
        if c.settlement_attempts == 0:
            return 1.0
        return c.settlement_successes / c.settlement_attempts

    @property
    def api_success_rate(self) -> float:
        c = self._counters
        if c.api_verification_attempts == 0:
            return 1.0
        return c.api_verification_successes / c.api_verification_attempts

    @property
    def consecutive_failures(self) -> int:
        return self._counters.consecutive_failures

    @property
    def last_failure_time(self) -> datetime | None:
        return self._counters.last_failure_time

    def _alerts(self) -> dict[str, bool]:
        c = self._counters
        return {
            "high_error_rate": self.success_rate < 1 - self.thresholds.error_rate,
            "consecutive_failures": c.consecutive_failures >= self.thresholds.consecutive_failures,
            "slow_settlement": c.average_settlement_time_ms > self.thresholds.avg_settlement_time_ms,
        }

    def get_metrics_summary(self) -> dict[str, Any]:
        """Snapshot of all counters and alert flags."""
        c = self._counters
        return {
            "settlement_stats": {
                "attempts": c.settlement_attempts,
                "successes": c.settlement_successes,
                "failures": c.settlement_failures,
                "success_rate": self.success_rate,
                "consecutive_failures": c.consecutive_failures,
                "average_time_ms": c.average_settlement_time_ms,
            },
            "api_verification_stats": {
                "attempts": c.api_verification_attempts,
                "successes": c.api_verification_successes,
                "failures": c.api_verification_failures,
                "success_rate": self.api_success_rate,
            },
            "alerts": self._alerts(),
            "last_failure_time": c.last_failure_time.isoformat() if c.last_failure_time else None,
            "last_reset_time": c.last_reset_time.isoformat(),
        }

    def get_daily_stats(self, day: date | str | None = None) -> dict[str, Any] | None:
        """Statistics for one UTC day (today by default), or None if nothing was recorded."""
        if day is None:
            key = utc_now().date().isoformat()
        elif isinstance(day, date):
            key = day.isoformat()
        else:
            key = day
        stats = self._counters.daily.get(key)
        if stats is None:
            return None
        return stats.to_dict(key)

    def get_database_stats(self) -> dict[str, Any]:
        """Counts over the pending payment table."""
        payments = self.payment_repo.list_all()
        by_status: dict[str, int] = {}
        for payment in payments:
            by_status[payment.status.value] = by_status.get(payment.status.value, 0) + 1

        pending = [p for p in payments if p.status == PaymentStatus.PENDING]
        oldest = min((p.created_at for p in pending), default=None)
        since = utc_now() - timedelta(hours=24)

        return {
            "total_pending_payments": len(payments),
            "pending_by_status": by_status,
            "oldest_pending_payment": oldest,
            "payments_last_24_hours": sum(1 for p in payments if p.created_at >= since),
        }

    def reset_metrics(self) -> None:
        self._counters = _Counters()
        logger.info("Settlement metrics reset")

    def generate_health_report(self) -> dict[str, Any]:
        """Assess pipeline health.

        Consecutive failures make the report critical. A high error rate
        (after enough attempts), slow settlements, a large backlog or a
        stuck pending payment make it a warning.

        Returns:
            Dictionary with status, summary, details and recommendations.
        """
        metrics = self.get_metrics_summary()
        db_stats = self.get_database_stats()
        stats = metrics["settlement_stats"]
        alerts = metrics["alerts"]
        status: HealthStatus = "healthy"
        recommendations: list[str] = []

        def warn(message: str) -> None:
            nonlocal status
            if status != "critical":
                status = "warning"
            recommendations.append(message)

        if alerts["consecutive_failures"]:
            status = "critical"
            recommendations.append(
                f"{stats['consecutive_failures']} consecutive settlement failures detected. "
                "Investigate immediately."
            )
        if alerts["high_error_rate"] and stats["attempts"] > self.thresholds.min_attempts_for_error_rate:
            warn(
                f"High error rate: {(1 - stats['success_rate']) * 100:.1f}%. Review recent failures."
            )
        if alerts["slow_settlement"]:
            warn(
                f"Slow settlement times: {stats['average_time_ms']:.0f}ms average. "
                "Check Stripe API performance."
            )
        if db_stats["total_pending_payments"] > self.thresholds.max_pending_records:
            warn(
                f"High number of pending payments: {db_stats['total_pending_payments']}. "
                "Review settlement process."
            )
        oldest = db_stats["oldest_pending_payment"]
        if oldest is not None:
            age_hours = (utc_now() - oldest).total_seconds() / 3600
            if age_hours > self.thresholds.stuck_payment_hours:
                warn(
                    f"Oldest pending payment is {age_hours:.1f} hours old. "
                    "Investigate stuck payments."
                )

        if not recommendations:
            recommendations.append("All metrics are within normal ranges.")

        summary = {
            "healthy": "Stripe settlement system is operating normally",
            "warning": "Stripe settlement system has some issues that need attention",
            "critical": "Stripe settlement system has critical issues requiring immediate attention",
        }[status]

        return {
            "status": status,
            "summary": summary,
            "details": {
                "metrics": metrics,
                "database": {
                    **db_stats,
                    "oldest_pending_payment": oldest.isoformat() if oldest else None,
                },
                "timestamp": utc_now().isoformat(),
            },
            "recommendations": recommendations,
        }


# Global metrics instance
_metrics_service: SettlementMetricsService | None = None


def get_metrics_service() -> SettlementMetricsService:
    """Get the metrics service singleton."""
    global _metrics_service
    if _metrics_service is None:
        _metrics_service = SettlementMetricsService()
    return _metrics_service


def reset_metrics_service() -> None:
    """Reset the metrics singleton (for testing)."""
    global _metrics_service
    _metrics_service = None
