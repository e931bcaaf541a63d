"""Tests for settlement alerting."""

from datetime import timedelta

import pytest

from settlement.application.alerting_service import SettlementAlertingService
from settlement.application.metrics_service import AlertThresholds, SettlementMetricsService
from settlement.domain.base import utc_now
from settlement.domain.entities import PendingPayment
from settlement.infrastructure.repositories import PendingPaymentRepository


class FakeClock:
    def __init__(self) -> None:
        self.now = utc_now()

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repo() -> PendingPaymentRepository:
    return PendingPaymentRepository()


@pytest.fixture
def metrics(repo) -> SettlementMetricsService:
    return SettlementMetricsService(payment_repo=repo)


@pytest.fixture
def alerting(metrics, clock) -> SettlementAlertingService:
    return SettlementAlertingService(metrics=metrics, clock=clock)


def record(metrics: SettlementMetricsService, successes: int = 0, failures: int = 0) -> None:
    for _ in range(successes):
        attempt = metrics.record_settlement_attempt("pi_1", "ORD-1")
        metrics.record_settlement_success(attempt, "pi_1", "ORD-1", 100)
    for _ in range(failures):
        attempt = metrics.record_settlement_attempt("pi_1", "ORD-1")
        metrics.record_settlement_failure(attempt, "pi_1", "ORD-1", "boom", 100)


class TestCheckAndSendAlerts:
    """Tests for alert evaluation."""

    @pytest.mark.asyncio
    async def test_quiet_when_healthy(self, alerting, metrics) -> None:
        record(metrics, successes=5)

        assert await alerting.check_and_send_alerts() == []

    @pytest.mark.asyncio
    async def test_consecutive_failures(self, alerting, metrics) -> None:
        """Three failures in a row raise a critical alert and a system alert."""
        record(metrics, failures=3)

        alerts = await alerting.check_and_send_alerts()

        types = [a.type for a in alerts]
        assert "consecutive_failures" in types
        assert "critical_system" in types
        failure_alert = next(a for a in alerts if a.type == "consecutive_failures")
        assert failure_alert.severity == "critical"
        assert failure_alert.details == {"consecutive_failures": 3, "threshold": 3}
        assert alerting.get_alert_states()["states"]["consecutive_failures"] is True

    @pytest.mark.asyncio
    async def test_cooldown_suppresses_repeats(self, alerting, metrics, clock) -> None:
        record(metrics, failures=3)
        await alerting.check_and_send_alerts()

        clock.advance(minutes=4)
        assert await alerting.check_and_send_alerts() == []

        clock.advance(minutes=2)
        repeated = [a.type for a in await alerting.check_and_send_alerts()]
        assert "consecutive_failures" in repeated

    @pytest.mark.asyncio
    async def test_recovery_notice(self, alerting, metrics) -> None:
        record(metrics, failures=3)
        await alerting.check_and_send_alerts()
        record(metrics, successes=1)

        alerts = await alerting.check_and_send_alerts()

        recovered = next(a for a in alerts if a.type == "consecutive_failures_resolved")
        assert recovered.recovery
        assert recovered.severity == "info"
        assert alerting.get_alert_states()["states"]["consecutive_failures"] is False

    @pytest.mark.asyncio
    async def test_high_error_rate_needs_minimum_attempts(self, alerting, metrics) -> None:
        record(metrics, successes=5, failures=1)
        assert await alerting.check_and_send_alerts() == []

        record(metrics, successes=4)
        record(metrics, failures=1)
        alerts = await alerting.check_and_send_alerts()

        error_rate = next(a for a in alerts if a.type == "high_error_rate")
        assert error_rate.details["total_attempts"] == 11
        assert error_rate.details["failed_attempts"] == 2

    @pytest.mark.asyncio
    async def test_slow_settlement(self, alerting, metrics) -> None:
        attempt = metrics.record_settlement_attempt("pi_1", "ORD-1")
        metrics.record_settlement_success(attempt, "pi_1", "ORD-1", 12000)

        alerts = await alerting.check_and_send_alerts()

        assert alerts[0].type == "slow_settlement"
        assert alerts[0].message == "Average settlement time is 12.0 seconds (threshold: 10 seconds)"

    @pytest.mark.asyncio
    async def test_stuck_payments_and_recovery(self, alerting, repo) -> None:
        stuck = PendingPayment.create("pi_1", "order-1", "ORD-1", 1000)
        stuck.created_at = utc_now() - timedelta(hours=30)
        repo.save(stuck)

        alerts = await alerting.check_and_send_alerts()
        assert [a.type for a in alerts] == ["stuck_payments"]

        stuck.settle()
        alerts = await alerting.check_and_send_alerts()
        assert [a.type for a in alerts] == ["stuck_payments_resolved"]

    @pytest.mark.asyncio
    async def test_high_volume(self, repo, clock) -> None:
        metrics = SettlementMetricsService(
            payment_repo=repo, thresholds=AlertThresholds(max_pending_records=1)
        )
        alerting = SettlementAlertingService(metrics=metrics, clock=clock)
        for n in range(2):
            repo.save(PendingPayment.create(f"pi_{n}", f"order-{n}", f"ORD-{n}", 1000))

        alerts = await alerting.check_and_send_alerts()

        assert [a.type for a in alerts] == ["high_volume"]
        assert alerts[0].message == "2 pending payments detected (threshold: 1)"

    @pytest.mark.asyncio
    async def test_errors_are_logged_not_raised(self, alerting, metrics, monkeypatch) -> None:
        def explode():
            raise RuntimeError("metrics unavailable")

        monkeypatch.setattr(metrics, "generate_health_report", explode)

        assert await alerting.check_and_send_alerts() == []


class TestAlertStates:
    @pytest.mark.asyncio
    async def test_cooldowns_and_reset(self, alerting, metrics, clock) -> None:
        record(metrics, failures=3)
        await alerting.check_and_send_alerts()
        clock.advance(minutes=1)

        states = alerting.get_alert_states()
        assert states["cooldowns"]["consecutive_failures"] == 4 * 60 * 1000

        alerting.reset_alert_states()

        states = alerting.get_alert_states()
        assert states["cooldowns"] == {}
        assert not any(states["states"].values())
        assert len(alerting.history) == 2

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, metrics, clock) -> None:
        alerting = SettlementAlertingService(metrics=metrics, clock=clock, history_size=3)
        record(metrics, failures=3)
        for _ in range(3):
            await alerting.check_and_send_alerts()
            clock.advance(hours=2)

        assert len(alerting.history) == 3
