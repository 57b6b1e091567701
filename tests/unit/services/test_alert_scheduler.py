"""
Unit tests for AlertScheduler.

Tests one-shot evaluation, integrity scan wiring, notifier failure
handling and background loop start/stop.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from lifecycle.services.alert_scheduler import AlertScheduler, SchedulerStatus
from lifecycle.services.alerting import AlertingSystem
from lifecycle.services.models import AppointmentSnapshot
from lifecycle.services.performance_monitor import PerformanceMonitor
from lifecycle.services.status_monitor import StatusMonitor


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, alert):
        self.sent.append(alert)


class TestAlertScheduler:
    """Test AlertScheduler functionality."""

    @pytest.fixture
    def monitor(self):
        return PerformanceMonitor()

    @pytest.fixture
    def alerting(self):
        return AlertingSystem()

    @pytest.fixture
    def notifier(self):
        return RecordingNotifier()

    @pytest.mark.asyncio
    async def test_check_now_fires_and_delivers(self, monitor, alerting, notifier):
        """Test an idle system raises the no-recent-transitions alert."""
        audit = MagicMock()
        scheduler = AlertScheduler(monitor, alerting, [notifier], audit=audit)

        fired = await scheduler.check_now()

        assert [a.metadata["rule_id"] for a in fired] == ["no_recent_transitions"]
        assert notifier.sent == fired
        audit.log_alert_event.assert_called_once()
        assert scheduler.stats["check_count"] == 1

    @pytest.mark.asyncio
    async def test_second_check_within_cooldown_is_silent(self, monitor, alerting, notifier):
        scheduler = AlertScheduler(monitor, alerting, [notifier])
        await scheduler.check_now()
        assert await scheduler.check_now() == []
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_integrity_scan_feeds_rules(self, monitor, alerting, notifier):
        snapshots = [
            AppointmentSnapshot(
                appointment_id="apt-1",
                raw_status="upcoming",
                requester_id="req-1",
                payment_status="completed",
            )
        ]
        scheduler = AlertScheduler(
            monitor,
            alerting,
            [notifier],
            status_monitor=StatusMonitor(),
            snapshot_source=AsyncMock(return_value=snapshots),
        )

        fired = await scheduler.check_now()

        assert "legacy_statuses_found" in [a.metadata["rule_id"] for a in fired]
        assert monitor.get_metrics_snapshot().integrity["legacy_statuses_found"] == 1

    @pytest.mark.asyncio
    async def test_notifier_failure_is_counted(self, monitor, alerting, notifier):
        broken = MagicMock()
        broken.send = AsyncMock(side_effect=RuntimeError("webhook down"))
        scheduler = AlertScheduler(monitor, alerting, [broken, notifier])

        await scheduler.check_now()

        assert len(notifier.sent) == 1
        assert scheduler.stats["delivery_failures"] == 1

    @pytest.mark.asyncio
    async def test_disabled_when_interval_not_positive(self, monitor, alerting):
        scheduler = AlertScheduler(monitor, alerting, interval_seconds=0)
        await scheduler.start()
        assert not scheduler.is_running
        assert scheduler.stats["status"] == SchedulerStatus.IDLE.value

    @pytest.mark.asyncio
    async def test_loop_runs_and_stops(self, monitor, alerting, notifier):
        scheduler = AlertScheduler(monitor, alerting, [notifier], interval_seconds=0.01)
        await scheduler.start()
        assert scheduler.is_running

        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.stats["status"] == "stopped"
        assert scheduler.stats["check_count"] >= 1
        assert len(notifier.sent) == 1
