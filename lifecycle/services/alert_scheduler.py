"""
Alert Evaluation Background Task

Periodically compacts transition metrics, refreshes data-integrity
counts, evaluates the alert rules and hands newly fired alerts to the
configured notifiers.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..audit import AuditLogger
from .alerting import Alert, AlertingSystem
from .models import AppointmentSnapshot
from .notifications import AlertNotifier
from .performance_monitor import PerformanceMonitor
from .status_monitor import StatusMonitor

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[], Awaitable[Iterable[AppointmentSnapshot]]]


class SchedulerStatus(Enum):
    """Status of the alert scheduler."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class AlertScheduler:
    """Runs alert evaluation on a fixed interval."""

    def __init__(
        self,
        monitor: PerformanceMonitor,
        alerting: AlertingSystem,
        notifiers: Optional[List[AlertNotifier]] = None,
        interval_seconds: int = 300,
        status_monitor: Optional[StatusMonitor] = None,
        snapshot_source: Optional[SnapshotSource] = None,
        audit: Optional[AuditLogger] = None,
    ):
        """
        Initialize scheduler.

        Args:
            monitor: Performance monitor to compact and snapshot
            alerting: Alerting system holding the rules
            notifiers: Delivery adapters for fired alerts
            interval_seconds: Seconds between evaluations
            status_monitor: Optional integrity scanner
            snapshot_source: Async callable returning snapshots to scan
            audit: Audit logger for fired alerts
        """
        self.monitor = monitor
        self.alerting = alerting
        self.notifiers = list(notifiers or [])
        self.interval = interval_seconds
        self.status_monitor = status_monitor
        self.snapshot_source = snapshot_source
        self.audit = audit

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._status = SchedulerStatus.IDLE
        self._check_count = 0
        self._error_count = 0
        self._delivery_failures = 0
        self._last_check_time: Optional[float] = None
        self._last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "status": self._status.value,
            "is_running": self.is_running,
            "interval_seconds": self.interval,
            "check_count": self._check_count,
            "error_count": self._error_count,
            "delivery_failures": self._delivery_failures,
            "last_check_time": self._last_check_time,
            "last_error": self._last_error,
        }

    async def start(self):
        """Start the evaluation loop."""
        if self.is_running:
            logger.warning("Alert scheduler is already running")
            return
        if self.interval <= 0:
            logger.info("Alert scheduler disabled (interval <= 0)")
            return

        logger.info(f"Starting alert scheduler (interval: {self.interval}s)")
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        self._status = SchedulerStatus.RUNNING

    async def stop(self):
        """Stop the evaluation loop."""
        if not self.is_running:
            return

        logger.info("Stopping alert scheduler")
        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=10.0)
        except asyncio.TimeoutError:
            logger.warning("Alert scheduler did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self._status = SchedulerStatus.STOPPED

    async def check_now(self) -> List[Alert]:
        """
        Run one evaluation immediately.

        Returns:
            Alerts fired by this evaluation
        """
        self.monitor.compact()

        if self.status_monitor is not None and self.snapshot_source is not None:
            snapshots = await self.snapshot_source()
            report = self.status_monitor.scan(snapshots)
            self.monitor.set_integrity_counts(report.integrity_counts())

        metrics = self.monitor.get_metrics_snapshot()
        alerts = self.alerting.check_alert_rules(metrics)

        for alert in alerts:
            if self.audit:
                self.audit.log_alert_event("alert_fired", alert.to_dict())
            await self._deliver(alert)

        self._check_count += 1
        self._last_check_time = time.time()
        return alerts

    async def _deliver(self, alert: Alert):
        for notifier in self.notifiers:
            try:
                await notifier.send(alert)
            except Exception as e:
                self._delivery_failures += 1
                logger.error(
                    f"Failed to deliver alert {alert.id} via {type(notifier).__name__}: {e}"
                )

    async def _loop(self):
        logger.info("Alert scheduler loop started")

        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                    break
                except asyncio.TimeoutError:
                    pass

                await self.check_now()

            except asyncio.CancelledError:
                logger.info("Alert scheduler loop cancelled")
                break
            except Exception as e:
                self._error_count += 1
                self._last_error = str(e)
                logger.error(f"Unexpected error in alert scheduler loop: {e}")

        logger.info("Alert scheduler loop stopped")
