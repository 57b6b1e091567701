"""
Status System Alerting

Named alert rules evaluated against the latest metrics snapshot. Each
rule fires at most once per cooldown window. Alerts are append-only and
closed through an explicit resolve action; delivery is left to the
notification collaborators.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .performance_monitor import MetricsSnapshot

logger = logging.getLogger(__name__)


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertType(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


def alert_type_for(severity: AlertSeverity) -> AlertType:
    if severity in (AlertSeverity.CRITICAL, AlertSeverity.HIGH):
        return AlertType.ERROR
    if severity == AlertSeverity.MEDIUM:
        return AlertType.WARNING
    return AlertType.INFO


@dataclass(frozen=True)
class AlertRule:
    """Named predicate over a metrics snapshot."""

    id: str
    name: str
    condition: Callable[[MetricsSnapshot], bool]
    message: Callable[[MetricsSnapshot], str]
    severity: AlertSeverity
    cooldown_minutes: int


@dataclass
class Alert:
    """Fully-formed alert handed to notifiers."""

    id: str
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "metadata": self.metadata,
        }


def _legacy_count(metrics: MetricsSnapshot) -> int:
    return sum(metrics.legacy_tokens_seen.values()) + metrics.integrity.get(
        "legacy_statuses_found", 0
    )


def default_alert_rules(
    error_rate_threshold: float = 5.0,
    low_volume_threshold: int = 5,
    latency_p95_threshold_ms: float = 2000.0,
) -> List[AlertRule]:
    """
    Build the standard rule set.

    Args:
        error_rate_threshold: Error rate (percent) above which high_error_rate fires
        low_volume_threshold: 24h transition count below which low_transition_volume fires
        latency_p95_threshold_ms: p95 latency above which high_latency fires
    """
    return [
        AlertRule(
            id="no_recent_transitions",
            name="No Recent Transitions",
            condition=lambda m: m.transitions_24h == 0,
            message=lambda m: "No transitions in last 24 hours - system may not be active",
            severity=AlertSeverity.MEDIUM,
            cooldown_minutes=240,
        ),
        AlertRule(
            id="low_transition_volume",
            name="Low Transition Volume",
            condition=lambda m: 0 < m.transitions_24h < low_volume_threshold,
            message=lambda m: f"Low transition volume: {m.transitions_24h} transitions in 24h",
            severity=AlertSeverity.LOW,
            cooldown_minutes=480,
        ),
        AlertRule(
            id="high_error_rate",
            name="High Error Rate",
            condition=lambda m: m.error_rate > error_rate_threshold,
            message=lambda m: f"High error rate: {m.error_rate:.2f}%",
            severity=AlertSeverity.HIGH,
            cooldown_minutes=30,
        ),
        AlertRule(
            id="invalid_transitions",
            name="Invalid Transitions Detected",
            condition=lambda m: m.graph_invalid_attempts > 0
            or m.integrity.get("invalid_states", 0) > 0,
            message=lambda m: (
                f"{m.graph_invalid_attempts} transition attempts outside the status graph, "
                f"{m.integrity.get('invalid_states', 0)} records in invalid states"
            ),
            severity=AlertSeverity.HIGH,
            cooldown_minutes=30,
        ),
        AlertRule(
            id="legacy_statuses_found",
            name="Legacy Statuses Detected",
            condition=lambda m: _legacy_count(m) > 0,
            message=lambda m: f"Found {_legacy_count(m)} appointments with legacy statuses",
            severity=AlertSeverity.MEDIUM,
            cooldown_minutes=120,
        ),
        AlertRule(
            id="missing_required_fields",
            name="Missing Required Fields",
            condition=lambda m: m.integrity.get("missing_required_fields", 0) > 0,
            message=lambda m: (
                f"Found {m.integrity.get('missing_required_fields', 0)} appointments "
                "with missing required fields"
            ),
            severity=AlertSeverity.CRITICAL,
            cooldown_minutes=15,
        ),
        AlertRule(
            id="high_latency",
            name="High Transition Latency",
            condition=lambda m: m.latency_p95_ms > latency_p95_threshold_ms,
            message=lambda m: f"Transition p95 latency is {m.latency_p95_ms:.0f}ms",
            severity=AlertSeverity.HIGH,
            cooldown_minutes=30,
        ),
    ]


class AlertingSystem:
    """Evaluates alert rules and keeps the alert log."""

    def __init__(
        self,
        rules: Optional[List[AlertRule]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize alerting system.

        Args:
            rules: Alert rules (defaults to default_alert_rules())
            clock: Source of alert timestamps, injectable for tests
        """
        self.rules = list(rules) if rules is not None else default_alert_rules()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._alerts: List[Alert] = []
        self._last_fired: Dict[str, datetime] = {}
        self._last_check: Optional[datetime] = None
        self._started_at = self._clock()
        self._lock = threading.Lock()

    def check_alert_rules(self, metrics: MetricsSnapshot) -> List[Alert]:
        """
        Evaluate every rule against a metrics snapshot.

        A rule whose condition holds fires only if its cooldown has
        elapsed since it last fired. A rule that raises is logged and
        skipped.

        Returns:
            Alerts created by this evaluation
        """
        now = self._clock()
        new_alerts = []

        for rule in self.rules:
            try:
                triggered = bool(rule.condition(metrics))
            except Exception as e:
                logger.error(f"Alert rule {rule.id} failed to evaluate: {e}")
                continue
            if not triggered:
                continue

            with self._lock:
                last = self._last_fired.get(rule.id)
                if last is not None and now - last < timedelta(minutes=rule.cooldown_minutes):
                    continue

                alert = Alert(
                    id=f"{rule.id}_{uuid.uuid4().hex[:12]}",
                    type=alert_type_for(rule.severity),
                    severity=rule.severity,
                    title=rule.name,
                    message=rule.message(metrics),
                    timestamp=now,
                    metadata={"rule_id": rule.id},
                )
                self._alerts.append(alert)
                self._last_fired[rule.id] = now

            logger.warning(f"Alert fired: {alert.title} ({alert.severity.value}) - {alert.message}")
            new_alerts.append(alert)

        self._last_check = now
        return new_alerts

    def create_custom_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        """Record an alert raised outside the rule set."""
        alert = Alert(
            id=f"custom_{uuid.uuid4().hex[:12]}",
            type=alert_type,
            severity=severity,
            title=title,
            message=message,
            timestamp=self._clock(),
            metadata=metadata or {},
        )
        with self._lock:
            self._alerts.append(alert)
        return alert

    def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. Returns False when the id is unknown."""
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id:
                    if not alert.resolved:
                        alert.resolved = True
                        alert.resolved_at = self._clock()
                    return True
        return False

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return next((a for a in self._alerts if a.id == alert_id), None)

    def get_active_alerts(self) -> List[Alert]:
        with self._lock:
            return [a for a in self._alerts if not a.resolved]

    def get_all_alerts(self, limit: int = 50) -> List[Alert]:
        """Most recent alerts first."""
        with self._lock:
            ordered = sorted(self._alerts, key=lambda a: a.timestamp, reverse=True)
        return ordered[:limit]

    def get_alerts_by_severity(self, severity: AlertSeverity) -> List[Alert]:
        with self._lock:
            return [a for a in self._alerts if a.severity == severity]

    def get_health_status(self) -> Dict[str, Any]:
        """Healthy with no active alerts, unhealthy with any critical one."""
        active = self.get_active_alerts()
        critical = sum(1 for a in active if a.severity == AlertSeverity.CRITICAL)

        if critical:
            status = "unhealthy"
        elif active:
            status = "degraded"
        else:
            status = "healthy"

        now = self._clock()
        return {
            "status": status,
            "active_alerts": len(active),
            "critical_alerts": critical,
            "last_check": self._last_check.isoformat() if self._last_check else None,
            "uptime_seconds": (now - self._started_at).total_seconds(),
        }
