"""
Status Health Scanner

Scans a set of appointment snapshots supplied by the host and reports
status distribution, leftover legacy tokens and records whose fields
contradict their status.
"""

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import AppointmentSnapshot
from .status_mapping import CanonicalStatus, is_legacy_status
from .status_resolver import StatusResolver

logger = logging.getLogger(__name__)


@dataclass
class StatusHealthReport:
    """Result of one scan."""

    scanned_at: datetime
    total_appointments: int = 0
    status_distribution: Dict[str, int] = field(default_factory=dict)
    resolved_distribution: Dict[str, int] = field(default_factory=dict)
    legacy_statuses_found: int = 0
    invalid_states: int = 0
    missing_required_fields: int = 0
    transitions_24h: int = 0
    top_transitions: List[Dict[str, Any]] = field(default_factory=list)
    flagged_appointments: Dict[str, List[str]] = field(default_factory=dict)

    def integrity_counts(self) -> Dict[str, int]:
        """Counts consumed by the alert rules."""
        return {
            "legacy_statuses_found": self.legacy_statuses_found,
            "invalid_states": self.invalid_states,
            "missing_required_fields": self.missing_required_fields,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["scanned_at"] = self.scanned_at.isoformat()
        return data


def _invalid_state_reasons(snapshot: AppointmentSnapshot) -> List[str]:
    raw = snapshot.raw_status
    payment_status = (snapshot.payment_status or "").lower()
    reasons = []

    if raw == CanonicalStatus.AWAITING_PAYMENT.value and payment_status == "completed":
        reasons.append("unpaid_with_completed_payment")
    if raw == CanonicalStatus.AWAITING_MATCH.value and payment_status == "pending":
        reasons.append("matching_with_pending_payment")
    if raw == CanonicalStatus.CONFIRMED.value and snapshot.scheduled_at is None:
        reasons.append("confirmed_without_date")
    if raw == CanonicalStatus.AWAITING_SCHEDULING.value and not snapshot.resource_id:
        reasons.append("scheduling_without_operator")

    return reasons


def _missing_fields(snapshot: AppointmentSnapshot) -> List[str]:
    missing = []
    if not snapshot.raw_status:
        missing.append("raw_status")
    if not snapshot.payment_status:
        missing.append("payment_status")
    if not snapshot.requester_id:
        missing.append("requester_id")
    return missing


class StatusMonitor:
    """Scans appointment snapshots for status-system health."""

    def __init__(
        self,
        resolver: Optional[StatusResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.resolver = resolver or StatusResolver()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.last_report: Optional[StatusHealthReport] = None

    def scan(self, snapshots: Iterable[AppointmentSnapshot]) -> StatusHealthReport:
        """
        Scan snapshots and keep the report as ``last_report``.

        Args:
            snapshots: Appointments to inspect

        Returns:
            StatusHealthReport
        """
        now = self._clock()
        since = now - timedelta(hours=24)

        raw_counts = Counter()
        resolved_counts = Counter()
        transition_counts = Counter()
        report = StatusHealthReport(scanned_at=now)

        for snapshot in snapshots:
            report.total_appointments += 1
            raw_counts[snapshot.raw_status or "<missing>"] += 1
            resolved_counts[str(self.resolver.resolve(snapshot)) or "<missing>"] += 1

            flags = []
            if is_legacy_status(snapshot.raw_status):
                report.legacy_statuses_found += 1
                flags.append("legacy_status")

            reasons = _invalid_state_reasons(snapshot)
            if reasons:
                report.invalid_states += 1
                flags.extend(reasons)

            missing = _missing_fields(snapshot)
            if missing:
                report.missing_required_fields += 1
                flags.extend(f"missing_{name}" for name in missing)

            if flags:
                report.flagged_appointments[snapshot.appointment_id] = flags

            for entry in snapshot.history:
                transition_counts[(entry.from_status, entry.to_status)] += 1
                if entry.committed_at >= since:
                    report.transitions_24h += 1

        report.status_distribution = dict(raw_counts.most_common())
        report.resolved_distribution = dict(resolved_counts.most_common())
        report.top_transitions = [
            {"from": source, "to": target, "count": count}
            for (source, target), count in transition_counts.most_common(10)
        ]

        logger.info(
            f"Status scan: {report.total_appointments} appointments, "
            f"{report.legacy_statuses_found} legacy, {report.invalid_states} invalid, "
            f"{report.missing_required_fields} missing fields"
        )

        self.last_report = report
        return report

    def get_detailed_status_report(
        self, report: Optional[StatusHealthReport] = None
    ) -> Dict[str, Any]:
        """Report with human-readable alerts and recommendations."""
        report = report or self.last_report
        if report is None:
            return {"summary": None, "alerts": ["No scan has run yet"], "recommendations": []}

        alerts = []
        if report.legacy_statuses_found:
            alerts.append(
                f"Found {report.legacy_statuses_found} appointments with legacy statuses"
            )
        if report.invalid_states:
            alerts.append(f"Found {report.invalid_states} appointments in invalid states")
        if report.missing_required_fields:
            alerts.append(
                f"Found {report.missing_required_fields} appointments with missing required fields"
            )
        if not alerts:
            alerts.append("All systems healthy")

        recommendations = []
        if report.legacy_statuses_found:
            recommendations.append("Run a migration to convert legacy statuses")
        if report.invalid_states:
            recommendations.append("Review and fix appointments in invalid states")
        if report.transitions_24h < 10:
            recommendations.append("Low transition volume - verify system is being used")

        return {
            "timestamp": report.scanned_at.isoformat(),
            "summary": {
                "total_appointments": report.total_appointments,
                "last_24_hours_transitions": report.transitions_24h,
            },
            "status_distribution": report.status_distribution,
            "top_transitions": report.top_transitions,
            "alerts": alerts,
            "recommendations": recommendations,
        }
