"""
Transition Performance Monitor

Records per-transition timing and outcome, aggregates latency,
throughput and error metrics over a rolling window, and periodically
compacts stale samples. Safe for concurrent writers.
"""

import logging
import math
import threading
import time
import uuid
from collections import Counter, defaultdict, deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600


class TransitionOutcome(Enum):
    """Outcome of a timed transition attempt."""

    SUCCESS = "success"
    GRAPH = "graph"
    STRUCTURAL = "structural"
    IMMUTABILITY = "immutability"
    AUTHORIZATION = "authorization"
    STALE_STATE = "stale_state"
    ERROR = "error"

    @property
    def is_failure(self) -> bool:
        return self is not TransitionOutcome.SUCCESS


@dataclass(frozen=True)
class TransitionTiming:
    """Handle returned when a transition attempt starts."""

    timing_id: str
    appointment_id: str
    started_at: float
    from_status: Optional[str] = None
    target_status: Optional[str] = None


@dataclass(frozen=True)
class _CompletedTiming:
    started_at: float
    duration_ms: float
    outcome: TransitionOutcome


@dataclass
class MetricsSnapshot:
    """Point-in-time view of aggregated transition metrics."""

    generated_at: float
    uptime_seconds: float
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_max_ms: float = 0.0
    transitions_per_minute: int = 0
    transitions_per_hour: int = 0
    peak_hourly_rate: int = 0
    transitions_24h: int = 0
    failed_transitions_24h: int = 0
    errors_by_category: Dict[str, int] = field(default_factory=dict)
    total_errors: int = 0
    error_rate: float = 0.0
    active_transitions: int = 0
    graph_invalid_attempts: int = 0
    legacy_tokens_seen: Dict[str, int] = field(default_factory=dict)
    integrity: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def percentile(sorted_values: List[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list (0 when empty)."""
    if not sorted_values:
        return 0.0
    index = math.ceil((pct / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, index)]


class PerformanceMonitor:
    """Thread-safe store of transition timings and outcomes."""

    def __init__(
        self,
        latency_window_minutes: int = 60,
        retention_hours: int = 24,
        compaction_interval_seconds: int = 300,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize monitor.

        Args:
            latency_window_minutes: Window for latency and error rate
            retention_hours: How long hourly transition counts are kept
            compaction_interval_seconds: Minimum time between automatic compactions
            clock: Epoch-seconds clock, injectable for tests
        """
        self.latency_window = latency_window_minutes * 60
        # Completed timings also feed the hourly throughput figure.
        self._timing_retention = max(self.latency_window, HOUR_SECONDS)
        self.retention = retention_hours * 3600
        self.compaction_interval = compaction_interval_seconds
        self._clock = clock or time.time

        self._lock = threading.Lock()
        self._active: Dict[str, TransitionTiming] = {}
        self._completed: Deque[_CompletedTiming] = deque()
        self._errors: Deque[Tuple[float, str]] = deque()
        self._legacy_tokens: Deque[Tuple[float, str]] = deque()
        self._hourly_success: Dict[int, int] = defaultdict(int)
        self._hourly_failed: Dict[int, int] = defaultdict(int)
        self._integrity: Dict[str, int] = {}

        self._started_at = self._clock()
        self._last_compaction = self._started_at

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def start_transition(
        self,
        appointment_id: str,
        from_status: Optional[str] = None,
        target_status: Optional[str] = None,
    ) -> TransitionTiming:
        """Open a timing handle at the start of validation."""
        timing = TransitionTiming(
            timing_id=uuid.uuid4().hex,
            appointment_id=appointment_id,
            started_at=self._clock(),
            from_status=from_status,
            target_status=target_status,
        )
        with self._lock:
            self._active[timing.timing_id] = timing
        return timing

    def record_transition_outcome(
        self, timing: TransitionTiming, outcome: Union[TransitionOutcome, str]
    ) -> None:
        """
        Close a timing handle with its outcome.

        Args:
            timing: Handle from start_transition
            outcome: SUCCESS or the failure category
        """
        outcome = TransitionOutcome(outcome)
        now = self._clock()

        with self._lock:
            if self._active.pop(timing.timing_id, None) is None:
                logger.warning(
                    f"Ignoring outcome for unknown or closed timing {timing.timing_id}"
                )
                return

            duration_ms = max(0.0, (now - timing.started_at) * 1000)
            self._completed.append(
                _CompletedTiming(timing.started_at, duration_ms, outcome)
            )

            hour = int(now // 3600)
            if outcome.is_failure:
                self._hourly_failed[hour] += 1
                self._errors.append((now, outcome.value))
            else:
                self._hourly_success[hour] += 1

            due = now - self._last_compaction >= self.compaction_interval

        if due:
            self.compact()

    def record_error(self, category: str) -> None:
        """Record an error outside the validation outcome (history, event handlers)."""
        with self._lock:
            self._errors.append((self._clock(), category))

    def record_legacy_token(self, token: str) -> None:
        """Note that a deprecated status token was read from storage."""
        with self._lock:
            self._legacy_tokens.append((self._clock(), token))

    def set_integrity_counts(self, counts: Dict[str, int]) -> None:
        """Attach the latest data-integrity scan counts to future snapshots."""
        with self._lock:
            self._integrity = dict(counts)

    def compact(self) -> Dict[str, int]:
        """
        Drop samples older than their retention windows.

        Returns:
            Number of removed items per store
        """
        now = self._clock()
        window_start = now - self.latency_window
        timing_cutoff = now - self._timing_retention
        oldest_hour = int((now - self.retention) // 3600)
        removed = Counter()

        with self._lock:
            while self._completed and self._completed[0].started_at <= timing_cutoff:
                self._completed.popleft()
                removed["timings"] += 1
            for store, name in ((self._errors, "errors"), (self._legacy_tokens, "legacy_tokens")):
                while store and store[0][0] <= window_start:
                    store.popleft()
                    removed[name] += 1
            for buckets in (self._hourly_success, self._hourly_failed):
                for hour in [h for h in buckets if h < oldest_hour]:
                    del buckets[hour]
                    removed["hourly_buckets"] += 1
            for timing_id, timing in list(self._active.items()):
                if timing.started_at <= window_start:
                    del self._active[timing_id]
                    removed["abandoned_timings"] += 1
            self._last_compaction = now

        if removed.get("abandoned_timings"):
            logger.warning(
                f"Dropped {removed['abandoned_timings']} transition timings that never completed"
            )
        logger.debug(f"Metrics compaction removed {dict(removed)}")
        return dict(removed)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def get_metrics_snapshot(self) -> MetricsSnapshot:
        """Aggregate the current metrics. Eventually consistent with writers."""
        now = self._clock()
        window_start = now - self.latency_window
        minute_start = now - 60
        hour_start = now - HOUR_SECONDS
        oldest_hour = int((now - self.retention) // 3600)

        with self._lock:
            recent = list(self._completed)
            errors = [category for ts, category in self._errors if ts > window_start]
            legacy = [token for ts, token in self._legacy_tokens if ts > window_start]
            success_24h = sum(
                count for hour, count in self._hourly_success.items() if hour >= oldest_hour
            )
            failed_24h = sum(
                count for hour, count in self._hourly_failed.items() if hour >= oldest_hour
            )
            hourly_totals = Counter(self._hourly_success)
            hourly_totals.update(self._hourly_failed)
            active = len(self._active)
            integrity = dict(self._integrity)

        completed = [t for t in recent if t.started_at > window_start]
        latencies = sorted(
            t.duration_ms for t in completed if t.outcome is TransitionOutcome.SUCCESS
        )
        failures = sum(1 for t in completed if t.outcome.is_failure)
        errors_by_category = dict(Counter(errors))

        return MetricsSnapshot(
            generated_at=now,
            uptime_seconds=now - self._started_at,
            latency_avg_ms=sum(latencies) / len(latencies) if latencies else 0.0,
            latency_p50_ms=percentile(latencies, 50),
            latency_p95_ms=percentile(latencies, 95),
            latency_p99_ms=percentile(latencies, 99),
            latency_max_ms=latencies[-1] if latencies else 0.0,
            transitions_per_minute=sum(1 for t in recent if t.started_at > minute_start),
            transitions_per_hour=sum(1 for t in recent if t.started_at > hour_start),
            peak_hourly_rate=max(hourly_totals.values(), default=0),
            transitions_24h=success_24h,
            failed_transitions_24h=failed_24h,
            errors_by_category=errors_by_category,
            total_errors=len(errors),
            error_rate=(failures / len(completed) * 100) if completed else 0.0,
            active_transitions=active,
            graph_invalid_attempts=errors_by_category.get(TransitionOutcome.GRAPH.value, 0),
            legacy_tokens_seen=dict(Counter(legacy)),
            integrity=integrity,
        )

    def is_healthy(self) -> Dict[str, Any]:
        """Performance health check."""
        metrics = self.get_metrics_snapshot()
        issues = []

        if metrics.latency_p95_ms > 2000:
            issues.append("High latency (>2s)")
        if metrics.error_rate > 10:
            issues.append("High error rate (>10%)")

        return {"healthy": not issues, "issues": issues}

    def get_detailed_report(self) -> Dict[str, Any]:
        """Summary plus recommendations for the health dashboard."""
        metrics = self.get_metrics_snapshot()

        summary = {
            "average_latency": f"{metrics.latency_avg_ms:.2f}ms",
            "error_rate": f"{metrics.error_rate:.2f}%",
            "throughput": f"{metrics.transitions_per_hour}/hour",
            "active_transitions": metrics.active_transitions,
        }

        return {
            "summary": summary,
            "recommendations": self._generate_recommendations(metrics),
        }

    def _generate_recommendations(self, metrics: MetricsSnapshot) -> List[str]:
        recommendations = []

        if metrics.latency_p95_ms > 1000:
            recommendations.append(
                "High latency detected - check persistence round-trips"
            )
        if metrics.error_rate > 5:
            recommendations.append("High error rate - investigate transition failures")
        if metrics.transitions_per_hour < 10:
            recommendations.append("Low throughput - verify system is being used")
        if metrics.legacy_tokens_seen:
            recommendations.append(
                "Legacy status tokens still being read - schedule a data migration"
            )

        if not recommendations:
            recommendations.append("System performance is within normal parameters")

        return recommendations
