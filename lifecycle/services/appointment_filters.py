"""
Appointment Filter and Query Layer

Predicates and sorts used by every dashboard and list view. Status is
always obtained from the StatusResolver; nothing here inspects raw
status tokens directly.
"""

import inspect
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .models import AppointmentSnapshot, PaymentVerification
from .status_mapping import CanonicalStatus, StatusValue
from .status_resolver import StatusResolver

logger = logging.getLogger(__name__)

S = CanonicalStatus

STATUS_PRIORITY: Dict[CanonicalStatus, int] = {
    S.AWAITING_PAYMENT: 1,
    S.PAYMENT_PROCESSING: 2,
    S.AWAITING_MATCH: 3,
    S.MATCH_PENDING_ACCEPTANCE: 4,
    S.AWAITING_SCHEDULING: 5,
    S.CONFIRMED: 6,
    S.RESCHEDULED: 7,
    S.COMPLETED: 8,
    S.CANCELLED: 9,
    S.NO_SHOW: 10,
}
UNKNOWN_PRIORITY = 999

SCHEDULED_STATUSES = frozenset({S.CONFIRMED, S.RESCHEDULED})
INACTIVE_STATUSES = frozenset({S.AWAITING_PAYMENT, S.CANCELLED, S.NO_SHOW, S.COMPLETED})
CLOSED_STATUSES = frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW})
RESCHEDULABLE_STATUSES = frozenset({S.CONFIRMED, S.RESCHEDULED, S.AWAITING_SCHEDULING})

MEETING_JOIN_WINDOW = timedelta(hours=2)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Verifications = Optional[Mapping[str, PaymentVerification]]


class FilterError(ValueError):
    """Base exception for filter dispatch."""

    pass


class UnknownFilterError(FilterError):
    """Raised when a filter name is not registered."""

    pass


class InvalidFilterParamsError(FilterError):
    """Raised when a filter is called with unusable parameters."""

    pass


def _as_utc(value: Any) -> Any:
    # Naive datetimes are taken as UTC; stored dates are always aware.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _date_key(snapshot: AppointmentSnapshot) -> datetime:
    # Undated appointments sort as the epoch, ahead of every real date.
    return snapshot.scheduled_at or _EPOCH


class AppointmentFilters:
    """Composable predicates and sorts over resolved appointments."""

    def __init__(
        self,
        resolver: Optional[StatusResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize filter layer.

        Args:
            resolver: Resolver used for every status lookup
            clock: Source of "now" for date-relative predicates
        """
        self.resolver = resolver or StatusResolver()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._registry: Dict[str, Callable[..., List[AppointmentSnapshot]]] = {
            "upcoming": self.upcoming,
            "awaiting_payment": self.awaiting_payment,
            "awaiting_match": self.awaiting_match,
            "awaiting_scheduling": self.awaiting_scheduling,
            "awaiting_fulfillment_validation": self.awaiting_fulfillment_validation,
            "fulfilled_unpaid_out": self.fulfilled_unpaid_out,
            "cancelled": self.cancelled,
            "by_owner": self.by_owner,
            "by_operator": self.by_operator,
            "by_date_range": self.by_date_range,
            "today": self.today,
            "this_week": self.this_week,
            "active": self.active,
            "can_reschedule": self.can_reschedule,
            "can_cancel": self.can_cancel,
            "with_meeting_links": self.with_meeting_links,
        }

    @property
    def filter_names(self) -> List[str]:
        return sorted(self._registry)

    def status_of(
        self, snapshot: AppointmentSnapshot, verifications: Verifications = None
    ) -> StatusValue:
        verification = (verifications or {}).get(snapshot.appointment_id)
        return self.resolver.resolve(snapshot, verification)

    def _resolved(
        self, snapshots: Iterable[AppointmentSnapshot], verifications: Verifications
    ) -> List[Tuple[AppointmentSnapshot, StatusValue]]:
        return [(s, self.status_of(s, verifications)) for s in snapshots]

    def _select(self, snapshots, verifications, predicate) -> List[AppointmentSnapshot]:
        return [
            snapshot
            for snapshot, status in self._resolved(snapshots, verifications)
            if predicate(snapshot, status)
        ]

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or self._clock()

    # ------------------------------------------------------------------
    # Status predicates
    # ------------------------------------------------------------------

    def upcoming(self, snapshots, now=None, verifications: Verifications = None):
        """Confirmed or rescheduled appointments dated in the future."""
        current = self._now(now)
        return self._select(
            snapshots,
            verifications,
            lambda s, status: status in SCHEDULED_STATUSES
            and s.scheduled_at is not None
            and s.scheduled_at > current,
        )

    def awaiting_payment(self, snapshots, now=None, verifications: Verifications = None):
        """Unpaid appointments that are undated or still in the future."""
        current = self._now(now)
        return self._select(
            snapshots,
            verifications,
            lambda s, status: status == S.AWAITING_PAYMENT
            and (s.scheduled_at is None or s.scheduled_at > current),
        )

    def awaiting_match(self, snapshots, verifications: Verifications = None, **_):
        return self._select(
            snapshots,
            verifications,
            lambda s, status: status in (S.AWAITING_MATCH, S.MATCH_PENDING_ACCEPTANCE),
        )

    def awaiting_scheduling(self, snapshots, verifications: Verifications = None, **_):
        return self._select(
            snapshots, verifications, lambda s, status: status == S.AWAITING_SCHEDULING
        )

    def awaiting_fulfillment_validation(
        self, snapshots, now=None, verifications: Verifications = None
    ):
        """
        Completed sessions the operator still has to validate.

        Sessions already paid out or validated are excluded. Sessions
        without a provider-verified charge are only listed while their
        date is still ahead.
        """
        current = self._now(now)

        def predicate(s, status):
            if status != S.COMPLETED or s.paid_out or s.operator_validated:
                return False
            verification = (verifications or {}).get(s.appointment_id)
            verified = verification.verified if verification else s.provider_verified
            if not verified:
                return s.scheduled_at is not None and s.scheduled_at > current
            return True

        return self._select(snapshots, verifications, predicate)

    def fulfilled_unpaid_out(self, snapshots, verifications: Verifications = None, **_):
        """Validated completed sessions whose operator has not been paid yet."""
        return self._select(
            snapshots,
            verifications,
            lambda s, status: status == S.COMPLETED
            and s.operator_validated
            and not s.paid_out,
        )

    def cancelled(self, snapshots, verifications: Verifications = None, **_):
        return self._select(
            snapshots, verifications, lambda s, status: status in (S.CANCELLED, S.NO_SHOW)
        )

    def active(self, snapshots, verifications: Verifications = None, **_):
        """Everything except awaiting payment, cancelled, no-show and completed."""
        return self._select(
            snapshots, verifications, lambda s, status: status not in INACTIVE_STATUSES
        )

    def can_reschedule(self, snapshots, verifications: Verifications = None, **_):
        return self._select(
            snapshots, verifications, lambda s, status: status in RESCHEDULABLE_STATUSES
        )

    def can_cancel(self, snapshots, verifications: Verifications = None, **_):
        return self._select(
            snapshots, verifications, lambda s, status: status not in CLOSED_STATUSES
        )

    def with_meeting_links(self, snapshots, now=None, verifications: Verifications = None):
        """Scheduled appointments whose meeting can be joined (two hours before start)."""
        current = self._now(now)
        return self._select(
            snapshots,
            verifications,
            lambda s, status: s.has_meeting_link
            and status in SCHEDULED_STATUSES
            and s.scheduled_at is not None
            and current >= s.scheduled_at - MEETING_JOIN_WINDOW,
        )

    # ------------------------------------------------------------------
    # Field predicates
    # ------------------------------------------------------------------

    def by_owner(self, snapshots, owner_id: str, **_):
        return [s for s in snapshots if s.requester_id == owner_id]

    def by_operator(self, snapshots, operator_id: str, **_):
        return [s for s in snapshots if s.resource_id == operator_id]

    def by_date_range(self, snapshots, start: datetime, end: datetime, **_):
        """Appointments dated within [start, end]. Undated ones never match."""
        return [
            s
            for s in snapshots
            if s.scheduled_at is not None and start <= s.scheduled_at <= end
        ]

    def today(self, snapshots, now=None, **_):
        current = self._now(now)
        start = datetime.combine(current.date(), time.min, tzinfo=current.tzinfo)
        end = datetime.combine(current.date(), time.max, tzinfo=current.tzinfo)
        return self.by_date_range(snapshots, start, end)

    def this_week(self, snapshots, now=None, **_):
        """Appointments in the current Sunday-to-Saturday week."""
        current = self._now(now)
        # Python weekday(): Monday=0 ... Sunday=6
        days_since_sunday = (current.weekday() + 1) % 7
        first_day = current.date() - timedelta(days=days_since_sunday)
        start = datetime.combine(first_day, time.min, tzinfo=current.tzinfo)
        end = datetime.combine(first_day + timedelta(days=6), time.max, tzinfo=current.tzinfo)
        return self.by_date_range(snapshots, start, end)

    # ------------------------------------------------------------------
    # Sorting
    # ------------------------------------------------------------------

    def sort_by_date(self, snapshots, ascending: bool = True) -> List[AppointmentSnapshot]:
        return sorted(snapshots, key=_date_key, reverse=not ascending)

    def sort_by_status_priority(
        self, snapshots, verifications: Verifications = None
    ) -> List[AppointmentSnapshot]:
        """Operational dashboard order: lifecycle priority, then ascending date."""
        resolved = self._resolved(snapshots, verifications)
        resolved.sort(
            key=lambda pair: (
                STATUS_PRIORITY.get(pair[1], UNKNOWN_PRIORITY),
                _date_key(pair[0]),
            )
        )
        return [snapshot for snapshot, _ in resolved]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def filter_appointments(
        self,
        snapshots: Iterable[AppointmentSnapshot],
        predicate_name: str,
        params: Optional[Dict[str, Any]] = None,
        verifications: Verifications = None,
    ) -> List[AppointmentSnapshot]:
        """
        Apply a named predicate.

        Args:
            snapshots: Appointments to filter
            predicate_name: Registered filter name (hyphens accepted)
            params: Predicate parameters (owner_id, operator_id, start, end, now)
            verifications: Optional verification results keyed by appointment id

        Returns:
            Matching appointments in input order

        Raises:
            UnknownFilterError: If the name is not registered
            InvalidFilterParamsError: If the parameters do not fit the filter
        """
        name = predicate_name.strip().lower().replace("-", "_")
        predicate = self._registry.get(name)
        if predicate is None:
            raise UnknownFilterError(
                f"Unknown filter '{predicate_name}'. Available: {', '.join(self.filter_names)}"
            )

        kwargs = {key: _as_utc(value) for key, value in (params or {}).items()}
        if name not in ("by_owner", "by_operator", "by_date_range", "today", "this_week"):
            kwargs["verifications"] = verifications

        snapshots = list(snapshots)
        try:
            inspect.signature(predicate).bind(snapshots, **kwargs)
        except TypeError as e:
            raise InvalidFilterParamsError(
                f"Invalid parameters for filter '{name}': {e}"
            ) from e

        matched = predicate(snapshots, **kwargs)

        logger.debug(f"Filter '{name}' matched {len(matched)} appointments")
        return matched


def filter_appointments(
    snapshots: Iterable[AppointmentSnapshot],
    predicate_name: str,
    params: Optional[Dict[str, Any]] = None,
    resolver: Optional[StatusResolver] = None,
) -> List[AppointmentSnapshot]:
    """Apply a named predicate with a throwaway filter layer."""
    return AppointmentFilters(resolver).filter_appointments(
        snapshots, predicate_name, params
    )
