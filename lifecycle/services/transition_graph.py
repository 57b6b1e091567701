"""
Appointment Status Transition Graph

Static table of legal canonical-status edges. Only the transition
validator consults this table to decide legality.
"""

from typing import Dict, Final, FrozenSet, List, Optional

from .status_mapping import CanonicalStatus, StatusValue, normalize_status

S = CanonicalStatus

ALLOWED_TRANSITIONS: Final[Dict[CanonicalStatus, FrozenSet[CanonicalStatus]]] = {
    S.AWAITING_PAYMENT: frozenset({S.PAYMENT_PROCESSING, S.CANCELLED}),
    S.PAYMENT_PROCESSING: frozenset(
        {S.AWAITING_MATCH, S.AWAITING_PAYMENT, S.CANCELLED}
    ),
    S.AWAITING_MATCH: frozenset({S.MATCH_PENDING_ACCEPTANCE, S.CANCELLED}),
    S.MATCH_PENDING_ACCEPTANCE: frozenset({S.AWAITING_SCHEDULING, S.CANCELLED}),
    S.AWAITING_SCHEDULING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.RESCHEDULED: frozenset({S.CONFIRMED, S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES: Final[FrozenSet[CanonicalStatus]] = frozenset(
    status for status, successors in ALLOWED_TRANSITIONS.items() if not successors
)

# Declaration order of the enumeration, used to return stable lists.
_ORDER: Final[Dict[CanonicalStatus, int]] = {
    status: index for index, status in enumerate(CanonicalStatus)
}


def get_allowed_transitions(status: Optional[StatusValue]) -> List[CanonicalStatus]:
    """
    Successors of a status in enumeration order.

    Accepts canonical members, canonical tokens or legacy tokens.
    Unknown tokens have no successors.
    """
    canonical = normalize_status(status)
    if canonical is None:
        return []
    return sorted(ALLOWED_TRANSITIONS[canonical], key=_ORDER.__getitem__)


def is_transition_allowed(
    current: Optional[StatusValue], target: Optional[StatusValue]
) -> bool:
    """Check whether the edge current -> target exists."""
    source = normalize_status(current)
    destination = normalize_status(target)
    if source is None or destination is None:
        return False
    return destination in ALLOWED_TRANSITIONS[source]


def is_terminal_status(status: Optional[StatusValue]) -> bool:
    """Terminal statuses have no outgoing edges. Unknown tokens are not terminal."""
    return normalize_status(status) in TERMINAL_STATUSES
