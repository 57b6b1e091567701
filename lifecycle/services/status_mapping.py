"""
Canonical Appointment Statuses and Legacy Vocabulary

Defines the canonical status enumeration, the translation table for
tokens persisted under the deprecated vocabulary, and display metadata.
"""

from enum import Enum
from typing import Dict, Final, Optional, Union


class CanonicalStatus(str, Enum):
    """Canonical appointment lifecycle status."""

    AWAITING_PAYMENT = "unpaid"
    PAYMENT_PROCESSING = "pending"
    AWAITING_MATCH = "pending_match"
    MATCH_PENDING_ACCEPTANCE = "matched_pending_therapist_acceptance"
    AWAITING_SCHEDULING = "pending_scheduling"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

    def __str__(self) -> str:
        return self.value


StatusValue = Union[CanonicalStatus, str]

# Every token ever written by the old booking flows. Canonical values are
# deliberately absent: they resolve to themselves before this table is read.
LEGACY_STATUS_MAPPING: Final[Dict[str, CanonicalStatus]] = {
    "not_paid": CanonicalStatus.AWAITING_PAYMENT,
    "pending_approval": CanonicalStatus.MATCH_PENDING_ACCEPTANCE,
    "approved": CanonicalStatus.CONFIRMED,
    "rejected": CanonicalStatus.CANCELLED,
    "in_progress": CanonicalStatus.CONFIRMED,
    "upcoming": CanonicalStatus.CONFIRMED,
    "completed_pending_validation": CanonicalStatus.COMPLETED,
    "completed_validated": CanonicalStatus.COMPLETED,
}

_CANONICAL_BY_VALUE: Final[Dict[str, CanonicalStatus]] = {
    status.value: status for status in CanonicalStatus
}


def map_legacy_status(token: Optional[str]) -> StatusValue:
    """
    Translate a persisted status token into the canonical vocabulary.

    Canonical tokens map to their own member, legacy tokens map through
    LEGACY_STATUS_MAPPING, anything else is returned unchanged. Callers
    must treat a plain-string result as unknown.

    Args:
        token: Persisted status token

    Returns:
        CanonicalStatus, or the original token when it is not recognised
    """
    if isinstance(token, CanonicalStatus):
        return token
    if token is None:
        return ""
    canonical = _CANONICAL_BY_VALUE.get(token)
    if canonical is not None:
        return canonical
    return LEGACY_STATUS_MAPPING.get(token, token)


def normalize_status(token: Optional[str]) -> Optional[CanonicalStatus]:
    """Canonical member for a token, or None when the token is unknown."""
    mapped = map_legacy_status(token)
    return mapped if isinstance(mapped, CanonicalStatus) else None


def is_known_status(token: Optional[str]) -> bool:
    return normalize_status(token) is not None


def is_legacy_status(token: Optional[str]) -> bool:
    return token in LEGACY_STATUS_MAPPING


STATUS_DISPLAY: Final[Dict[CanonicalStatus, Dict[str, str]]] = {
    CanonicalStatus.AWAITING_PAYMENT: {
        "label": "Unpaid",
        "description": "Payment required to proceed",
        "color": "red",
        "icon": "💳",
    },
    CanonicalStatus.PAYMENT_PROCESSING: {
        "label": "Processing Payment",
        "description": "Payment in progress",
        "color": "orange",
        "icon": "⏳",
    },
    CanonicalStatus.AWAITING_MATCH: {
        "label": "Finding Operator",
        "description": "Looking for an available operator",
        "color": "yellow",
        "icon": "🔍",
    },
    CanonicalStatus.MATCH_PENDING_ACCEPTANCE: {
        "label": "Operator Assigned",
        "description": "Waiting for the operator to accept",
        "color": "blue",
        "icon": "🤝",
    },
    CanonicalStatus.AWAITING_SCHEDULING: {
        "label": "Scheduling",
        "description": "Coordinating appointment time",
        "color": "purple",
        "icon": "📅",
    },
    CanonicalStatus.CONFIRMED: {
        "label": "Confirmed",
        "description": "Appointment scheduled and confirmed",
        "color": "green",
        "icon": "✅",
    },
    CanonicalStatus.RESCHEDULED: {
        "label": "Rescheduled",
        "description": "Appointment time changed",
        "color": "indigo",
        "icon": "🔄",
    },
    CanonicalStatus.COMPLETED: {
        "label": "Completed",
        "description": "Session completed successfully",
        "color": "emerald",
        "icon": "🎉",
    },
    CanonicalStatus.CANCELLED: {
        "label": "Cancelled",
        "description": "Appointment was cancelled",
        "color": "gray",
        "icon": "❌",
    },
    CanonicalStatus.NO_SHOW: {
        "label": "No Show",
        "description": "Requester did not attend",
        "color": "orange",
        "icon": "👻",
    },
}


def get_status_display(token: Optional[str]) -> Dict[str, str]:
    """
    Display metadata for any token.

    Unknown tokens get a generic entry labelled with the token itself.
    """
    canonical = normalize_status(token)
    if canonical is not None:
        return dict(STATUS_DISPLAY[canonical], status=canonical.value)
    return {
        "status": token or "",
        "label": token or "Unknown",
        "description": "Unknown status",
        "color": "gray",
        "icon": "❓",
    }
