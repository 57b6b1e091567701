"""
Role-appropriate status and violation messages.
"""

from typing import Dict, List, Optional

from .models import Actor, ActorRole, AppointmentSnapshot, ValidationResult, ViolationCategory
from .status_mapping import CanonicalStatus, StatusValue

S = CanonicalStatus

REQUESTER_MESSAGES: Dict[CanonicalStatus, str] = {
    S.AWAITING_PAYMENT: "Complete payment to activate your appointment",
    S.PAYMENT_PROCESSING: "Payment processing...",
    S.AWAITING_MATCH: "Finding the right operator for you",
    S.MATCH_PENDING_ACCEPTANCE: "Operator assigned - waiting for acceptance",
    S.AWAITING_SCHEDULING: "Choose your appointment time",
    S.CONFIRMED: "Appointment confirmed - see you soon!",
    S.RESCHEDULED: "Appointment rescheduled successfully",
    S.COMPLETED: "Session completed",
    S.CANCELLED: "Appointment cancelled",
    S.NO_SHOW: "Appointment missed",
}

OPERATOR_MESSAGES: Dict[CanonicalStatus, str] = {
    S.MATCH_PENDING_ACCEPTANCE: "New requester assigned - accept or decline",
    S.AWAITING_SCHEDULING: "Requester waiting for time selection",
    S.CONFIRMED: "Upcoming session",
    S.RESCHEDULED: "Rescheduled session",
}

# Reduced explanations shown to non-administrators, one per category.
PUBLIC_EXPLANATIONS: Dict[ViolationCategory, str] = {
    ViolationCategory.GRAPH: "This change isn't possible at the appointment's current stage.",
    ViolationCategory.STRUCTURAL: "Some appointment details are still missing before this step.",
    ViolationCategory.IMMUTABILITY: "This appointment is closed and can no longer be changed.",
    ViolationCategory.AUTHORIZATION: "You don't have permission to change this appointment.",
}


def requester_status_message(status: StatusValue) -> str:
    return REQUESTER_MESSAGES.get(status, "Status unknown")


def operator_status_message(status: StatusValue, snapshot: Optional[AppointmentSnapshot] = None) -> str:
    if status == S.COMPLETED:
        validated = snapshot is not None and snapshot.operator_validated
        return "Session validated" if validated else "Validate session for payment"
    return OPERATOR_MESSAGES.get(status) or requester_status_message(status)


def status_message_for(
    actor: Actor, status: StatusValue, snapshot: Optional[AppointmentSnapshot] = None
) -> str:
    """Status line for a given actor's view of an appointment."""
    if actor.role == ActorRole.OPERATOR:
        return operator_status_message(status, snapshot)
    return requester_status_message(status)


def describe_violations(result: ValidationResult, actor: Actor) -> List[Dict[str, str]]:
    """
    Render validation violations for display.

    Administrators see every violation with its code and full message.
    Other actors get one non-technical line per violation category.
    """
    if actor.is_admin:
        return [{"code": v.code.value, "message": v.message} for v in result.violations]

    seen = []
    for violation in result.violations:
        if violation.category not in seen:
            seen.append(violation.category)
    return [{"message": PUBLIC_EXPLANATIONS[category]} for category in seen]
