"""
Unit tests for role-appropriate status and violation messages.
"""

from lifecycle.services.models import Actor, ActorRole, AppointmentSnapshot
from lifecycle.services.status_mapping import CanonicalStatus
from lifecycle.services.status_messages import (
    PUBLIC_EXPLANATIONS,
    describe_violations,
    operator_status_message,
    requester_status_message,
    status_message_for,
)
from lifecycle.services.transition_validator import TransitionValidator

ADMIN = Actor("admin-1", ActorRole.ADMINISTRATOR)
REQUESTER = Actor("someone-else", ActorRole.REQUESTER)
OPERATOR = Actor("op-1", ActorRole.OPERATOR)


def test_requester_messages_cover_every_status():
    for status in CanonicalStatus:
        assert requester_status_message(status) != "Status unknown"
    assert requester_status_message("teleported") == "Status unknown"


def test_operator_completed_message_depends_on_validation():
    validated = AppointmentSnapshot("apt-1", "completed", operator_validated=True)
    pending = AppointmentSnapshot("apt-2", "completed")

    assert operator_status_message(CanonicalStatus.COMPLETED, validated) == "Session validated"
    assert (
        operator_status_message(CanonicalStatus.COMPLETED, pending)
        == "Validate session for payment"
    )


def test_operator_falls_back_to_requester_text():
    assert operator_status_message(CanonicalStatus.CANCELLED) == "Appointment cancelled"


def test_status_message_for_role():
    assert status_message_for(OPERATOR, CanonicalStatus.CONFIRMED) == "Upcoming session"
    assert (
        status_message_for(REQUESTER, CanonicalStatus.CONFIRMED)
        == "Appointment confirmed - see you soon!"
    )


class TestDescribeViolations:
    """Test violation rendering per audience."""

    def _result(self):
        snapshot = AppointmentSnapshot(
            appointment_id="apt-1",
            raw_status="completed",
            requester_id="req-1",
            operator_validated=True,
            provider_verified=True,
        )
        return TransitionValidator().validate(snapshot, "confirmed", REQUESTER)

    def test_admin_sees_codes(self):
        messages = describe_violations(self._result(), ADMIN)
        codes = [m["code"] for m in messages]
        assert codes[0] == "INVALID_TRANSITION"
        assert "NOT_OWNER" in codes
        assert "Allowed transitions" in messages[0]["message"]

    def test_others_see_one_line_per_category(self):
        messages = describe_violations(self._result(), REQUESTER)

        assert all(set(m) == {"message"} for m in messages)
        assert [m["message"] for m in messages] == [
            PUBLIC_EXPLANATIONS[category]
            for category in self._categories_in_order()
        ]

    def _categories_in_order(self):
        seen = []
        for violation in self._result().violations:
            if violation.category not in seen:
                seen.append(violation.category)
        return seen

    def test_no_violations(self):
        snapshot = AppointmentSnapshot(
            appointment_id="apt-1", raw_status="pending_match", provider_verified=True
        )
        result = TransitionValidator().validate(snapshot, "cancelled", ADMIN)
        assert describe_violations(result, REQUESTER) == []
