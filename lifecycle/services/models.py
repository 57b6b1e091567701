"""
Appointment Lifecycle Domain Types

Narrow, typed views of an appointment record and the values exchanged
between the resolver, the validator and the transition service.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class ActorRole(Enum):
    """Principal kinds allowed to request a transition."""

    REQUESTER = "requester"
    OPERATOR = "operator"
    ADMINISTRATOR = "admin"


class ViolationCategory(Enum):
    """Families of hard rule violations."""

    GRAPH = "graph"
    STRUCTURAL = "structural"
    IMMUTABILITY = "immutability"
    AUTHORIZATION = "authorization"


class ViolationCode(Enum):
    """Codes reported by the transition validator."""

    INVALID_TRANSITION = "INVALID_TRANSITION"
    MISSING_RESOURCE = "MISSING_RESOURCE"
    MISSING_DATE = "MISSING_DATE"
    PAYMENT_NOT_COMPLETE = "PAYMENT_NOT_COMPLETE"
    TERMINAL_IMMUTABLE = "TERMINAL_IMMUTABLE"
    NOT_OWNER = "NOT_OWNER"
    REQUESTER_FORBIDDEN = "REQUESTER_FORBIDDEN"
    NOT_ASSIGNED_OPERATOR = "NOT_ASSIGNED_OPERATOR"
    OPERATOR_FORBIDDEN_CANCELLED = "OPERATOR_FORBIDDEN_CANCELLED"


VIOLATION_CATEGORIES: Dict[ViolationCode, ViolationCategory] = {
    ViolationCode.INVALID_TRANSITION: ViolationCategory.GRAPH,
    ViolationCode.MISSING_RESOURCE: ViolationCategory.STRUCTURAL,
    ViolationCode.MISSING_DATE: ViolationCategory.STRUCTURAL,
    ViolationCode.PAYMENT_NOT_COMPLETE: ViolationCategory.STRUCTURAL,
    ViolationCode.TERMINAL_IMMUTABLE: ViolationCategory.IMMUTABILITY,
    ViolationCode.NOT_OWNER: ViolationCategory.AUTHORIZATION,
    ViolationCode.REQUESTER_FORBIDDEN: ViolationCategory.AUTHORIZATION,
    ViolationCode.NOT_ASSIGNED_OPERATOR: ViolationCategory.AUTHORIZATION,
    ViolationCode.OPERATOR_FORBIDDEN_CANCELLED: ViolationCategory.AUTHORIZATION,
}


class WarningCode(Enum):
    """Data-integrity anomalies. Never block resolution."""

    MISSING_STATUS = "MISSING_STATUS"
    UNKNOWN_STATUS = "UNKNOWN_STATUS"
    LEGACY_STATUS = "LEGACY_STATUS"
    MISSING_RESOURCE = "MISSING_RESOURCE"
    MISSING_DATE = "MISSING_DATE"
    MISSING_OPERATOR_VALIDATION = "MISSING_OPERATOR_VALIDATION"
    MISSING_MEETING_LINK = "MISSING_MEETING_LINK"
    PAYMENT_STATE_MISMATCH = "PAYMENT_STATE_MISMATCH"


@dataclass(frozen=True)
class TransitionHistoryEntry:
    """One committed status change. Immutable once appended."""

    appointment_id: str
    from_status: str
    to_status: str
    actor_id: str
    actor_role: str
    committed_at: datetime
    reason: Optional[str] = None
    meta: Tuple[Tuple[str, Any], ...] = ()
    override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "committed_at": self.committed_at.isoformat(),
            "reason": self.reason,
            "meta": dict(self.meta),
            "override": self.override,
        }


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _reference(value: Any) -> Optional[str]:
    """Accept either a bare id or a populated {"_id": ...} document."""
    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        ref = value.get("_id") or value.get("id")
        return str(ref) if ref else None
    return str(value)


@dataclass(frozen=True)
class AppointmentSnapshot:
    """
    Read-only view of an appointment record.

    Only the fields the resolver, validator and filters consume are
    carried; persistence schemas are translated at the edge with
    ``from_record``. ``version`` is bumped by every committed write.
    """

    appointment_id: str
    raw_status: Optional[str]
    requester_id: Optional[str] = None
    resource_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    provider_verified: bool = False
    payment_status: Optional[str] = None
    balance_paid: bool = False
    payment_reference: Optional[str] = None
    override_status: Optional[str] = None
    accepted: bool = False
    confirmed: bool = False
    rescheduled: bool = False
    operator_validated: bool = False
    paid_out: bool = False
    has_meeting_link: bool = False
    version: int = 0
    history: Tuple[TransitionHistoryEntry, ...] = ()

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "AppointmentSnapshot":
        """
        Build a snapshot from a loosely-shaped persistence record.

        Both the current field names and the older document names
        (``customStatus``, ``isStripeVerified``, ``therapist`` ...) are
        accepted.

        Args:
            record: Raw appointment document

        Returns:
            AppointmentSnapshot
        """

        def pick(*names, default=None):
            for name in names:
                if name in record and record[name] is not None:
                    return record[name]
            return default

        appointment_id = pick("appointment_id", "_id", "id")
        if appointment_id is None:
            raise ValueError("Appointment record has no identifier")

        return cls(
            appointment_id=str(appointment_id),
            raw_status=pick("raw_status", "status", "appointmentStatus"),
            requester_id=_reference(pick("requester_id", "patient")),
            resource_id=_reference(pick("resource_id", "therapist")),
            scheduled_at=_parse_datetime(pick("scheduled_at", "date")),
            provider_verified=bool(
                pick("provider_verified", "isStripeVerified", default=False)
            ),
            payment_status=pick("payment_status", "paymentStatus"),
            balance_paid=bool(pick("balance_paid", "isBalance", default=False)),
            payment_reference=pick(
                "payment_reference", "checkoutSessionId", "paymentIntentId"
            ),
            override_status=pick("override_status", "customStatus"),
            accepted=bool(pick("accepted", "isAccepted", default=False)),
            confirmed=bool(pick("confirmed", "isConfirmed", default=False)),
            rescheduled=bool(pick("rescheduled", "isRescheduled", default=False)),
            operator_validated=bool(
                pick("operator_validated", "therapistValidated", default=False)
            ),
            paid_out=bool(pick("paid_out", "therapistPaid", default=False)),
            has_meeting_link=bool(
                pick("has_meeting_link", default=False) or pick("meetingLink")
            ),
            version=int(pick("version", "__v", default=0)),
        )


@dataclass(frozen=True)
class PaymentVerification:
    """Result of a payment-provider lookup."""

    verified: bool
    provider_status: str = "unknown"
    source: str = "provider"


@dataclass(frozen=True)
class Actor:
    """Principal requesting a transition."""

    actor_id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMINISTRATOR


@dataclass(frozen=True)
class Violation:
    """Hard rule violation; blocks a commit."""

    code: ViolationCode
    message: str
    field: Optional[str] = None
    current_status: Optional[str] = None
    target_status: Optional[str] = None

    @property
    def category(self) -> ViolationCategory:
        return VIOLATION_CATEGORIES[self.code]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "field": self.field,
            "current_status": self.current_status,
            "target_status": self.target_status,
        }


@dataclass(frozen=True)
class IntegrityWarning:
    """Data-integrity anomaly on a record."""

    code: WarningCode
    message: str
    field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "field": self.field}


@dataclass
class ValidationResult:
    """Outcome of a transition validation."""

    current_status: str
    target_status: str
    violations: List[Violation] = field(default_factory=list)
    warnings: List[IntegrityWarning] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    @property
    def codes(self) -> List[str]:
        return [v.code.value for v in self.violations]

    def primary_category(self) -> Optional[ViolationCategory]:
        """Category of the first violation, in check order."""
        if not self.violations:
            return None
        return self.violations[0].category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "current_status": self.current_status,
            "target_status": self.target_status,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
        }
