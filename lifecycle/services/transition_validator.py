"""
Appointment Transition Validator

Combines graph legality, structural business rules, terminal-state
immutability and actor authorization into one side-effect-free check.
Every rule is evaluated so callers can report all violations at once.
"""

import logging
from typing import List, Optional, Union

from .models import (
    Actor,
    ActorRole,
    AppointmentSnapshot,
    PaymentVerification,
    ValidationResult,
    Violation,
    ViolationCode,
)
from .status_mapping import CanonicalStatus, StatusValue, map_legacy_status
from .status_resolver import RESOURCE_BOUND_STATUSES, DATED_STATUSES, StatusResolver
from .transition_graph import (
    get_allowed_transitions,
    is_terminal_status,
    is_transition_allowed,
)

logger = logging.getLogger(__name__)


class TransitionValidator:
    """Validates requested status transitions."""

    def __init__(self, resolver: Optional[StatusResolver] = None):
        """
        Initialize validator.

        Args:
            resolver: Resolver used to derive the current status
        """
        self.resolver = resolver or StatusResolver()

    def validate(
        self,
        snapshot: AppointmentSnapshot,
        target: Union[CanonicalStatus, str],
        actor: Actor,
        verification: Optional[PaymentVerification] = None,
    ) -> ValidationResult:
        """
        Validate moving an appointment to ``target``.

        Args:
            snapshot: Appointment snapshot as last read
            target: Requested status (canonical or legacy token)
            actor: Principal requesting the change
            verification: Optional fresh payment verification result

        Returns:
            ValidationResult with every violated rule and integrity warnings
        """
        resolution = self.resolver.resolve_with_diagnostics(snapshot, verification)
        current = resolution.status
        target_status = map_legacy_status(target)

        result = ValidationResult(
            current_status=str(current),
            target_status=str(target_status),
            warnings=list(resolution.warnings),
        )

        result.violations.extend(self._check_graph(current, target_status))
        result.violations.extend(
            self._check_structure(snapshot, target_status, verification)
        )
        result.violations.extend(self._check_immutability(current, target_status, actor))
        result.violations.extend(self.check_authorization(snapshot, current, actor))

        if not result.ok:
            logger.debug(
                f"Transition {current} -> {target_status} rejected for "
                f"{snapshot.appointment_id}: {result.codes}"
            )

        return result

    def _check_graph(self, current: StatusValue, target: StatusValue) -> List[Violation]:
        if is_transition_allowed(current, target):
            return []

        allowed = ", ".join(s.value for s in get_allowed_transitions(current)) or "none"
        return [
            Violation(
                code=ViolationCode.INVALID_TRANSITION,
                message=(
                    f"Cannot transition from {current or 'unknown'} to {target}. "
                    f"Allowed transitions: {allowed}"
                ),
                current_status=str(current),
                target_status=str(target),
            )
        ]

    def _check_structure(
        self,
        snapshot: AppointmentSnapshot,
        target: StatusValue,
        verification: Optional[PaymentVerification],
    ) -> List[Violation]:
        violations = []

        if target in RESOURCE_BOUND_STATUSES and not snapshot.resource_id:
            violations.append(
                Violation(
                    code=ViolationCode.MISSING_RESOURCE,
                    message=f"Cannot move to {target} without an assigned operator",
                    field="resource_id",
                    target_status=str(target),
                )
            )

        if target in DATED_STATUSES and snapshot.scheduled_at is None:
            violations.append(
                Violation(
                    code=ViolationCode.MISSING_DATE,
                    message=f"Cannot move to {target} without a scheduled date/time",
                    field="scheduled_at",
                    target_status=str(target),
                )
            )

        if target == CanonicalStatus.AWAITING_MATCH and not self.resolver.is_payment_satisfied(
            snapshot, verification
        ):
            violations.append(
                Violation(
                    code=ViolationCode.PAYMENT_NOT_COMPLETE,
                    message="Cannot proceed to matching without completed payment",
                    field="payment_status",
                    target_status=str(target),
                )
            )

        return violations

    def _check_immutability(
        self, current: StatusValue, target: StatusValue, actor: Actor
    ) -> List[Violation]:
        if actor.is_admin or not is_terminal_status(current) or target == current:
            return []
        return [
            Violation(
                code=ViolationCode.TERMINAL_IMMUTABLE,
                message=f"Cannot change status of {current} appointments",
                current_status=str(current),
                target_status=str(target),
            )
        ]

    def check_authorization(
        self, snapshot: AppointmentSnapshot, current: StatusValue, actor: Actor
    ) -> List[Violation]:
        """
        Check whether ``actor`` may act on this record at all.

        Administrators are unrestricted. Requesters act only on their own
        records and never on terminal ones; operators act only on records
        assigned to them and never on cancelled ones.
        """
        violations = []

        if actor.role == ActorRole.REQUESTER:
            if snapshot.requester_id != actor.actor_id:
                violations.append(
                    Violation(
                        code=ViolationCode.NOT_OWNER,
                        message="Requesters can only modify their own appointments",
                        field="requester_id",
                    )
                )
            if is_terminal_status(current):
                violations.append(
                    Violation(
                        code=ViolationCode.REQUESTER_FORBIDDEN,
                        message="Requesters cannot modify completed, cancelled or no-show appointments",
                        current_status=str(current),
                    )
                )

        elif actor.role == ActorRole.OPERATOR:
            if snapshot.resource_id != actor.actor_id:
                violations.append(
                    Violation(
                        code=ViolationCode.NOT_ASSIGNED_OPERATOR,
                        message="Operators can only modify appointments assigned to them",
                        field="resource_id",
                    )
                )
            if current == CanonicalStatus.CANCELLED:
                violations.append(
                    Violation(
                        code=ViolationCode.OPERATOR_FORBIDDEN_CANCELLED,
                        message="Operators cannot modify cancelled appointments",
                        current_status=str(current),
                    )
                )

        return violations

    def can_modify(self, snapshot: AppointmentSnapshot, actor: Actor) -> ValidationResult:
        """Authorization check alone, without a target status."""
        current = self.resolver.resolve(snapshot)
        return ValidationResult(
            current_status=str(current),
            target_status=str(current),
            violations=self.check_authorization(snapshot, current, actor),
        )

    def validate_record(
        self,
        snapshot: AppointmentSnapshot,
        verification: Optional[PaymentVerification] = None,
    ) -> ValidationResult:
        """Data-integrity summary of a record. Only warnings, never violations."""
        resolution = self.resolver.resolve_with_diagnostics(snapshot, verification)
        return ValidationResult(
            current_status=str(resolution.status),
            target_status=str(resolution.status),
            warnings=list(resolution.warnings),
        )


def validate_transition(
    snapshot: AppointmentSnapshot,
    target: Union[CanonicalStatus, str],
    actor: Actor,
    verification: Optional[PaymentVerification] = None,
    resolver: Optional[StatusResolver] = None,
) -> ValidationResult:
    """Validate a transition with a throwaway validator."""
    return TransitionValidator(resolver).validate(snapshot, target, actor, verification)
