"""
Appointment Status Resolver

Derives the single canonical status of an appointment from its raw
status token, payment signals, override and progress flags. Resolution
is a pure function of its inputs: no clock reads, no I/O.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union

from .models import AppointmentSnapshot, IntegrityWarning, PaymentVerification, WarningCode
from .status_mapping import (
    CanonicalStatus,
    StatusValue,
    is_legacy_status,
    map_legacy_status,
)

logger = logging.getLogger(__name__)

# Statuses that imply an operator has been assigned.
RESOURCE_BOUND_STATUSES = frozenset(
    {
        CanonicalStatus.AWAITING_SCHEDULING,
        CanonicalStatus.CONFIRMED,
        CanonicalStatus.RESCHEDULED,
        CanonicalStatus.COMPLETED,
    }
)

DATED_STATUSES = frozenset({CanonicalStatus.CONFIRMED, CanonicalStatus.RESCHEDULED})


class BalancePaymentPolicy(Enum):
    """How internal balance payments are treated by the payment gate."""

    TRUSTED = "trusted"
    REQUIRE_SETTLEMENT = "require_settlement"


class ResolutionSource(Enum):
    """Which precedence rule produced the resolved status."""

    OVERRIDE = "override"
    PAYMENT_GATE = "payment_gate"
    COMPLETION = "completion"
    RESCHEDULE = "reschedule"
    LEGACY_MAPPING = "legacy_mapping"
    RAW = "raw"


@dataclass(frozen=True)
class StatusResolution:
    """Resolved status plus the diagnostics gathered on the way."""

    status: StatusValue
    source: ResolutionSource
    known: bool
    legacy_token: Optional[str] = None
    warnings: List[IntegrityWarning] = field(default_factory=list)


class StatusResolver:
    """
    Resolves canonical appointment status.

    Precedence, highest first: administrator override, payment gate,
    validated completion, reschedule display, legacy mapping, raw token.
    """

    def __init__(
        self,
        balance_policy: Union[BalancePaymentPolicy, str] = BalancePaymentPolicy.TRUSTED,
    ):
        """
        Initialize resolver.

        Args:
            balance_policy: Whether a balance payment alone satisfies the
                payment gate (TRUSTED) or needs a completed settlement
                status (REQUIRE_SETTLEMENT)
        """
        self.balance_policy = BalancePaymentPolicy(balance_policy)

    def is_payment_satisfied(
        self,
        snapshot: AppointmentSnapshot,
        verification: Optional[PaymentVerification] = None,
    ) -> bool:
        """
        Evaluate the payment gate.

        A supplied verification result takes precedence over the flag
        stored on the snapshot.
        """
        provider_verified = (
            verification.verified if verification is not None else snapshot.provider_verified
        )
        if provider_verified:
            return True
        if not snapshot.balance_paid:
            return False
        if self.balance_policy == BalancePaymentPolicy.TRUSTED:
            return True
        return (snapshot.payment_status or "").lower() == "completed"

    def resolve(
        self,
        snapshot: AppointmentSnapshot,
        verification: Optional[PaymentVerification] = None,
    ) -> StatusValue:
        """
        Resolve the canonical status of an appointment.

        Args:
            snapshot: Appointment snapshot
            verification: Optional fresh payment verification result

        Returns:
            CanonicalStatus, or the raw token when it is not recognised
        """
        status, _ = self._apply_precedence(snapshot, verification)
        return status

    def resolve_with_diagnostics(
        self,
        snapshot: AppointmentSnapshot,
        verification: Optional[PaymentVerification] = None,
    ) -> StatusResolution:
        """Resolve the status and collect data-integrity warnings."""
        status, source = self._apply_precedence(snapshot, verification)
        known = isinstance(status, CanonicalStatus)
        warnings = self._integrity_warnings(snapshot, verification, status, known)
        if warnings:
            logger.debug(
                f"Appointment {snapshot.appointment_id} resolved to '{status}' "
                f"with warnings {[w.code.value for w in warnings]}"
            )

        legacy_token = None
        if is_legacy_status(snapshot.raw_status):
            legacy_token = snapshot.raw_status
        elif snapshot.override_status and is_legacy_status(snapshot.override_status):
            legacy_token = snapshot.override_status

        return StatusResolution(
            status=status,
            source=source,
            known=known,
            legacy_token=legacy_token,
            warnings=warnings,
        )

    def _apply_precedence(self, snapshot, verification):
        if snapshot.override_status:
            return map_legacy_status(snapshot.override_status), ResolutionSource.OVERRIDE

        if not self.is_payment_satisfied(snapshot, verification):
            return CanonicalStatus.AWAITING_PAYMENT, ResolutionSource.PAYMENT_GATE

        raw = snapshot.raw_status
        if raw == CanonicalStatus.COMPLETED.value and snapshot.operator_validated:
            return CanonicalStatus.COMPLETED, ResolutionSource.COMPLETION

        if raw == CanonicalStatus.CONFIRMED.value and snapshot.rescheduled:
            return CanonicalStatus.RESCHEDULED, ResolutionSource.RESCHEDULE

        mapped = map_legacy_status(raw)
        if isinstance(mapped, CanonicalStatus):
            return mapped, ResolutionSource.LEGACY_MAPPING

        return (raw or ""), ResolutionSource.RAW

    def _integrity_warnings(self, snapshot, verification, status, known):
        warnings: List[IntegrityWarning] = []

        if not snapshot.raw_status:
            warnings.append(
                IntegrityWarning(
                    WarningCode.MISSING_STATUS, "Record has no status", "raw_status"
                )
            )
        elif not known:
            warnings.append(
                IntegrityWarning(
                    WarningCode.UNKNOWN_STATUS,
                    f"Unrecognised status '{status}'",
                    "raw_status",
                )
            )

        if is_legacy_status(snapshot.raw_status):
            warnings.append(
                IntegrityWarning(
                    WarningCode.LEGACY_STATUS,
                    f"Deprecated status '{snapshot.raw_status}' still stored",
                    "raw_status",
                )
            )

        if status in RESOURCE_BOUND_STATUSES and not snapshot.resource_id:
            warnings.append(
                IntegrityWarning(
                    WarningCode.MISSING_RESOURCE,
                    f"Status '{status}' requires an assigned operator",
                    "resource_id",
                )
            )

        if status in DATED_STATUSES and snapshot.scheduled_at is None:
            warnings.append(
                IntegrityWarning(
                    WarningCode.MISSING_DATE,
                    f"Status '{status}' requires a scheduled date",
                    "scheduled_at",
                )
            )

        if (
            snapshot.raw_status == CanonicalStatus.COMPLETED.value
            and not snapshot.operator_validated
        ):
            warnings.append(
                IntegrityWarning(
                    WarningCode.MISSING_OPERATOR_VALIDATION,
                    "Completed session has not been validated by the operator",
                    "operator_validated",
                )
            )

        if status in DATED_STATUSES and not snapshot.has_meeting_link:
            warnings.append(
                IntegrityWarning(
                    WarningCode.MISSING_MEETING_LINK,
                    "Confirmed appointment has no meeting link",
                    "has_meeting_link",
                )
            )

        provider_verified = (
            verification.verified if verification is not None else snapshot.provider_verified
        )
        if (
            map_legacy_status(snapshot.raw_status) == CanonicalStatus.AWAITING_PAYMENT
            and provider_verified
        ):
            warnings.append(
                IntegrityWarning(
                    WarningCode.PAYMENT_STATE_MISMATCH,
                    "Stored status is unpaid but the payment provider reports success",
                    "provider_verified",
                )
            )

        return warnings


_default_resolver = StatusResolver()


def resolve_status(
    snapshot: AppointmentSnapshot,
    verification: Optional[PaymentVerification] = None,
    balance_policy: Union[BalancePaymentPolicy, str, None] = None,
) -> StatusValue:
    """
    Resolve a snapshot with the default (trusted balance) policy.

    Pass ``balance_policy`` to evaluate under another policy without
    building a resolver.
    """
    resolver = (
        _default_resolver if balance_policy is None else StatusResolver(balance_policy)
    )
    return resolver.resolve(snapshot, verification)
