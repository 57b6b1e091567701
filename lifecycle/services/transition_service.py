"""
Appointment Transition Service

Write path for status changes: time the attempt, validate, commit
through the repository's conditional write, then audit and dispatch
the status-changed event. Monitoring and event-handler failures are
logged and never fail the transition.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from ..audit import AuditLogger
from .appointment_store import (
    AppointmentNotFoundError,
    AppointmentRepository,
    StaleStateError,
)
from .models import (
    Actor,
    AppointmentSnapshot,
    PaymentVerification,
    TransitionHistoryEntry,
    ValidationResult,
)
from .payment_verification import PaymentVerificationService
from .performance_monitor import PerformanceMonitor, TransitionOutcome, TransitionTiming
from .status_mapping import CanonicalStatus, is_legacy_status, map_legacy_status
from .transition_validator import TransitionValidator

logger = logging.getLogger(__name__)


class TransitionError(Exception):
    """Base exception for transition operations."""

    pass


class TransitionRejectedError(TransitionError):
    """Validation reported one or more violations."""

    def __init__(self, result: ValidationResult):
        self.result = result
        super().__init__(
            f"Transition {result.current_status} -> {result.target_status} rejected: "
            f"{', '.join(result.codes)}"
        )


class OverrideForbiddenError(TransitionError):
    """Only administrators may override a status."""

    pass


@dataclass(frozen=True)
class StatusChangedEvent:
    """Domain event emitted after a committed status change."""

    appointment_id: str
    from_status: str
    to_status: str
    actor_id: str
    actor_role: str
    committed_at: datetime
    reason: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    override: bool = False
    type: str = "AppointmentStatusChanged"

    @classmethod
    def from_entry(cls, entry: TransitionHistoryEntry) -> "StatusChangedEvent":
        return cls(
            appointment_id=entry.appointment_id,
            from_status=entry.from_status,
            to_status=entry.to_status,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            committed_at=entry.committed_at,
            reason=entry.reason,
            meta=dict(entry.meta),
            override=entry.override,
        )


EventHandler = Callable[[StatusChangedEvent], Any]


def _field_changes(target: CanonicalStatus) -> Dict[str, Any]:
    """Snapshot fields written for a committed target status."""
    if target == CanonicalStatus.RESCHEDULED:
        return {
            "raw_status": CanonicalStatus.CONFIRMED.value,
            "rescheduled": True,
            "override_status": None,
        }
    changes: Dict[str, Any] = {"raw_status": target.value, "override_status": None}
    if target == CanonicalStatus.CONFIRMED:
        changes["rescheduled"] = False
    return changes


class TransitionService:
    """Validates and commits appointment status transitions."""

    def __init__(
        self,
        repository: AppointmentRepository,
        validator: TransitionValidator,
        monitor: Optional[PerformanceMonitor] = None,
        audit: Optional[AuditLogger] = None,
        payment_verifier: Optional[PaymentVerificationService] = None,
        event_handlers: Optional[List[EventHandler]] = None,
    ):
        """
        Initialize transition service.

        Args:
            repository: Persistence collaborator with conditional writes
            validator: Transition validator
            monitor: Performance monitor fed with every attempt
            audit: Audit logger for committed and rejected transitions
            payment_verifier: Used by ``transition`` when no verification is supplied
            event_handlers: Callables (sync or async) receiving StatusChangedEvent
        """
        self.repository = repository
        self.validator = validator
        self.monitor = monitor
        self.audit = audit
        self.payment_verifier = payment_verifier
        self._event_handlers: List[EventHandler] = list(event_handlers or [])

    def add_event_handler(self, handler: EventHandler):
        self._event_handlers.append(handler)

    # ------------------------------------------------------------------
    # Observability helpers; failures here are logged, never raised
    # ------------------------------------------------------------------

    def _start_timing(self, snapshot, target) -> Optional[TransitionTiming]:
        if self.monitor is None:
            return None
        try:
            if is_legacy_status(snapshot.raw_status):
                self.monitor.record_legacy_token(snapshot.raw_status)
            return self.monitor.start_transition(
                snapshot.appointment_id, snapshot.raw_status, str(target)
            )
        except Exception as e:
            logger.error(f"Failed to start transition timing: {e}")
            return None

    def _finish_timing(self, timing: Optional[TransitionTiming], outcome: TransitionOutcome):
        if self.monitor is None or timing is None:
            return
        try:
            self.monitor.record_transition_outcome(timing, outcome)
        except Exception as e:
            logger.error(f"Failed to record transition outcome {outcome.value}: {e}")

    def _record_error(self, category: str):
        if self.monitor is None:
            return
        try:
            self.monitor.record_error(category)
        except Exception as e:
            logger.error(f"Failed to record error {category}: {e}")

    async def _dispatch(self, entry: TransitionHistoryEntry):
        event = StatusChangedEvent.from_entry(entry)
        for handler in self._event_handlers:
            try:
                outcome = handler(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)} failed "
                    f"for {entry.appointment_id}: {e}"
                )
                self._record_error("event_handler_failed")

    # ------------------------------------------------------------------
    # Write paths
    # ------------------------------------------------------------------

    async def apply(
        self,
        snapshot: AppointmentSnapshot,
        target: Union[CanonicalStatus, str],
        actor: Actor,
        reason: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        verification: Optional[PaymentVerification] = None,
    ) -> TransitionHistoryEntry:
        """
        Validate and commit a transition from the given snapshot.

        Args:
            snapshot: Appointment as last read by the caller
            target: Requested status
            actor: Principal requesting the change
            reason: Free-text reason stored in history
            meta: Extra history metadata
            verification: Optional fresh payment verification result

        Returns:
            The appended history entry

        Raises:
            TransitionRejectedError: If validation reports violations
            StaleStateError: If the record changed since ``snapshot`` was read
        """
        timing = self._start_timing(snapshot, target)

        try:
            result = self.validator.validate(snapshot, target, actor, verification)
        except Exception:
            self._finish_timing(timing, TransitionOutcome.ERROR)
            raise

        if not result.ok:
            self._finish_timing(timing, TransitionOutcome(result.primary_category().value))
            if self.audit:
                self.audit.log_transition_rejected(
                    snapshot.appointment_id,
                    actor.actor_id,
                    actor.role.value,
                    result.current_status,
                    result.target_status,
                    result.codes,
                )
            raise TransitionRejectedError(result)

        target_status = map_legacy_status(target)

        def history_factory(committed_at: datetime) -> TransitionHistoryEntry:
            return TransitionHistoryEntry(
                appointment_id=snapshot.appointment_id,
                from_status=result.current_status,
                to_status=target_status.value,
                actor_id=actor.actor_id,
                actor_role=actor.role.value,
                committed_at=committed_at,
                reason=reason,
                meta=tuple(sorted((meta or {}).items())),
            )

        try:
            entry = await self.repository.compare_and_set(
                snapshot.appointment_id,
                snapshot.version,
                _field_changes(target_status),
                history_factory,
            )
        except Exception:
            self._finish_timing(timing, TransitionOutcome.ERROR)
            raise

        if entry is None:
            self._finish_timing(timing, TransitionOutcome.STALE_STATE)
            current = await self.repository.get(snapshot.appointment_id)
            if self.audit:
                self.audit.log_transition_rejected(
                    snapshot.appointment_id,
                    actor.actor_id,
                    actor.role.value,
                    result.current_status,
                    result.target_status,
                    ["STALE_STATE"],
                    result="STALE",
                )
            raise StaleStateError(
                snapshot.appointment_id,
                snapshot.version,
                current.version if current else None,
            )

        self._finish_timing(timing, TransitionOutcome.SUCCESS)
        logger.info(
            f"Appointment {entry.appointment_id} moved {entry.from_status} -> "
            f"{entry.to_status} by {entry.actor_role}"
        )
        if self.audit:
            self.audit.log_transition_event(
                entry.appointment_id,
                entry.actor_id,
                entry.actor_role,
                entry.from_status,
                entry.to_status,
                reason,
            )

        await self._dispatch(entry)
        return entry

    async def _load(self, appointment_id: str) -> AppointmentSnapshot:
        snapshot = await self.repository.get(appointment_id)
        if snapshot is None:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
        return snapshot

    async def transition(
        self,
        appointment_id: str,
        target: Union[CanonicalStatus, str],
        actor: Actor,
        reason: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        verification: Optional[PaymentVerification] = None,
    ) -> TransitionHistoryEntry:
        """Load the appointment, verify payment if needed, and apply."""
        snapshot = await self._load(appointment_id)
        if verification is None and self.payment_verifier is not None:
            verification = await self.payment_verifier.verify(snapshot)
        return await self.apply(snapshot, target, actor, reason, meta, verification)

    async def override_status(
        self,
        appointment_id: str,
        status: Union[CanonicalStatus, str],
        actor: Actor,
        reason: Optional[str] = None,
    ) -> TransitionHistoryEntry:
        """
        Set an administrator override, bypassing the transition graph.

        The override is recorded in history with ``override=True`` and
        audited.

        Raises:
            OverrideForbiddenError: If the actor is not an administrator
            ValueError: If the status is not a canonical status
            StaleStateError: If the record changed while overriding
        """
        if not actor.is_admin:
            raise OverrideForbiddenError("Only administrators can override appointment status")

        target = map_legacy_status(status)
        if not isinstance(target, CanonicalStatus):
            raise ValueError(f"Cannot override to unknown status '{status}'")

        snapshot = await self._load(appointment_id)
        previous = str(self.validator.resolver.resolve(snapshot))

        def history_factory(committed_at: datetime) -> TransitionHistoryEntry:
            return TransitionHistoryEntry(
                appointment_id=appointment_id,
                from_status=previous,
                to_status=target.value,
                actor_id=actor.actor_id,
                actor_role=actor.role.value,
                committed_at=committed_at,
                reason=reason,
                override=True,
            )

        entry = await self.repository.compare_and_set(
            appointment_id,
            snapshot.version,
            {"override_status": target.value, "raw_status": target.value},
            history_factory,
        )
        if entry is None:
            current = await self.repository.get(appointment_id)
            raise StaleStateError(
                appointment_id, snapshot.version, current.version if current else None
            )

        logger.warning(
            f"Administrator override on {appointment_id}: {previous} -> {target.value}"
        )
        if self.audit:
            self.audit.log_status_override(
                appointment_id, actor.actor_id, previous, target.value, reason
            )

        await self._dispatch(entry)
        return entry
