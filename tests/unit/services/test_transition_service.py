"""
Unit tests for TransitionService.

Tests commit, rejection, stale-state detection, administrator
overrides, monitoring outcomes and event dispatch.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from lifecycle.services.appointment_store import (
    AppointmentNotFoundError,
    InMemoryAppointmentRepository,
    StaleStateError,
)
from lifecycle.services.models import Actor, ActorRole, AppointmentSnapshot, PaymentVerification
from lifecycle.services.payment_verification import PaymentVerificationService
from lifecycle.services.performance_monitor import PerformanceMonitor
from lifecycle.services.status_mapping import CanonicalStatus
from lifecycle.services.status_resolver import StatusResolver
from lifecycle.services.transition_service import (
    OverrideForbiddenError,
    StatusChangedEvent,
    TransitionRejectedError,
    TransitionService,
)
from lifecycle.services.transition_validator import TransitionValidator

ADMIN = Actor("admin-1", ActorRole.ADMINISTRATOR)
OPERATOR = Actor("op-1", ActorRole.OPERATOR)
REQUESTER = Actor("req-1", ActorRole.REQUESTER)
WHEN = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def make_snapshot(**overrides) -> AppointmentSnapshot:
    fields = {
        "appointment_id": "apt-1",
        "raw_status": "pending_scheduling",
        "requester_id": "req-1",
        "resource_id": "op-1",
        "scheduled_at": WHEN,
        "provider_verified": True,
    }
    fields.update(overrides)
    return AppointmentSnapshot(**fields)


class TestTransitionService:
    """Test TransitionService functionality."""

    @pytest.fixture
    def repository(self):
        return InMemoryAppointmentRepository()

    @pytest.fixture
    def monitor(self):
        return PerformanceMonitor()

    @pytest.fixture
    def audit(self):
        """Audit logger double."""
        return MagicMock()

    @pytest.fixture
    def service(self, repository, monitor, audit):
        return TransitionService(
            repository=repository,
            validator=TransitionValidator(StatusResolver()),
            monitor=monitor,
            audit=audit,
        )

    @pytest.mark.asyncio
    async def test_commit(self, service, repository, monitor, audit):
        await repository.add(make_snapshot())

        entry = await service.transition("apt-1", "confirmed", OPERATOR, reason="slot picked")

        assert entry.from_status == "pending_scheduling"
        assert entry.to_status == "confirmed"
        assert entry.actor_role == "operator"
        assert entry.reason == "slot picked"
        stored = await repository.get("apt-1")
        assert stored.raw_status == "confirmed"
        assert stored.history == (entry,)

        metrics = monitor.get_metrics_snapshot()
        assert metrics.transitions_24h == 1
        assert metrics.active_transitions == 0
        audit.log_transition_event.assert_called_once()

    @pytest.mark.asyncio
    async def test_rejection_leaves_record_untouched(self, service, repository, monitor, audit):
        snapshot = make_snapshot(raw_status="completed", operator_validated=True)
        await repository.add(snapshot)

        with pytest.raises(TransitionRejectedError) as exc_info:
            await service.transition("apt-1", "confirmed", OPERATOR)

        assert "INVALID_TRANSITION" in exc_info.value.result.codes
        assert await repository.get("apt-1") == snapshot
        assert monitor.get_metrics_snapshot().errors_by_category == {"graph": 1}
        audit.log_transition_rejected.assert_called_once()

    @pytest.mark.asyncio
    async def test_rejection_outcome_uses_first_category(self, service, repository, monitor):
        await repository.add(make_snapshot())

        with pytest.raises(TransitionRejectedError):
            await service.transition("apt-1", "confirmed", Actor("op-2", ActorRole.OPERATOR))

        assert monitor.get_metrics_snapshot().errors_by_category == {"authorization": 1}

    @pytest.mark.asyncio
    async def test_stale_snapshot(self, service, repository, monitor, audit):
        """Test a commit from an outdated read is refused."""
        original = make_snapshot()
        await repository.add(original)
        await service.apply(original, "confirmed", OPERATOR)

        with pytest.raises(StaleStateError) as exc_info:
            await service.apply(original, "cancelled", OPERATOR)

        assert exc_info.value.expected == 0
        assert exc_info.value.actual == 1
        assert (await repository.get("apt-1")).raw_status == "confirmed"
        assert monitor.get_metrics_snapshot().errors_by_category == {"stale_state": 1}
        assert audit.log_transition_rejected.call_args.kwargs["result"] == "STALE"

    @pytest.mark.asyncio
    async def test_racing_commits_from_rescheduled(self, service, repository):
        """Test one winner when a commit leaves the raw token unchanged."""
        rescheduled = make_snapshot(raw_status="confirmed", rescheduled=True)
        await repository.add(rescheduled)

        results = await asyncio.gather(
            service.apply(rescheduled, "confirmed", OPERATOR),
            service.apply(rescheduled, "cancelled", REQUESTER),
            return_exceptions=True,
        )

        committed = [r for r in results if not isinstance(r, Exception)]
        assert len(committed) == 1
        assert sum(isinstance(r, StaleStateError) for r in results) == 1
        assert await repository.get_history("apt-1") == committed
        assert (await repository.get("apt-1")).version == 1

    @pytest.mark.asyncio
    async def test_override_to_same_status_invalidates_reads(self, service, repository):
        snapshot = make_snapshot(raw_status="confirmed")
        await repository.add(snapshot)
        await service.override_status("apt-1", "confirmed", ADMIN)

        with pytest.raises(StaleStateError):
            await service.apply(snapshot, "cancelled", REQUESTER)
        assert (await repository.get("apt-1")).raw_status == "confirmed"

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        with pytest.raises(AppointmentNotFoundError):
            await service.transition("missing", "cancelled", ADMIN)

    @pytest.mark.asyncio
    async def test_reschedule_sets_flag(self, service, repository):
        """Test rescheduling is stored as a flagged confirmation and can be undone."""
        await repository.add(make_snapshot(raw_status="confirmed", rescheduled=True))
        resolver = StatusResolver()

        assert resolver.resolve(await repository.get("apt-1")) is CanonicalStatus.RESCHEDULED

        await service.transition("apt-1", "confirmed", OPERATOR)
        stored = await repository.get("apt-1")
        assert stored.rescheduled is False
        assert resolver.resolve(stored) is CanonicalStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_legacy_token_recorded(self, service, repository, monitor):
        await repository.add(make_snapshot(raw_status="approved"))

        entry = await service.transition("apt-1", "completed", OPERATOR)

        assert entry.from_status == "confirmed"
        assert (await repository.get("apt-1")).raw_status == "completed"
        assert monitor.get_metrics_snapshot().legacy_tokens_seen == {"approved": 1}

    @pytest.mark.asyncio
    async def test_uses_payment_verifier(self, repository):
        provider = MagicMock()
        provider.verify = AsyncMock(return_value={"verified": True, "provider_status": "paid"})
        service = TransitionService(
            repository=repository,
            validator=TransitionValidator(),
            payment_verifier=PaymentVerificationService(provider),
        )
        await repository.add(
            make_snapshot(
                raw_status="pending",
                provider_verified=False,
                override_status="pending",
                payment_reference="cs_123",
            )
        )

        entry = await service.transition("apt-1", "pending_match", ADMIN)

        assert entry.to_status == "pending_match"
        provider.verify.assert_awaited_once_with("cs_123")

    @pytest.mark.asyncio
    async def test_explicit_verification_skips_verifier(self, repository):
        verifier = MagicMock()
        verifier.verify = AsyncMock()
        service = TransitionService(
            repository=repository, validator=TransitionValidator(), payment_verifier=verifier
        )
        await repository.add(make_snapshot())

        await service.transition(
            "apt-1", "confirmed", OPERATOR, verification=PaymentVerification(verified=True)
        )
        verifier.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_event_handlers(self, service, repository):
        """Test sync and async handlers receive the event; failures don't propagate."""
        received = []

        def sync_handler(event):
            received.append(("sync", event))

        async def async_handler(event):
            received.append(("async", event))

        def broken_handler(event):
            raise RuntimeError("handler down")

        service.add_event_handler(sync_handler)
        service.add_event_handler(broken_handler)
        service.add_event_handler(async_handler)
        await repository.add(make_snapshot())

        entry = await service.transition("apt-1", "cancelled", REQUESTER, meta={"channel": "web"})

        assert [kind for kind, _ in received] == ["sync", "async"]
        event = received[0][1]
        assert isinstance(event, StatusChangedEvent)
        assert event.type == "AppointmentStatusChanged"
        assert event.to_status == "cancelled"
        assert event.meta == {"channel": "web"}
        assert event.committed_at == entry.committed_at
        assert service.monitor.get_metrics_snapshot().errors_by_category == {
            "event_handler_failed": 1
        }

    @pytest.mark.asyncio
    async def test_override_requires_admin(self, service, repository):
        await repository.add(make_snapshot())
        with pytest.raises(OverrideForbiddenError):
            await service.override_status("apt-1", "cancelled", OPERATOR)

    @pytest.mark.asyncio
    async def test_override_rejects_unknown_status(self, service, repository):
        await repository.add(make_snapshot())
        with pytest.raises(ValueError):
            await service.override_status("apt-1", "teleported", ADMIN)

    @pytest.mark.asyncio
    async def test_override_bypasses_graph(self, service, repository, audit):
        """Test an administrator can reopen a completed appointment."""
        await repository.add(make_snapshot(raw_status="completed", operator_validated=True))

        entry = await service.override_status("apt-1", "confirmed", ADMIN, reason="billing fix")

        assert entry.override is True
        assert entry.from_status == "completed"
        stored = await repository.get("apt-1")
        assert StatusResolver().resolve(stored) is CanonicalStatus.CONFIRMED
        audit.log_status_override.assert_called_once_with(
            "apt-1", "admin-1", "completed", "confirmed", "billing fix"
        )

        # Regular transitions continue from the override and clear it.
        await service.transition("apt-1", "completed", OPERATOR)
        stored = await repository.get("apt-1")
        assert stored.override_status is None
        assert len(stored.history) == 2
