"""
Appointment persistence contract and in-memory implementation.

Commits go through a compare-and-set on the record version last read by
the caller. Every commit bumps the version, so of two racing writers
from the same pre-state only one succeeds, even when a commit leaves
the raw status token unchanged. History entries are stamped and appended inside the
same critical section, which keeps the log in commit order.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .models import AppointmentSnapshot, TransitionHistoryEntry

logger = logging.getLogger(__name__)

HistoryFactory = Callable[[datetime], TransitionHistoryEntry]


class AppointmentStoreError(Exception):
    """Base exception for appointment persistence."""

    pass


class StaleStateError(AppointmentStoreError):
    """The record changed between read and commit."""

    def __init__(self, appointment_id: str, expected: Optional[int], actual: Optional[int]):
        self.appointment_id = appointment_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Appointment {appointment_id} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )


class AppointmentNotFoundError(AppointmentStoreError):
    """No appointment with the given id."""

    pass


class AppointmentRepository(Protocol):
    """Persistence collaborator consumed by the transition service."""

    async def get(self, appointment_id: str) -> Optional[AppointmentSnapshot]:
        ...

    async def compare_and_set(
        self,
        appointment_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
        history_factory: HistoryFactory,
    ) -> Optional[TransitionHistoryEntry]:
        """
        Apply ``changes`` only if the stored version still equals
        ``expected_version``, bumping it. Returns the appended history
        entry, or None when the precondition failed.
        """
        ...

    async def get_history(self, appointment_id: str) -> List[TransitionHistoryEntry]:
        ...


class InMemoryAppointmentRepository:
    """Process-local repository used by tests and the development server."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._records: Dict[str, AppointmentSnapshot] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def add(self, snapshot: AppointmentSnapshot) -> None:
        async with self._lock:
            self._records[snapshot.appointment_id] = snapshot

    async def get(self, appointment_id: str) -> Optional[AppointmentSnapshot]:
        async with self._lock:
            return self._records.get(appointment_id)

    async def list(self) -> List[AppointmentSnapshot]:
        async with self._lock:
            return list(self._records.values())

    async def compare_and_set(
        self,
        appointment_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
        history_factory: HistoryFactory,
    ) -> Optional[TransitionHistoryEntry]:
        async with self._lock:
            current = self._records.get(appointment_id)
            if current is None:
                raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")

            if current.version != expected_version:
                logger.info(
                    f"Conditional write rejected for {appointment_id}: "
                    f"expected version {expected_version}, found {current.version}"
                )
                return None

            entry = history_factory(self._clock())
            self._records[appointment_id] = replace(
                current,
                version=current.version + 1,
                history=current.history + (entry,),
                **dict(changes),
            )
            return entry

    async def get_history(self, appointment_id: str) -> List[TransitionHistoryEntry]:
        async with self._lock:
            current = self._records.get(appointment_id)
            if current is None:
                raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")
            return list(current.history)
