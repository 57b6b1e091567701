"""
Payment Verification Adapter

Wraps the payment provider client and turns its answer into a
PaymentVerification for the resolver. Provider failures are reported
as unverified rather than raised, so a gateway outage keeps the
payment gate closed.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

from .models import AppointmentSnapshot, PaymentVerification

logger = logging.getLogger(__name__)


class PaymentProviderClient(Protocol):
    """External gateway lookup by payment reference."""

    async def verify(self, reference: str) -> Mapping[str, Any]:
        """Return ``{"verified": bool, "provider_status": str}``."""
        ...


class PaymentVerificationService:
    """Resolves the payment state of appointments."""

    def __init__(self, provider: Optional[PaymentProviderClient] = None, timeout: float = 10.0):
        """
        Initialize verification service.

        Args:
            provider: Gateway client; without one only stored flags are used
            timeout: Seconds to wait for the provider before giving up
        """
        self.provider = provider
        self.timeout = timeout

    async def verify(self, snapshot: AppointmentSnapshot) -> PaymentVerification:
        """
        Verify payment for one appointment.

        Already-verified snapshots short-circuit. Balance payments are not
        sent to the provider; the resolver's balance policy decides them.
        """
        if snapshot.provider_verified:
            return PaymentVerification(
                verified=True,
                provider_status=snapshot.payment_status or "succeeded",
                source="snapshot",
            )

        if snapshot.balance_paid:
            return PaymentVerification(
                verified=False,
                provider_status=snapshot.payment_status or "balance",
                source="balance",
            )

        if not snapshot.payment_reference or self.provider is None:
            return PaymentVerification(
                verified=False, provider_status="missing_reference", source="none"
            )

        try:
            response = await asyncio.wait_for(
                self.provider.verify(snapshot.payment_reference), timeout=self.timeout
            )
        except Exception as e:
            logger.error(
                f"Payment verification failed for appointment {snapshot.appointment_id}: {e}"
            )
            return PaymentVerification(verified=False, provider_status="failed", source="error")

        return PaymentVerification(
            verified=bool(response.get("verified")),
            provider_status=str(response.get("provider_status", "unknown")),
        )

    async def verify_many(
        self, snapshots: Iterable[AppointmentSnapshot]
    ) -> Dict[str, PaymentVerification]:
        """Verify several appointments concurrently, keyed by appointment id."""
        snapshots = list(snapshots)
        results = await asyncio.gather(*(self.verify(s) for s in snapshots))
        return {s.appointment_id: r for s, r in zip(snapshots, results)}
