"""
Status engine assembly.

Builds every lifecycle service from Settings and owns their startup
and shutdown. Each call to ``build_engine`` returns an independent
engine, so tests never share state.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .audit import AuditLogger
from .settings import Settings
from .services.alert_scheduler import AlertScheduler
from .services.alerting import AlertingSystem, default_alert_rules
from .services.appointment_filters import AppointmentFilters
from .services.appointment_store import AppointmentRepository, InMemoryAppointmentRepository
from .services.notifications import AlertNotifier, LoggingNotifier, WebhookNotifier
from .services.payment_verification import PaymentProviderClient, PaymentVerificationService
from .services.performance_monitor import PerformanceMonitor
from .services.status_monitor import StatusMonitor
from .services.status_resolver import StatusResolver
from .services.transition_service import TransitionService
from .services.transition_validator import TransitionValidator

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings):
    """Configure the root logger from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@dataclass
class StatusEngine:
    """Container for the lifecycle services."""

    settings: Settings
    resolver: StatusResolver
    validator: TransitionValidator
    filters: AppointmentFilters
    monitor: PerformanceMonitor
    alerting: AlertingSystem
    status_monitor: StatusMonitor
    repository: AppointmentRepository
    payment_verifier: PaymentVerificationService
    transitions: TransitionService
    scheduler: AlertScheduler
    audit: AuditLogger
    notifiers: List[AlertNotifier] = field(default_factory=list)

    async def start(self):
        """Start background tasks."""
        for warning in self.settings.validate_for_startup():
            logger.warning(warning)

        await self.scheduler.start()
        self.audit.log_system_event(
            "status_engine_started",
            additional_data={
                "balance_payment_policy": self.settings.balance_payment_policy,
                "alert_check_interval_seconds": self.settings.alert_check_interval_seconds,
            },
        )
        logger.info(f"{self.settings.app_name} status engine started")

    async def stop(self):
        """Stop background tasks and flush the audit log."""
        await self.scheduler.stop()
        self.audit.log_system_event("status_engine_stopped", additional_data=self.scheduler.stats)
        self.audit.close()
        logger.info("Status engine stopped")


def build_engine(
    settings: Settings,
    repository: Optional[AppointmentRepository] = None,
    payment_provider: Optional[PaymentProviderClient] = None,
    notifiers: Optional[List[AlertNotifier]] = None,
    audit: Optional[AuditLogger] = None,
) -> StatusEngine:
    """
    Assemble a status engine.

    Args:
        settings: Application settings
        repository: Persistence collaborator (in-memory when omitted)
        payment_provider: Payment gateway client
        notifiers: Alert delivery adapters (log + optional webhook when omitted)
        audit: Audit logger (built from settings when omitted)

    Returns:
        StatusEngine
    """
    resolver = StatusResolver(settings.balance_payment_policy)
    validator = TransitionValidator(resolver)
    monitor = PerformanceMonitor(
        latency_window_minutes=settings.latency_window_minutes,
        retention_hours=settings.metrics_retention_hours,
        compaction_interval_seconds=settings.metrics_compaction_interval_seconds,
    )
    alerting = AlertingSystem(
        rules=default_alert_rules(
            error_rate_threshold=settings.error_rate_alert_threshold_percent,
            low_volume_threshold=settings.low_volume_threshold,
            latency_p95_threshold_ms=settings.latency_p95_alert_ms,
        )
    )
    status_monitor = StatusMonitor(resolver)
    repository = repository or InMemoryAppointmentRepository()
    payment_verifier = PaymentVerificationService(payment_provider)

    if audit is None:
        audit = AuditLogger(
            log_file=settings.audit_log_file,
            max_bytes=settings.audit_log_rotation_mb * 1024 * 1024,
            enabled=settings.enable_audit_logging,
        )

    if notifiers is None:
        notifiers = [LoggingNotifier()]
        if settings.alert_webhook_url:
            notifiers.append(WebhookNotifier(settings.alert_webhook_url))

    transitions = TransitionService(
        repository=repository,
        validator=validator,
        monitor=monitor,
        audit=audit,
        payment_verifier=payment_verifier,
    )

    snapshot_source = getattr(repository, "list", None)
    scheduler = AlertScheduler(
        monitor=monitor,
        alerting=alerting,
        notifiers=notifiers,
        interval_seconds=settings.alert_check_interval_seconds,
        status_monitor=status_monitor,
        snapshot_source=snapshot_source,
        audit=audit,
    )

    return StatusEngine(
        settings=settings,
        resolver=resolver,
        validator=validator,
        filters=AppointmentFilters(resolver),
        monitor=monitor,
        alerting=alerting,
        status_monitor=status_monitor,
        repository=repository,
        payment_verifier=payment_verifier,
        transitions=transitions,
        scheduler=scheduler,
        audit=audit,
        notifiers=notifiers,
    )
