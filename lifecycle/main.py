"""
Appointment Lifecycle Engine - FastAPI Application Entry Point

Exposes status resolution, transition validation and commits, appointment
queries, metrics and alerts over HTTP. Administrative endpoints are
protected with HTTP Basic credentials from settings.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .engine import StatusEngine, build_engine, configure_logging
from .settings import Settings, get_settings
from .services.alerting import AlertSeverity
from .services.appointment_filters import FilterError
from .services.appointment_store import AppointmentNotFoundError, StaleStateError
from .services.models import Actor, ActorRole, AppointmentSnapshot, PaymentVerification
from .services.status_mapping import get_status_display
from .services.status_messages import describe_violations, status_message_for
from .services.transition_graph import get_allowed_transitions, is_terminal_status
from .services.transition_service import OverrideForbiddenError, TransitionRejectedError

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

security = HTTPBasic()
optional_security = HTTPBasic(auto_error=False)


# Pydantic models for API requests/responses
class SnapshotModel(BaseModel):
    """Appointment snapshot as accepted over HTTP."""

    appointment_id: str
    raw_status: Optional[str] = None
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

    def to_snapshot(self) -> AppointmentSnapshot:
        return AppointmentSnapshot.from_record(self.model_dump())


class VerificationModel(BaseModel):
    verified: bool
    provider_status: str = "unknown"

    def to_verification(self) -> PaymentVerification:
        return PaymentVerification(verified=self.verified, provider_status=self.provider_status)


class ActorModel(BaseModel):
    actor_id: str
    role: Literal["requester", "operator", "admin"]

    def to_actor(self) -> Actor:
        return Actor(actor_id=self.actor_id, role=ActorRole(self.role))


class ResolveRequest(BaseModel):
    appointment: SnapshotModel
    verification: Optional[VerificationModel] = None


class ValidateTransitionRequest(BaseModel):
    appointment: SnapshotModel
    target_status: str
    actor: ActorModel
    verification: Optional[VerificationModel] = None


class FilterParams(BaseModel):
    owner_id: Optional[str] = None
    operator_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    now: Optional[datetime] = None

    @field_validator("start", "end", "now")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are read as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class FilterRequest(BaseModel):
    appointments: List[SnapshotModel]
    filter: str
    params: FilterParams = Field(default_factory=FilterParams)
    sort: Optional[Literal["date_asc", "date_desc", "status_priority"]] = None


class TransitionRequest(BaseModel):
    target_status: str
    actor: ActorModel
    reason: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class OverrideRequest(BaseModel):
    status: str
    actor_id: str
    reason: Optional[str] = None


def _verification(model: Optional[VerificationModel]) -> Optional[PaymentVerification]:
    return model.to_verification() if model is not None else None


def get_engine(request: Request) -> StatusEngine:
    return request.app.state.engine


def _credentials_valid(settings: Settings, credentials: HTTPBasicCredentials) -> bool:
    correct_username = secrets.compare_digest(
        credentials.username.encode(), settings.dashboard_username.encode()
    )
    correct_password = secrets.compare_digest(
        credentials.password.encode(),
        settings.dashboard_password.get_secret_value().encode(),
    )
    return correct_username and correct_password


def _reject_credentials(request: Request, action: str = "dashboard_auth_failed"):
    request.app.state.engine.audit.log_event(
        event_type="AUTHENTICATION",
        action=action,
        result="FAILURE",
    )
    raise HTTPException(
        status_code=401,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Basic"},
    )


def verify_dashboard_credentials(
    request: Request, credentials: HTTPBasicCredentials = Depends(security)
):
    """Verify dashboard access credentials."""
    if not _credentials_valid(request.app.state.engine.settings, credentials):
        _reject_credentials(request)
    return credentials.username


def authenticate_actor(
    request: Request, actor: ActorModel, credentials: Optional[HTTPBasicCredentials]
) -> Actor:
    """
    Build the acting principal from a request body.

    Requester and operator claims are taken as given; the ownership and
    assignment rules of the validator still apply to them. An
    administrator claim bypasses those rules, so it needs dashboard
    credentials.
    """
    principal = actor.to_actor()
    if principal.is_admin and (
        credentials is None
        or not _credentials_valid(request.app.state.engine.settings, credentials)
    ):
        _reject_credentials(request, action="admin_actor_unauthenticated")
    return principal


def create_app(engine: Optional[StatusEngine] = None) -> FastAPI:
    """
    Build the FastAPI application around a status engine.

    Args:
        engine: Pre-built engine; one is built from get_settings() when omitted
    """
    if engine is None:
        settings = get_settings()
        configure_logging(settings)
        engine = build_engine(settings)

    app = FastAPI(
        title=engine.settings.app_name,
        description="Appointment status lifecycle engine - resolution, transitions, "
        "queries and monitoring",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.engine = engine

    # Add rate limiting middleware and error handler
    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=engine.settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    rate = engine.settings.rate_limit

    @app.on_event("startup")
    async def startup_event():
        """Application startup tasks."""
        await app.state.engine.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown tasks."""
        await app.state.engine.stop()

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring application status."""
        return {"status": "healthy", "service": engine.settings.app_name, "version": VERSION}

    @app.get("/api/v1/health/status-system")
    @limiter.limit(rate)
    async def status_system_health(request: Request, engine: StatusEngine = Depends(get_engine)):
        """
        Combined health of the status system.

        Overall status is unhealthy when any critical alert is active,
        degraded with other active alerts or a performance issue.
        """
        alert_health = engine.alerting.get_health_status()
        performance = engine.monitor.is_healthy()

        overall = alert_health["status"]
        if overall == "healthy" and not performance["healthy"]:
            overall = "degraded"

        return {
            "status": overall,
            "timestamp": datetime.now().astimezone().isoformat(),
            "alerts": alert_health,
            "performance": performance,
            "metrics": engine.monitor.get_metrics_snapshot().to_dict(),
            "scheduler": engine.scheduler.stats,
        }

    @app.get("/api/v1/health/metrics")
    @limiter.limit(rate)
    async def metrics(request: Request, engine: StatusEngine = Depends(get_engine)):
        """Aggregated transition metrics and recommendations."""
        return {
            "metrics": engine.monitor.get_metrics_snapshot().to_dict(),
            "report": engine.monitor.get_detailed_report(),
        }

    @app.get("/api/v1/transitions/{status}")
    async def allowed_transitions(status: str):
        """Legal successors of a status (canonical or legacy token)."""
        return {
            "status": status,
            "display": get_status_display(status),
            "terminal": is_terminal_status(status),
            "allowed_transitions": [s.value for s in get_allowed_transitions(status)],
        }

    @app.post("/api/v1/appointments/resolve")
    @limiter.limit(rate)
    async def resolve(
        request: Request, body: ResolveRequest, engine: StatusEngine = Depends(get_engine)
    ):
        """Resolve the canonical status of an appointment snapshot."""
        snapshot = body.appointment.to_snapshot()
        resolution = engine.resolver.resolve_with_diagnostics(
            snapshot, _verification(body.verification)
        )
        return {
            "appointment_id": snapshot.appointment_id,
            "status": str(resolution.status),
            "known": resolution.known,
            "source": resolution.source.value,
            "display": get_status_display(str(resolution.status)),
            "warnings": [w.to_dict() for w in resolution.warnings],
        }

    @app.post("/api/v1/appointments/validate-transition")
    @limiter.limit(rate)
    async def validate_transition(
        request: Request,
        body: ValidateTransitionRequest,
        engine: StatusEngine = Depends(get_engine),
        credentials: Optional[HTTPBasicCredentials] = Depends(optional_security),
    ):
        """Validate a transition without committing it."""
        actor = authenticate_actor(request, body.actor, credentials)
        result = engine.validator.validate(
            body.appointment.to_snapshot(),
            body.target_status,
            actor,
            _verification(body.verification),
        )
        response = {
            "ok": result.ok,
            "current_status": result.current_status,
            "target_status": result.target_status,
            "messages": describe_violations(result, actor),
        }
        if actor.is_admin:
            response["violations"] = [v.to_dict() for v in result.violations]
            response["warnings"] = [w.to_dict() for w in result.warnings]
        return response

    @app.post("/api/v1/appointments/filter")
    @limiter.limit(rate)
    async def filter_appointments(
        request: Request, body: FilterRequest, engine: StatusEngine = Depends(get_engine)
    ):
        """Apply a named filter and optional sort to a list of snapshots."""
        snapshots = [a.to_snapshot() for a in body.appointments]
        params = body.params.model_dump(exclude_none=True)
        try:
            matched = engine.filters.filter_appointments(snapshots, body.filter, params)
        except FilterError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if body.sort == "date_asc":
            matched = engine.filters.sort_by_date(matched)
        elif body.sort == "date_desc":
            matched = engine.filters.sort_by_date(matched, ascending=False)
        elif body.sort == "status_priority":
            matched = engine.filters.sort_by_status_priority(matched)

        return {
            "filter": body.filter,
            "count": len(matched),
            "appointments": [
                {
                    "appointment_id": s.appointment_id,
                    "status": str(engine.resolver.resolve(s)),
                    "scheduled_at": s.scheduled_at.isoformat() if s.scheduled_at else None,
                }
                for s in matched
            ],
        }

    @app.post("/api/v1/appointments", status_code=201)
    @limiter.limit(rate)
    async def register_appointment(
        request: Request,
        body: SnapshotModel,
        engine: StatusEngine = Depends(get_engine),
        username: str = Depends(verify_dashboard_credentials),
    ):
        """Load an appointment record into the repository."""
        add = getattr(engine.repository, "add", None)
        if add is None:
            raise HTTPException(status_code=405, detail="Repository is read-only")
        await add(body.to_snapshot())
        return {"appointment_id": body.appointment_id}

    @app.post("/api/v1/appointments/{appointment_id}/transition")
    @limiter.limit(rate)
    async def transition(
        request: Request,
        appointment_id: str,
        body: TransitionRequest,
        engine: StatusEngine = Depends(get_engine),
        credentials: Optional[HTTPBasicCredentials] = Depends(optional_security),
    ):
        """Validate and commit a status transition."""
        actor = authenticate_actor(request, body.actor, credentials)
        try:
            entry = await engine.transitions.transition(
                appointment_id, body.target_status, actor, body.reason, body.meta
            )
        except AppointmentNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except TransitionRejectedError as e:
            raise HTTPException(
                status_code=422,
                detail={
                    "message": "Transition not allowed",
                    "errors": describe_violations(e.result, actor),
                },
            )
        except StaleStateError:
            raise HTTPException(
                status_code=409,
                detail="Appointment changed since it was read - reload and retry",
            )

        snapshot = await engine.repository.get(appointment_id)
        return {
            "history_entry": entry.to_dict(),
            "status": str(engine.resolver.resolve(snapshot)),
            "message": status_message_for(actor, engine.resolver.resolve(snapshot), snapshot),
        }

    @app.post("/api/v1/appointments/{appointment_id}/override")
    @limiter.limit(rate)
    async def override(
        request: Request,
        appointment_id: str,
        body: OverrideRequest,
        engine: StatusEngine = Depends(get_engine),
        username: str = Depends(verify_dashboard_credentials),
    ):
        """Administrator override of the resolved status."""
        actor = Actor(actor_id=body.actor_id, role=ActorRole.ADMINISTRATOR)
        try:
            entry = await engine.transitions.override_status(
                appointment_id, body.status, actor, body.reason
            )
        except AppointmentNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except OverrideForbiddenError as e:
            raise HTTPException(status_code=403, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StaleStateError:
            raise HTTPException(status_code=409, detail="Appointment changed - retry")
        return {"history_entry": entry.to_dict()}

    @app.get("/api/v1/appointments/{appointment_id}/history")
    @limiter.limit(rate)
    async def history(
        request: Request, appointment_id: str, engine: StatusEngine = Depends(get_engine)
    ):
        """Committed transition history, oldest first."""
        try:
            entries = await engine.repository.get_history(appointment_id)
        except AppointmentNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"appointment_id": appointment_id, "history": [e.to_dict() for e in entries]}

    @app.get("/api/v1/alerts")
    @limiter.limit(rate)
    async def list_alerts(
        request: Request,
        active_only: bool = False,
        severity: Optional[str] = None,
        limit: int = 50,
        engine: StatusEngine = Depends(get_engine),
        username: str = Depends(verify_dashboard_credentials),
    ):
        """List alerts, newest first."""
        if severity is not None:
            try:
                alerts = engine.alerting.get_alerts_by_severity(AlertSeverity(severity))
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown severity '{severity}'")
        elif active_only:
            alerts = engine.alerting.get_active_alerts()
        else:
            alerts = engine.alerting.get_all_alerts(limit)
        return {"alerts": [a.to_dict() for a in alerts[:limit]]}

    @app.post("/api/v1/alerts/check")
    @limiter.limit("10/minute")
    async def check_alerts(
        request: Request,
        engine: StatusEngine = Depends(get_engine),
        username: str = Depends(verify_dashboard_credentials),
    ):
        """Run alert evaluation now."""
        fired = await engine.scheduler.check_now()
        return {"fired": [a.to_dict() for a in fired]}

    @app.post("/api/v1/alerts/{alert_id}/resolve")
    @limiter.limit(rate)
    async def resolve_alert(
        request: Request,
        alert_id: str,
        engine: StatusEngine = Depends(get_engine),
        username: str = Depends(verify_dashboard_credentials),
    ):
        """Mark an alert resolved."""
        if not engine.alerting.resolve_alert(alert_id):
            raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
        alert = engine.alerting.get_alert(alert_id)
        engine.audit.log_alert_event("alert_resolved", alert.to_dict())
        return {"alert": alert.to_dict()}

    return app


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "lifecycle.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
