"""
Unit tests for the FastAPI application.

Tests application metadata, the resolution and validation endpoints,
the transition write path, and the authenticated alert endpoints.
"""

import importlib

import pytest
from fastapi.testclient import TestClient

import lifecycle.main

from lifecycle.engine import build_engine
from lifecycle.main import create_app
from lifecycle.settings import Settings

AUTH = ("admin", "dashboard-pass")


def appointment(**overrides):
    data = {
        "appointment_id": "apt-1",
        "raw_status": "pending_scheduling",
        "requester_id": "req-1",
        "resource_id": "op-1",
        "scheduled_at": "2026-03-10T15:00:00Z",
        "provider_verified": True,
    }
    data.update(overrides)
    return data


class TestFastAPIApplication:
    """Test FastAPI application endpoints."""

    @pytest.fixture
    def settings(self, tmp_path):
        """Settings isolated from the environment."""
        return Settings(
            _env_file=None,
            dashboard_password="dashboard-pass",
            audit_log_file=str(tmp_path / "audit.log"),
            alert_check_interval_seconds=0,
        )

    @pytest.fixture
    def engine(self, settings):
        return build_engine(settings)

    @pytest.fixture
    def client(self, engine):
        """Create a test client with startup and shutdown hooks."""
        with TestClient(create_app(engine)) as client:
            yield client

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "service": "Appointment Lifecycle Engine",
            "version": "0.1.0",
        }

    def test_application_metadata(self, engine):
        app = create_app(engine)
        assert app.title == "Appointment Lifecycle Engine"
        assert app.version == "0.1.0"
        assert app.docs_url == "/docs"

    def test_openapi_schema(self, client):
        response = client.get("/openapi.json")
        assert response.status_code == 200
        assert "/api/v1/appointments/resolve" in response.json()["paths"]

    def test_allowed_transitions(self, client):
        response = client.get("/api/v1/transitions/approved")
        data = response.json()

        assert response.status_code == 200
        assert data["allowed_transitions"] == ["completed", "cancelled", "no-show"]
        assert data["display"]["status"] == "confirmed"
        assert data["terminal"] is False

    def test_resolve(self, client):
        response = client.post(
            "/api/v1/appointments/resolve",
            json={"appointment": appointment(raw_status="upcoming", has_meeting_link=True)},
        )
        data = response.json()

        assert response.status_code == 200
        assert data["status"] == "confirmed"
        assert data["known"] is True
        assert [w["code"] for w in data["warnings"]] == ["LEGACY_STATUS"]

    def test_resolve_with_failed_verification(self, client):
        response = client.post(
            "/api/v1/appointments/resolve",
            json={
                "appointment": appointment(),
                "verification": {"verified": False, "provider_status": "failed"},
            },
        )
        assert response.json()["status"] == "unpaid"

    def test_validate_transition_public_messages(self, client):
        """Test non-administrators get reduced explanations only."""
        response = client.post(
            "/api/v1/appointments/validate-transition",
            json={
                "appointment": appointment(),
                "target_status": "completed",
                "actor": {"actor_id": "someone-else", "role": "requester"},
            },
        )
        data = response.json()

        assert data["ok"] is False
        assert "violations" not in data
        assert all(set(m) == {"message"} for m in data["messages"])
        assert len(data["messages"]) == 2

    def test_validate_transition_admin_details(self, client):
        response = client.post(
            "/api/v1/appointments/validate-transition",
            json={
                "appointment": appointment(),
                "target_status": "completed",
                "actor": {"actor_id": "admin-1", "role": "admin"},
            },
            auth=AUTH,
        )
        data = response.json()

        assert data["ok"] is False
        assert [v["code"] for v in data["violations"]] == ["INVALID_TRANSITION"]
        assert data["messages"][0]["code"] == "INVALID_TRANSITION"

    def test_validate_transition_rejects_unknown_role(self, client):
        response = client.post(
            "/api/v1/appointments/validate-transition",
            json={
                "appointment": appointment(),
                "target_status": "confirmed",
                "actor": {"actor_id": "x", "role": "superuser"},
            },
        )
        assert response.status_code == 422

    def test_filter(self, client):
        response = client.post(
            "/api/v1/appointments/filter",
            json={
                "appointments": [
                    appointment(appointment_id="late", raw_status="confirmed",
                                scheduled_at="2026-03-12T10:00:00Z"),
                    appointment(appointment_id="early", raw_status="confirmed",
                                scheduled_at="2026-03-05T10:00:00Z"),
                    appointment(appointment_id="scheduling"),
                ],
                "filter": "upcoming",
                "params": {"now": "2026-03-04T12:00:00Z"},
                "sort": "date_asc",
            },
        )
        data = response.json()

        assert response.status_code == 200
        assert data["count"] == 2
        assert [a["appointment_id"] for a in data["appointments"]] == ["early", "late"]

    def test_filter_naive_now_is_utc(self, client):
        response = client.post(
            "/api/v1/appointments/filter",
            json={
                "appointments": [
                    appointment(appointment_id="soon", raw_status="confirmed",
                                scheduled_at="2026-03-05T10:00:00Z"),
                ],
                "filter": "upcoming",
                "params": {"now": "2026-03-04T12:00:00"},
            },
        )
        assert response.status_code == 200
        assert response.json()["count"] == 1

    def test_filter_unknown_name(self, client):
        response = client.post(
            "/api/v1/appointments/filter",
            json={"appointments": [], "filter": "teleported"},
        )
        assert response.status_code == 400

    def test_filter_missing_params(self, client):
        response = client.post(
            "/api/v1/appointments/filter",
            json={"appointments": [], "filter": "by_owner"},
        )
        assert response.status_code == 400

    def test_register_requires_credentials(self, client):
        assert client.post("/api/v1/appointments", json=appointment()).status_code == 401
        response = client.post(
            "/api/v1/appointments", json=appointment(), auth=("admin", "wrong")
        )
        assert response.status_code == 401

    def test_transition_flow(self, client):
        """Test register, commit, reject and history through the API."""
        assert client.post("/api/v1/appointments", json=appointment(), auth=AUTH).status_code == 201

        response = client.post(
            "/api/v1/appointments/apt-1/transition",
            json={"target_status": "confirmed", "actor": {"actor_id": "op-1", "role": "operator"}},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "confirmed"
        assert data["message"] == "Upcoming session"
        assert data["history_entry"]["from_status"] == "pending_scheduling"

        response = client.post(
            "/api/v1/appointments/apt-1/transition",
            json={
                "target_status": "pending_match",
                "actor": {"actor_id": "req-1", "role": "requester"},
            },
        )
        assert response.status_code == 422
        assert response.json()["detail"]["message"] == "Transition not allowed"

        history = client.get("/api/v1/appointments/apt-1/history").json()["history"]
        assert [h["to_status"] for h in history] == ["confirmed"]

    def test_transition_unknown_appointment(self, client):
        response = client.post(
            "/api/v1/appointments/missing/transition",
            json={"target_status": "cancelled", "actor": {"actor_id": "a", "role": "admin"}},
            auth=AUTH,
        )
        assert response.status_code == 404
        assert client.get("/api/v1/appointments/missing/history").status_code == 404

    def test_admin_actor_requires_credentials(self, client):
        """Test a self-declared administrator cannot bypass ownership rules."""
        client.post(
            "/api/v1/appointments",
            json=appointment(raw_status="confirmed", requester_id="owner-1"),
            auth=AUTH,
        )
        body = {
            "target_status": "cancelled",
            "actor": {"actor_id": "stranger", "role": "admin"},
        }

        assert client.post("/api/v1/appointments/apt-1/transition", json=body).status_code == 401
        response = client.post(
            "/api/v1/appointments/apt-1/transition", json=body, auth=("admin", "wrong")
        )
        assert response.status_code == 401
        assert client.get("/api/v1/appointments/apt-1/history").json()["history"] == []

        response = client.post("/api/v1/appointments/apt-1/transition", json=body, auth=AUTH)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_validate_transition_admin_claim_requires_credentials(self, client):
        response = client.post(
            "/api/v1/appointments/validate-transition",
            json={
                "appointment": appointment(),
                "target_status": "confirmed",
                "actor": {"actor_id": "admin-1", "role": "admin"},
            },
        )
        assert response.status_code == 401

    def test_requester_claim_still_checked_without_credentials(self, client):
        client.post(
            "/api/v1/appointments",
            json=appointment(raw_status="confirmed", requester_id="owner-1"),
            auth=AUTH,
        )
        response = client.post(
            "/api/v1/appointments/apt-1/transition",
            json={
                "target_status": "cancelled",
                "actor": {"actor_id": "stranger", "role": "requester"},
            },
        )
        assert response.status_code == 422

    def test_override(self, client):
        client.post(
            "/api/v1/appointments", json=appointment(raw_status="cancelled"), auth=AUTH
        )
        response = client.post(
            "/api/v1/appointments/apt-1/override",
            json={"status": "confirmed", "actor_id": "admin-1", "reason": "mistaken cancel"},
            auth=AUTH,
        )
        assert response.status_code == 200
        assert response.json()["history_entry"]["override"] is True

        response = client.post(
            "/api/v1/appointments/apt-1/override",
            json={"status": "teleported", "actor_id": "admin-1"},
            auth=AUTH,
        )
        assert response.status_code == 400

    def test_alerts(self, client):
        """Test alert evaluation, listing and resolution."""
        assert client.get("/api/v1/alerts").status_code == 401

        fired = client.post("/api/v1/alerts/check", auth=AUTH).json()["fired"]
        assert [a["metadata"]["rule_id"] for a in fired] == ["no_recent_transitions"]

        alerts = client.get("/api/v1/alerts", params={"active_only": True}, auth=AUTH).json()
        assert len(alerts["alerts"]) == 1

        alert_id = fired[0]["id"]
        response = client.post(f"/api/v1/alerts/{alert_id}/resolve", auth=AUTH)
        assert response.status_code == 200
        assert response.json()["alert"]["resolved"] is True

        assert client.post("/api/v1/alerts/unknown/resolve", auth=AUTH).status_code == 404

    def test_alerts_by_severity(self, client):
        client.post("/api/v1/alerts/check", auth=AUTH)
        medium = client.get("/api/v1/alerts", params={"severity": "medium"}, auth=AUTH)
        assert len(medium.json()["alerts"]) == 1
        bad = client.get("/api/v1/alerts", params={"severity": "extreme"}, auth=AUTH)
        assert bad.status_code == 400

    def test_status_system_health(self, client):
        data = client.get("/api/v1/health/status-system").json()
        assert data["status"] == "healthy"

        client.post("/api/v1/alerts/check", auth=AUTH)
        data = client.get("/api/v1/health/status-system").json()
        assert data["status"] == "degraded"
        assert data["alerts"]["active_alerts"] == 1
        assert data["scheduler"]["is_running"] is False

    def test_metrics(self, client):
        client.post(
            "/api/v1/appointments", json=appointment(), auth=AUTH
        )
        client.post(
            "/api/v1/appointments/apt-1/transition",
            json={"target_status": "completed", "actor": {"actor_id": "op-1", "role": "operator"}},
        )
        data = client.get("/api/v1/health/metrics").json()

        assert data["metrics"]["errors_by_category"] == {"graph": 1}
        assert "recommendations" in data["report"]


class TestModuleImport:
    """Test importing the application module has no side effects."""

    def test_import_builds_no_application(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        importlib.reload(lifecycle.main)

        assert not hasattr(lifecycle.main, "app")
        assert not (tmp_path / "audit.log").exists()
