"""Tests for the HTTP trigger endpoints."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.config import Settings
from src.main import create_app
from src.models.sync import DeleteRequest
from src.pumpsync.config_loader import SyncConfig
from src.pumpsync.service_state import ServiceState
from src.pumpsync.sinks import TidepoolSink
from src.pumpsync.sinks.memory import RecordingSink
from src.pumpsync.storage import InMemoryEventSource
from src.pumpsync.sync.scheduler import SyncCoordinator
from src.pumpsync.tests.conftest import T0, at


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def service_state(sink) -> ServiceState:
    state = ServiceState()
    state.set(sink)
    return state


@pytest.fixture
def client(scenario_events, service_state):
    def factory(_settings: Settings) -> SyncCoordinator:
        source = InMemoryEventSource(pump_history=scenario_events)
        coordinator = SyncCoordinator(source, service_state.current(), SyncConfig())
        coordinator.follow(service_state)
        return coordinator

    with TestClient(create_app(coordinator_factory=factory)) as test_client:
        yield test_client


class TestTriggers:
    @pytest.mark.parametrize("path", ["doses", "device-events", "carbs", "full"])
    def test_trigger_is_accepted(self, client, path: str) -> None:
        response = client.post(f"/api/v1/sync/{path}")
        assert response.status_code == 202
        body = response.json()
        assert isinstance(body["queued"], bool)
        assert "state" in body

    def test_delete_by_timestamp(self, client) -> None:
        response = client.post("/api/v1/sync/deletions", json={"timestamp": "2026-03-01T08:40:00Z"})
        assert response.status_code == 202
        assert response.json()["trigger"] == "delete_requested"

    def test_delete_needs_a_target(self, client) -> None:
        assert client.post("/api/v1/sync/deletions", json={}).status_code == 422

    def test_glucose_cannot_be_deleted(self, client) -> None:
        response = client.post(
            "/api/v1/sync/deletions",
            json={"group_id": "G", "record_kind": "glucose"},
        )
        assert response.status_code == 422

    def test_naive_timestamp_is_read_as_utc(self, scenario_events) -> None:
        sink = RecordingSink()
        source = InMemoryEventSource(pump_history=scenario_events)
        app = create_app(coordinator_factory=lambda _s: SyncCoordinator(source, sink, SyncConfig()))

        with TestClient(app) as client:
            response = client.post("/api/v1/sync/deletions", json={"timestamp": "2026-03-01T08:40:00"})
            assert response.status_code == 202

        # Shutdown drains the queue, so the deletion pass has run.
        assert [d.start for d in sink.calls_to("doses")[0].deleted] == [at(40)]

    def test_delete_request_timestamp_is_aware(self) -> None:
        request = DeleteRequest(timestamp="2026-03-01T08:00:00")
        assert request.timestamp == T0
        assert request.timestamp.utcoffset().total_seconds() == 0


class TestStatus:
    def test_reports_service(self, client) -> None:
        response = client.get("/api/v1/sync/status")
        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "memory"
        assert isinstance(body["reports"], list)

    def test_health_while_running(self, client) -> None:
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["service"] == "memory"


class TestService:
    def test_current_service(self, client) -> None:
        assert client.get("/api/v1/sync/service").json() == {
            "service": "memory",
            "display_name": "In-memory recorder",
        }

    def test_replace_with_new_settings(self, client, service_state) -> None:
        response = client.put("/api/v1/sync/service", json={"service": "memory", "dose_chunk_limit": 5})

        assert response.status_code == 200
        assert response.json()["service"] == "memory"
        assert service_state.raw["state"]["dose_chunk_limit"] == 5
        assert client.app.state.coordinator.sink is service_state.current()
        assert client.app.state.coordinator.sink.dose_chunk_limit == 5

    def test_add_tidepool_then_remove(self, client, service_state) -> None:
        response = client.put(
            "/api/v1/sync/service",
            json={"service": "tidepool", "dataset_id": "ds-9", "session_token": "secret-token"},
        )
        assert response.json() == {"service": "tidepool", "display_name": "Tidepool"}
        coordinator = client.app.state.coordinator
        assert isinstance(coordinator.sink, TidepoolSink)
        assert coordinator.sink.raw_state["dataset_id"] == "ds-9"
        assert "session_token" not in service_state.raw["state"]

        response = client.delete("/api/v1/sync/service")

        assert response.status_code == 200
        assert response.json()["service"] is None
        assert coordinator.sink is None
        assert service_state.raw is None
        assert client.get("/api/v1/sync/status").json()["service"] is None
        assert client.post("/api/v1/sync/doses").status_code == 202

    def test_unknown_service(self, client) -> None:
        assert client.put("/api/v1/sync/service", json={"service": "nightscout"}).status_code == 404

    def test_settings_the_service_does_not_take(self, client) -> None:
        response = client.put("/api/v1/sync/service", json={"service": "memory", "dataset_id": "ds-9"})
        assert response.status_code == 422

    def test_selection_needs_service_state(self, sink) -> None:
        app = create_app(coordinator_factory=lambda _s: SyncCoordinator(InMemoryEventSource(), sink, SyncConfig()))
        with TestClient(app) as client:
            assert client.delete("/api/v1/sync/service").status_code == 409


class TestWorkerDown:
    def test_triggers_refused_without_lifespan(self) -> None:
        # No context manager: the lifespan hook never starts the worker.
        client = TestClient(create_app(coordinator_factory=lambda _s: None))
        assert client.post("/api/v1/sync/doses").status_code == 503
        assert client.get("/health").json()["status"] == "degraded"
