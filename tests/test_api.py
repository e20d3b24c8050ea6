"""
Tests for the HTTP API.

The application runs its real lifespan against a per-test SQLite database,
the fake clock and recording handlers, so the dispatch loop is live but
nothing fires unless a test moves the clock.
"""

import threading
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from vaultjobs.main import create_app
from vaultjobs.runtime import build_runtime
from vaultjobs.settings import Settings

from conftest import wait_until

API_KEY = "test-api-key"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def app_settings(tmp_path):
    return Settings(
        api_key=API_KEY,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        scheduler_tick_seconds=0.05,
    )


@pytest.fixture
def runtime(app_settings, engine, clock, registry):
    return build_runtime(app_settings, engine=engine, clock=clock, registry=registry)


@pytest.fixture
def test_client(runtime, app_settings):
    """Client whose context runs the application lifespan."""
    with TestClient(create_app(runtime, app_settings)) as client:
        yield client


@pytest.fixture
def sample_job_data():
    """Sample job data for testing."""
    return {
        "name": "Nightly cleanup",
        "type": "cleanup",
        "schedule_expr": "*/5 * * * *",
        "config": {"retentionDays": 30},
        "owner_id": "user123",
    }


def create_job(client, **overrides):
    body = {"name": "job", "type": "cleanup"}
    body.update(overrides)
    response = client.post("/api/v1/jobs", json=body, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


class TestJobAPI:
    """Test class for job API endpoints."""

    def test_create_job_success(self, test_client, runtime, sample_job_data):
        """Test successful job creation."""
        response = test_client.post("/api/v1/jobs", json=sample_job_data, headers=HEADERS)

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == sample_job_data["name"]
        assert data["type"] == "cleanup"
        assert data["schedule_expr"] == "*/5 * * * *"
        assert data["config"] == {"retentionDays": 30}
        assert data["owner_id"] == "user123"
        assert data["status"] == "active"
        assert data["is_active"] is True
        assert data["last_run"] is None
        assert data["next_run"] == "2025-01-06T12:05:00"
        assert "id" in data
        assert runtime.scheduler.armed_jobs() == {data["id"]: datetime(2025, 1, 6, 12, 5)}

    def test_create_job_invalid_schedule(self, test_client):
        """Test job creation with invalid schedule expression."""
        response = test_client.post(
            "/api/v1/jobs",
            json={"name": "bad", "type": "cleanup", "schedule_expr": "invalid cron"},
            headers=HEADERS,
        )

        assert response.status_code == 400
        assert "invalid cron" in response.json()["detail"]

    def test_create_job_unknown_type(self, test_client):
        response = test_client.post("/api/v1/jobs", json={"name": "x", "type": "defragment"}, headers=HEADERS)

        assert response.status_code == 400
        assert "defragment" in response.json()["detail"]

    def test_create_job_validation_error(self, test_client):
        response = test_client.post("/api/v1/jobs", json={"type": "cleanup"}, headers=HEADERS)
        assert response.status_code == 422

        response = test_client.post("/api/v1/jobs", json={"name": "", "type": "cleanup"}, headers=HEADERS)
        assert response.status_code == 422

    @pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
    def test_missing_or_wrong_api_key(self, test_client, sample_job_data, headers):
        """Test that every route requires the API key."""
        assert test_client.post("/api/v1/jobs", json=sample_job_data, headers=headers).status_code == 401
        assert test_client.get("/api/v1/jobs", headers=headers).status_code == 401
        assert test_client.get("/api/v1/scheduler", headers=headers).status_code == 401

    def test_list_jobs_empty(self, test_client):
        """Test listing jobs when none exist."""
        response = test_client.get("/api/v1/jobs", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"jobs": [], "total": 0, "page": 1, "size": 10}

    def test_list_jobs_with_data(self, test_client, sample_job_data):
        """Test listing jobs with data."""
        create_job(test_client, **sample_job_data)
        create_job(test_client, name="second", type="backup")

        response = test_client.get("/api/v1/jobs", headers=HEADERS)

        data = response.json()
        assert data["total"] == 2
        assert [job["name"] for job in data["jobs"]] == ["second", "Nightly cleanup"]

    def test_get_job_success(self, test_client, sample_job_data):
        """Test getting a specific job."""
        created = create_job(test_client, **sample_job_data)

        response = test_client.get(f"/api/v1/jobs/{created['id']}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == created

    def test_get_job_not_found(self, test_client):
        """Test getting a non-existent job."""
        response = test_client.get("/api/v1/jobs/999", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["detail"] == "Job with id 999 not found"

    def test_update_job_success(self, test_client, runtime, sample_job_data):
        """Test updating name and schedule re-arms the job."""
        created = create_job(test_client, **sample_job_data)

        response = test_client.put(
            f"/api/v1/jobs/{created['id']}",
            json={"name": "Hourly cleanup", "schedule_expr": "0 * * * *"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Hourly cleanup"
        assert data["schedule_expr"] == "0 * * * *"
        assert data["next_run"] == "2025-01-06T13:00:00"
        assert data["config"] == {"retentionDays": 30}
        assert runtime.scheduler.next_fire(created["id"]) == datetime(2025, 1, 6, 13, 0)

    def test_pause_job(self, test_client, runtime, sample_job_data):
        created = create_job(test_client, **sample_job_data)

        response = test_client.put(f"/api/v1/jobs/{created['id']}", json={"is_active": False}, headers=HEADERS)

        data = response.json()
        assert data["status"] == "paused"
        assert data["next_run"] is None
        assert runtime.scheduler.armed_jobs() == {}

    def test_update_job_rejects_immutable_fields(self, test_client, sample_job_data):
        created = create_job(test_client, **sample_job_data)

        response = test_client.put(f"/api/v1/jobs/{created['id']}", json={"type": "backup"}, headers=HEADERS)

        assert response.status_code == 422
        assert test_client.get(f"/api/v1/jobs/{created['id']}", headers=HEADERS).json()["type"] == "cleanup"

    def test_update_job_invalid_schedule(self, test_client, sample_job_data):
        created = create_job(test_client, **sample_job_data)

        response = test_client.put(f"/api/v1/jobs/{created['id']}", json={"schedule_expr": "99 * * * *"}, headers=HEADERS)

        assert response.status_code == 400

    def test_update_job_null_config(self, test_client, sample_job_data):
        created = create_job(test_client, **sample_job_data)

        response = test_client.put(f"/api/v1/jobs/{created['id']}", json={"config": None}, headers=HEADERS)

        assert response.status_code == 400
        fetched = test_client.get(f"/api/v1/jobs/{created['id']}", headers=HEADERS).json()
        assert fetched["config"] == {"retentionDays": 30}

    def test_update_job_not_found(self, test_client):
        """Test updating a non-existent job."""
        response = test_client.put("/api/v1/jobs/999", json={"name": "ghost"}, headers=HEADERS)

        assert response.status_code == 404

    def test_delete_job_success(self, test_client, runtime, sample_job_data):
        """Test successful job deletion."""
        created = create_job(test_client, **sample_job_data)

        response = test_client.delete(f"/api/v1/jobs/{created['id']}", headers=HEADERS)

        assert response.status_code == 204
        assert test_client.get(f"/api/v1/jobs/{created['id']}", headers=HEADERS).status_code == 404
        assert runtime.scheduler.armed_jobs() == {}

    def test_delete_job_not_found(self, test_client):
        """Test deleting a non-existent job."""
        response = test_client.delete("/api/v1/jobs/999", headers=HEADERS)

        assert response.status_code == 404

    def test_get_job_logs_empty(self, test_client, sample_job_data):
        """Test getting logs of a job that never ran."""
        created = create_job(test_client, **sample_job_data)

        response = test_client.get(f"/api/v1/jobs/{created['id']}/logs", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"logs": [], "total": 0, "page": 1, "size": 50}

    def test_run_job_now(self, test_client, runtime, handlers, sample_job_data):
        """Test running a job immediately and reading its log."""
        created = create_job(test_client, **sample_job_data)

        response = test_client.post(f"/api/v1/jobs/{created['id']}/run", headers=HEADERS)

        assert response.status_code == 202
        data = response.json()
        assert data["job_id"] == created["id"]
        assert runtime.scheduler.wait_idle(timeout=5)
        assert handlers["cleanup"].calls == [{"retentionDays": 30}]

        logs = test_client.get(f"/api/v1/jobs/{created['id']}/logs", headers=HEADERS).json()
        assert logs["total"] == 2
        assert [entry["status"] for entry in logs["logs"]] == ["started", "completed"]
        assert {entry["run_id"] for entry in logs["logs"]} == {data["run_id"]}

        job = test_client.get(f"/api/v1/jobs/{created['id']}", headers=HEADERS).json()
        assert job["last_run"] == "2025-01-06T12:00:00"
        assert job["status"] == "active"

    def test_run_job_already_running(self, test_client, runtime, handlers):
        gate = threading.Event()
        handlers["backup"].gate = gate
        created = create_job(test_client, name="mirror", type="backup")

        try:
            assert test_client.post(f"/api/v1/jobs/{created['id']}/run", headers=HEADERS).status_code == 202
            assert wait_until(lambda: handlers["backup"].active == 1)

            response = test_client.post(f"/api/v1/jobs/{created['id']}/run", headers=HEADERS)
            assert response.status_code == 409
            assert response.json()["detail"] == f"Job {created['id']} is already running"
        finally:
            gate.set()
        assert runtime.scheduler.wait_idle(timeout=5)

    def test_run_job_not_found(self, test_client):
        """Test running a non-existent job."""
        response = test_client.post("/api/v1/jobs/999/run", headers=HEADERS)

        assert response.status_code == 404

    def test_failed_run_is_reported(self, test_client, runtime, handlers):
        handlers["webhook"].error = RuntimeError("endpoint returned 503")
        created = create_job(test_client, name="hook", type="webhook")

        test_client.post(f"/api/v1/jobs/{created['id']}/run", headers=HEADERS)
        assert runtime.scheduler.wait_idle(timeout=5)

        logs = test_client.get(f"/api/v1/jobs/{created['id']}/logs", headers=HEADERS).json()["logs"]
        assert logs[-1]["status"] == "failed"
        assert logs[-1]["error_kind"] == "handler_error"
        assert "endpoint returned 503" in logs[-1]["message"]
        assert test_client.get(f"/api/v1/jobs/{created['id']}", headers=HEADERS).json()["status"] == "failed"

    def test_scheduled_fire_through_dispatch_loop(self, test_client, runtime, clock, handlers, sample_job_data):
        created = create_job(test_client, **sample_job_data)

        clock.set(datetime(2025, 1, 6, 12, 5))

        assert wait_until(lambda: runtime.scheduler.next_fire(created["id"]) == datetime(2025, 1, 6, 12, 10))
        assert runtime.scheduler.wait_idle(timeout=5)
        assert len(handlers["cleanup"].calls) == 1

    def test_scheduler_status(self, test_client, sample_job_data):
        create_job(test_client, **sample_job_data)

        response = test_client.get("/api/v1/scheduler", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"running": True, "armed_jobs": 1, "firing_jobs": 0, "in_flight_jobs": 0}


class TestStartup:
    """Tests for arming persisted jobs when the application starts."""

    def test_lifespan_loads_jobs(self, runtime, app_settings):
        runtime.store.create(name="persisted", job_type="cleanup", schedule_expr="*/5 * * * *")
        runtime.store.create(name="paused", job_type="cleanup", schedule_expr="*/5 * * * *", is_active=False)

        with TestClient(create_app(runtime, app_settings)):
            assert len(runtime.scheduler.armed_jobs()) == 1
            assert runtime.scheduler.stats()["running"] is True

        assert runtime.scheduler.stats()["running"] is False

    def test_shutdown_closes_webhook_client(self, app_settings, engine, clock):
        runtime = build_runtime(app_settings, engine=engine, clock=clock)

        with TestClient(create_app(runtime, app_settings)):
            assert not runtime.webhook_sender._client.is_closed

        assert runtime.webhook_sender._client.is_closed


class TestHealthEndpoints:
    """Test class for health check endpoints."""

    def test_root_endpoint(self, test_client):
        """Test root endpoint."""
        response = test_client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Vault Jobs API"
        assert data["version"] == "1.0.0"

    def test_health_check(self, test_client):
        """Test health check endpoint."""
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "scheduler", "scheduler_running": True}


class TestPagination:
    """Test class for pagination functionality."""

    def test_pagination(self, test_client):
        """Test pagination of jobs list."""
        for i in range(15):
            create_job(test_client, name=f"Job {i}")

        first = test_client.get("/api/v1/jobs?page=1&size=10", headers=HEADERS).json()
        second = test_client.get("/api/v1/jobs?page=2&size=10", headers=HEADERS).json()

        assert first["total"] == 15
        assert len(first["jobs"]) == 10
        assert len(second["jobs"]) == 5
        assert second["page"] == 2

    def test_page_size_bounds(self, test_client):
        assert test_client.get("/api/v1/jobs?size=101", headers=HEADERS).status_code == 422
        assert test_client.get("/api/v1/jobs?page=0", headers=HEADERS).status_code == 422


class TestFiltering:
    """Test class for filtering functionality."""

    def test_filter_by_status_and_type(self, test_client):
        create_job(test_client, name="active cleanup", type="cleanup")
        create_job(test_client, name="paused backup", type="backup", is_active=False)

        paused = test_client.get("/api/v1/jobs?status=paused", headers=HEADERS).json()
        assert [job["name"] for job in paused["jobs"]] == ["paused backup"]

        cleanups = test_client.get("/api/v1/jobs?type=cleanup", headers=HEADERS).json()
        assert [job["name"] for job in cleanups["jobs"]] == ["active cleanup"]

        inactive = test_client.get("/api/v1/jobs?is_active=false", headers=HEADERS).json()
        assert inactive["total"] == 1

    def test_filter_by_owner_id(self, test_client):
        create_job(test_client, name="mine", owner_id="user1")
        create_job(test_client, name="theirs", owner_id="user2")

        response = test_client.get("/api/v1/jobs?owner_id=user1", headers=HEADERS).json()

        assert response["total"] == 1
        assert response["jobs"][0]["owner_id"] == "user1"
