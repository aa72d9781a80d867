"""Integration tests for the service host endpoints."""

from vpnfleet.main import app
from vpnfleet.services.scheduler import (
    DEVICE_EXPIRATION,
    HEALTH_CHECK,
    LIMIT_ENFORCEMENT,
    USAGE_SYNC,
)
from vpnfleet.settings import settings


async def test_health_check(test_client):
    """Test health check endpoint."""
    response = await test_client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == settings.app_version
    assert data["scheduler_running"] is settings.scheduler_enabled


async def test_health_check_lists_jobs(test_client):
    response = await test_client.get("/health")
    jobs = {job["id"]: job for job in response.json()["jobs"]}

    assert set(jobs) == {HEALTH_CHECK, USAGE_SYNC, DEVICE_EXPIRATION, LIMIT_ENFORCEMENT}
    for job in jobs.values():
        assert job["running"] is False
        assert job["last_report"] is None
        if settings.scheduler_enabled:
            assert job["next_run_time"] is not None


async def test_health_check_reports_last_run(test_client):
    await app.state.scheduler.run_job(HEALTH_CHECK)

    response = await test_client.get("/health")
    jobs = {job["id"]: job for job in response.json()["jobs"]}

    report = jobs[HEALTH_CHECK]["last_report"]
    assert report["job"] == HEALTH_CHECK
    assert report["processed"] == 0
    assert report["failed"] == 0


async def test_docs_hidden_outside_debug(test_client):
    """API docs are only served in debug mode."""
    response = await test_client.get("/docs")
    assert response.status_code == (200 if settings.debug else 404)
