"""Smoke tests for the API application wiring."""

from fastapi.testclient import TestClient

from api_service.main import app


def test_healthz_reports_ok():
    client = TestClient(app)

    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "nightbuild-api"}


def test_build_job_routes_are_mounted():
    paths = set(app.openapi()["paths"])

    assert "/api/build-jobs" in paths
    assert "/api/build-jobs/{job_id}" in paths
    assert "/api/build-jobs/{job_id}/approve" in paths
