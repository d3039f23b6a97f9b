"""
Tests for health check endpoints.
"""
from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from app.core.database import get_db
from app.main import app


def test_health_endpoint_returns_ok(client):
    """/api/v1/health reports ok when the database answers."""
    response = client.get("/api/v1/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["ok"] is True
    assert data["db"] is True
    assert data["service"] == "Rot Keys"
    assert "environment" in data


def test_health_endpoint_with_db_failure():
    """/api/v1/health returns 503 when the database is down."""
    class BrokenSession:
        def execute(self, *args, **kwargs):
            raise SQLAlchemyError("Simulated DB failure")

    def failing_get_db():
        yield BrokenSession()

    app.dependency_overrides[get_db] = failing_get_db
    try:
        response = TestClient(app).get("/api/v1/health")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"] == "Database connection failed"
    finally:
        app.dependency_overrides.clear()


def test_liveness_does_not_need_database(client):
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ok"}


def test_responses_carry_trace_id(client):
    response = client.get("/api/v1/health")

    assert len(response.headers["X-Trace-ID"]) > 0


def test_incoming_trace_id_is_echoed(client):
    response = client.get("/api/protected", headers={"X-Trace-ID": "trace-123"})

    assert response.headers["X-Trace-ID"] == "trace-123"
