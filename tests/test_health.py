"""
Tests for health check endpoint.
"""
from unittest.mock import MagicMock

from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from app.core.database import get_db
from app.main import app


def test_health_endpoint_returns_ok(client, make_server):
    """Test that /api/v1/health returns ok when DB is healthy."""
    make_server()
    make_server(is_active=False)

    response = client.get("/api/v1/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["ok"] is True
    assert data["db"] is True
    assert "environment" in data
    assert data["active_servers"] == 1
    assert data["sync_running"] is False
    assert data["last_sync_at"] is None


def test_health_endpoint_with_db_failure():
    """Test that /api/v1/health returns 503 when DB is down."""
    broken = MagicMock()
    broken.execute.side_effect = SQLAlchemyError("Simulated DB failure")

    def failing_get_db():
        yield broken

    app.dependency_overrides[get_db] = failing_get_db
    try:
        response = TestClient(app).get("/api/v1/health")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert "detail" in response.json()
    finally:
        app.dependency_overrides.clear()


def test_health_endpoint_trace_id_header(client):
    """Test that health endpoint includes trace_id in response headers."""
    response = client.get("/api/v1/health")

    # RequestLoggingMiddleware should add X-Trace-ID header
    assert "X-Trace-ID" in response.headers
    assert len(response.headers["X-Trace-ID"]) > 0


def test_incoming_trace_id_is_echoed(client):
    response = client.get("/api/v1/health", headers={"X-Trace-ID": "abc-123"})

    assert response.headers["X-Trace-ID"] == "abc-123"
