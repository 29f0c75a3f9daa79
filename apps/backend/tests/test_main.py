"""Tests for the FastAPI application shell."""

from fastapi import status
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError


async def test_health_check(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["status"] == "healthy"
    assert data["checks"] == {"database": True}
    assert "timestamp" in data


async def test_health_check_database_down(client: AsyncClient, db, monkeypatch):
    async def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(type(db), "execute", broken)
    response = await client.get("/health")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["status"] == "unhealthy"


async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


async def test_app_metadata():
    from bankrec.main import app

    assert app.title == "Bank Reconciliation API"
    assert any(route.path == "/reconciliation/batches" for route in app.routes)


async def test_request_id_is_generated_and_logged(client: AsyncClient, caplog):
    response = await client.get("/health")

    request_id = response.headers["X-Request-ID"]
    assert request_id
    events = [r.msg for r in caplog.records if isinstance(r.msg, dict) and r.msg.get("event") == "HTTP Request"]
    assert any(e["request_id"] == request_id and e["status_code"] == 200 for e in events)
