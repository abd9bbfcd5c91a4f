import pytest


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_health_db(client):
    response = await client.get("/api/v1/health/db")

    assert response.json() == {"status": "healthy", "database": "connected"}


@pytest.mark.asyncio
async def test_request_id_echoed(client):
    response = await client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})

    assert response.headers["X-Request-ID"] == "abc123"
    assert "X-Process-Time" in response.headers
