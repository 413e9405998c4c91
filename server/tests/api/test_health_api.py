"""API tests for health, readiness, info and metrics endpoints."""

import pytest


@pytest.mark.asyncio
async def test_health_check(test_client):
    response = await test_client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "marketplace-backend"
    assert "version" in data
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_ready_check(test_client):
    response = await test_client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"] == {"local_store": "ok", "backend": "ok"}


@pytest.mark.asyncio
async def test_not_ready_without_backend(test_app, test_client):
    test_app.state.backend = None

    response = await test_client.get("/ready")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "not_ready"
    assert data["checks"]["backend"] == "not initialised"


@pytest.mark.asyncio
async def test_info_endpoint(test_client):
    """Clients discover the functions prefix here."""
    response = await test_client.get("/info")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "marketplace-backend"
    assert data["features"]["idempotency"] is True
    assert data["endpoints"]["functions"] == "/functions/v1"


@pytest.mark.asyncio
async def test_metrics_endpoint(test_client):
    response = await test_client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "cache_memory_entries" in response.text


@pytest.mark.asyncio
async def test_request_id_is_echoed(test_client):
    response = await test_client.get("/info", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
