"""Health and readiness endpoint tests."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from mefit_gateway.main import app


@pytest.fixture
def health_client():
    """Test client for health endpoints."""
    import mefit_gateway.main as main_module
    main_module._pipeline = None
    main_module._http_client = None
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    main_module._http_client = None
    main_module._pipeline = None


def _deps(upstream: bool, redis: str):
    return (
        patch("mefit_gateway.health._check_upstream", new_callable=AsyncMock, return_value=upstream),
        patch("mefit_gateway.health.redis_store.status", new_callable=AsyncMock, return_value=redis),
    )


def test_health_ok(health_client):
    """Health answers OK with a timestamp."""
    upstream, redis = _deps(True, "up")
    with upstream, redis:
        resp = health_client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "OK"
    assert data["upstream"] == "up"
    assert data["redis"] == "up"
    datetime.fromisoformat(data["timestamp"])


def test_health_ok_when_dependencies_down(health_client):
    """Liveness doesn't depend on the upstream or Redis."""
    upstream, redis = _deps(False, "down")
    with upstream, redis:
        resp = health_client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "OK"
    assert data["upstream"] == "down"
    assert data["redis"] == "down"


def test_health_redis_disabled_by_default(health_client):
    """Rate limiting is off in tests, so Redis is never configured."""
    with patch("mefit_gateway.health._check_upstream", new_callable=AsyncMock, return_value=True):
        resp = health_client.get("/health")

    assert resp.json()["redis"] == "disabled"


def test_health_not_proxied(health_client):
    """The gateway answers /health itself instead of forwarding it."""
    import mefit_gateway.main as main_module

    upstream, redis = _deps(True, "up")
    with upstream, redis, patch.object(main_module, "_http_client") as mock_http:
        health_client.get("/health")

    mock_http.request.assert_not_called()


def test_ready_all_up(health_client):
    upstream, redis = _deps(True, "up")
    with upstream, redis:
        resp = health_client.get("/ready")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ready"}


def test_ready_with_redis_disabled(health_client):
    upstream, redis = _deps(True, "disabled")
    with upstream, redis:
        resp = health_client.get("/ready")

    assert resp.status_code == 200


def test_ready_upstream_down(health_client):
    upstream, redis = _deps(False, "up")
    with upstream, redis:
        resp = health_client.get("/ready")

    assert resp.status_code == 503
    assert resp.json() == {"status": "not_ready", "upstream": "down", "redis": "up"}


def test_ready_redis_down(health_client):
    upstream, redis = _deps(True, "down")
    with upstream, redis:
        resp = health_client.get("/ready")

    assert resp.status_code == 503
    assert resp.json()["redis"] == "down"


class TestCheckUpstream:
    @pytest.mark.asyncio
    async def test_reachable(self):
        from mefit_gateway.health import _check_upstream

        with patch("mefit_gateway.health.httpx.AsyncClient.head", new_callable=AsyncMock,
                   return_value=httpx.Response(404)):
            assert await _check_upstream() is True

    @pytest.mark.asyncio
    async def test_server_error(self):
        from mefit_gateway.health import _check_upstream

        with patch("mefit_gateway.health.httpx.AsyncClient.head", new_callable=AsyncMock,
                   return_value=httpx.Response(503)):
            assert await _check_upstream() is False

    @pytest.mark.asyncio
    async def test_connection_error(self):
        from mefit_gateway.health import _check_upstream

        with patch("mefit_gateway.health.httpx.AsyncClient.head", new_callable=AsyncMock,
                   side_effect=httpx.ConnectError("refused")):
            assert await _check_upstream() is False
