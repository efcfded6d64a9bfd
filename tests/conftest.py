"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient


@pytest.fixture(autouse=True)
def _mock_settings(monkeypatch):
    """Provide default settings for all tests."""
    monkeypatch.setenv("MEFIT_UPSTREAM_URL", "http://mock-upstream:5000")
    monkeypatch.setenv("MEFIT_ENVIRONMENT", "test")
    monkeypatch.setenv("MEFIT_RATE_LIMIT_ENABLED", "false")
    monkeypatch.setenv("MEFIT_LOG_JSON", "false")
    monkeypatch.setenv("MEFIT_LOG_LEVEL", "debug")

    # Reset cached settings and YAML-backed caches
    import mefit_gateway.config.loader as loader
    from mefit_gateway.config.routes import reset_route_table
    from mefit_gateway.middleware.security_headers import reset_presets_cache

    loader._settings = None
    reset_route_table()
    reset_presets_cache()
    yield
    loader._settings = None
    reset_route_table()
    reset_presets_cache()


@pytest.fixture
def upstream_response():
    """Default upstream reply; tests may replace it before making requests."""
    return httpx.Response(
        status_code=200,
        headers={"content-type": "application/json", "x-powered-by": "Express"},
        content=b'{"message": "upstream response"}',
    )


@pytest.fixture
def gateway_client(upstream_response):
    """Test client with a mocked upstream HTTP client and a freshly built pipeline."""
    import mefit_gateway.main as main_module
    from mefit_gateway.main import _build_pipeline, app

    main_module._pipeline = None
    main_module._http_client = None

    mock_http = AsyncMock()
    mock_http.request = AsyncMock(return_value=upstream_response)

    with TestClient(app, raise_server_exceptions=False) as c:
        # Set mocks AFTER lifespan runs so they don't get overwritten
        main_module._http_client = mock_http
        main_module._pipeline = _build_pipeline()
        yield c, mock_http

    main_module._http_client = None
    main_module._pipeline = None
