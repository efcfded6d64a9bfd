"""Tests for security headers middleware."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from starlette.responses import JSONResponse, Response

from mefit_gateway.middleware.pipeline import RequestContext
from mefit_gateway.middleware.security_headers import SecurityHeaders, _load_presets, reset_presets_cache


@pytest.fixture(autouse=True)
def _reset_cache():
    reset_presets_cache()
    yield
    reset_presets_cache()


def _use_preset(monkeypatch, name: str) -> None:
    monkeypatch.setenv("MEFIT_HEADER_PRESET", name)
    import mefit_gateway.config.loader as loader
    loader._settings = None


# ── Preset application ──────────────────────────────────────────────────


class TestSecurityHeadersPresets:
    @pytest.mark.asyncio
    async def test_default_preset_applied(self):
        """Default preset should inject the standard security headers."""
        response = await SecurityHeaders().process_response(Response(content="ok"), RequestContext())

        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["referrer-policy"] == "no-referrer"
        assert response.headers["x-xss-protection"] == "0"
        assert response.headers["cross-origin-opener-policy"] == "same-origin"
        assert "max-age=31536000" in response.headers["strict-transport-security"]
        assert "object-src 'none'" in response.headers["content-security-policy"]

    @pytest.mark.asyncio
    async def test_api_preset(self, monkeypatch):
        _use_preset(monkeypatch, "api")
        response = await SecurityHeaders().process_response(Response(content="ok"), RequestContext())

        assert response.headers["x-frame-options"] == "DENY"
        assert "content-security-policy" not in response.headers

    @pytest.mark.asyncio
    async def test_unknown_preset_falls_back_to_default(self, monkeypatch):
        _use_preset(monkeypatch, "nonexistent")
        response = await SecurityHeaders().process_response(Response(content="ok"), RequestContext())

        assert response.headers["x-frame-options"] == "SAMEORIGIN"

    @pytest.mark.asyncio
    async def test_applied_to_rejections(self):
        rejection = JSONResponse(status_code=400, content={"message": "Invalid input detected"})
        response = await SecurityHeaders().process_response(rejection, RequestContext())

        assert response.status_code == 400
        assert response.headers["x-content-type-options"] == "nosniff"


# ── Upstream headers ────────────────────────────────────────────────────


class TestUpstreamHeaders:
    @pytest.mark.asyncio
    async def test_fingerprint_headers_stripped(self):
        upstream = Response(content="ok", headers={"server": "nginx", "x-powered-by": "Express"})
        response = await SecurityHeaders().process_response(upstream, RequestContext())

        assert "server" not in response.headers
        assert "x-powered-by" not in response.headers

    @pytest.mark.asyncio
    async def test_upstream_value_kept(self):
        upstream = Response(content="ok", headers={"x-frame-options": "DENY"})
        response = await SecurityHeaders().process_response(upstream, RequestContext())

        assert response.headers["x-frame-options"] == "DENY"

    @pytest.mark.asyncio
    async def test_request_phase_is_noop(self):
        assert await SecurityHeaders().process_request(None, RequestContext()) is None


# ── Preset loading ──────────────────────────────────────────────────────


class TestPresetLoading:
    def test_presets_cached(self):
        assert _load_presets() is _load_presets()

    def test_packaged_presets(self):
        presets = _load_presets()
        assert set(presets) >= {"default", "api"}

    @pytest.mark.asyncio
    async def test_error_returns_response_unchanged(self):
        with patch(
            "mefit_gateway.middleware.security_headers._load_presets",
            side_effect=RuntimeError("bad yaml"),
        ):
            response = await SecurityHeaders().process_response(Response(content="ok"), RequestContext())

        assert response.status_code == 200
        assert "x-frame-options" not in response.headers
