"""Tests for rate limit defaults and auth endpoint detection."""

from __future__ import annotations

import pytest

from mefit_gateway.config.rate_limit_defaults import (
    AUTH_RATE_LIMIT,
    GLOBAL_RATE_LIMIT,
    WINDOW_SECONDS,
    is_auth_endpoint,
)


class TestAuthEndpointPatterns:
    @pytest.mark.parametrize("path", [
        "/auth",
        "/auth/login",
        "/auth/register",
        "/auth/reset-password/abc123",
        "/admin/auth/login",
        "/login",
        "/login/",
        "/AUTH/LOGIN",
    ])
    def test_auth_paths(self, path):
        assert is_auth_endpoint(path) is True

    @pytest.mark.parametrize("path", [
        "/",
        "/goal/current",
        "/user/5",
        "/authors",
        "/admin/users/5",
        "/login/history",
        "/api/auth/login",
    ])
    def test_other_paths(self, path):
        assert is_auth_endpoint(path) is False


class TestDefaults:
    def test_thresholds(self):
        assert GLOBAL_RATE_LIMIT == 100
        assert AUTH_RATE_LIMIT == 5
        assert WINDOW_SECONDS == 15 * 60

    def test_auth_stricter_than_global(self):
        assert AUTH_RATE_LIMIT < GLOBAL_RATE_LIMIT
