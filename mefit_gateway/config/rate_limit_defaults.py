"""Default rate-limit thresholds and auth-endpoint patterns."""

from __future__ import annotations

import re

# Paths served by the upstream's stricter auth limiter
AUTH_PATH_PATTERNS: list[re.Pattern] = [
    re.compile(r"^/auth(/|$)", re.IGNORECASE),
    re.compile(r"^/admin/auth(/|$)", re.IGNORECASE),
    re.compile(r"^/login/?$", re.IGNORECASE),
]

# Default thresholds
AUTH_RATE_LIMIT = 5  # requests per window for auth endpoints
GLOBAL_RATE_LIMIT = 100  # requests per window per client
WINDOW_SECONDS = 900  # 15-minute sliding window


def is_auth_endpoint(path: str) -> bool:
    """Return True if the path matches an authentication endpoint pattern."""
    return any(pattern.search(path) for pattern in AUTH_PATH_PATTERNS)
