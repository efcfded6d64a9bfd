"""NoSQL injection detector middleware: rejects requests carrying operator payloads."""

from __future__ import annotations

import re
from typing import Any

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mefit_gateway.middleware.input_loader import audit_fields
from mefit_gateway.middleware.pipeline import Middleware, RequestContext

logger = structlog.get_logger()

_INJECTION_PATTERNS: list[re.Pattern[str]] = [
    # MongoDB operators
    re.compile(r"\$where", re.IGNORECASE),
    re.compile(r"\$ne", re.IGNORECASE),
    re.compile(r"\$in", re.IGNORECASE),
    re.compile(r"\$nin", re.IGNORECASE),
    re.compile(r"\$gt", re.IGNORECASE),
    re.compile(r"\$gte", re.IGNORECASE),
    re.compile(r"\$lt", re.IGNORECASE),
    re.compile(r"\$lte", re.IGNORECASE),
    re.compile(r"\$regex", re.IGNORECASE),
    re.compile(r"\$exists", re.IGNORECASE),
    re.compile(r"\$elemMatch", re.IGNORECASE),

    # JavaScript injection
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"function\s*\(", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"setTimeout", re.IGNORECASE),
    re.compile(r"setInterval", re.IGNORECASE),
    re.compile(r"this\.", re.IGNORECASE),

    # Prototype pollution
    re.compile(r"__proto__", re.IGNORECASE),
    re.compile(r"constructor", re.IGNORECASE),
    re.compile(r"prototype", re.IGNORECASE),
]

# Deeper values are treated as a match
_MAX_SCAN_DEPTH = 256

REJECTION_BODY = {"message": "Invalid input detected", "code": "INVALID_INPUT"}


def _is_operator_key(key: Any) -> bool:
    return isinstance(key, str) and (key.startswith("$") or "." in key)


def contains_injection(value: Any, *, _depth: int = 0) -> bool:
    """Return True if any string, list element, mapping key or value looks like an injection."""
    if _depth > _MAX_SCAN_DEPTH:
        return True
    if isinstance(value, str):
        return any(pattern.search(value) for pattern in _INJECTION_PATTERNS)
    if isinstance(value, list):
        return any(contains_injection(item, _depth=_depth + 1) for item in value)
    if isinstance(value, dict):
        if any(_is_operator_key(key) for key in value):
            return True
        return any(contains_injection(item, _depth=_depth + 1) for item in value.values())
    return False


class InjectionDetector(Middleware):
    """Reject requests whose body, query or params contain NoSQL/JS injection patterns.

    Scans the snapshot taken before sanitization so blatant attempts are
    rejected instead of being silently laundered. Read-only.
    """

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        inputs = context.raw_inputs or context.inputs
        if inputs is None:
            return None

        for source, value in inputs.items():
            if not contains_injection(value):
                continue
            logger.warning(
                "nosql_injection_detected",
                source=source,
                **audit_fields(request, context),
            )
            return JSONResponse(status_code=400, content=dict(REJECTION_BODY))

        return None
