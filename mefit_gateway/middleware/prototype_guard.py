"""Prototype pollution guard middleware."""

from __future__ import annotations

from typing import Any

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mefit_gateway.middleware.input_loader import audit_fields
from mefit_gateway.middleware.pipeline import Middleware, RequestContext
from mefit_gateway.utils.sanitize import log_safe

logger = structlog.get_logger()

RESERVED_KEYS = frozenset({"__proto__", "constructor", "prototype"})

REJECTION_BODY = {"message": "Security violation detected", "code": "PROTOTYPE_POLLUTION_ATTEMPT"}


def find_reserved_key(obj: Any, path: str = "") -> str | None:
    """Return the dotted path of the first reserved key, or None.

    Only mapping values are descended into; lists (and mappings inside
    them) are not inspected.
    """
    if not isinstance(obj, dict):
        return None
    for key, value in obj.items():
        key_path = f"{path}.{key}" if path else str(key)
        if isinstance(key, str) and key.lower() in RESERVED_KEYS:
            return key_path
        if isinstance(value, dict):
            found = find_reserved_key(value, key_path)
            if found is not None:
                return found
    return None


class PrototypeGuard(Middleware):
    """Reject requests whose body, query or params carry __proto__/constructor/prototype keys."""

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        inputs = context.raw_inputs or context.inputs
        if inputs is None:
            return None

        for source, value in inputs.items():
            key_path = find_reserved_key(value, source)
            if key_path is None:
                continue
            logger.warning(
                "prototype_pollution_detected",
                key_path=log_safe(key_path),
                **audit_fields(request, context),
            )
            return JSONResponse(status_code=400, content=dict(REJECTION_BODY))

        return None
