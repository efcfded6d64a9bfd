"""Context injector middleware: request ID, client address and forwarding headers."""

from __future__ import annotations

from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.responses import Response

from mefit_gateway.config.loader import get_settings
from mefit_gateway.middleware.pipeline import Middleware, RequestContext
from mefit_gateway.utils.sanitize import strip_control_chars

logger = structlog.get_logger()

# Headers that clients must not be able to spoof upstream
_STRIP_HEADERS = frozenset({
    "x-request-id",
    "x-forwarded-for",
    "x-forwarded-proto",
})

_MAX_REQUEST_ID_LENGTH = 256


def resolve_client_ip(request: Request, trust_proxy: bool) -> str:
    """Client address; the first X-Forwarded-For hop is used only behind a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = strip_control_chars(forwarded.split(",")[0].strip())
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


class ContextInjector(Middleware):
    """Attach request identity to the context and the log context.

    - Generates a unique X-Request-ID (uuid4, first 8 chars)
    - Preserves original client X-Request-ID as X-Original-Request-ID
    - Resolves the client address used by the rate limiter and audit logs
    - Computes X-Forwarded-For and X-Forwarded-Proto for the upstream
    """

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        new_request_id = uuid4().hex[:8]

        # Sanitize at storage time to prevent log injection
        client_request_id = request.headers.get("x-request-id")
        if client_request_id:
            context.extra["original_request_id"] = strip_control_chars(
                client_request_id[:_MAX_REQUEST_ID_LENGTH]
            )

        context.request_id = new_request_id

        settings = get_settings()
        client_ip = resolve_client_ip(request, settings.trust_proxy)
        context.client_ip = client_ip

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=new_request_id,
            client_ip=client_ip,
        )

        context.extra["stripped_headers"] = {
            header.lower() for header in request.headers if header.lower() in _STRIP_HEADERS
        }

        peer = request.client.host if request.client else "unknown"
        existing_xff = request.headers.get("x-forwarded-for")
        if existing_xff:
            context.extra["x_forwarded_for"] = f"{strip_control_chars(existing_xff)}, {peer}"
        else:
            context.extra["x_forwarded_for"] = peer

        context.extra["x_forwarded_proto"] = (
            request.headers.get("x-forwarded-proto") if settings.trust_proxy else None
        ) or request.url.scheme

        logger.debug("context_injected", method=request.method, path=request.url.path)

        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        """Add context headers to response."""
        response.headers["x-request-id"] = context.request_id
        if context.extra.get("original_request_id"):
            response.headers["x-original-request-id"] = context.extra["original_request_id"]
        return response
