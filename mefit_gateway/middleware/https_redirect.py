"""HTTPS enforcement middleware for production deployments."""

from __future__ import annotations

import structlog
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from mefit_gateway.config.loader import get_settings
from mefit_gateway.middleware.pipeline import Middleware, RequestContext

logger = structlog.get_logger()


class HTTPSRedirect(Middleware):
    """Redirect plain-HTTP requests to HTTPS when running in production.

    TLS is terminated in front of the gateway, so the scheme is read from
    X-Forwarded-Proto.
    """

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        if not get_settings().is_production:
            return None

        if request.headers.get("x-forwarded-proto", "").lower() == "https":
            return None

        host = request.headers.get("host", "")
        if not host:
            return Response(content="Missing Host header", status_code=400)

        target = f"https://{host}{request.url.path}"
        if request.url.query:
            target = f"{target}?{request.url.query}"

        logger.info("https_redirect", path=request.url.path)
        return RedirectResponse(url=target, status_code=302)
