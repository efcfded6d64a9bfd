"""FastAPI security gateway in front of the MeFit API."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import Response

from mefit_gateway.config.loader import GatewaySettings, get_settings, load_settings, register_reload_handler
from mefit_gateway.config.routes import get_route_table
from mefit_gateway.health import router as health_router
from mefit_gateway.logging_config import setup_logging
from mefit_gateway.middleware.context_injector import ContextInjector
from mefit_gateway.middleware.https_redirect import HTTPSRedirect
from mefit_gateway.middleware.injection_detector import InjectionDetector
from mefit_gateway.middleware.input_loader import BODY_FORM, BODY_JSON, InputLoader
from mefit_gateway.middleware.pipeline import MiddlewarePipeline, RequestContext
from mefit_gateway.middleware.prototype_guard import PrototypeGuard
from mefit_gateway.middleware.rate_limiter import RateLimiter
from mefit_gateway.middleware.request_sanitizer import RequestSanitizer
from mefit_gateway.middleware.security_headers import SecurityHeaders
from mefit_gateway.store import redis as redis_store
from mefit_gateway.utils.querystring import encode_nested_query

logger = structlog.get_logger()

_http_client: httpx.AsyncClient | None = None
_pipeline: MiddlewarePipeline | None = None


def _build_pipeline(settings: GatewaySettings | None = None) -> MiddlewarePipeline:
    """Build the ordered middleware pipeline.

    The three sanitization stages run back to back after the inputs are
    loaded: sanitizer, injection detector, prototype guard.
    """
    settings = settings or get_settings()
    pipeline = MiddlewarePipeline()
    pipeline.add(ContextInjector())    # 0: request ID, client address
    pipeline.add(HTTPSRedirect())      # 1: production only
    pipeline.add(RateLimiter(), enabled=settings.rate_limit_enabled)  # 2
    pipeline.add(InputLoader())        # 3: body/query/params slots
    pipeline.add(RequestSanitizer())   # 4
    pipeline.add(InjectionDetector())  # 5
    pipeline.add(PrototypeGuard())     # 6
    pipeline.add(SecurityHeaders())    # 7: response only
    return pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    global _http_client, _pipeline

    settings = load_settings()
    setup_logging(log_level=settings.log_level, json_format=settings.log_json)
    register_reload_handler()

    # Rate limiter fails closed without Redis, so only connect when it's on
    if settings.rate_limit_enabled:
        await redis_store.init_redis(settings.redis_url, pool_size=settings.redis_pool_size)

    _http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.proxy_timeout),
        follow_redirects=False,
        limits=httpx.Limits(
            max_connections=settings.upstream_max_connections,
            max_keepalive_connections=settings.upstream_max_keepalive,
        ),
    )

    _pipeline = _build_pipeline(settings)
    routes = get_route_table()

    logger.info(
        "gateway_started",
        upstream=settings.upstream_url,
        port=settings.listen_port,
        route_templates=len(routes),
        environment=settings.environment,
    )

    yield

    logger.info("gateway_shutting_down")

    if _http_client:
        await _http_client.aclose()
    await redis_store.close_redis()

    logger.info("gateway_stopped")


app = FastAPI(title="MeFit Gateway", lifespan=lifespan)

app.include_router(health_router)


HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})


def _upstream_path(request: Request, context: RequestContext) -> str:
    """Request path, with sanitized route params substituted when they changed."""
    path = request.url.path
    inputs, raw = context.inputs, context.raw_inputs
    if inputs is None or raw is None or not context.route_template:
        return path
    if inputs.params == raw.params or set(inputs.params) != set(raw.params):
        return path
    route = get_route_table().get(context.route_template)
    if route is None:
        return path
    return route.build(inputs.params)


def _upstream_query(request: Request, context: RequestContext) -> str:
    """Original query string unless the sanitizer rewrote it."""
    inputs, raw = context.inputs, context.raw_inputs
    if inputs is None or raw is None or inputs.query == raw.query:
        return request.url.query
    return encode_nested_query(inputs.query)


def _upstream_body(body: bytes, context: RequestContext) -> bytes:
    """Original body bytes unless the sanitizer rewrote the parsed body."""
    inputs, raw = context.inputs, context.raw_inputs
    body_format = context.extra.get("body_format")
    if inputs is None or raw is None or body_format is None or inputs.body == raw.body:
        return body
    if body_format == BODY_JSON:
        return json.dumps(inputs.body).encode("utf-8")
    if body_format == BODY_FORM:
        return encode_nested_query(inputs.body).encode("utf-8")
    return body


async def _finish(response: Response, context: RequestContext) -> Response:
    """Run the response stages; gateway-made answers get the same headers as upstream ones."""
    if _pipeline:
        response = await _pipeline.process_response(response, context)
    return response


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def proxy_request(request: Request, path: str) -> Response:
    """Catch-all handler: run the pipeline, then forward to the MeFit API."""
    if _http_client is None:
        return Response(content="Gateway not initialized", status_code=503)

    settings = get_settings()
    context = RequestContext()

    if _pipeline:
        short_circuit = await _pipeline.process_request(request, context)
        if short_circuit is not None:
            return await _finish(short_circuit, context)

    upstream_url = f"{settings.upstream_url.rstrip('/')}{_upstream_path(request, context)}"
    query = _upstream_query(request, context)
    if query:
        upstream_url = f"{upstream_url}?{query}"

    stripped = context.extra.get("stripped_headers", set())
    headers = {}
    for key, value in request.headers.items():
        lower = key.lower()
        if lower in HOP_BY_HOP_HEADERS or lower == "host" or lower in stripped:
            continue
        headers[lower] = value

    headers["x-request-id"] = context.request_id
    if context.extra.get("x_forwarded_for"):
        headers["x-forwarded-for"] = context.extra["x_forwarded_for"]
    if context.extra.get("x_forwarded_proto"):
        headers["x-forwarded-proto"] = context.extra["x_forwarded_proto"]

    body = context.extra["raw_body"] if "raw_body" in context.extra else await request.body()
    upstream_body = _upstream_body(body, context)
    if upstream_body is not body:
        headers["content-length"] = str(len(upstream_body))

    try:
        upstream_resp = await _http_client.request(
            method=request.method,
            url=upstream_url,
            headers=headers,
            content=upstream_body,
        )
    except httpx.TimeoutException:
        logger.error("upstream_timeout", url=upstream_url)
        return await _finish(Response(content="Upstream timeout", status_code=504), context)
    except httpx.ConnectError:
        logger.error("upstream_connect_error", url=upstream_url)
        return await _finish(Response(content="Upstream unreachable", status_code=502), context)
    except httpx.HTTPError as exc:
        logger.error("upstream_error", url=upstream_url, error=str(exc))
        return await _finish(Response(content="Upstream error", status_code=502), context)

    # Content-Length may be missing or wrong, so check the actual size
    if len(upstream_resp.content) > settings.max_body_bytes:
        logger.error(
            "upstream_response_too_large",
            actual_size=len(upstream_resp.content),
            max=settings.max_body_bytes,
        )
        return await _finish(Response(content="Upstream response too large", status_code=502), context)

    response = Response(content=upstream_resp.content, status_code=upstream_resp.status_code)
    # multi_items keeps repeated headers such as Set-Cookie apart
    for key, value in upstream_resp.headers.multi_items():
        lower = key.lower()
        # httpx has already decoded the body, so its encoding/length no longer apply
        if lower in HOP_BY_HOP_HEADERS or lower in ("content-encoding", "content-length"):
            continue
        response.headers.append(key, value)

    return await _finish(response, context)
