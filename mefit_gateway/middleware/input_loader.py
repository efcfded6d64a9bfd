"""Input loader middleware: parses body, query and route params into the context."""

from __future__ import annotations

import copy
import json
from datetime import datetime, timezone
from typing import Any
from urllib.parse import parse_qsl

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mefit_gateway.config.loader import get_settings
from mefit_gateway.config.routes import get_route_table
from mefit_gateway.middleware.pipeline import Middleware, RequestContext, RequestInputs
from mefit_gateway.utils.querystring import parse_nested_query
from mefit_gateway.utils.sanitize import log_safe

logger = structlog.get_logger()

BODY_JSON = "json"
BODY_FORM = "form"

_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _content_type(request: Request) -> str:
    return request.headers.get("content-type", "").split(";")[0].strip().lower()


def _body_format(content_type: str) -> str | None:
    if content_type == "application/json" or content_type.endswith("+json"):
        return BODY_JSON
    if content_type == _FORM_CONTENT_TYPE:
        return BODY_FORM
    return None


def audit_fields(request: Request, context: RequestContext) -> dict[str, Any]:
    """Forensic fields attached to every rejection log entry."""
    client_ip = context.client_ip or (request.client.host if request.client else "unknown")
    return {
        "ip": client_ip,
        "user_agent": log_safe(request.headers.get("user-agent")),
        "path": log_safe(request.url.path),
        "method": request.method,
        "detected_at": datetime.now(timezone.utc).isoformat(),
    }


def _invalid_input() -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": "Invalid input data"})


class InputLoader(Middleware):
    """Populate the body/query/params slots the sanitization stages work on.

    - JSON and urlencoded bodies are parsed; other bodies are forwarded as-is
    - Query strings use bracket notation (``a[b]=1``)
    - Route params come from the first upstream route template matching the path
    - A deep copy of the parsed inputs is kept as the pre-sanitization snapshot
    """

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        settings = get_settings()

        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > settings.max_body_bytes:
                    return Response(content="Request body too large", status_code=413)
            except (ValueError, OverflowError):
                return Response(content="Invalid Content-Length", status_code=400)

        body = await request.body()
        if len(body) > settings.max_body_bytes:
            return Response(content="Request body too large", status_code=413)

        body_format = _body_format(_content_type(request))
        parsed_body: Any = {}
        if body and body_format == BODY_JSON:
            try:
                parsed_body = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
                logger.warning("request_body_invalid_json", path=log_safe(request.url.path))
                return _invalid_input()
            if not isinstance(parsed_body, (dict, list)):
                logger.warning("request_body_not_object", path=log_safe(request.url.path))
                return _invalid_input()
        elif body and body_format == BODY_FORM:
            try:
                pairs = parse_qsl(body.decode("utf-8"), keep_blank_values=True)
            except UnicodeDecodeError:
                return _invalid_input()
            parsed_body = parse_nested_query(pairs)

        query = parse_nested_query(request.query_params.multi_items())

        params: dict[str, Any] = {}
        matched = get_route_table().match(request.url.path)
        if matched is not None:
            route, params = matched
            context.route_template = route.template

        inputs = RequestInputs(body=parsed_body, query=query, params=params)
        context.inputs = inputs
        context.raw_inputs = copy.deepcopy(inputs)
        context.extra["raw_body"] = body
        context.extra["body_format"] = body_format if body else None
        return None
