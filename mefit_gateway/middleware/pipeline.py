"""Gateway pipeline: the request context and the ordered stage runner."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Iterator
from uuid import uuid4

import structlog
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

INPUT_SOURCES = ("body", "query", "params")


@dataclass
class RequestInputs:
    """The three user-supplied input slots of a request."""

    body: Any = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)

    def items(self) -> Iterator[tuple[str, Any]]:
        """Yield (source name, value) in checking order: body, query, params."""
        for name in INPUT_SOURCES:
            yield name, getattr(self, name)


@dataclass
class RequestContext:
    """Per-request state shared by every stage."""

    request_id: str = ""
    client_ip: str = ""
    # Live slots, rewritten by the sanitizer and forwarded upstream
    inputs: RequestInputs | None = None
    # Snapshot taken before any stage rewrote the inputs
    raw_inputs: RequestInputs | None = None
    route_template: str = ""
    # Name of the stage that answered instead of the upstream
    rejected_by: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.request_id:
            self.request_id = uuid4().hex[:8]


class Middleware(abc.ABC):
    """One pipeline stage."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @abc.abstractmethod
    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        """Inspect or rewrite the request.

        Return None to hand over to the next stage, or a Response to answer
        the client directly.
        """

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        return response


@dataclass
class _Stage:
    middleware: Middleware
    enabled: bool


class MiddlewarePipeline:
    """Stages run front to back on the way in and back to front on the way out.

    A stage that raises is logged and turned into a 502 on the way in, or
    skipped on the way out; it never takes the gateway down.
    """

    def __init__(self) -> None:
        self._stages: list[_Stage] = []

    @property
    def names(self) -> list[str]:
        return [stage.middleware.name for stage in self._stages]

    def add(self, middleware: Middleware, enabled: bool = True) -> None:
        self._stages.append(_Stage(middleware, enabled))
        logger.info("middleware_registered", name=middleware.name, enabled=enabled)

    def _find(self, name: str) -> _Stage | None:
        for stage in self._stages:
            if stage.middleware.name == name:
                return stage
        return None

    def set_enabled(self, name: str, enabled: bool) -> None:
        """Switch a stage on or off by name; unknown names are ignored."""
        stage = self._find(name)
        if stage is not None:
            stage.enabled = enabled

    def is_enabled(self, name: str) -> bool:
        stage = self._find(name)
        return stage is not None and stage.enabled

    def _active(self, reverse: bool = False) -> Iterator[Middleware]:
        stages = reversed(self._stages) if reverse else self._stages
        for stage in stages:
            if stage.enabled:
                yield stage.middleware

    async def process_request(self, request: Request, context: RequestContext) -> Response | None:
        """Return the first Response a stage produces, or None if every stage passed."""
        for mw in self._active():
            try:
                result = await mw.process_request(request, context)
            except Exception:
                logger.exception("middleware_request_error", middleware=mw.name)
                context.rejected_by = mw.name
                return Response(content="Internal gateway error", status_code=502)
            if isinstance(result, Response):
                context.rejected_by = mw.name
                logger.info("middleware_short_circuit", middleware=mw.name, status_code=result.status_code)
                return result
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        for mw in self._active(reverse=True):
            try:
                response = await mw.process_response(response, context)
            except Exception:
                logger.exception("middleware_response_error", middleware=mw.name)
        return response
