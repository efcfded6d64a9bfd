"""Upstream route templates, used to pull route params out of request paths."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import structlog
from starlette.routing import compile_path

from mefit_gateway.config.loader import get_settings, load_yaml_file

logger = structlog.get_logger()


@dataclass(frozen=True)
class RouteTemplate:
    template: str
    regex: re.Pattern[str]
    path_format: str

    def match(self, path: str) -> dict[str, str] | None:
        match = self.regex.match(path)
        if match is None:
            return None
        return match.groupdict()

    def build(self, params: dict[str, Any]) -> str:
        """Format the template with (URL-quoted) param values."""
        return self.path_format.format(
            **{name: quote(str(value), safe="") for name, value in params.items()}
        )


class RouteTable:
    """Ordered route templates; the first matching template wins."""

    def __init__(self, templates: list[str]) -> None:
        self._routes: list[RouteTemplate] = []
        for template in templates:
            regex, path_format, _ = compile_path(template)
            self._routes.append(RouteTemplate(template, regex, path_format))

    def __len__(self) -> int:
        return len(self._routes)

    def match(self, path: str) -> tuple[RouteTemplate, dict[str, str]] | None:
        for route in self._routes:
            params = route.match(path)
            if params is not None:
                return route, params
        return None

    def get(self, template: str) -> RouteTemplate | None:
        for route in self._routes:
            if route.template == template:
                return route
        return None


_route_table: RouteTable | None = None


def get_route_table() -> RouteTable:
    """Load the route table from the configured YAML file, caching after first load."""
    global _route_table
    if _route_table is None:
        path = get_settings().routes_file
        data = load_yaml_file(path)
        templates = data.get("routes") or []
        if not templates:
            logger.warning("route_templates_empty", path=path)
        _route_table = RouteTable(templates)
    return _route_table


def reset_route_table() -> None:
    """Reset the route table cache (for testing)."""
    global _route_table
    _route_table = None
