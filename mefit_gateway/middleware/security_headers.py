"""Helmet-equivalent response hardening.

Header sets live in ``config/header_presets.yaml``; ``MEFIT_HEADER_PRESET``
selects one. Fingerprinting headers from the upstream are dropped.
"""

from __future__ import annotations

from pathlib import Path

import structlog
from starlette.requests import Request
from starlette.responses import Response

from mefit_gateway.config.loader import get_settings, load_yaml_file
from mefit_gateway.middleware.pipeline import Middleware, RequestContext

logger = structlog.get_logger()

PRESETS_FILE = Path(__file__).resolve().parent.parent / "config" / "header_presets.yaml"

FINGERPRINT_HEADERS = ("server", "x-powered-by")

_presets: dict[str, dict[str, str]] | None = None


def _load_presets() -> dict[str, dict[str, str]]:
    global _presets
    if _presets is None:
        _presets = load_yaml_file(PRESETS_FILE)
        logger.debug("header_presets_loaded", presets=sorted(_presets))
    return _presets


def reset_presets_cache() -> None:
    global _presets
    _presets = None


def _active_preset() -> dict[str, str]:
    presets = _load_presets()
    name = get_settings().header_preset
    if name not in presets:
        logger.warning("header_preset_unknown", preset=name, fallback="default")
        name = "default"
    return presets.get(name, {})


class SecurityHeaders(Middleware):
    """Add the preset's headers to every response the gateway sends.

    Values the upstream already set win over the preset.
    """

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        try:
            preset = _active_preset()
        except Exception as exc:
            logger.error("security_headers_error", error=str(exc))
            return response

        headers = response.headers
        for name in FINGERPRINT_HEADERS:
            if name in headers:
                del headers[name]
        for name, value in preset.items():
            headers.setdefault(name, str(value))
        return response
