"""Request sanitizer middleware: deep-cleans body, query and route params.

Every string leaf has its markup stripped, is entity-escaped and loses
script-like tokens; every mapping key that looks like a NoSQL operator or a
script keyword is dropped together with its value.
"""

from __future__ import annotations

import re
from typing import Any

import nh3
import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mefit_gateway.config.loader import get_settings
from mefit_gateway.middleware.pipeline import Middleware, RequestContext, RequestInputs
from mefit_gateway.utils.sanitize import log_safe

logger = structlog.get_logger()

# ── Key filter ────────────────────────────────────────────────────────

_DANGEROUS_KEY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"^\$"),                       # MongoDB operators
    re.compile(r"\."),                        # dot notation
    re.compile(r"where", re.IGNORECASE),
    re.compile(r"function", re.IGNORECASE),
    re.compile(r"eval", re.IGNORECASE),
    re.compile(r"javascript", re.IGNORECASE),
    re.compile(r"script", re.IGNORECASE),
]

_KEY_DISALLOWED_CHARS = re.compile(r"[^a-zA-Z0-9_]")

# ── String cleaner ────────────────────────────────────────────────────

# Tags whose text content is dropped together with the element
_CLEAN_CONTENT_TAGS = {"script", "style"}

_HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "\\": "&#x5C;",
    "`": "&#96;",
}

# A bare "&" that does not already start an entity reference, or any other
# character that needs escaping.
_HTML_ESCAPE_RE = re.compile(
    r"&(?!(?:[a-zA-Z][a-zA-Z0-9]*|#[0-9]+|#[xX][0-9a-fA-F]+);)|[<>\"'/\\`]"
)

_SCRIPT_TOKENS_RE = re.compile(
    r"\$where|\$regex|javascript:|function\s*\(|eval\s*\(|setTimeout|setInterval",
    re.IGNORECASE,
)

# Stays well inside the interpreter recursion limit with room for the detector
DEFAULT_MAX_DEPTH = 256


class InputTooDeepError(ValueError):
    """Raised when an input value nests deeper than the allowed depth."""


def _is_dangerous_key(key: str) -> bool:
    return any(pattern.search(key) for pattern in _DANGEROUS_KEY_PATTERNS)


def sanitize_key(key: Any) -> str | None:
    """Return the cleaned key, or None if the key must be dropped.

    Keys are dropped when they are not strings, start with ``$``, contain a
    dot or mention a script keyword. Survivors keep only ASCII letters,
    digits and underscores. A key left empty by that, or one that spells a
    keyword once the other characters are gone (``scr-ipt``), is dropped too.
    """
    if not isinstance(key, str) or _is_dangerous_key(key):
        return None
    cleaned = _KEY_DISALLOWED_CHARS.sub("", key)
    if not cleaned or _is_dangerous_key(cleaned):
        return None
    return cleaned


def escape_html(text: str) -> str:
    """Entity-escape text without double-escaping existing entity references."""
    return _HTML_ESCAPE_RE.sub(lambda m: _HTML_ESCAPES[m.group(0)], text)


def remove_script_tokens(text: str) -> str:
    """Delete script-like tokens until none are left.

    A single pass can splice a new token together out of the pieces around
    a removed one (``evaleval((``), so removal repeats to a fixed point.
    """
    while True:
        cleaned = _SCRIPT_TOKENS_RE.sub("", text)
        if cleaned == text:
            return cleaned
        text = cleaned


def sanitize_string(value: str) -> str:
    """Clean one string leaf.

    1. Strip all tags and attributes (script/style bodies go with their tags)
    2. Entity-escape what is left
    3. Remove NoSQL/script tokens
    4. Trim surrounding whitespace
    """
    cleaned = nh3.clean(
        value,
        tags=set(),
        clean_content_tags=_CLEAN_CONTENT_TAGS,
        attributes={},
        link_rel=None,
    )
    cleaned = escape_html(cleaned)
    cleaned = remove_script_tokens(cleaned)
    return cleaned.strip()


def sanitize_value(value: Any, max_depth: int = DEFAULT_MAX_DEPTH, *, _depth: int = 0) -> Any:
    """Return a sanitized copy of a JSON-like value. The argument is not modified."""
    if _depth > max_depth:
        raise InputTooDeepError(f"input nested deeper than {max_depth} levels")

    if isinstance(value, list):
        return [sanitize_value(item, max_depth, _depth=_depth + 1) for item in value]

    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for key, item in value.items():
            clean_key = sanitize_key(key)
            if clean_key is None:
                logger.warning("dangerous_key_removed", key=log_safe(str(key)))
                continue
            sanitized[clean_key] = sanitize_value(item, max_depth, _depth=_depth + 1)
        return sanitized

    if isinstance(value, str):
        return sanitize_string(value)

    return value


class RequestSanitizer(Middleware):
    """Replace the body, query and params slots with sanitized copies.

    Sanitization failures never propagate: they are logged and answered with
    a generic 400 so malformed input can't take the pipeline down.
    """

    def __init__(self, max_depth: int | None = None) -> None:
        self._max_depth = max_depth

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        if context.inputs is None:
            return None

        max_depth = self._max_depth if self._max_depth is not None else get_settings().max_input_depth

        try:
            sanitized = RequestInputs(
                **{name: sanitize_value(value, max_depth) for name, value in context.inputs.items()}
            )
        except Exception:
            logger.exception(
                "request_sanitization_error",
                path=request.url.path,
                method=request.method,
            )
            return _invalid_input()

        emptied = sorted(name for name, value in sanitized.params.items() if value == "")
        if emptied:
            # An empty segment would route the request to a different upstream endpoint
            logger.warning("route_param_emptied", params=emptied, path=log_safe(request.url.path))
            return _invalid_input()

        context.inputs = sanitized
        context.extra["inputs_sanitized"] = True
        return None


def _invalid_input() -> Response:
    return JSONResponse(status_code=400, content={"message": "Invalid input data"})
