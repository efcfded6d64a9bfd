"""Bracket-notation query string codec.

Decodes ``a[b]=1&c[]=2&c[]=3`` into ``{"a": {"b": "1"}, "c": ["2", "3"]}`` the
way the upstream's extended query parser does, so that operator keys hidden
inside brackets (``filter[$where]=...``) reach the sanitization stages as real
mapping keys instead of opaque flat strings.
"""

from __future__ import annotations

import re
from typing import Any, Iterable
from urllib.parse import urlencode

# Nesting below this depth is kept verbatim in the last key
DEFAULT_DEPTH = 5

# Pairs beyond this count are ignored
DEFAULT_PARAMETER_LIMIT = 1000

_BRACKET_RE = re.compile(r"\[([^\[\]]*)\]")


def _split_key(key: str, depth: int) -> list[str]:
    """Split ``a[b][c]`` into ``["a", "b", "c"]``."""
    first = key.find("[")
    if first <= 0:
        return [key]

    segments = [key[:first]]
    pos = first
    for _ in range(depth):
        match = _BRACKET_RE.match(key, pos)
        if match is None:
            break
        segments.append(match.group(1))
        pos = match.end()
    if pos < len(key):
        segments.append(key[pos:])
    return segments


def _build(segments: list[str], value: Any) -> Any:
    leaf = value
    for segment in reversed(segments[1:]):
        leaf = [leaf] if segment == "" else {segment: leaf}
    return leaf


def _merge(target: Any, source: Any) -> Any:
    if isinstance(target, dict) and isinstance(source, dict):
        for key, value in source.items():
            target[key] = _merge(target[key], value) if key in target else value
        return target
    tail = source if isinstance(source, list) else [source]
    if isinstance(target, list):
        return target + tail
    return [target] + tail


def parse_nested_query(
    pairs: Iterable[tuple[str, str]],
    depth: int = DEFAULT_DEPTH,
    parameter_limit: int = DEFAULT_PARAMETER_LIMIT,
) -> dict[str, Any]:
    """Decode already-unquoted (key, value) pairs into a nested mapping.

    Repeated keys and ``key[]`` collect into lists, ``key[sub]`` nests
    mappings. Pairs with an empty key are skipped.
    """
    result: dict[str, Any] = {}
    for count, (key, value) in enumerate(pairs):
        if count >= parameter_limit:
            break
        if not key:
            continue
        segments = _split_key(key, depth)
        root = segments[0]
        built = _build(segments, value)
        result[root] = _merge(result[root], built) if root in result else built
    return result


def _flatten(prefix: str, value: Any, out: list[tuple[str, str]]) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}[{key}]" if prefix else str(key), item, out)
    elif isinstance(value, list):
        for item in value:
            _flatten(f"{prefix}[]", item, out)
    elif value is None:
        out.append((prefix, ""))
    elif isinstance(value, bool):
        out.append((prefix, "true" if value else "false"))
    else:
        out.append((prefix, str(value)))


def flatten_nested_query(data: dict[str, Any]) -> list[tuple[str, str]]:
    """Flatten a nested mapping back into bracket-notation pairs."""
    pairs: list[tuple[str, str]] = []
    for key, value in data.items():
        _flatten(str(key), value, pairs)
    return pairs


def encode_nested_query(data: dict[str, Any]) -> str:
    """Encode a nested mapping as a bracket-notation query string."""
    return urlencode(flatten_nested_query(data))
