"""Helpers for putting client-controlled strings into logs and headers."""

from __future__ import annotations

import re

# C0 controls, DEL, C1 controls, line/paragraph separators, bidi overrides,
# zero-width chars and BOM.
CONTROL_CHARS_RE = re.compile(
    r"[\x00-\x1f\x7f-\x9f\u2028\u2029\u200b-\u200f\u202a-\u202e\u2066-\u2069\ufeff]"
)

# Longest client string copied into an audit entry
MAX_LOGGED_LENGTH = 512


def strip_control_chars(value: str) -> str:
    """Strip all control characters from a string."""
    return CONTROL_CHARS_RE.sub("", value)


def log_safe(value: str | None, max_length: int = MAX_LOGGED_LENGTH) -> str:
    """Truncate and strip control characters so a value can't forge log lines."""
    if not value:
        return ""
    return strip_control_chars(value[:max_length])
