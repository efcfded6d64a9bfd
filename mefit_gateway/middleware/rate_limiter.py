"""Per-client request throttling in the style of express-rate-limit.

Two sliding windows share one Redis sorted-set layout: a global one that
every request counts against, and a stricter one for the login and
registration routes. Successful auth calls are handed back so that only
failed attempts use up the small auth budget.
"""

from __future__ import annotations

import time
from typing import NamedTuple

import structlog
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from mefit_gateway.config.loader import get_settings
from mefit_gateway.config.rate_limit_defaults import is_auth_endpoint
from mefit_gateway.middleware.pipeline import Middleware, RequestContext
from mefit_gateway.store.redis import get_redis

logger = structlog.get_logger()

# KEYS[1] = window key
# ARGV = window start, now, limit, member, ttl
# Returns {hits already in the window, 1 if this hit was recorded else 0}
_SLIDING_WINDOW_LUA = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, tonumber(ARGV[1]))
local hits = redis.call('ZCARD', KEYS[1])
if hits >= tonumber(ARGV[3]) then
    return {hits, 0}
end
redis.call('ZADD', KEYS[1], tonumber(ARGV[2]), ARGV[4])
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[5]))
return {hits, 1}
"""


class _Window(NamedTuple):
    kind: str
    limit: int

    def key(self, client: str) -> str:
        return f"ratelimit:{self.kind}:{client}"


class RateLimiter(Middleware):
    """Answer 429 once a client has used up its window; 503 if Redis can't be asked."""

    async def process_request(self, request: Request, context: RequestContext) -> Request | Response | None:
        redis = get_redis()
        if redis is None:
            logger.error("rate_limiter_no_redis", action="fail_closed")
            return _service_unavailable()

        settings = get_settings()
        window_seconds = settings.rate_limit_window_seconds
        client = context.client_ip or (request.client.host if request.client else "unknown")

        windows = [_Window("global", settings.rate_limit_global_max)]
        if is_auth_endpoint(request.url.path):
            windows.append(_Window("auth", settings.rate_limit_auth_max))

        now = time.time()
        member = f"{now}:{context.request_id}"
        reset_at = int(now + window_seconds)
        context.extra["rate_limit_reset"] = reset_at

        for window in windows:
            key = window.key(client)
            try:
                hits, recorded = await redis.eval(
                    _SLIDING_WINDOW_LUA,
                    1,
                    key,
                    str(now - window_seconds),
                    str(now),
                    str(window.limit),
                    member,
                    str(int(window_seconds) + 1),
                )
            except Exception as exc:
                logger.error("rate_limiter_redis_error", error=str(exc), action="fail_closed")
                return _service_unavailable()

            # The last (strictest) window checked decides the advertised limit
            context.extra["rate_limit_max"] = window.limit

            if not int(recorded):
                context.extra["rate_limit_remaining"] = 0
                logger.warning(
                    "rate_limit_exceeded",
                    limit_type=window.kind,
                    current=int(hits),
                    max=window.limit,
                    path=request.url.path,
                )
                return JSONResponse(
                    status_code=429,
                    content={"message": "Too many requests, please try again later."},
                    headers={
                        "Retry-After": str(int(window_seconds)),
                        **_limit_headers(window.limit, 0, reset_at),
                    },
                )

            context.extra["rate_limit_remaining"] = max(0, window.limit - int(hits) - 1)
            if window.kind == "auth":
                context.extra["rate_limit_auth_entry"] = (key, member)

        return None

    async def process_response(self, response: Response, context: RequestContext) -> Response:
        if response.status_code < 400 and "rate_limit_auth_entry" in context.extra:
            await _release(*context.extra["rate_limit_auth_entry"])

        extra = context.extra
        if "rate_limit_max" in extra and "rate_limit_remaining" in extra:
            response.headers.update(
                _limit_headers(extra["rate_limit_max"], extra["rate_limit_remaining"], extra["rate_limit_reset"])
            )
        return response


def _limit_headers(limit: int, remaining: int, reset_at: int) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_at),
    }


def _service_unavailable() -> Response:
    return JSONResponse(status_code=503, content={"message": "Service temporarily unavailable"})


async def _release(key: str, member: str) -> None:
    """Take a successful auth attempt back out of its window."""
    redis = get_redis()
    if redis is None:
        return
    try:
        await redis.zrem(key, member)
    except Exception as exc:
        logger.warning("rate_limiter_release_failed", error=str(exc))
