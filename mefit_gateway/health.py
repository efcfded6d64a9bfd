"""Gateway-local ``/health`` and ``/ready``; neither is forwarded to the MeFit API.

``/health`` keeps the MeFit API's own response shape (``status``/``timestamp``)
and adds the state of the gateway's two dependencies. ``/ready`` is for load
balancers: it fails while the upstream is unreachable or a configured Redis
is down.
"""

from __future__ import annotations

from datetime import datetime, timezone

import httpx
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from mefit_gateway.config.loader import get_settings
from mefit_gateway.store import redis as redis_store

logger = structlog.get_logger()
router = APIRouter()

UPSTREAM_PROBE_TIMEOUT = 5.0


async def _check_upstream() -> bool:
    """True unless the MeFit API is unreachable or answers with a 5xx."""
    url = f"{get_settings().upstream_url.rstrip('/')}/health"
    try:
        async with httpx.AsyncClient(timeout=UPSTREAM_PROBE_TIMEOUT) as client:
            resp = await client.head(url)
    except httpx.HTTPError as exc:
        logger.debug("upstream_health_check_failed", url=url, error=str(exc))
        return False
    return resp.status_code < 500


async def _dependencies() -> dict[str, str]:
    return {
        "upstream": "up" if await _check_upstream() else "down",
        "redis": await redis_store.status(),
    }


@router.get("/health")
async def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **await _dependencies(),
    }


@router.get("/ready")
async def ready():
    deps = await _dependencies()
    # "disabled" means rate limiting is off and Redis isn't needed
    if deps["upstream"] == "up" and deps["redis"] != "down":
        return {"status": "ready"}
    logger.warning("gateway_not_ready", **deps)
    return JSONResponse(status_code=503, content={"status": "not_ready", **deps})
