"""
Health check endpoints.

- /healthz: Liveness probe (always 200 if service alive)
- /readyz: Readiness probe (200 only if the cache and rate-window stores answer)
"""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request, Response, status

from .. import __version__
from ..core.exceptions import StoreUnavailable

logger = structlog.get_logger(__name__)

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get(
    "/healthz",
    status_code=200,
    summary="Liveness probe",
    description="""
    Liveness probe endpoint.

    Always returns 200 OK if the service is running.
    """,
)
async def liveness_check() -> Dict[str, Any]:
    return {
        "status": "alive",
        "timestamp": _now(),
        "service": "gatekeeper",
        "version": __version__,
    }


@router.get(
    "/readyz",
    summary="Readiness probe",
    description="""
    Readiness probe endpoint.

    Returns 200 only if the cache store and the rate-window store respond.
    Returns 503 Service Unavailable otherwise.
    """,
)
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    stores = {
        "cache_store": request.app.state.computation_cache.store,
        "rate_window_store": request.app.state.rate_limiter.store,
    }
    checks: Dict[str, str] = {}
    for name, store in stores.items():
        try:
            await store.ping()
            checks[name] = "ok"
        except StoreUnavailable as e:
            logger.warning("Readiness check failed", check=name, error=str(e))
            checks[name] = "unavailable"

    failed = [name for name, result in checks.items() if result != "ok"]
    if failed:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "not_ready",
            "timestamp": _now(),
            "checks": checks,
            "failed_checks": failed,
        }

    return {
        "status": "ready",
        "timestamp": _now(),
        "checks": checks,
    }
