"""
FastAPI dependencies.

Components are built once by create_app and attached to app.state; handlers
reach them through these getters instead of module globals.
"""

import secrets
from typing import Optional

import structlog
from fastapi import Depends, Header, Request, Response

from ..config import Settings
from ..core.computation_cache import ComputationCache
from ..core.exceptions import AuthenticationError, RateLimitError
from ..core.fanout_logger import FanoutLogger
from ..core.maintenance import ExpiryPurger
from ..core.rate_limiter import AdmissionDecision, RateLimiter
from ..core.upstream import UpstreamClient

logger = structlog.get_logger(__name__)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_computation_cache(request: Request) -> ComputationCache:
    return request.app.state.computation_cache


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_fanout_logger(request: Request) -> FanoutLogger:
    return request.app.state.fanout_logger


def get_upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def get_purger(request: Request) -> ExpiryPurger:
    return request.app.state.purger


async def enforce_admission(
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> AdmissionDecision:
    """
    Count the request against its client's window.

    Rejected requests end here with a RateLimitError (429 + Retry-After).
    """
    identity = request.app.state.identify(request)
    decision = await limiter.check(identity)
    request.state.admission = decision

    if not decision.allowed:
        raise RateLimitError(
            message="Rate limit exceeded",
            retry_after=decision.retry_after,
        )

    if limiter.enabled:
        response.headers["X-RateLimit-Limit"] = str(decision.capacity)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    return decision


async def verify_admin_token(
    settings: Settings = Depends(get_app_settings),
    x_admin_token: Optional[str] = Header(default=None),
) -> str:
    """Check the X-Admin-Token header. An unset admin token disables admin routes."""
    expected = settings.security.admin_token
    if not expected:
        logger.warning("Admin request rejected: no admin token configured")
        raise AuthenticationError("Admin API is not configured")

    if not x_admin_token or not secrets.compare_digest(x_admin_token.strip().encode(), expected.encode()):
        logger.warning("Admin authentication failed")
        raise AuthenticationError("Invalid admin token")

    return x_admin_token
