"""
Admin API endpoints.

Cache invalidation, cache statistics, expiry purges and rate-limit resets.
Every route requires the X-Admin-Token header.
"""

import structlog
from fastapi import APIRouter, Depends

from ..core.computation_cache import ComputationCache
from ..core.maintenance import ExpiryPurger
from ..core.rate_limiter import RateLimiter
from ..models import (
    CacheClearResponse,
    CacheInvalidationResponse,
    CacheStatsResponse,
    ErrorResponse,
    PurgeResponse,
    RateLimitResetResponse,
)
from .dependencies import get_computation_cache, get_purger, get_rate_limiter, verify_admin_token

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/admin",
    dependencies=[Depends(verify_admin_token)],
    responses={401: {"model": ErrorResponse, "description": "Unauthorized - admin token required"}},
)


@router.delete(
    "/cache",
    response_model=CacheClearResponse,
    summary="Clear the computation cache",
)
async def clear_cache(
    cache: ComputationCache = Depends(get_computation_cache),
) -> CacheClearResponse:
    removed = await cache.clear()
    logger.info("Cache cleared by admin", removed=removed)
    return CacheClearResponse(removed=removed)


@router.delete(
    "/cache/{key:path}",
    response_model=CacheInvalidationResponse,
    summary="Invalidate one cache entry",
)
async def invalidate_cache_entry(
    key: str,
    cache: ComputationCache = Depends(get_computation_cache),
) -> CacheInvalidationResponse:
    removed = await cache.invalidate(key)
    logger.info("Cache entry invalidated by admin", key=key, removed=removed)
    return CacheInvalidationResponse(key=key, removed=removed)


@router.delete(
    "/rate-limits/{identity:path}",
    response_model=RateLimitResetResponse,
    summary="Reset a client's rate-limit window",
)
async def reset_rate_limit(
    identity: str,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitResetResponse:
    removed = await limiter.reset(identity)
    logger.info("Rate limit reset by admin", identity=identity, removed=removed)
    return RateLimitResetResponse(identity=identity, removed=removed)


@router.get(
    "/stats",
    response_model=CacheStatsResponse,
    summary="Computation cache statistics",
)
async def cache_stats(
    cache: ComputationCache = Depends(get_computation_cache),
) -> CacheStatsResponse:
    return CacheStatsResponse(**cache.stats.to_dict(), in_flight=cache.in_flight)


@router.delete(
    "/expired",
    response_model=PurgeResponse,
    summary="Purge expired cache entries and rate windows now",
)
async def purge_expired(
    purger: ExpiryPurger = Depends(get_purger),
) -> PurgeResponse:
    removed = await purger.purge_once()
    logger.info("Expired entries purged by admin", **removed)
    return PurgeResponse(**removed)
