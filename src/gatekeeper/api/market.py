"""
Cached market and news endpoints.

Each endpoint serves upstream JSON through the computation cache:
concurrent misses for the same resource trigger one upstream call.
"""

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, Path, Query

from ..config import Settings
from ..core.cache_store import build_cache_key
from ..core.computation_cache import ComputationCache
from ..core.upstream import UpstreamClient
from ..models import ErrorResponse
from .dependencies import get_app_settings, get_computation_cache, get_upstream

logger = structlog.get_logger(__name__)

router = APIRouter()

UPSTREAM_ERRORS = {
    429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    502: {"model": ErrorResponse, "description": "Upstream request failed"},
    504: {"model": ErrorResponse, "description": "Timed out waiting for the upstream"},
}


@router.get(
    "/market/trending",
    responses=UPSTREAM_ERRORS,
    summary="Trending coins",
)
async def trending(
    cache: ComputationCache = Depends(get_computation_cache),
    upstream: UpstreamClient = Depends(get_upstream),
    settings: Settings = Depends(get_app_settings),
) -> Any:
    key = build_cache_key("market", "trending")
    return await cache.get_or_compute(key, upstream.trending, ttl=settings.cache.market_ttl)


@router.get(
    "/market/coins/{coin_id}",
    responses=UPSTREAM_ERRORS,
    summary="Coin details",
)
async def coin_details(
    coin_id: str = Path(..., pattern=r"^[a-z0-9-]{1,64}$"),
    cache: ComputationCache = Depends(get_computation_cache),
    upstream: UpstreamClient = Depends(get_upstream),
    settings: Settings = Depends(get_app_settings),
) -> Any:
    key = build_cache_key("market", "coin", {"id": coin_id})

    async def produce() -> Any:
        return await upstream.coin(coin_id)

    return await cache.get_or_compute(key, produce, ttl=settings.cache.market_ttl)


@router.get(
    "/news",
    responses=UPSTREAM_ERRORS,
    summary="Latest news",
    description="Latest crypto news, optionally filtered by coin symbol.",
)
async def news(
    coin: Optional[str] = Query(default=None, pattern=r"^[A-Za-z0-9]{1,16}$"),
    cache: ComputationCache = Depends(get_computation_cache),
    upstream: UpstreamClient = Depends(get_upstream),
    settings: Settings = Depends(get_app_settings),
) -> Any:
    params = {"coin": coin.upper()} if coin else {}
    key = build_cache_key("news", "latest", params)

    async def produce() -> Any:
        return await upstream.news(coin)

    return await cache.get_or_compute(key, produce, ttl=settings.cache.news_ttl)
