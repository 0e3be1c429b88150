"""
Background expiry purge.

Stale cache entries and ended rate windows are only dropped lazily when
read. The purger sweeps both stores on an interval so entries nobody asks
for again do not accumulate.
"""

import asyncio
from typing import Dict, Optional

import structlog

from .computation_cache import ComputationCache
from .exceptions import StoreUnavailable
from .rate_limiter import RateLimiter

logger = structlog.get_logger(__name__)


class ExpiryPurger:
    """Periodically purges the computation cache and the rate limiter."""

    def __init__(
        self,
        cache: ComputationCache,
        limiter: RateLimiter,
        interval_seconds: float = 60.0,
    ) -> None:
        self.cache = cache
        self.limiter = limiter
        self.interval = interval_seconds
        self._task: Optional["asyncio.Task[None]"] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running or self.interval <= 0:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Expiry purger started", interval_seconds=self.interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry purger stopped")

    async def purge_once(self) -> Dict[str, int]:
        """
        Purge both stores once.

        A store that is down is skipped for this round; the other one is
        still purged.
        """
        removed = {"cache_entries": 0, "rate_windows": 0}
        try:
            removed["cache_entries"] = await self.cache.purge_expired()
        except StoreUnavailable as e:
            logger.warning("Cache purge skipped", error=str(e))
        try:
            removed["rate_windows"] = await self.limiter.purge_expired()
        except StoreUnavailable as e:
            logger.warning("Rate window purge skipped", error=str(e))
        return removed

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                removed = await self.purge_once()
                if any(removed.values()):
                    logger.info("Expiry purge completed", **removed)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Expiry purge loop error", error=str(e), error_type=type(e).__name__)
