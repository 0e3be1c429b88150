"""
HTTP client for the upstream market and news APIs.

These calls are the expensive producers behind the computation cache.
"""

from typing import Any, Dict, Optional

import aiohttp
import structlog

from ..config import UpstreamSettings

logger = structlog.get_logger(__name__)


class UpstreamClient:
    """
    Thin aiohttp wrapper around CoinGecko and CryptoCompare.

    Errors (connection failures, non-2xx responses) propagate to the caller;
    the computation cache turns them into ProducerFailure.
    """

    def __init__(self, settings: UpstreamSettings) -> None:
        self.settings = settings
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.timeout_seconds),
            headers={"User-Agent": "gatekeeper/0.1"},
        )
        logger.info("Upstream client started", market=self.settings.market_base_url)

    async def stop(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        logger.info("Upstream client stopped")

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        if self.session is None:
            await self.start()
        async with self.session.get(url, params=params, headers=headers) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)
        logger.debug("Upstream call succeeded", url=url, status=response.status)
        return data

    def _market_headers(self) -> Dict[str, str]:
        if self.settings.market_api_key:
            return {"x-cg-demo-api-key": self.settings.market_api_key}
        return {}

    def _news_headers(self) -> Dict[str, str]:
        if self.settings.news_api_key:
            return {"authorization": f"Apikey {self.settings.news_api_key}"}
        return {}

    async def trending(self) -> Any:
        """Trending coins."""
        return await self.get_json(
            f"{self.settings.market_base_url}/search/trending",
            headers=self._market_headers(),
        )

    async def coin(self, coin_id: str) -> Any:
        """Coin details with market data."""
        params = {
            "localization": "false",
            "tickers": "false",
            "market_data": "true",
            "community_data": "false",
            "developer_data": "false",
            "sparkline": "false",
        }
        return await self.get_json(
            f"{self.settings.market_base_url}/coins/{coin_id}",
            params=params,
            headers=self._market_headers(),
        )

    async def news(self, coin: Optional[str] = None) -> Any:
        """Latest news, optionally for one coin's category."""
        params = {"lang": "EN", "sortOrder": "popular"}
        if coin:
            params["categories"] = coin.upper()
        return await self.get_json(
            f"{self.settings.news_base_url}/news/",
            params=params,
            headers=self._news_headers(),
        )
