"""
Polymarket Trade Feed Client

Reads trader activity from the Polymarket data API:
- fetch_trades: a trader's trades since a watermark, oldest first
- fetch_open_positions: a trader's current open positions
- fetch_leaderboard: top traders by PnL, used for discovery

HTTP failures surface as FeedUnavailable, HTTP 429 as RateLimited.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import aiohttp
from loguru import logger

from .config import APIEndpoints, Settings, get_settings
from .domain import LeaderboardEntry, Position, Trade
from .errors import FeedUnavailable, RateLimited


class TradeFeed(ABC):
    """Source of trade and position records for a trader address"""

    @abstractmethod
    async def fetch_trades(
        self, trader_address: str, since_watermark: Optional[datetime] = None
    ) -> List[Trade]:
        """Trades with timestamp >= since_watermark, ascending by time"""

    @abstractmethod
    async def fetch_open_positions(self, trader_address: str) -> List[Position]:
        ...

    @abstractmethod
    async def fetch_leaderboard(
        self, time_period: str = "month", limit: int = 50, min_pnl: float = 0.0
    ) -> List[LeaderboardEntry]:
        """Leaderboard entries ordered by PnL with pnl >= min_pnl, at most `limit`"""

    async def close(self):
        pass


class PolymarketDataClient(TradeFeed):
    """
    Trade feed backed by data-api.polymarket.com

    The API returns trades newest first in pages; pages are walked until the
    watermark is passed or the history runs out.
    """

    MAX_PAGES = 20
    LEADERBOARD_PAGE_SIZE = 50

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.data_api_host.rstrip("/")
        self.page_size = self.settings.feed_page_size
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.settings.feed_timeout_seconds),
            )
        return self._session

    async def close(self):
        """Close the HTTP session"""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get(self, path: str, params: Dict) -> List[Dict]:
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        try:
            async with session.get(url, params=params) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    raise RateLimited(
                        f"rate limited on {path}",
                        retry_after=float(retry_after) if retry_after else None,
                    )
                if response.status >= 400:
                    body = await response.text()
                    raise FeedUnavailable(f"{path} returned {response.status}: {body[:200]}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FeedUnavailable(f"{path} request failed: {e}") from e

        if not isinstance(data, list):
            raise FeedUnavailable(f"unexpected payload from {path}: {type(data).__name__}")
        return data

    async def fetch_trades(
        self, trader_address: str, since_watermark: Optional[datetime] = None
    ) -> List[Trade]:
        address = trader_address.lower()
        trades: List[Trade] = []

        for page in range(self.MAX_PAGES):
            params = {
                "user": address,
                "limit": self.page_size,
                "offset": page * self.page_size,
            }
            items = await self._get(APIEndpoints.TRADES, params)
            batch = [Trade.from_dict(item, trader_address=address) for item in items]
            trades.extend(batch)

            if len(items) < self.page_size:
                break
            if since_watermark and batch and min(t.timestamp for t in batch) < since_watermark:
                break
        else:
            logger.warning(f"Trade history for {address[:10]}... truncated at {self.MAX_PAGES} pages")

        if since_watermark is not None:
            trades = [t for t in trades if t.timestamp >= since_watermark]

        # dedupe across page boundaries that shift while we read
        unique = {t.id: t for t in trades}
        result = sorted(unique.values(), key=lambda t: (t.timestamp, t.id))
        logger.debug(f"Fetched {len(result)} trades for {address[:10]}...")
        return result

    async def fetch_open_positions(self, trader_address: str) -> List[Position]:
        address = trader_address.lower()
        items = await self._get(APIEndpoints.POSITIONS, {"user": address, "limit": self.page_size})
        return [Position.from_dict(item, address) for item in items]

    async def fetch_leaderboard(
        self, time_period: str = "month", limit: int = 50, min_pnl: float = 0.0
    ) -> List[LeaderboardEntry]:
        entries: List[LeaderboardEntry] = []

        for page in range(self.MAX_PAGES):
            params = {
                "category": "OVERALL",
                "timePeriod": time_period.upper(),
                "orderBy": "PNL",
                "limit": self.LEADERBOARD_PAGE_SIZE,
                "offset": page * self.LEADERBOARD_PAGE_SIZE,
            }
            items = await self._get(APIEndpoints.LEADERBOARD, params)
            for item in items:
                entry = LeaderboardEntry.from_dict(item)
                if entry.address and entry.pnl >= min_pnl:
                    entries.append(entry)

            if len(entries) >= limit or len(items) < self.LEADERBOARD_PAGE_SIZE:
                break

        logger.debug(f"Leaderboard ({time_period}) returned {len(entries)} trader(s) with pnl >= {min_pnl}")
        return entries[:limit]
