"""Shared pytest fixtures: trade factories and in-memory collaborators."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from polycopy.api_client import TradeFeed
from polycopy.config import get_settings
from polycopy.domain import (
    CopyTradeRecord, LeaderboardEntry, Position, TrackedTrader, Trade, TrackingStatus, TradeSide,
)
from polycopy.errors import FeedUnavailable, PersistenceError
from polycopy.storage import CopyTradeRepository, net_open_positions
from polycopy.trade_executor import ExecutionClient, OrderAck

T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)
TRADER = "0x" + "a" * 40
OTHER_TRADER = "0x" + "b" * 40


def make_trade(
    day: float,
    pnl: Optional[float] = None,
    *,
    trader: str = TRADER,
    trade_id: Optional[str] = None,
    size: float = 100.0,
    price: float = 0.5,
    side: TradeSide = TradeSide.BUY,
) -> Trade:
    return Trade(
        id=trade_id or f"{trader[:6]}-{day}",
        trader_address=trader,
        market_id="0xmarket",
        asset_id="123456",
        side=side,
        size=size,
        price=price,
        timestamp=T0 + timedelta(days=day),
        realized_pnl=pnl,
    )


def winning_history(trader: str = TRADER, cycles: int = 10) -> List[Trade]:
    """Closed trades, one per day, repeating win +20, win +20, loss -10"""
    trades = []
    for i in range(cycles * 3):
        pnl = -10.0 if i % 3 == 2 else 20.0
        trades.append(make_trade(i, pnl, trader=trader))
    return trades


class FakeFeed(TradeFeed):
    def __init__(self):
        self.trades: Dict[str, List[Trade]] = {}
        self.positions: Dict[str, List[Position]] = {}
        self.leaderboard: List[LeaderboardEntry] = []
        self.failures: Dict[str, int] = {}
        self.calls: List[tuple] = []

    def add(self, *trades: Trade):
        for trade in trades:
            self.trades.setdefault(trade.trader_address, []).append(trade)

    async def fetch_trades(self, trader_address, since_watermark=None):
        self.calls.append((trader_address, since_watermark))
        if self.failures.get(trader_address, 0) > 0:
            self.failures[trader_address] -= 1
            raise FeedUnavailable(f"feed down for {trader_address}")
        trades = self.trades.get(trader_address, [])
        if since_watermark is not None:
            trades = [t for t in trades if t.timestamp >= since_watermark]
        return sorted(trades, key=lambda t: (t.timestamp, t.id))

    async def fetch_open_positions(self, trader_address):
        return self.positions.get(trader_address, [])

    async def fetch_leaderboard(self, time_period="month", limit=50, min_pnl=0.0):
        return [e for e in self.leaderboard if e.pnl >= min_pnl][:limit]


class FakeExecutor(ExecutionClient):
    """Replays scripted outcomes: an exception instance, a delay in seconds, or None for a fill"""

    def __init__(self, *script):
        self.script = list(script)
        self.calls: List[tuple] = []

    async def submit_order(self, market, side, size, price_hint):
        self.calls.append((market, side, size, price_hint))
        step = self.script.pop(0) if self.script else None
        if isinstance(step, Exception):
            raise step
        if isinstance(step, (int, float)):
            await asyncio.sleep(step)
        return OrderAck(
            order_id=f"ORDER-{len(self.calls)}", status="matched",
            fill_price=price_hint, filled_size=size,
        )


class InMemoryRepository(CopyTradeRepository):
    def __init__(self):
        self.traders: Dict[str, TrackedTrader] = {}
        self.records: Dict[str, CopyTradeRecord] = {}
        self.failing_saves = 0

    async def load_tracked_traders(self):
        return [TrackedTrader(**vars(t)) for t in self.traders.values()]

    async def get_tracked_trader(self, address):
        return self.traders.get(address.lower())

    async def add_tracked_trader(self, address, alias=None):
        address = address.lower()
        if address not in self.traders:
            self.traders[address] = TrackedTrader(address=address, alias=alias)
        return self.traders[address]

    async def remove_tracked_trader(self, address):
        return self.traders.pop(address.lower(), None) is not None

    async def set_trader_status(self, address, status: TrackingStatus):
        trader = self.traders.get(address.lower())
        if trader is None:
            return False
        trader.status = status
        return True

    async def update_watermark(self, address, watermark):
        trader = self.traders[address]
        if trader.watermark is None or watermark > trader.watermark:
            trader.watermark = watermark

    async def update_admission(self, address, admitted, failed_criterion=None):
        trader = self.traders.get(address)
        if trader is not None:
            trader.admitted = admitted
            trader.failed_criterion = failed_criterion

    async def save_copy_trade_record(self, record):
        if self.failing_saves > 0:
            self.failing_saves -= 1
            raise PersistenceError("disk full")
        for other in self.records.values():
            if other.key == record.key and other.id != record.id:
                raise PersistenceError(f"duplicate record for {record.key}")
        self.records[record.id] = record

    async def find_copy_trade_record(self, trader_address, source_trade_id):
        for record in self.records.values():
            if record.key == (trader_address, source_trade_id):
                return record
        return None

    async def list_copy_trade_records(self, trader_address=None, status=None, limit=50):
        items = [
            r for r in self.records.values()
            if (trader_address is None or r.trader_address == trader_address)
            and (status is None or r.status == status)
        ]
        return sorted(items, key=lambda r: r.created_at, reverse=True)[:limit]

    async def open_positions(self):
        return net_open_positions(
            (r.asset_id, r.side, r.status, r.size) for r in self.records.values()
        )


@pytest.fixture()
def settings():
    return get_settings(
        dry_run=True,
        portfolio_value=1000.0,
        retry_backoff_seconds=0.0,
        max_execution_attempts=2,
        max_feed_attempts=2,
        persistence_attempts=2,
        execution_timeout_seconds=0.5,
        scale_by_source_portfolio=False,
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture()
def feed():
    return FakeFeed()


@pytest.fixture()
def repo():
    return InMemoryRepository()
