"""
Historical Backtesting

Replays tracked traders' past trades through the same admission, metrics
and sizing rules the live engine uses, against a simulated portfolio:
- BUY copies open or add to a position at the source price plus slippage
- SELL copies close part of a position at the source price minus slippage
- A fee is charged on every simulated fill
- Positions still open at the end are closed at the last seen price
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .api_client import PolymarketDataClient, TradeFeed
from .config import Settings, get_settings
from .copy_engine import wait_retry_after
from .domain import Trade, TradeSide
from .errors import InsufficientData, TransientError
from .metrics import MetricsCalculator, PerformanceMetrics
from .portfolio import DUST
from .position_sizer import PositionSizer, SizingConfig, SizingContext, SizingMethod
from .scoring import CompositeScorer

END_OF_BACKTEST = "end_of_backtest"
TRADER_EXIT = "trader_exit"
INSUFFICIENT_CAPITAL = "insufficient_capital"


@dataclass(frozen=True)
class BacktestConfig:
    initial_capital: float = 1000.0
    slippage: float = 0.005
    fee_rate: float = 0.001

    @classmethod
    def from_settings(cls, settings: Settings) -> "BacktestConfig":
        return cls(
            initial_capital=settings.portfolio_value,
            slippage=settings.backtest_slippage,
            fee_rate=settings.backtest_fee_rate,
        )


@dataclass
class SimulatedPosition:
    """Open simulated holding in one outcome token"""
    asset_id: str
    market_id: str
    trader_address: str
    shares: float
    cost: float
    opened_at: datetime

    @property
    def entry_price(self) -> float:
        return self.cost / self.shares if self.shares else 0.0

    def value_at(self, price: float) -> float:
        return self.shares * price


@dataclass(frozen=True)
class BacktestTrade:
    """A closed (or partially closed) simulated copy"""
    trader_address: str
    asset_id: str
    market_id: str
    cost: float
    shares: float
    entry_price: float
    exit_price: float
    opened_at: datetime
    closed_at: datetime
    pnl: float
    exit_reason: str

    @property
    def return_pct(self) -> float:
        return self.pnl / self.cost if self.cost else 0.0


@dataclass
class BacktestResult:
    initial_capital: float
    final_capital: float
    trades: List[BacktestTrade] = field(default_factory=list)
    skipped: Counter = field(default_factory=Counter)
    total_fees: float = 0.0
    max_drawdown: float = 0.0
    equity_curve: List[Tuple[datetime, float]] = field(default_factory=list)
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def total_return(self) -> float:
        return (self.final_capital - self.initial_capital) / self.initial_capital

    @property
    def avg_holding_hours(self) -> float:
        if not self.trades:
            return 0.0
        hours = [(t.closed_at - t.opened_at).total_seconds() / 3600 for t in self.trades]
        return sum(hours) / len(hours)


class _Simulation:
    """Mutable portfolio state for one replay"""

    def __init__(self, config: BacktestConfig):
        self.config = config
        self.cash = config.initial_capital
        self.positions: Dict[str, SimulatedPosition] = {}
        self.last_price: Dict[str, float] = {}
        self.result = BacktestResult(config.initial_capital, config.initial_capital)
        self._peak = config.initial_capital

    @property
    def equity(self) -> float:
        return self.cash + sum(
            p.value_at(self.last_price.get(asset, p.entry_price)) for asset, p in self.positions.items()
        )

    @property
    def exposure(self) -> float:
        return sum(p.cost for p in self.positions.values())

    def open_position(self, asset_id: str) -> float:
        position = self.positions.get(asset_id)
        return position.cost if position else 0.0

    def buy(self, trade: Trade, size: float):
        fee = size * self.config.fee_rate
        if size + fee > self.cash:
            self.result.skipped[INSUFFICIENT_CAPITAL] += 1
            logger.debug(f"Insufficient capital for ${size:.2f} copy of {trade.id}")
            return

        entry = min(trade.price * (1.0 + self.config.slippage), 1.0)
        self.cash -= size + fee
        self.result.total_fees += fee

        position = self.positions.get(trade.asset_id)
        if position is None:
            self.positions[trade.asset_id] = SimulatedPosition(
                asset_id=trade.asset_id,
                market_id=trade.market_id,
                trader_address=trade.trader_address,
                shares=size / entry,
                cost=size + fee,
                opened_at=trade.timestamp,
            )
        else:
            position.shares += size / entry
            position.cost += size + fee
        self._mark(trade.timestamp)

    def sell(self, asset_id: str, size: float, price: float, at: datetime, reason: str):
        position = self.positions[asset_id]
        fraction = min(size / position.cost, 1.0)
        shares = position.shares * fraction
        cost = position.cost * fraction

        exit_price = price * (1.0 - self.config.slippage)
        proceeds = shares * exit_price
        fee = proceeds * self.config.fee_rate
        self.cash += proceeds - fee
        self.result.total_fees += fee

        self.result.trades.append(BacktestTrade(
            trader_address=position.trader_address,
            asset_id=asset_id,
            market_id=position.market_id,
            cost=cost,
            shares=shares,
            entry_price=position.entry_price,
            exit_price=exit_price,
            opened_at=position.opened_at,
            closed_at=at,
            pnl=proceeds - fee - cost,
            exit_reason=reason,
        ))

        position.shares -= shares
        position.cost -= cost
        if position.cost <= DUST:
            del self.positions[asset_id]
        self._mark(at)

    def _mark(self, at: datetime):
        equity = self.equity
        self.result.equity_curve.append((at, equity))
        self._peak = max(self._peak, equity)
        if self._peak > 0:
            self.result.max_drawdown = max(self.result.max_drawdown, (self._peak - equity) / self._peak)


def _closed_trades(trades: Sequence[BacktestTrade]) -> List[Trade]:
    """Simulated exits as closed trades so MetricsCalculator can summarize them"""
    return [
        Trade(
            id=f"backtest-{i}",
            trader_address=t.trader_address,
            market_id=t.market_id,
            asset_id=t.asset_id,
            side=TradeSide.SELL,
            size=t.shares,
            price=t.exit_price,
            timestamp=t.closed_at,
            realized_pnl=t.pnl,
        )
        for i, t in enumerate(trades)
    ]


class Backtester:
    """
    Replays trade histories against a simulated copy portfolio

    `replay` is pure; `run_single_trader` and `run_multiple_traders` fetch
    the histories from the feed first.
    """

    def __init__(
        self,
        feed: Optional[TradeFeed] = None,
        settings: Optional[Settings] = None,
        config: Optional[BacktestConfig] = None,
    ):
        self.settings = settings or get_settings()
        self.feed = feed or PolymarketDataClient(self.settings)
        self.config = config or BacktestConfig.from_settings(self.settings)
        self.scorer = CompositeScorer.from_settings(self.settings)
        self.sizer = PositionSizer(SizingConfig.from_settings(self.settings))

    async def close(self):
        await self.feed.close()

    async def _fetch(self, address: str) -> List[Trade]:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.settings.max_feed_attempts),
            wait=wait_retry_after(
                wait_exponential(
                    multiplier=self.settings.retry_backoff_seconds,
                    max=self.settings.retry_backoff_max_seconds,
                ),
                max_wait=self.settings.retry_backoff_max_seconds,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.feed.fetch_trades(address, None)

    async def run_single_trader(self, address: str) -> BacktestResult:
        address = address.lower()
        logger.info(f"Backtesting {address}")
        history = await self._fetch(address)
        return self.replay({address: history})

    async def run_multiple_traders(self, addresses: Sequence[str]) -> BacktestResult:
        """Backtest several traders sharing one portfolio; unreachable traders are left out"""
        addresses = [a.lower() for a in addresses]
        logger.info(f"Backtesting {len(addresses)} trader(s)")
        fetched = await asyncio.gather(*(self._fetch(a) for a in addresses), return_exceptions=True)

        histories: Dict[str, List[Trade]] = {}
        for address, history in zip(addresses, fetched):
            if isinstance(history, TransientError):
                logger.warning(f"History unavailable for {address[:10]}..., left out: {history}")
                continue
            if isinstance(history, BaseException):
                raise history
            histories[address] = history
        return self.replay(histories)

    def replay(self, histories: Mapping[str, Sequence[Trade]]) -> BacktestResult:
        """
        Replay trades in time order

        Each trade is admitted and sized against the trader's history up to
        and including that trade, the way the live engine sees it.

        Raises:
            InsufficientData: No trades to replay
        """
        events = sorted(
            (trade for trades in histories.values() for trade in trades),
            key=lambda t: (t.timestamp, t.id),
        )
        if not events:
            raise InsufficientData("no historical trades to replay")

        sim = _Simulation(self.config)
        result = sim.result
        result.start, result.end = events[0].timestamp, events[-1].timestamp
        result.equity_curve.append((result.start, self.config.initial_capital))

        seen: Dict[str, List[Trade]] = {}
        metrics: Dict[str, PerformanceMetrics] = {}
        risk_parity = self.sizer.config.method == SizingMethod.RISK_PARITY

        for trade in events:
            sim.last_price[trade.asset_id] = trade.price
            address = trade.trader_address
            seen.setdefault(address, []).append(trade)
            metrics[address] = MetricsCalculator.calculate(seen[address])

            verdict = self.scorer.admit(metrics[address])
            if not verdict.passed:
                result.skipped[f"admission_failed:{verdict.failed_criterion.value}"] += 1
                continue

            peers = {}
            if risk_parity:
                peers = {a: m.volatility for a, m in metrics.items() if a != address}
            decision = self.sizer.size(metrics[address], SizingContext(
                equity=sim.equity,
                current_exposure=sim.exposure,
                source_notional=trade.notional,
                trader_address=address,
                peer_volatilities=peers,
                side=trade.side,
                open_position=sim.open_position(trade.asset_id),
            ))
            if decision.is_skip:
                result.skipped[decision.skip_reason] += 1
                continue

            if trade.side == TradeSide.BUY:
                sim.buy(trade, decision.final_size)
            else:
                sim.sell(trade.asset_id, decision.final_size, trade.price, trade.timestamp, TRADER_EXIT)

        for asset_id in list(sim.positions):
            position = sim.positions[asset_id]
            price = sim.last_price.get(asset_id, position.entry_price)
            sim.sell(asset_id, position.cost, price, result.end, END_OF_BACKTEST)

        result.final_capital = sim.cash
        if result.trades:
            result.metrics = MetricsCalculator.calculate(_closed_trades(result.trades))

        logger.info(
            f"Backtest finished: {len(result.trades)} closed, {sum(result.skipped.values())} skipped, "
            f"return {result.total_return:.2%}"
        )
        return result
