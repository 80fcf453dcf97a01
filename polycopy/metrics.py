"""
Trader Performance Metrics

Turns a trader's trade history into a PerformanceMetrics snapshot:
- Win/loss statistics
- Sharpe and Sortino ratios annualized by observed trading frequency
- Maximum drawdown of the cumulative PnL curve and the Calmar ratio
- Trailing 7-day and 30-day PnL

Ratios whose denominator is zero or that lack enough samples are None,
never a silent 0.
"""

import math
import statistics
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from loguru import logger

from .config import TradingConstants
from .domain import Trade
from .errors import InsufficientData


@dataclass(frozen=True)
class PerformanceMetrics:
    """Derived, recomputable performance snapshot for one trader"""
    trade_count: int = 0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: Optional[float] = None
    avg_win: float = 0.0
    avg_loss: float = 0.0
    sharpe_ratio: Optional[float] = None
    sortino_ratio: Optional[float] = None
    max_drawdown: Optional[float] = None
    max_drawdown_usd: float = 0.0
    calmar_ratio: Optional[float] = None
    total_pnl: float = 0.0
    momentum: Optional[float] = None
    pnl_30d: Optional[float] = None
    volatility: Optional[float] = None
    trades_per_day: float = 0.0
    profit_factor: Optional[float] = None
    expectancy: Optional[float] = None
    total_volume: float = 0.0

    @property
    def payoff_ratio(self) -> Optional[float]:
        """Average win over average loss, None without losses"""
        if self.avg_loss <= 0:
            return None
        return self.avg_win / self.avg_loss


def _span_days(closed: Sequence[Trade]) -> float:
    span = (closed[-1].timestamp - closed[0].timestamp).total_seconds() / 86400
    return max(span, 1.0)


def _returns(closed: Sequence[Trade]) -> List[float]:
    """Per-trade return = realized PnL / notional; zero-notional trades are dropped"""
    return [t.realized_pnl / t.notional for t in closed if t.notional > 0]


def sharpe_ratio(returns: Sequence[float], trades_per_day: float) -> float:
    if len(returns) < 2:
        raise InsufficientData("sharpe needs at least 2 returns")
    std = statistics.stdev(returns)
    if std == 0:
        raise InsufficientData("sharpe undefined for zero variance")
    return statistics.mean(returns) / std * math.sqrt(trades_per_day * TradingConstants.DAYS_PER_YEAR)


def sortino_ratio(returns: Sequence[float], trades_per_day: float) -> float:
    downside = [r for r in returns if r < 0]
    if len(downside) < 2:
        raise InsufficientData("sortino needs at least 2 negative returns")
    downside_dev = statistics.stdev(downside)
    if downside_dev == 0:
        raise InsufficientData("sortino undefined for zero downside deviation")
    return statistics.mean(returns) / downside_dev * math.sqrt(trades_per_day * TradingConstants.DAYS_PER_YEAR)


def max_drawdown(pnls: Sequence[float]) -> tuple:
    """
    Largest peak-to-trough decline of the cumulative PnL curve

    Returns (fraction, usd). The running peak starts at zero, so the fraction
    is only measured once the curve has been above zero; it is clamped to
    [0, 1] because equity can fall below the starting point.
    """
    if not pnls:
        raise InsufficientData("drawdown needs at least one closed trade")
    equity = 0.0
    peak = 0.0
    max_dd_pct = 0.0
    max_dd_usd = 0.0
    for pnl in pnls:
        equity += pnl
        peak = max(peak, equity)
        max_dd_usd = max(max_dd_usd, peak - equity)
        if peak > 0:
            max_dd_pct = max(max_dd_pct, min((peak - equity) / peak, 1.0))
    return max_dd_pct, max_dd_usd


def _window_pnl(closed: Sequence[Trade], end: datetime, days: int) -> float:
    start = end - timedelta(days=days)
    return sum(t.realized_pnl for t in closed if t.timestamp >= start)


class MetricsCalculator:
    """
    Pure calculator for trader performance metrics

    Requires closed trades (realized PnL known) for anything beyond counts
    and volume.
    """

    @staticmethod
    def calculate(trades: Sequence[Trade]) -> PerformanceMetrics:
        ordered = sorted(trades, key=lambda t: t.timestamp)
        closed = [t for t in ordered if t.is_closed]
        total_volume = sum(t.notional for t in ordered)

        if not closed:
            return PerformanceMetrics(total_trades=len(ordered), total_volume=total_volume)

        pnls = [t.realized_pnl for t in closed]
        wins = [p for p in pnls if p > 0]
        losses = [abs(p) for p in pnls if p < 0]
        total_pnl = sum(pnls)

        span = _span_days(closed)
        trades_per_day = len(closed) / span
        returns = _returns(closed)

        sharpe = _guarded("sharpe", sharpe_ratio, returns, trades_per_day)
        sortino = _guarded("sortino", sortino_ratio, returns, trades_per_day)
        volatility = statistics.stdev(returns) if len(returns) >= 2 else None

        dd_pct, dd_usd = max_drawdown(pnls)
        calmar = None
        if dd_pct > 0 and returns:
            annualized = sum(returns) * TradingConstants.DAYS_PER_YEAR / span
            calmar = annualized / dd_pct

        latest = closed[-1].timestamp

        return PerformanceMetrics(
            trade_count=len(closed),
            total_trades=len(ordered),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / len(closed),
            avg_win=statistics.mean(wins) if wins else 0.0,
            avg_loss=statistics.mean(losses) if losses else 0.0,
            sharpe_ratio=sharpe,
            sortino_ratio=sortino,
            max_drawdown=dd_pct,
            max_drawdown_usd=dd_usd,
            calmar_ratio=calmar,
            total_pnl=total_pnl,
            momentum=_window_pnl(closed, latest, TradingConstants.MOMENTUM_WINDOW_DAYS),
            pnl_30d=_window_pnl(closed, latest, TradingConstants.MONTH_WINDOW_DAYS),
            volatility=volatility,
            trades_per_day=trades_per_day,
            profit_factor=sum(wins) / sum(losses) if losses else None,
            expectancy=total_pnl / len(closed),
            total_volume=total_volume,
        )


def _guarded(name: str, fn, *args) -> Optional[float]:
    try:
        return fn(*args)
    except InsufficientData as e:
        logger.debug(f"{name} undefined: {e}")
        return None
