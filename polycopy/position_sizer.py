"""
Position Sizing

Converts "copy this trade" into a concrete USDC size using one of:
- Kelly criterion, scaled by a Kelly multiplier and a drawdown penalty
- Fixed fraction of portfolio equity
- Risk parity across tracked traders (inverse volatility weights)

The method fraction is then capped, in order, by the source notional, the
single-position limit, the remaining portfolio allocation and the trade size
limits. A SELL copy only unwinds what we hold: it is capped by the open
position instead of the position and allocation limits. The sizer only reads
portfolio state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple

from .config import Settings
from .domain import TradeSide
from .metrics import PerformanceMetrics


class SizingMethod(Enum):
    KELLY = "kelly"
    FIXED_FRACTION = "fixed_fraction"
    RISK_PARITY = "risk_parity"


class SkipReason:
    NO_EDGE = "no_edge"
    INSUFFICIENT_DATA = "insufficient_data"
    ALLOCATION_EXHAUSTED = "allocation_exhausted"
    BELOW_MINIMUM = "below_minimum"
    NO_OPEN_POSITION = "no_open_position"


class Cap:
    SOURCE_NOTIONAL = "source_notional"
    MAX_SINGLE_POSITION = "max_single_position"
    MAX_PORTFOLIO_ALLOCATION = "max_portfolio_allocation"
    MAX_TRADE_SIZE = "max_trade_size"
    OPEN_POSITION = "open_position"


@dataclass(frozen=True)
class SizingConfig:
    method: SizingMethod = SizingMethod.KELLY
    kelly_fraction: float = 0.25
    fixed_fraction: float = 0.02
    max_portfolio_allocation: float = 0.5
    max_single_position: float = 0.1
    min_trade_size: float = 1.0
    max_trade_size: float = 1000.0
    copy_ratio: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SizingConfig":
        return cls(
            method=SizingMethod(settings.sizing_method),
            kelly_fraction=settings.kelly_fraction,
            fixed_fraction=settings.fixed_fraction,
            max_portfolio_allocation=settings.max_portfolio_allocation,
            max_single_position=settings.max_single_position,
            min_trade_size=settings.min_trade_size,
            max_trade_size=settings.max_trade_size,
            copy_ratio=settings.copy_ratio,
        )


@dataclass(frozen=True)
class SizingContext:
    """Portfolio and candidate-trade state the sizer reads"""
    equity: float
    current_exposure: float = 0.0
    source_notional: Optional[float] = None
    trader_address: str = ""
    peer_volatilities: Mapping[str, Optional[float]] = field(default_factory=dict)
    side: TradeSide = TradeSide.BUY
    open_position: float = 0.0


@dataclass(frozen=True)
class PositionSizingDecision:
    method: SizingMethod
    raw_fraction: float
    final_size: float
    binding_caps: Tuple[str, ...] = ()
    skip_reason: Optional[str] = None

    @property
    def is_skip(self) -> bool:
        return self.skip_reason is not None

    @property
    def summary(self) -> str:
        caps = ",".join(self.binding_caps) or "none"
        if self.is_skip:
            return f"{self.method.value}: skip ({self.skip_reason}), caps={caps}"
        return f"{self.method.value}: ${self.final_size:.2f} (f={self.raw_fraction:.4f}), caps={caps}"


def kelly_fraction(metrics: PerformanceMetrics) -> Optional[float]:
    """
    Full Kelly f* = (p * b - q) / b

    p = win rate, q = 1 - p, b = average win / average loss. None when the
    inputs are undefined.
    """
    b = metrics.payoff_ratio
    if metrics.win_rate is None or b is None or b <= 0:
        return None
    p = metrics.win_rate
    q = 1.0 - p
    return (p * b - q) / b


class PositionSizer:
    """Calculates copy sizes from trader metrics and portfolio state"""

    def __init__(self, config: Optional[SizingConfig] = None):
        self.config = config or SizingConfig()

    def _method_fraction(
        self, metrics: PerformanceMetrics, ctx: SizingContext
    ) -> Tuple[float, Optional[str]]:
        cfg = self.config

        if cfg.method == SizingMethod.KELLY:
            f_star = kelly_fraction(metrics)
            if f_star is None or f_star <= 0:
                return 0.0, SkipReason.NO_EDGE
            if metrics.max_drawdown is None:
                return 0.0, SkipReason.INSUFFICIENT_DATA
            return f_star * cfg.kelly_fraction * (1.0 - metrics.max_drawdown), None

        if cfg.method == SizingMethod.FIXED_FRACTION:
            return cfg.fixed_fraction, None

        # Risk parity: inverse-volatility weight of this trader among peers
        own = metrics.volatility
        if own is None or own <= 0:
            return 0.0, SkipReason.INSUFFICIENT_DATA
        inverse = {
            address: 1.0 / vol
            for address, vol in ctx.peer_volatilities.items()
            if vol is not None and vol > 0
        }
        inverse[ctx.trader_address] = 1.0 / own
        weight = inverse[ctx.trader_address] / sum(inverse.values())
        return weight * cfg.max_portfolio_allocation, None

    def size(self, metrics: PerformanceMetrics, ctx: SizingContext) -> PositionSizingDecision:
        cfg = self.config
        exiting = ctx.side == TradeSide.SELL
        if exiting and ctx.open_position <= 0:
            return PositionSizingDecision(cfg.method, 0.0, 0.0, skip_reason=SkipReason.NO_OPEN_POSITION)

        fraction, skip = self._method_fraction(metrics, ctx)
        if skip is not None:
            return PositionSizingDecision(cfg.method, fraction, 0.0, skip_reason=skip)

        size = fraction * ctx.equity
        caps = []

        if ctx.source_notional is not None:
            source_cap = ctx.source_notional * cfg.copy_ratio
            if size > source_cap:
                size = source_cap
                caps.append(Cap.SOURCE_NOTIONAL)

        if exiting:
            if size > ctx.open_position:
                size = ctx.open_position
                caps.append(Cap.OPEN_POSITION)
        else:
            single_cap = ctx.equity * cfg.max_single_position
            if size > single_cap:
                size = single_cap
                caps.append(Cap.MAX_SINGLE_POSITION)

            remaining = ctx.equity * cfg.max_portfolio_allocation - ctx.current_exposure
            if remaining <= 0:
                caps.append(Cap.MAX_PORTFOLIO_ALLOCATION)
                return PositionSizingDecision(
                    cfg.method, fraction, 0.0, tuple(caps), SkipReason.ALLOCATION_EXHAUSTED
                )
            if size > remaining:
                size = remaining
                caps.append(Cap.MAX_PORTFOLIO_ALLOCATION)

        if size > cfg.max_trade_size:
            size = cfg.max_trade_size
            caps.append(Cap.MAX_TRADE_SIZE)

        if size <= 0 or size < cfg.min_trade_size:
            return PositionSizingDecision(
                cfg.method, fraction, 0.0, tuple(caps), SkipReason.BELOW_MINIMUM
            )

        return PositionSizingDecision(cfg.method, fraction, size, tuple(caps))
