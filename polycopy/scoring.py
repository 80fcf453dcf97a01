"""
Trader admission and composite scoring

Admission applies hard thresholds in a fixed order and reports the first one
that fails. Admitted traders get a 0-100 composite score:

    score = 100 * (0.25 * win_rate + 0.25 * sharpe + 0.25 * (1 - drawdown)
                   + 0.15 * profit + 0.10 * momentum)

where every component is clamped into its configured (lo, hi) range and
scaled to [0, 1]. A missing metric scores 0 for its component.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from .config import Bounds, Settings
from .metrics import PerformanceMetrics


class Criterion(Enum):
    """Admission criteria, in evaluation order"""
    TRADE_COUNT = "trade_count"
    WIN_RATE = "win_rate"
    DRAWDOWN = "drawdown"
    SHARPE = "sharpe"
    PROFIT = "profit"


WEIGHTS: Dict[str, float] = {
    "win_rate": 0.25,
    "sharpe": 0.25,
    "drawdown": 0.25,
    "profit": 0.15,
    "momentum": 0.10,
}


@dataclass(frozen=True)
class SelectionCriteria:
    min_trades: int = 20
    min_win_rate: float = 0.55
    max_drawdown: float = 0.4
    min_sharpe: float = 0.5
    min_profit: float = 100.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SelectionCriteria":
        return cls(
            min_trades=settings.min_trades,
            min_win_rate=settings.min_win_rate,
            max_drawdown=settings.max_trader_drawdown,
            min_sharpe=settings.min_sharpe,
            min_profit=settings.min_profit,
        )


@dataclass(frozen=True)
class ScoreBounds:
    """Clamp ranges used to normalize each component into [0, 1]"""
    win_rate: Bounds = (0.5, 0.8)
    sharpe: Bounds = (-1.0, 3.0)
    drawdown: Bounds = (0.0, 1.0)
    profit: Bounds = (0.0, 5000.0)
    momentum: Bounds = (0.0, 500.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoreBounds":
        return cls(
            win_rate=tuple(settings.score_win_rate_bounds),
            sharpe=tuple(settings.score_sharpe_bounds),
            drawdown=tuple(settings.score_drawdown_bounds),
            profit=tuple(settings.score_profit_bounds),
            momentum=tuple(settings.score_momentum_bounds),
        )


@dataclass(frozen=True)
class AdmissionVerdict:
    passed: bool
    failed_criterion: Optional[Criterion] = None
    reason: str = ""

    @classmethod
    def admit(cls) -> "AdmissionVerdict":
        return cls(passed=True, reason="all criteria met")

    @classmethod
    def reject(cls, criterion: Criterion, reason: str) -> "AdmissionVerdict":
        return cls(passed=False, failed_criterion=criterion, reason=reason)


@dataclass(frozen=True)
class CompositeScore:
    value: float
    components: Dict[str, float] = field(default_factory=dict)


def normalize(value: Optional[float], bounds: Bounds) -> float:
    """Clamp into bounds and scale linearly to [0, 1]; None maps to 0"""
    if value is None:
        return 0.0
    lo, hi = bounds
    return min(max((value - lo) / (hi - lo), 0.0), 1.0)


def _fmt(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.3f}"


class CompositeScorer:
    """Pure admission + scoring; no I/O, no mutation"""

    def __init__(
        self,
        criteria: Optional[SelectionCriteria] = None,
        bounds: Optional[ScoreBounds] = None,
    ):
        self.criteria = criteria or SelectionCriteria()
        self.bounds = bounds or ScoreBounds()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompositeScorer":
        return cls(SelectionCriteria.from_settings(settings), ScoreBounds.from_settings(settings))

    def admit(self, metrics: PerformanceMetrics) -> AdmissionVerdict:
        c = self.criteria

        if metrics.trade_count < c.min_trades:
            return AdmissionVerdict.reject(
                Criterion.TRADE_COUNT, f"trade count {metrics.trade_count} < {c.min_trades}"
            )

        if metrics.win_rate is None or metrics.win_rate < c.min_win_rate:
            return AdmissionVerdict.reject(
                Criterion.WIN_RATE, f"win rate {_fmt(metrics.win_rate)} < {c.min_win_rate}"
            )

        if metrics.max_drawdown is None or metrics.max_drawdown > c.max_drawdown:
            return AdmissionVerdict.reject(
                Criterion.DRAWDOWN, f"max drawdown {_fmt(metrics.max_drawdown)} > {c.max_drawdown}"
            )

        if metrics.sharpe_ratio is None or metrics.sharpe_ratio < c.min_sharpe:
            return AdmissionVerdict.reject(
                Criterion.SHARPE, f"sharpe {_fmt(metrics.sharpe_ratio)} < {c.min_sharpe}"
            )

        if metrics.total_pnl < c.min_profit:
            return AdmissionVerdict.reject(
                Criterion.PROFIT, f"total pnl {metrics.total_pnl:.2f} < {c.min_profit}"
            )

        return AdmissionVerdict.admit()

    def score(self, metrics: PerformanceMetrics) -> CompositeScore:
        b = self.bounds
        inverse_dd = None if metrics.max_drawdown is None else 1.0 - metrics.max_drawdown
        components = {
            "win_rate": normalize(metrics.win_rate, b.win_rate),
            "sharpe": normalize(metrics.sharpe_ratio, b.sharpe),
            "drawdown": normalize(inverse_dd, b.drawdown),
            "profit": normalize(metrics.total_pnl if metrics.trade_count else None, b.profit),
            "momentum": normalize(metrics.momentum, b.momentum),
        }
        value = 100.0 * sum(WEIGHTS[name] * v for name, v in components.items())
        return CompositeScore(value=value, components=components)

    def evaluate(
        self, metrics: PerformanceMetrics
    ) -> Tuple[AdmissionVerdict, Optional[CompositeScore]]:
        verdict = self.admit(metrics)
        if not verdict.passed:
            return verdict, None
        return verdict, self.score(metrics)

    @staticmethod
    def rank(
        evaluations: Iterable[Tuple[str, AdmissionVerdict, Optional[CompositeScore]]]
    ) -> List[Tuple[str, CompositeScore]]:
        """Admitted traders ordered by descending score, ties by address"""
        admitted = [
            (address, score)
            for address, verdict, score in evaluations
            if verdict.passed and score is not None
        ]
        return sorted(admitted, key=lambda item: (-item[1].value, item[0]))
