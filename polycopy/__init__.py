"""
Polymarket Copy Trading Engine

Evaluates traders on Polymarket and decides, for every new trade a tracked
trader makes, whether and how much to copy into our own portfolio.

Modules:
- config: Settings and trading constants
- metrics: Trader performance metrics
- scoring: Admission thresholds and composite score
- position_sizer: Kelly / fixed fraction / risk parity sizing
- portfolio: Shared exposure ledger
- api_client: Polymarket trade feed
- trade_executor: CLOB order execution
- models, storage: Persistence
- copy_engine: Copy cycle orchestration and leaderboard discovery
- backtest: Historical replay of the copy rules
- main: CLI entry point
"""

__version__ = "0.2.0"

from .config import get_settings, Settings
from .domain import (
    CopyStatus, CopyTradeRecord, LeaderboardEntry, Position, TrackedTrader, Trade, TradeSide,
)
from .errors import (
    ConfigInvalid, CopyTradingError, ExecutionTimeout, FeedUnavailable, InsufficientData,
    InvalidOrder, PersistenceError, RateLimited, Rejected,
)
from .metrics import MetricsCalculator, PerformanceMetrics
from .scoring import AdmissionVerdict, CompositeScore, CompositeScorer
from .position_sizer import PositionSizer, PositionSizingDecision, SizingConfig, SizingContext
from .portfolio import PortfolioLedger
from .api_client import PolymarketDataClient, TradeFeed
from .trade_executor import ClobExecutionClient, ExecutionClient, OrderAck
from .storage import CopyTradeRepository, SQLRepository
from .copy_engine import CopyEngine, TraderEvaluation, TraderState, evaluate_trader
from .backtest import BacktestConfig, BacktestResult, Backtester

__all__ = [
    # Config
    "get_settings",
    "Settings",
    # Domain
    "Trade",
    "TradeSide",
    "Position",
    "TrackedTrader",
    "CopyTradeRecord",
    "CopyStatus",
    "LeaderboardEntry",
    # Errors
    "CopyTradingError",
    "ConfigInvalid",
    "InsufficientData",
    "FeedUnavailable",
    "RateLimited",
    "ExecutionTimeout",
    "Rejected",
    "InvalidOrder",
    "PersistenceError",
    # Analytics
    "MetricsCalculator",
    "PerformanceMetrics",
    "CompositeScorer",
    "CompositeScore",
    "AdmissionVerdict",
    "PositionSizer",
    "PositionSizingDecision",
    "SizingConfig",
    "SizingContext",
    "PortfolioLedger",
    # Collaborators
    "TradeFeed",
    "PolymarketDataClient",
    "ExecutionClient",
    "ClobExecutionClient",
    "OrderAck",
    "CopyTradeRepository",
    "SQLRepository",
    # Engine
    "CopyEngine",
    "TraderEvaluation",
    "TraderState",
    "evaluate_trader",
    # Backtesting
    "Backtester",
    "BacktestConfig",
    "BacktestResult",
]
