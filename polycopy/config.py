"""
Configuration module for the Polymarket copy trading engine
"""

from typing import Tuple

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from .errors import ConfigInvalid


Bounds = Tuple[float, float]


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Wallet Configuration
    private_key: str = Field(default="", description="Polygon wallet private key")
    wallet_address: str = Field(default="", description="Wallet address")

    # Polymarket API
    polymarket_host: str = Field(default="https://clob.polymarket.com")
    data_api_host: str = Field(default="https://data-api.polymarket.com")
    chain_id: int = Field(default=137)
    feed_page_size: int = Field(default=500, description="Trades fetched per feed request")
    feed_timeout_seconds: float = Field(default=30.0)

    # Trader selection thresholds
    min_trades: int = Field(default=20, description="Min closed trades for admission")
    min_win_rate: float = Field(default=0.55, description="Min win rate for admission")
    max_trader_drawdown: float = Field(default=0.4, description="Max trader drawdown fraction")
    min_sharpe: float = Field(default=0.5, description="Min annualized Sharpe ratio")
    min_profit: float = Field(default=100.0, description="Min total realized PnL in USDC")

    # Composite score normalization (lo, hi) per component
    score_win_rate_bounds: Bounds = Field(default=(0.5, 0.8))
    score_sharpe_bounds: Bounds = Field(default=(-1.0, 3.0))
    score_drawdown_bounds: Bounds = Field(default=(0.0, 1.0), description="Applied to 1 - max drawdown")
    score_profit_bounds: Bounds = Field(default=(0.0, 5000.0))
    score_momentum_bounds: Bounds = Field(default=(0.0, 500.0))

    # Position sizing
    sizing_method: str = Field(default="kelly", description="kelly, fixed_fraction or risk_parity")
    kelly_fraction: float = Field(default=0.25, description="Kelly multiplier (quarter Kelly)")
    fixed_fraction: float = Field(default=0.02, description="Equity fraction for fixed sizing")
    max_portfolio_allocation: float = Field(default=0.5, description="Max total exposure / equity")
    max_single_position: float = Field(default=0.1, description="Max single copy / equity")
    min_trade_size: float = Field(default=1.0, description="Min USDC per copy")
    max_trade_size: float = Field(default=1000.0, description="Max USDC per copy")
    copy_ratio: float = Field(default=1.0, description="Max multiple of the source notional")

    # Engine
    portfolio_value: float = Field(default=1000.0, description="Our portfolio equity in USDC")
    scale_by_source_portfolio: bool = Field(
        default=False, description="Scale source notional by our equity / source position value"
    )
    dry_run: bool = Field(default=True)
    poll_interval: int = Field(default=30, description="Polling interval in seconds")
    execution_timeout_seconds: float = Field(default=15.0)
    max_execution_attempts: int = Field(default=3)
    max_feed_attempts: int = Field(default=3)
    persistence_attempts: int = Field(default=3)
    retry_backoff_seconds: float = Field(default=1.0, description="Exponential backoff base")
    retry_backoff_max_seconds: float = Field(default=30.0)

    # Backtesting
    backtest_slippage: float = Field(default=0.005, description="Price slippage applied to simulated fills")
    backtest_fee_rate: float = Field(default=0.001, description="Fee charged on simulated fill value")

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./copy_trading.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_file: str = Field(default="logs/copy_trading.log")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @model_validator(mode="after")
    def _check_ranges(self) -> "Settings":
        fractions = {
            "kelly_fraction": self.kelly_fraction,
            "fixed_fraction": self.fixed_fraction,
            "max_portfolio_allocation": self.max_portfolio_allocation,
            "max_single_position": self.max_single_position,
        }
        for name, value in fractions.items():
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {value}")

        if not 0.0 <= self.min_win_rate <= 1.0:
            raise ValueError(f"min_win_rate must be in [0, 1], got {self.min_win_rate}")
        if not 0.0 <= self.max_trader_drawdown <= 1.0:
            raise ValueError(f"max_trader_drawdown must be in [0, 1], got {self.max_trader_drawdown}")
        if self.min_trades < 0:
            raise ValueError("min_trades must not be negative")
        if self.min_trade_size < 0 or self.max_trade_size <= 0:
            raise ValueError("trade size limits must be positive")
        if self.min_trade_size > self.max_trade_size:
            raise ValueError("min_trade_size must not exceed max_trade_size")
        if self.copy_ratio <= 0:
            raise ValueError("copy_ratio must be positive")
        if self.portfolio_value < 0:
            raise ValueError("portfolio_value must not be negative")
        if self.sizing_method not in SIZING_METHODS:
            raise ValueError(f"unknown sizing_method {self.sizing_method!r}")

        for name in (
            "max_execution_attempts", "max_feed_attempts", "persistence_attempts",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.execution_timeout_seconds <= 0:
            raise ValueError("execution_timeout_seconds must be positive")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must not be negative")
        for name in ("backtest_slippage", "backtest_fee_rate"):
            if not 0.0 <= getattr(self, name) < 1.0:
                raise ValueError(f"{name} must be in [0, 1), got {getattr(self, name)}")

        for name in (
            "score_win_rate_bounds", "score_sharpe_bounds", "score_drawdown_bounds",
            "score_profit_bounds", "score_momentum_bounds",
        ):
            lo, hi = getattr(self, name)
            if lo >= hi:
                raise ValueError(f"{name} needs lo < hi, got ({lo}, {hi})")

        return self


SIZING_METHODS = ("kelly", "fixed_fraction", "risk_parity")


def get_settings(**overrides) -> Settings:
    """
    Get application settings

    Keyword overrides take precedence over the environment. Invalid values
    raise ConfigInvalid.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigInvalid(str(e)) from e


# API Endpoints
class APIEndpoints:
    """Polymarket API endpoints"""

    CLOB_HOST = "https://clob.polymarket.com"
    DATA_API = "https://data-api.polymarket.com"

    TRADES = "/trades"
    POSITIONS = "/positions"
    LEADERBOARD = "/v1/leaderboard"


# Trading Constants
class TradingConstants:
    """Trading-related constants"""

    # Sides
    BUY = "BUY"
    SELL = "SELL"

    # Price bounds (prediction market probabilities)
    MIN_PRICE = 0.01
    MAX_PRICE = 0.99

    DAYS_PER_YEAR = 365.0
    MOMENTUM_WINDOW_DAYS = 7
    MONTH_WINDOW_DAYS = 30
