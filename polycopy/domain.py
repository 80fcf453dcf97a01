"""
Domain types shared by the metrics, sizing and engine layers
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value) -> datetime:
    """Feed timestamps arrive as epoch seconds, epoch millis or ISO strings"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class TradeSide(Enum):
    """Trade direction"""
    BUY = "BUY"
    SELL = "SELL"


class TrackingStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class CopyStatus(Enum):
    """Lifecycle of a copy trade record"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    FILLED = "filled"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (CopyStatus.FILLED, CopyStatus.FAILED, CopyStatus.SKIPPED)


_TRANSITIONS = {
    CopyStatus.PENDING: {CopyStatus.SUBMITTED, CopyStatus.SKIPPED, CopyStatus.FAILED},
    CopyStatus.SUBMITTED: {CopyStatus.FILLED, CopyStatus.FAILED},
}


@dataclass(frozen=True)
class Trade:
    """A single trade observed on the feed"""
    id: str
    trader_address: str
    market_id: str
    asset_id: str
    side: TradeSide
    size: float
    price: float
    timestamp: datetime
    outcome: str = ""
    title: str = ""
    realized_pnl: Optional[float] = None

    @property
    def notional(self) -> float:
        return self.size * self.price

    @property
    def is_closed(self) -> bool:
        return self.realized_pnl is not None

    @classmethod
    def from_dict(cls, data: Dict, trader_address: Optional[str] = None) -> "Trade":
        """Create Trade from data API response"""
        tx_hash = data.get("transactionHash", "")
        asset = str(data.get("asset", ""))
        pnl = data.get("realizedPnl")
        return cls(
            id=str(data.get("id") or f"{tx_hash}:{asset}"),
            trader_address=(trader_address or data.get("proxyWallet", "")).lower(),
            market_id=data.get("conditionId", data.get("market", "")),
            asset_id=asset,
            side=TradeSide(str(data.get("side", "BUY")).upper()),
            size=float(data.get("size", 0)),
            price=float(data.get("price", 0)),
            timestamp=_parse_timestamp(data.get("timestamp", 0)),
            outcome=data.get("outcome", ""),
            title=data.get("title", ""),
            realized_pnl=float(pnl) if pnl is not None else None,
        )


@dataclass(frozen=True)
class Position:
    """Open position held by a trader"""
    trader_address: str
    market_id: str
    asset_id: str
    outcome: str
    size: float
    average_price: float
    current_value: float
    cash_pnl: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict, trader_address: str) -> "Position":
        return cls(
            trader_address=trader_address.lower(),
            market_id=data.get("conditionId", ""),
            asset_id=str(data.get("asset", "")),
            outcome=data.get("outcome", ""),
            size=float(data.get("size", 0)),
            average_price=float(data.get("avgPrice", 0)),
            current_value=float(data.get("currentValue", 0)),
            cash_pnl=float(data.get("cashPnl", 0)),
        )


@dataclass(frozen=True)
class LeaderboardEntry:
    """A trader listed on the Polymarket PnL leaderboard"""
    address: str
    name: str = ""
    pnl: float = 0.0
    volume: float = 0.0
    rank: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "LeaderboardEntry":
        rank = data.get("rank")
        return cls(
            address=str(data.get("proxyWallet", "")).lower(),
            name=data.get("userName") or "",
            pnl=float(data.get("pnl") or 0),
            volume=float(data.get("vol") or 0),
            rank=int(rank) if rank not in (None, "") else None,
        )


@dataclass
class TrackedTrader:
    """A trader address we follow"""
    address: str
    status: TrackingStatus = TrackingStatus.ACTIVE
    watermark: Optional[datetime] = None
    admitted: Optional[bool] = None
    failed_criterion: Optional[str] = None
    alias: Optional[str] = None
    tracking_since: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == TrackingStatus.ACTIVE

    @property
    def display_name(self) -> str:
        if self.alias:
            return self.alias
        if len(self.address) > 10:
            return f"{self.address[:6]}...{self.address[-4:]}"
        return self.address


@dataclass(frozen=True)
class CopyTradeRecord:
    """
    Persistent record of what we did with one source trade

    At most one record exists per (trader_address, source_trade_id). Records
    only move forward through their status lifecycle; use transition() to
    derive the next version.
    """
    trader_address: str
    source_trade_id: str
    market_id: str
    asset_id: str
    side: TradeSide
    source_price: float
    source_size: float
    source_timestamp: datetime
    status: CopyStatus = CopyStatus.PENDING
    size: float = 0.0
    method: Optional[str] = None
    raw_fraction: float = 0.0
    binding_caps: Tuple[str, ...] = ()
    reason: Optional[str] = None
    order_id: Optional[str] = None
    fill_price: Optional[float] = None
    attempts: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.trader_address, self.source_trade_id)

    @classmethod
    def for_trade(cls, trade: Trade) -> "CopyTradeRecord":
        return cls(
            trader_address=trade.trader_address,
            source_trade_id=trade.id,
            market_id=trade.market_id,
            asset_id=trade.asset_id,
            side=trade.side,
            source_price=trade.price,
            source_size=trade.size,
            source_timestamp=trade.timestamp,
        )

    def transition(self, status: CopyStatus, **changes) -> "CopyTradeRecord":
        """Return a copy moved to `status`, stamping the transition time"""
        if status not in _TRANSITIONS.get(self.status, set()):
            raise ValueError(f"illegal transition {self.status.value} -> {status.value}")
        now = changes.pop("at", None) or utcnow()
        if status == CopyStatus.SUBMITTED:
            changes.setdefault("submitted_at", now)
        else:
            changes.setdefault("completed_at", now)
        return replace(self, status=status, **changes)
