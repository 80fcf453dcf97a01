"""
Database Models for the copy trading engine

Uses SQLAlchemy for ORM with async support
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .config import get_settings

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always comes back timezone aware (SQLite drops tzinfo)"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class TrackedTraderRow(Base):
    """
    Tracked trader - a trader address we're following
    """
    __tablename__ = "tracked_traders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(42), unique=True, nullable=False, index=True)
    alias = Column(String(100), nullable=True)

    # Tracking state
    status = Column(String(16), nullable=False, default="active")
    watermark = Column(UTCDateTime, nullable=True)

    # Last admission result
    admitted = Column(Boolean, nullable=True)
    failed_criterion = Column(String(32), nullable=True)

    # Timestamps
    tracking_since = Column(UTCDateTime, default=_utcnow)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<TrackedTrader(address={self.address}, status={self.status})>"


class CopyTradeRow(Base):
    """
    Record of what we did with one source trade
    """
    __tablename__ = "copy_trade_records"
    __table_args__ = (
        UniqueConstraint("trader_address", "source_trade_id", name="uq_copy_trade_source"),
    )

    id = Column(String(36), primary_key=True)
    trader_address = Column(String(42), nullable=False, index=True)
    source_trade_id = Column(String(160), nullable=False)

    # Source trade reference
    market_id = Column(String(100), nullable=False)
    asset_id = Column(String(100), nullable=False)
    side = Column(String(4), nullable=False)
    source_price = Column(Float, nullable=False)
    source_size = Column(Float, nullable=False)
    source_timestamp = Column(UTCDateTime, nullable=False)

    # Sizing decision
    status = Column(String(16), nullable=False, index=True)
    size = Column(Float, default=0.0)
    method = Column(String(32), nullable=True)
    raw_fraction = Column(Float, default=0.0)
    binding_caps = Column(Text, nullable=True)  # comma separated

    # Execution details
    reason = Column(Text, nullable=True)
    order_id = Column(String(100), nullable=True)
    fill_price = Column(Float, nullable=True)
    attempts = Column(Integer, default=0)

    # Timestamps
    created_at = Column(UTCDateTime, default=_utcnow)
    submitted_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<CopyTrade(status={self.status}, {self.side} ${self.size:.2f} source={self.source_trade_id})>"


# Database initialization
async def init_db(database_url: Optional[str] = None) -> AsyncEngine:
    """Initialize database and create tables"""
    url = database_url or get_settings().database_url

    if ":memory:" in url:
        # one shared connection, otherwise every session sees an empty database
        engine = create_async_engine(
            url, echo=False, poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
    else:
        engine = create_async_engine(url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine


def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_async_session(factory: async_sessionmaker):
    """Get async database session as context manager"""
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
