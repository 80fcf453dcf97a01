"""
Persistence for tracked traders and copy trade records

CopyTradeRepository is the interface the engine depends on; SQLRepository
implements it with SQLAlchemy async sessions. Any database failure surfaces
as PersistenceError.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .domain import CopyStatus, CopyTradeRecord, TrackedTrader, TrackingStatus, TradeSide
from .errors import PersistenceError
from .models import CopyTradeRow, TrackedTraderRow, get_async_session, init_db, session_factory


class CopyTradeRepository(ABC):
    """Storage the copy engine reads and writes through"""

    @abstractmethod
    async def load_tracked_traders(self) -> List[TrackedTrader]:
        ...

    @abstractmethod
    async def get_tracked_trader(self, address: str) -> Optional[TrackedTrader]:
        ...

    @abstractmethod
    async def add_tracked_trader(self, address: str, alias: Optional[str] = None) -> TrackedTrader:
        ...

    @abstractmethod
    async def remove_tracked_trader(self, address: str) -> bool:
        ...

    @abstractmethod
    async def set_trader_status(self, address: str, status: TrackingStatus) -> bool:
        ...

    @abstractmethod
    async def update_watermark(self, address: str, watermark: datetime):
        """Advance the watermark; an older value never replaces a newer one"""

    @abstractmethod
    async def update_admission(
        self, address: str, admitted: bool, failed_criterion: Optional[str] = None
    ):
        ...

    @abstractmethod
    async def save_copy_trade_record(self, record: CopyTradeRecord):
        """Insert or update the record with the same id"""

    @abstractmethod
    async def find_copy_trade_record(
        self, trader_address: str, source_trade_id: str
    ) -> Optional[CopyTradeRecord]:
        ...

    @abstractmethod
    async def list_copy_trade_records(
        self,
        trader_address: Optional[str] = None,
        status: Optional[CopyStatus] = None,
        limit: int = 50,
    ) -> List[CopyTradeRecord]:
        """Newest first"""

    @abstractmethod
    async def open_positions(self) -> Dict[str, float]:
        """Net open copy cost per asset, see net_open_positions()"""

    async def close(self):
        pass


def net_open_positions(
    entries: Iterable[Tuple[str, TradeSide, CopyStatus, float]]
) -> Dict[str, float]:
    """
    Net open cost per asset from (asset_id, side, status, size) entries

    Filled and submitted BUYs add to a position; only filled SELLs reduce it.
    A submitted record has not been reconciled yet, so it keeps holding its
    exposure.
    """
    net: Dict[str, float] = {}
    for asset_id, side, status, size in entries:
        if side == TradeSide.BUY and status in (CopyStatus.FILLED, CopyStatus.SUBMITTED):
            net[asset_id] = net.get(asset_id, 0.0) + size
        elif side == TradeSide.SELL and status == CopyStatus.FILLED:
            net[asset_id] = net.get(asset_id, 0.0) - size
    return {asset: cost for asset, cost in net.items() if cost > 1e-9}


def _to_trader(row: TrackedTraderRow) -> TrackedTrader:
    return TrackedTrader(
        address=row.address,
        status=TrackingStatus(row.status),
        watermark=row.watermark,
        admitted=row.admitted,
        failed_criterion=row.failed_criterion,
        alias=row.alias,
        tracking_since=row.tracking_since,
    )


def _to_record(row: CopyTradeRow) -> CopyTradeRecord:
    return CopyTradeRecord(
        id=row.id,
        trader_address=row.trader_address,
        source_trade_id=row.source_trade_id,
        market_id=row.market_id,
        asset_id=row.asset_id,
        side=TradeSide(row.side),
        source_price=row.source_price,
        source_size=row.source_size,
        source_timestamp=row.source_timestamp,
        status=CopyStatus(row.status),
        size=row.size or 0.0,
        method=row.method,
        raw_fraction=row.raw_fraction or 0.0,
        binding_caps=tuple(row.binding_caps.split(",")) if row.binding_caps else (),
        reason=row.reason,
        order_id=row.order_id,
        fill_price=row.fill_price,
        attempts=row.attempts or 0,
        created_at=row.created_at,
        submitted_at=row.submitted_at,
        completed_at=row.completed_at,
    )


def _apply_record(row: CopyTradeRow, record: CopyTradeRecord):
    row.trader_address = record.trader_address
    row.source_trade_id = record.source_trade_id
    row.market_id = record.market_id
    row.asset_id = record.asset_id
    row.side = record.side.value
    row.source_price = record.source_price
    row.source_size = record.source_size
    row.source_timestamp = record.source_timestamp
    row.status = record.status.value
    row.size = record.size
    row.method = record.method
    row.raw_fraction = record.raw_fraction
    row.binding_caps = ",".join(record.binding_caps) or None
    row.reason = record.reason
    row.order_id = record.order_id
    row.fill_price = record.fill_price
    row.attempts = record.attempts
    row.created_at = record.created_at
    row.submitted_at = record.submitted_at
    row.completed_at = record.completed_at


class SQLRepository(CopyTradeRepository):
    """Repository over an async SQLAlchemy engine"""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = session_factory(engine)

    @classmethod
    async def create(cls, database_url: Optional[str] = None) -> "SQLRepository":
        """Open the database, creating tables if needed"""
        try:
            engine = await init_db(database_url)
        except SQLAlchemyError as e:
            raise PersistenceError(f"cannot open database: {e}") from e
        return cls(engine)

    async def close(self):
        await self.engine.dispose()

    async def _trader_row(self, session, address: str) -> Optional[TrackedTraderRow]:
        result = await session.execute(
            select(TrackedTraderRow).where(TrackedTraderRow.address == address.lower())
        )
        return result.scalar_one_or_none()

    async def load_tracked_traders(self) -> List[TrackedTrader]:
        try:
            async with get_async_session(self._sessions) as session:
                result = await session.execute(
                    select(TrackedTraderRow).order_by(TrackedTraderRow.id)
                )
                return [_to_trader(row) for row in result.scalars()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"loading tracked traders failed: {e}") from e

    async def get_tracked_trader(self, address: str) -> Optional[TrackedTrader]:
        try:
            async with get_async_session(self._sessions) as session:
                row = await self._trader_row(session, address)
                return _to_trader(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"loading trader {address} failed: {e}") from e

    async def add_tracked_trader(self, address: str, alias: Optional[str] = None) -> TrackedTrader:
        try:
            async with get_async_session(self._sessions) as session:
                row = await self._trader_row(session, address)
                if row is None:
                    row = TrackedTraderRow(address=address.lower(), alias=alias, status="active")
                    session.add(row)
                    logger.info(f"Added trader {address} to tracking")
                elif alias:
                    row.alias = alias
                await session.flush()
                return _to_trader(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"adding trader {address} failed: {e}") from e

    async def remove_tracked_trader(self, address: str) -> bool:
        try:
            async with get_async_session(self._sessions) as session:
                result = await session.execute(
                    delete(TrackedTraderRow).where(TrackedTraderRow.address == address.lower())
                )
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise PersistenceError(f"removing trader {address} failed: {e}") from e

    async def set_trader_status(self, address: str, status: TrackingStatus) -> bool:
        try:
            async with get_async_session(self._sessions) as session:
                row = await self._trader_row(session, address)
                if row is None:
                    return False
                row.status = status.value
                return True
        except SQLAlchemyError as e:
            raise PersistenceError(f"updating status of {address} failed: {e}") from e

    async def update_watermark(self, address: str, watermark: datetime):
        try:
            async with get_async_session(self._sessions) as session:
                row = await self._trader_row(session, address)
                if row is None:
                    raise PersistenceError(f"trader {address} is not tracked")
                if row.watermark is None or watermark > row.watermark:
                    row.watermark = watermark
        except SQLAlchemyError as e:
            raise PersistenceError(f"updating watermark of {address} failed: {e}") from e

    async def update_admission(
        self, address: str, admitted: bool, failed_criterion: Optional[str] = None
    ):
        try:
            async with get_async_session(self._sessions) as session:
                row = await self._trader_row(session, address)
                if row is not None:
                    row.admitted = admitted
                    row.failed_criterion = failed_criterion
        except SQLAlchemyError as e:
            raise PersistenceError(f"updating admission of {address} failed: {e}") from e

    async def save_copy_trade_record(self, record: CopyTradeRecord):
        try:
            async with get_async_session(self._sessions) as session:
                row = await session.get(CopyTradeRow, record.id)
                if row is None:
                    row = CopyTradeRow(id=record.id)
                    session.add(row)
                _apply_record(row, record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"saving copy trade {record.id} failed: {e}") from e

    async def find_copy_trade_record(
        self, trader_address: str, source_trade_id: str
    ) -> Optional[CopyTradeRecord]:
        try:
            async with get_async_session(self._sessions) as session:
                result = await session.execute(
                    select(CopyTradeRow).where(
                        CopyTradeRow.trader_address == trader_address.lower(),
                        CopyTradeRow.source_trade_id == source_trade_id,
                    )
                )
                row = result.scalar_one_or_none()
                return _to_record(row) if row else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"looking up copy trade {source_trade_id} failed: {e}") from e

    async def list_copy_trade_records(
        self,
        trader_address: Optional[str] = None,
        status: Optional[CopyStatus] = None,
        limit: int = 50,
    ) -> List[CopyTradeRecord]:
        query = select(CopyTradeRow)
        if trader_address:
            query = query.where(CopyTradeRow.trader_address == trader_address.lower())
        if status:
            query = query.where(CopyTradeRow.status == status.value)
        query = query.order_by(CopyTradeRow.created_at.desc()).limit(limit)

        try:
            async with get_async_session(self._sessions) as session:
                result = await session.execute(query)
                return [_to_record(row) for row in result.scalars()]
        except SQLAlchemyError as e:
            raise PersistenceError(f"listing copy trades failed: {e}") from e

    async def open_positions(self) -> Dict[str, float]:
        query = (
            select(
                CopyTradeRow.asset_id,
                CopyTradeRow.side,
                CopyTradeRow.status,
                func.coalesce(func.sum(CopyTradeRow.size), 0.0),
            )
            .where(CopyTradeRow.status.in_((CopyStatus.FILLED.value, CopyStatus.SUBMITTED.value)))
            .group_by(CopyTradeRow.asset_id, CopyTradeRow.side, CopyTradeRow.status)
        )
        try:
            async with get_async_session(self._sessions) as session:
                result = await session.execute(query)
                rows = result.all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"summing open positions failed: {e}") from e

        return net_open_positions(
            (asset_id, TradeSide(side), CopyStatus(status), float(size))
            for asset_id, side, status, size in rows
        )
