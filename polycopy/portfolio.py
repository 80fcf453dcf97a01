"""
Portfolio allocation ledger

Tracks copy exposure shared by every tracked trader. Exposure is the net
cost of the open copy positions per outcome token plus the outstanding BUY
reservations. A copied SELL unwinds the position it exits and never draws
on allocation headroom.

A single asyncio.Lock guards the read-size-reserve step so concurrent
traders cannot jointly overspend the portfolio allocation cap. Nothing
awaited inside the lock may touch the network.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Mapping, NamedTuple, Optional, Tuple

from loguru import logger

from .domain import TradeSide

# Residue below this is treated as a closed position
DUST = 1e-9


class Reservation(NamedTuple):
    asset_id: str
    amount: float
    side: TradeSide


class PortfolioLedger:
    """Shared exposure state with one exclusive reservation region"""

    def __init__(self, equity: float, positions: Optional[Mapping[str, float]] = None):
        self.equity = equity
        self._positions: Dict[str, float] = dict(positions or {})
        self._reservations: Dict[Tuple[str, str], Reservation] = {}
        self._lock = asyncio.Lock()

    @property
    def exposure(self) -> float:
        return self.committed + self.reserved

    @property
    def committed(self) -> float:
        return sum(self._positions.values())

    @property
    def reserved(self) -> float:
        return sum(r.amount for r in self._reservations.values() if r.side == TradeSide.BUY)

    @property
    def positions(self) -> Dict[str, float]:
        return dict(self._positions)

    def open_position(self, asset_id: str) -> float:
        """Held cost in `asset_id` not already promised to an outstanding exit"""
        exiting = sum(
            r.amount for r in self._reservations.values()
            if r.asset_id == asset_id and r.side == TradeSide.SELL
        )
        return max(self._positions.get(asset_id, 0.0) - exiting, 0.0)

    @asynccontextmanager
    async def allocation(self):
        """
        Exclusive access to exposure for the duration of the block

        Use reserve() inside the block to claim capacity.
        """
        async with self._lock:
            yield self

    def reserve(
        self,
        key: Tuple[str, str],
        amount: float,
        asset_id: str = "",
        side: TradeSide = TradeSide.BUY,
    ):
        if not self._lock.locked():
            raise RuntimeError("reserve() must be called inside allocation()")
        if key in self._reservations:
            raise ValueError(f"duplicate reservation for {key}")
        self._reservations[key] = Reservation(asset_id, amount, side)
        logger.debug(
            f"Reserved {side.value} ${amount:.2f} for {key[0][:10]}.../{key[1][:12]} "
            f"(exposure ${self.exposure:.2f})"
        )

    def commit(self, key: Tuple[str, str], filled: Optional[float] = None) -> float:
        """
        Turn a reservation into a position change

        A BUY adds to the asset's position, a SELL reduces it by at most what
        is held. Returns the amount applied.
        """
        reservation = self._reservations.pop(key)
        amount = reservation.amount if filled is None else filled
        asset_id = reservation.asset_id
        held = self._positions.get(asset_id, 0.0)

        if reservation.side == TradeSide.BUY:
            self._positions[asset_id] = held + amount
            return amount

        amount = min(amount, held)
        remaining = held - amount
        if remaining > DUST:
            self._positions[asset_id] = remaining
        else:
            self._positions.pop(asset_id, None)
        return amount

    def release(self, key: Tuple[str, str]) -> float:
        """Compensate a failed execution by freeing its reservation"""
        reservation = self._reservations.pop(key, None)
        if reservation is None:
            return 0.0
        logger.debug(f"Released ${reservation.amount:.2f} for {key[0][:10]}.../{key[1][:12]}")
        return reservation.amount

    def restore(self, positions: Mapping[str, float]):
        """Reset open positions from persisted records, e.g. after a restart"""
        if self._reservations:
            raise RuntimeError("cannot restore while reservations are outstanding")
        self._positions = {asset: cost for asset, cost in positions.items() if cost > DUST}
        logger.info(
            f"Restored {len(self._positions)} open position(s), exposure ${self.committed:.2f}"
        )
