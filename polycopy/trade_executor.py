"""
Trade Execution Module

Submits copy orders to the Polymarket CLOB using py-clob-client and maps
venue responses onto the engine's error taxonomy:
- Rejected / InvalidOrder / InsufficientLiquidity are terminal
- RateLimited / ExecutionTimeout are transient
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger

from .config import Settings, TradingConstants, get_settings
from .domain import TradeSide
from .errors import (
    ExecutionTimeout, InsufficientLiquidity, InvalidOrder, RateLimited, Rejected,
)


@dataclass(frozen=True)
class OrderAck:
    """Venue acknowledgement of a submitted order"""
    order_id: str
    status: str
    fill_price: Optional[float] = None
    filled_size: Optional[float] = None


class ExecutionClient(ABC):
    """Accepts an order and reports fill or failure"""

    @abstractmethod
    async def submit_order(
        self, market: str, side: TradeSide, size: float, price_hint: float
    ) -> OrderAck:
        """
        Submit an order

        Args:
            market: Outcome token id to trade
            side: BUY or SELL
            size: Order size in USDC
            price_hint: Price the source trader got, used for validation

        Raises:
            Rejected, InvalidOrder, InsufficientLiquidity, RateLimited, ExecutionTimeout
        """

    async def close(self):
        pass


_LIQUIDITY_HINTS = ("liquidity", "no match", "not enough", "insufficient")
_INVALID_HINTS = ("invalid", "tick size", "min size", "malformed")


def classify_venue_error(message: str, status_code: Optional[int] = None) -> Exception:
    """Map a venue error message / HTTP status onto an engine exception"""
    text = (message or "").lower()
    if status_code == 429 or "rate limit" in text or "too many requests" in text:
        return RateLimited(message or "rate limited")
    if status_code in (408, 504) or "timeout" in text or "timed out" in text:
        return ExecutionTimeout(message or "timeout")
    if any(hint in text for hint in _LIQUIDITY_HINTS):
        return InsufficientLiquidity(message)
    if any(hint in text for hint in _INVALID_HINTS):
        return InvalidOrder(message)
    return Rejected(message or "order rejected")


class ClobExecutionClient(ExecutionClient):
    """
    Executes orders on Polymarket

    Uses py-clob-client for order signing and placement. The client is
    synchronous, so calls run in a worker thread.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._clob_client: Optional[Any] = None

    async def initialize(self):
        """Initialize the CLOB client and derive API credentials"""
        if self._clob_client is not None:
            return

        if not self.settings.private_key:
            raise InvalidOrder("no private key configured for live execution")

        from py_clob_client.client import ClobClient

        def _connect():
            client = ClobClient(
                host=self.settings.polymarket_host,
                key=self.settings.private_key,
                chain_id=self.settings.chain_id,
                signature_type=0,  # EOA wallet
            )
            client.set_api_creds(client.create_or_derive_api_creds())
            return client

        self._clob_client = await asyncio.to_thread(_connect)
        logger.info("Trade executor initialized successfully")

    @property
    def is_ready(self) -> bool:
        return self._clob_client is not None

    def _post_market_order(self, token_id: str, side: TradeSide, amount: float) -> Dict:
        from py_clob_client.clob_types import MarketOrderArgs, OrderType
        from py_clob_client.order_builder.constants import BUY, SELL

        order_args = MarketOrderArgs(
            token_id=token_id,
            amount=amount,
            side=BUY if side == TradeSide.BUY else SELL,
        )
        signed_order = self._clob_client.create_market_order(order_args)
        return self._clob_client.post_order(signed_order, OrderType.FOK)

    async def submit_order(
        self, market: str, side: TradeSide, size: float, price_hint: float
    ) -> OrderAck:
        if not (TradingConstants.MIN_PRICE <= price_hint <= TradingConstants.MAX_PRICE):
            raise InvalidOrder(f"price {price_hint} outside tradable range")
        if size <= 0:
            raise InvalidOrder(f"non-positive order size {size}")

        await self.initialize()

        # market BUYs are sized in USDC, market SELLs in outcome shares
        amount = size if side == TradeSide.BUY else size / price_hint

        try:
            response = await asyncio.to_thread(self._post_market_order, market, side, amount)
        except Exception as e:
            # py-clob-client raises PolyApiException carrying the HTTP status
            raise classify_venue_error(str(e), getattr(e, "status_code", None)) from e

        if not response or not response.get("success"):
            message = (response or {}).get("errorMsg") or "order submission failed"
            raise classify_venue_error(message)

        fill_price = response.get("avgPrice")
        ack = OrderAck(
            order_id=response.get("orderID", ""),
            status=response.get("status", "matched"),
            fill_price=float(fill_price) if fill_price is not None else price_hint,
            filled_size=size,
        )
        logger.info(f"Order {ack.order_id} {side.value} ${size:.2f} -> {ack.status}")
        return ack
