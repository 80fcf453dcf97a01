"""
Copy Trading Engine

Orchestrates one copy decision per new source trade:
- Poll the trade feed for every active tracked trader
- Re-run admission against the trader's full history
- Size and reserve exposure inside the ledger's critical section
- Submit (or simulate) the order and persist the outcome
- Advance the trader's watermark once the outcome is stored

Every source trade produces at most one CopyTradeRecord, keyed by
(trader_address, source_trade_id).
"""

import asyncio
import contextlib
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Set, Tuple

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from .api_client import TradeFeed
from .config import Settings, get_settings
from .domain import (
    CopyStatus, CopyTradeRecord, LeaderboardEntry, TrackedTrader, Trade, TrackingStatus, utcnow,
)
from .errors import (
    CopyTradingError, ExecutionError, ExecutionTimeout, InsufficientLiquidity, InvalidOrder,
    PersistenceError, RateLimited, Rejected, TransientError,
)
from .metrics import MetricsCalculator, PerformanceMetrics
from .portfolio import PortfolioLedger
from .position_sizer import PositionSizer, SizingConfig, SizingContext, SizingMethod
from .scoring import AdmissionVerdict, CompositeScore, CompositeScorer
from .storage import CopyTradeRepository
from .trade_executor import ExecutionClient, OrderAck


INTERRUPTED = "interrupted_before_submission"
BASELINE = "baseline"


class TraderState(Enum):
    """Where a trader is in the per-trade decision pipeline"""
    ACTIVE = "active"
    EVALUATING = "evaluating"
    SKIPPED = "skipped"
    SIZING = "sizing"
    SUBMITTING = "submitting"
    FILLED = "filled"
    FAILED = "failed"


class TraderEvaluation(NamedTuple):
    metrics: PerformanceMetrics
    score: Optional[CompositeScore]
    verdict: AdmissionVerdict


def evaluate_trader(
    address: str,
    trade_history: Sequence[Trade],
    settings: Optional[Settings] = None,
    scorer: Optional[CompositeScorer] = None,
) -> TraderEvaluation:
    """
    Compute metrics, admission verdict and composite score for a trader

    Args:
        address: Trader wallet address
        trade_history: Every trade we know of for the trader
        settings: Thresholds and bounds (defaults to environment settings)
        scorer: Prebuilt scorer, overrides settings

    Returns:
        TraderEvaluation; score is None unless the trader is admitted
    """
    scorer = scorer or CompositeScorer.from_settings(settings or get_settings())
    metrics = MetricsCalculator.calculate(trade_history)
    verdict, score = scorer.evaluate(metrics)

    if verdict.passed:
        logger.debug(f"Trader {address[:10]}... admitted, score {score.value:.1f}")
    else:
        logger.debug(f"Trader {address[:10]}... not admitted: {verdict.reason}")

    return TraderEvaluation(metrics=metrics, score=score, verdict=verdict)


_FAILURE_KINDS = (
    (Rejected, "rejected"),
    (InvalidOrder, "invalid_order"),
    (InsufficientLiquidity, "insufficient_liquidity"),
    (ExecutionTimeout, "timeout"),
    (RateLimited, "rate_limited"),
)


def _failure_reason(error: CopyTradingError) -> str:
    kind = next((name for cls, name in _FAILURE_KINDS if isinstance(error, cls)), "execution_error")
    return f"{kind}: {error}"


class wait_retry_after(wait_base):
    """Wait as long as a RateLimited error asks, else defer to `fallback`"""

    def __init__(self, fallback: wait_base, max_wait: float):
        self.fallback = fallback
        self.max_wait = max_wait

    def __call__(self, retry_state) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return min(max(error.retry_after, 0.0), self.max_wait)
        return self.fallback(retry_state)


class CopyEngine:
    """
    Copy trading orchestrator

    Collaborators are injected: a TradeFeed, an ExecutionClient and a
    CopyTradeRepository. The engine owns the PortfolioLedger shared by all
    traders.
    """

    def __init__(
        self,
        feed: TradeFeed,
        executor: ExecutionClient,
        repository: CopyTradeRepository,
        settings: Optional[Settings] = None,
        ledger: Optional[PortfolioLedger] = None,
    ):
        self.settings = settings or get_settings()
        self.feed = feed
        self.executor = executor
        self.repository = repository

        self.scorer = CompositeScorer.from_settings(self.settings)
        self.sizer = PositionSizer(SizingConfig.from_settings(self.settings))
        self.ledger = ledger or PortfolioLedger(self.settings.portfolio_value)
        self.dry_run = self.settings.dry_run

        self.stats: Counter = Counter()
        self._states: Dict[str, TraderState] = {}
        self._volatilities: Dict[str, Optional[float]] = {}
        self._halted: Set[str] = set()
        self._untracked: Set[str] = set()
        self._callbacks: List[Callable[[CopyTradeRecord], Any]] = []
        self._initialized = False
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    async def initialize(self):
        """Restore open copy positions from filled and unreconciled records"""
        positions = await self._persist(self.repository.open_positions)
        self.ledger.restore(positions)
        self._initialized = True
        mode = "DRY RUN" if self.dry_run else "LIVE"
        logger.info(f"Copy engine initialized ({mode}), equity ${self.ledger.equity:.2f}")

    async def close(self):
        await self.feed.close()
        await self.executor.close()
        await self.repository.close()

    def add_callback(self, callback: Callable[[CopyTradeRecord], Any]):
        """Register a callback invoked with every record the engine produces"""
        self._callbacks.append(callback)

    def state_of(self, address: str) -> TraderState:
        return self._states.get(address.lower(), TraderState.ACTIVE)

    def _set_state(self, address: str, state: TraderState):
        self._states[address] = state

    # ------------------------------------------------------------------
    # Retry helpers

    def _retrying(self, label: str, attempts: int, retry_on) -> AsyncRetrying:
        def _log_retry(retry_state):
            error = retry_state.outcome.exception()
            logger.warning(
                f"{label} failed (attempt {retry_state.attempt_number}/{attempts}): {error}"
            )

        return AsyncRetrying(
            retry=retry_if_exception_type(retry_on),
            stop=stop_after_attempt(attempts),
            wait=wait_retry_after(
                wait_exponential(
                    multiplier=self.settings.retry_backoff_seconds,
                    max=self.settings.retry_backoff_max_seconds,
                ),
                max_wait=self.settings.retry_backoff_max_seconds,
            ),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _persist(self, operation: Callable, *args):
        label = f"persistence {operation.__name__}"
        async for attempt in self._retrying(label, self.settings.persistence_attempts, PersistenceError):
            with attempt:
                return await operation(*args)

    async def _fetch(self, address: str, since: Optional[datetime]) -> List[Trade]:
        label = f"trade feed for {address[:10]}..."
        async for attempt in self._retrying(label, self.settings.max_feed_attempts, TransientError):
            with attempt:
                return await self.feed.fetch_trades(address, since)

    # ------------------------------------------------------------------
    # Tracking management

    async def track_trader(self, address: str, alias: Optional[str] = None) -> TrackedTrader:
        address = address.lower()
        trader = await self._persist(self.repository.add_tracked_trader, address, alias)
        self._halted.discard(address)
        self._untracked.discard(address)
        return trader

    async def pause_trader(self, address: str) -> bool:
        address = address.lower()
        self._halted.add(address)
        self._volatilities.pop(address, None)
        found = await self._persist(self.repository.set_trader_status, address, TrackingStatus.PAUSED)
        if found:
            logger.info(f"Paused trader {address}")
        return found

    async def resume_trader(self, address: str) -> bool:
        address = address.lower()
        found = await self._persist(self.repository.set_trader_status, address, TrackingStatus.ACTIVE)
        if found:
            self._halted.discard(address)
            logger.info(f"Resumed trader {address}")
        return found

    async def untrack_trader(self, address: str) -> bool:
        address = address.lower()
        self._halted.add(address)
        self._untracked.add(address)
        removed = await self._persist(self.repository.remove_tracked_trader, address)
        self._volatilities.pop(address, None)
        self._states.pop(address, None)
        if removed:
            logger.info(f"Removed trader {address} from tracking")
        return removed

    # ------------------------------------------------------------------
    # Evaluation

    async def evaluate(self, address: str) -> TraderEvaluation:
        """Evaluate a trader from its full feed history"""
        address = address.lower()
        history = await self._fetch(address, None)
        return evaluate_trader(address, history, scorer=self.scorer)

    async def rank_traders(self) -> List[Tuple[str, CompositeScore]]:
        """Admitted tracked traders ordered by composite score"""
        traders = await self._persist(self.repository.load_tracked_traders)
        evaluations = await asyncio.gather(*(self.evaluate(t.address) for t in traders))
        return CompositeScorer.rank(
            (t.address, ev.verdict, ev.score) for t, ev in zip(traders, evaluations)
        )

    async def discover_traders(
        self,
        limit: int = 20,
        min_pnl: float = 0.0,
        time_period: str = "month",
        track: bool = False,
    ) -> List[Tuple[LeaderboardEntry, TraderEvaluation]]:
        """
        Evaluate the top of the PnL leaderboard

        Args:
            limit: Number of leaderboard traders to evaluate
            min_pnl: Ignore leaderboard entries below this PnL
            time_period: Leaderboard window ("day", "week", "month", "all")
            track: Start tracking every trader that passes admission

        Returns:
            (entry, evaluation) pairs in leaderboard order; traders whose
            history could not be fetched are left out
        """
        async for attempt in self._retrying("leaderboard", self.settings.max_feed_attempts, TransientError):
            with attempt:
                entries = await self.feed.fetch_leaderboard(time_period, limit, min_pnl)
        logger.info(f"Discovered {len(entries)} trader(s) on the {time_period} leaderboard")

        evaluations = await asyncio.gather(
            *(self.evaluate(entry.address) for entry in entries), return_exceptions=True
        )

        results: List[Tuple[LeaderboardEntry, TraderEvaluation]] = []
        for entry, evaluation in zip(entries, evaluations):
            if isinstance(evaluation, TransientError):
                logger.warning(f"History unavailable for {entry.address[:10]}..., skipping: {evaluation}")
                continue
            if isinstance(evaluation, BaseException):
                raise evaluation
            results.append((entry, evaluation))

            if track and evaluation.verdict.passed:
                await self.track_trader(entry.address, alias=entry.name or None)
                logger.info(f"Tracking {entry.name or entry.address} (score {evaluation.score.value:.1f})")

        return results

    # ------------------------------------------------------------------
    # Copy cycle

    async def run_copy_cycle(self) -> List[CopyTradeRecord]:
        """
        One polling and decision pass over all active tracked traders

        Returns:
            Records produced during this pass
        """
        if not self._initialized:
            await self.initialize()

        traders = await self._persist(self.repository.load_tracked_traders)
        active = [t for t in traders if t.is_active and t.address not in self._halted]
        if not active:
            logger.debug("No active traders to poll")
            return []

        histories: Dict[str, List[Trade]] = {}
        if self.sizer.config.method == SizingMethod.RISK_PARITY:
            histories = await self._refresh_peer_volatilities(active)

        results = await asyncio.gather(
            *(self._poll_trader(trader, histories.get(trader.address)) for trader in active),
            return_exceptions=True,
        )

        records: List[CopyTradeRecord] = []
        for trader, result in zip(active, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.opt(exception=result).error(f"Unexpected error polling {trader.display_name}")
                continue
            records.extend(result)
        return records

    async def _refresh_peer_volatilities(self, traders: Sequence[TrackedTrader]) -> Dict[str, List[Trade]]:
        """
        Recompute return volatility for every active tracked trader

        Risk parity weights are normalized over this set, so paused and
        untracked traders drop out of it. Returns the fetched histories so
        the poll does not fetch them again.
        """
        results = await asyncio.gather(
            *(self._fetch(t.address, None) for t in traders), return_exceptions=True
        )

        histories: Dict[str, List[Trade]] = {}
        volatilities: Dict[str, Optional[float]] = {}
        for trader, result in zip(traders, results):
            if isinstance(result, TransientError):
                logger.warning(f"History unavailable for {trader.display_name}, left out of risk parity: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            histories[trader.address] = result
            volatilities[trader.address] = MetricsCalculator.calculate(result).volatility

        self._volatilities = volatilities
        return histories

    async def _poll_trader(
        self, trader: TrackedTrader, history: Optional[List[Trade]] = None
    ) -> List[CopyTradeRecord]:
        address = trader.address
        records: List[CopyTradeRecord] = []

        try:
            if trader.watermark is None:
                await self._baseline(trader, history)
                return records

            new_trades = await self._fetch(address, trader.watermark)
            if not new_trades:
                return records
            if history is None:
                history = await self._fetch(address, None)

            for trade in sorted(new_trades, key=lambda t: (t.timestamp, t.id)):
                if address in self._halted:
                    logger.info(f"{trader.display_name} no longer active, stopping")
                    break
                record = await self._process_trade(trader, trade, history)
                if record is not None:
                    records.append(record)
                    await self._notify(record)
                if address in self._untracked:
                    break
                await self._persist(self.repository.update_watermark, address, trade.timestamp)

        except TransientError as e:
            logger.warning(f"Trade feed unavailable for {trader.display_name}: {e}")
        except PersistenceError as e:
            logger.error(f"Persistence failed for {trader.display_name}, aborting its cycle: {e}")
        finally:
            self._set_state(address, TraderState.ACTIVE)

        return records

    async def _baseline(self, trader: TrackedTrader, history: Optional[List[Trade]] = None):
        """
        First poll of a trader: start from its latest trade without copying

        Trades sharing the latest timestamp get skipped records so the
        inclusive watermark does not pick them up again.
        """
        if history is None:
            history = await self._fetch(trader.address, None)
        if not history:
            await self._persist(self.repository.update_watermark, trader.address, utcnow())
            return

        latest = max(t.timestamp for t in history)
        for trade in history:
            if trade.timestamp == latest:
                record = CopyTradeRecord.for_trade(trade).transition(CopyStatus.SKIPPED, reason=BASELINE)
                await self._persist(self.repository.save_copy_trade_record, record)
        await self._persist(self.repository.update_watermark, trader.address, latest)
        logger.info(f"Baselined {trader.display_name} at {latest.isoformat()} ({len(history)} past trades)")

    async def _process_trade(
        self, trader: TrackedTrader, trade: Trade, history: Sequence[Trade]
    ) -> Optional[CopyTradeRecord]:
        address = trader.address

        existing = await self._persist(self.repository.find_copy_trade_record, address, trade.id)
        if existing is not None:
            return await self._resolve_existing(existing)

        self._set_state(address, TraderState.EVALUATING)
        evaluation = evaluate_trader(address, history, scorer=self.scorer)
        verdict = evaluation.verdict
        await self._persist(
            self.repository.update_admission,
            address,
            verdict.passed,
            verdict.failed_criterion.value if verdict.failed_criterion else None,
        )

        record = CopyTradeRecord.for_trade(trade)
        if not verdict.passed:
            reason = f"admission_failed:{verdict.failed_criterion.value}"
            return await self._skip(record, reason)

        self._set_state(address, TraderState.SIZING)
        source_notional = await self._source_notional(trade)

        async with self.ledger.allocation() as ledger:
            decision = self.sizer.size(
                evaluation.metrics,
                SizingContext(
                    equity=ledger.equity,
                    current_exposure=ledger.exposure,
                    source_notional=source_notional,
                    trader_address=address,
                    peer_volatilities=dict(self._volatilities),
                    side=trade.side,
                    open_position=ledger.open_position(trade.asset_id),
                ),
            )
            if not decision.is_skip:
                ledger.reserve(record.key, decision.final_size, trade.asset_id, trade.side)

        record = replace(
            record,
            size=decision.final_size,
            method=decision.method.value,
            raw_fraction=decision.raw_fraction,
            binding_caps=decision.binding_caps,
        )
        if decision.is_skip:
            return await self._skip(record, decision.skip_reason)

        logger.info(f"Copying {trader.display_name} {trade.side.value} {trade.title or trade.market_id}: {decision.summary}")

        self._set_state(address, TraderState.SUBMITTING)
        submitted = record.transition(CopyStatus.SUBMITTED)
        try:
            await self._persist(self.repository.save_copy_trade_record, record)
            await self._persist(self.repository.save_copy_trade_record, submitted)
        except PersistenceError:
            self.ledger.release(record.key)
            raise

        outcome = await self._execute(submitted)
        await self._persist(self.repository.save_copy_trade_record, outcome)

        self._set_state(
            address, TraderState.FILLED if outcome.status == CopyStatus.FILLED else TraderState.FAILED
        )
        self.stats[outcome.status.value] += 1
        return outcome

    async def _resolve_existing(self, existing: CopyTradeRecord) -> Optional[CopyTradeRecord]:
        """Handle a source trade we have already seen"""
        if existing.status == CopyStatus.PENDING:
            failed = existing.transition(CopyStatus.FAILED, reason=INTERRUPTED)
            await self._persist(self.repository.save_copy_trade_record, failed)
            logger.warning(f"Copy of {existing.source_trade_id} was interrupted before submission, marked failed")
            self.stats[failed.status.value] += 1
            return failed

        if existing.status == CopyStatus.SUBMITTED:
            logger.warning(f"Copy of {existing.source_trade_id} awaits reconciliation, not resubmitting")
        return None

    async def _skip(self, record: CopyTradeRecord, reason: str) -> CopyTradeRecord:
        skipped = record.transition(CopyStatus.SKIPPED, reason=reason)
        await self._persist(self.repository.save_copy_trade_record, skipped)
        self._set_state(record.trader_address, TraderState.SKIPPED)
        self.stats[skipped.status.value] += 1
        logger.info(f"Skipped {record.trader_address[:10]}.../{record.source_trade_id[:12]}: {reason}")
        return skipped

    async def _source_notional(self, trade: Trade) -> float:
        """Source trade notional, optionally scaled to our portfolio size"""
        notional = trade.notional
        if not self.settings.scale_by_source_portfolio:
            return notional

        try:
            positions = await self.feed.fetch_open_positions(trade.trader_address)
        except TransientError as e:
            logger.warning(f"Positions unavailable for {trade.trader_address[:10]}..., using raw notional: {e}")
            return notional

        source_value = sum(p.current_value for p in positions)
        if source_value <= 0:
            return notional
        return notional * self.ledger.equity / source_value

    async def _submit_once(self, record: CopyTradeRecord) -> OrderAck:
        timeout = self.settings.execution_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.executor.submit_order(record.asset_id, record.side, record.size, record.source_price),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExecutionTimeout(f"no response within {timeout}s") from e

    async def _execute(self, submitted: CopyTradeRecord) -> CopyTradeRecord:
        """Submit the order; commits the reservation on fill, releases it otherwise"""
        attempts = 0
        try:
            if self.dry_run:
                attempts = 1
                ack = OrderAck(
                    order_id=f"DRY-{uuid.uuid4().hex[:16]}",
                    status="filled",
                    fill_price=submitted.source_price,
                    filled_size=submitted.size,
                )
            else:
                label = f"order for {submitted.source_trade_id[:12]}"
                async for attempt in self._retrying(
                    label, self.settings.max_execution_attempts, TransientError
                ):
                    with attempt:
                        attempts += 1
                        ack = await self._submit_once(submitted)

        except (ExecutionError, TransientError) as e:
            self.ledger.release(submitted.key)
            reason = _failure_reason(e)
            logger.error(f"Copy of {submitted.source_trade_id} failed after {attempts} attempt(s): {reason}")
            return submitted.transition(CopyStatus.FAILED, reason=reason, attempts=attempts)
        except Exception:
            self.ledger.release(submitted.key)
            raise

        self.ledger.commit(submitted.key)
        fill_price = ack.fill_price if ack.fill_price is not None else submitted.source_price
        logger.info(
            f"{'[DRY RUN] ' if self.dry_run else ''}Filled {submitted.side.value} ${submitted.size:.2f} "
            f"@ {fill_price:.3f} (order {ack.order_id})"
        )
        return submitted.transition(
            CopyStatus.FILLED, order_id=ack.order_id, fill_price=fill_price, attempts=attempts
        )

    async def _notify(self, record: CopyTradeRecord):
        for callback in self._callbacks:
            if asyncio.iscoroutinefunction(callback):
                await callback(record)
            else:
                callback(record)

    # ------------------------------------------------------------------
    # Main loop

    async def run(self, interval: Optional[float] = None):
        """Run copy cycles every `interval` seconds until stop() is called"""
        interval = interval or self.settings.poll_interval
        if not self._initialized:
            await self.initialize()

        self._running = True
        self._stop_event = asyncio.Event()
        logger.info(f"Copy engine running, polling every {interval}s")

        while self._running:
            try:
                records = await self.run_copy_cycle()
            except PersistenceError as e:
                logger.error(f"Copy cycle failed: {e}")
            else:
                if records:
                    logger.info(
                        f"Cycle produced {len(records)} record(s), exposure ${self.ledger.exposure:.2f}"
                    )

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)

        logger.info("Copy engine stopped")

    def stop(self):
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
