"""
Polymarket Copy Trading - Main Entry Point

Usage:
    polycopy run                 # Start the copy trading engine
    polycopy track ADDRESS       # Track a trader
    polycopy untrack ADDRESS     # Stop tracking a trader
    polycopy pause ADDRESS       # Stop copying without untracking
    polycopy resume ADDRESS      # Resume copying
    polycopy list                # List tracked traders
    polycopy evaluate ADDRESS    # Show a trader's metrics and admission
    polycopy records             # Show recent copy trade records
    polycopy discover            # Evaluate the top leaderboard traders
    polycopy backtest ADDRESS... # Replay traders through the copy rules
"""

import asyncio
import sys
from typing import Optional

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .api_client import PolymarketDataClient
from .backtest import Backtester, BacktestResult
from .config import Settings, get_settings
from .copy_engine import CopyEngine, TraderEvaluation
from .domain import CopyStatus, CopyTradeRecord
from .errors import ConfigInvalid, InsufficientData, PersistenceError, TransientError
from .storage import SQLRepository
from .trade_executor import ClobExecutionClient

console = Console()

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

STATUS_COLORS = {
    CopyStatus.FILLED: "green",
    CopyStatus.FAILED: "red",
    CopyStatus.SKIPPED: "yellow",
    CopyStatus.SUBMITTED: "blue",
    CopyStatus.PENDING: "white",
}


def setup_logging(settings: Settings, verbose: bool = False):
    """Configure loguru sinks: stderr plus an optional rotating file"""
    logger.remove()
    level = "DEBUG" if verbose else settings.log_level.upper()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)
    if settings.log_file:
        logger.add(settings.log_file, level="DEBUG", rotation="10 MB", retention=5, enqueue=True)


async def build_engine(settings: Settings) -> CopyEngine:
    """Wire the engine to the Polymarket feed, the CLOB and the database"""
    repository = await SQLRepository.create(settings.database_url)
    return CopyEngine(
        feed=PolymarketDataClient(settings),
        executor=ClobExecutionClient(settings),
        repository=repository,
        settings=settings,
    )


def _fmt(value: Optional[float], fmt: str = ".3f") -> str:
    return "n/a" if value is None else format(value, fmt)


def _print_record(record: CopyTradeRecord):
    color = STATUS_COLORS[record.status]
    detail = f"${record.size:,.2f}" if record.status == CopyStatus.FILLED else (record.reason or "")
    console.print(
        f"[{color}]{record.status.value.upper():<9}[/{color}] "
        f"{record.trader_address[:10]}... {record.side.value} "
        f"@ {record.source_price:.3f} {detail}"
    )


def _evaluation_table(address: str, evaluation: TraderEvaluation) -> Table:
    m = evaluation.metrics
    table = Table(title=f"Trader {address[:10]}...{address[-6:]}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("Closed Trades", f"{m.trade_count} / {m.total_trades}")
    table.add_row("Win Rate", _fmt(m.win_rate, ".1%"))
    table.add_row("Avg Win / Loss", f"${m.avg_win:,.2f} / ${m.avg_loss:,.2f}")
    table.add_row("Total PnL", f"${m.total_pnl:,.2f}")
    table.add_row("PnL 7d / 30d", f"{_fmt(m.momentum, ',.2f')} / {_fmt(m.pnl_30d, ',.2f')}")
    table.add_row("Sharpe", _fmt(m.sharpe_ratio))
    table.add_row("Sortino", _fmt(m.sortino_ratio))
    table.add_row("Max Drawdown", _fmt(m.max_drawdown, ".1%"))
    table.add_row("Calmar", _fmt(m.calmar_ratio))
    table.add_row("Profit Factor", _fmt(m.profit_factor))
    table.add_row("Volume", f"${m.total_volume:,.2f}")

    verdict = evaluation.verdict
    if verdict.passed:
        table.add_row("Admission", "[green]passed[/green]")
        table.add_row("Score", f"{evaluation.score.value:.1f}")
    else:
        table.add_row("Admission", f"[red]failed: {verdict.failed_criterion.value}[/red]")
        table.add_row("Reason", verdict.reason)
    return table


def _run_async(settings: Settings, action):
    """Build the engine, run `action(engine)` and close everything"""
    async def _main():
        engine = await build_engine(settings)
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except PersistenceError as e:
        console.print(f"[red]✗ Database error: {e}[/red]")
        raise SystemExit(1) from e
    except TransientError as e:
        console.print(f"[red]✗ Trade feed unavailable: {e}[/red]")
        raise SystemExit(1) from e


# CLI Commands
@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """Polymarket Copy Trading System"""
    try:
        settings = get_settings()
    except ConfigInvalid as e:
        console.print(f"[red]✗ Invalid configuration:[/red] {e}")
        raise SystemExit(2) from e
    setup_logging(settings, verbose)
    ctx.obj = settings


@cli.command()
@click.option('--dry-run/--live', default=None, help='Simulate fills instead of submitting orders')
@click.option('--once', is_flag=True, help='Run a single copy cycle and exit')
@click.option('--interval', '-i', type=int, help='Polling interval in seconds')
@click.pass_obj
def run(settings: Settings, dry_run: Optional[bool], once: bool, interval: Optional[int]):
    """Start the copy trading engine"""
    if dry_run is not None:
        try:
            settings = get_settings(dry_run=dry_run)
        except ConfigInvalid as e:
            console.print(f"[red]✗ Invalid configuration:[/red] {e}")
            raise SystemExit(2) from e

    async def _run(engine: CopyEngine):
        engine.add_callback(_print_record)
        await engine.initialize()

        if once:
            records = await engine.run_copy_cycle()
            console.print(f"[bold]Cycle complete:[/bold] {len(records)} record(s)")
            return

        traders = await engine.repository.load_tracked_traders()
        mode = "DRY RUN" if settings.dry_run else "LIVE"
        console.print(Panel(
            f"[bold]Copy Trading Engine Started[/bold]\n"
            f"Mode: [yellow]{mode}[/yellow]\n"
            f"Tracking: {len(traders)} traders\n"
            f"Equity: ${engine.ledger.equity:,.2f}, exposure ${engine.ledger.exposure:,.2f}\n"
            f"Press Ctrl+C to stop",
            title="Status"
        ))
        await engine.run(interval or settings.poll_interval)

    try:
        _run_async(settings, _run)
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.argument('address')
@click.option('--alias', '-a', help='Alias for the trader')
@click.pass_obj
def track(settings: Settings, address: str, alias: Optional[str]):
    """Track a trader"""
    async def _track(engine: CopyEngine):
        trader = await engine.track_trader(address, alias)
        console.print(f"[green]✓ Tracking {trader.display_name}[/green] ({trader.address})")

    _run_async(settings, _track)


@cli.command()
@click.argument('address')
@click.pass_obj
def untrack(settings: Settings, address: str):
    """Stop tracking a trader"""
    async def _untrack(engine: CopyEngine):
        if await engine.untrack_trader(address):
            console.print("[green]✓ Trader removed[/green]")
        else:
            console.print("[red]✗ Trader not found[/red]")

    _run_async(settings, _untrack)


@cli.command()
@click.argument('address')
@click.pass_obj
def pause(settings: Settings, address: str):
    """Pause copying a trader"""
    async def _pause(engine: CopyEngine):
        if await engine.pause_trader(address):
            console.print("[green]✓ Trader paused[/green]")
        else:
            console.print("[red]✗ Trader not found[/red]")

    _run_async(settings, _pause)


@cli.command()
@click.argument('address')
@click.pass_obj
def resume(settings: Settings, address: str):
    """Resume copying a paused trader"""
    async def _resume(engine: CopyEngine):
        if await engine.resume_trader(address):
            console.print("[green]✓ Trader resumed[/green]")
        else:
            console.print("[red]✗ Trader not found[/red]")

    _run_async(settings, _resume)


@cli.command('list')
@click.option('--scores', is_flag=True, help='Rank admitted traders by composite score')
@click.pass_obj
def list_traders(settings: Settings, scores: bool):
    """List all tracked traders"""
    async def _list(engine: CopyEngine):
        traders = await engine.repository.load_tracked_traders()

        if not traders:
            console.print("[yellow]No traders being tracked[/yellow]")
            return

        table = Table(title="Tracked Traders")
        table.add_column("Address", style="cyan")
        table.add_column("Alias")
        table.add_column("Status", justify="center")
        table.add_column("Admission", justify="center")
        table.add_column("Watermark")

        for t in traders:
            status = "[green]Active[/green]" if t.is_active else "[red]Paused[/red]"
            if t.admitted is None:
                admission = "-"
            elif t.admitted:
                admission = "[green]passed[/green]"
            else:
                admission = f"[red]{t.failed_criterion}[/red]"
            table.add_row(
                f"{t.address[:10]}...{t.address[-6:]}",
                t.alias or "",
                status,
                admission,
                t.watermark.strftime("%Y-%m-%d %H:%M:%S") if t.watermark else "-",
            )

        console.print(table)

        if scores:
            ranking = await engine.rank_traders()
            if not ranking:
                console.print("[yellow]No tracked trader passes admission[/yellow]")
                return
            board = Table(title="Leaderboard")
            board.add_column("#", justify="right")
            board.add_column("Address", style="cyan")
            board.add_column("Score", justify="right", style="green")
            for rank, (address, score) in enumerate(ranking, 1):
                board.add_row(str(rank), f"{address[:10]}...{address[-6:]}", f"{score.value:.1f}")
            console.print(board)

    _run_async(settings, _list)


@cli.command()
@click.argument('address')
@click.pass_obj
def evaluate(settings: Settings, address: str):
    """Show a trader's performance metrics and admission verdict"""
    async def _evaluate(engine: CopyEngine):
        console.print(f"[blue]Analyzing trader {address[:10]}...[/blue]")
        evaluation = await engine.evaluate(address)
        console.print(_evaluation_table(address, evaluation))

    _run_async(settings, _evaluate)


@cli.command()
@click.option('--limit', '-n', default=20, help='Number of records to show')
@click.option('--trader', '-t', help='Only records for this trader')
@click.pass_obj
def records(settings: Settings, limit: int, trader: Optional[str]):
    """Show recent copy trade records"""
    async def _records(engine: CopyEngine):
        items = await engine.repository.list_copy_trade_records(trader_address=trader, limit=limit)

        if not items:
            console.print("[yellow]No copy trades recorded[/yellow]")
            return

        table = Table(title="Copy Trades")
        table.add_column("Time")
        table.add_column("Trader", style="cyan")
        table.add_column("Side")
        table.add_column("Size", justify="right")
        table.add_column("Status", justify="center")
        table.add_column("Reason / Order")

        for r in items:
            color = STATUS_COLORS[r.status]
            table.add_row(
                r.created_at.strftime("%m-%d %H:%M:%S"),
                f"{r.trader_address[:10]}...",
                r.side.value,
                f"${r.size:,.2f}",
                f"[{color}]{r.status.value}[/{color}]",
                r.order_id or r.reason or "",
            )

        console.print(table)

    _run_async(settings, _records)


@cli.command()
@click.option('--limit', '-n', default=20, help='Number of leaderboard traders to evaluate')
@click.option('--min-pnl', default=0.0, help='Ignore leaderboard traders below this PnL')
@click.option('--period', type=click.Choice(['day', 'week', 'month', 'all']), default='month',
              help='Leaderboard window')
@click.option('--track', 'track_admitted', is_flag=True, help='Track every trader that passes admission')
@click.pass_obj
def discover(settings: Settings, limit: int, min_pnl: float, period: str, track_admitted: bool):
    """Evaluate the top traders on the PnL leaderboard"""
    async def _discover(engine: CopyEngine):
        console.print(f"[blue]Fetching the top {limit} traders ({period})...[/blue]")
        results = await engine.discover_traders(limit, min_pnl, period, track=track_admitted)

        if not results:
            console.print("[yellow]No leaderboard traders found[/yellow]")
            return

        table = Table(title="Leaderboard Traders")
        table.add_column("#", justify="right")
        table.add_column("Trader", style="cyan")
        table.add_column("PnL", justify="right")
        table.add_column("Volume", justify="right")
        table.add_column("Win Rate", justify="right")
        table.add_column("Sharpe", justify="right")
        table.add_column("Admission", justify="center")
        table.add_column("Score", justify="right", style="green")

        for entry, evaluation in results:
            verdict = evaluation.verdict
            admission = (
                "[green]passed[/green]" if verdict.passed
                else f"[red]{verdict.failed_criterion.value}[/red]"
            )
            table.add_row(
                str(entry.rank) if entry.rank is not None else "-",
                entry.name or f"{entry.address[:10]}...{entry.address[-6:]}",
                f"${entry.pnl:,.0f}",
                f"${entry.volume:,.0f}",
                _fmt(evaluation.metrics.win_rate, ".1%"),
                _fmt(evaluation.metrics.sharpe_ratio, ".2f"),
                admission,
                f"{evaluation.score.value:.1f}" if evaluation.score else "-",
            )

        console.print(table)
        admitted = sum(1 for _, ev in results if ev.verdict.passed)
        verb = "Tracking" if track_admitted else "Admitted"
        console.print(f"[bold]{verb} {admitted} of {len(results)} trader(s)[/bold]")

    _run_async(settings, _discover)


@cli.command()
@click.argument('addresses', nargs=-1, required=True)
@click.option('--capital', type=float, help='Starting capital in USDC')
@click.option('--slippage', type=float, help='Price slippage on simulated fills')
@click.option('--fee-rate', type=float, help='Fee rate on simulated fills')
@click.pass_obj
def backtest(
    settings: Settings,
    addresses: tuple,
    capital: Optional[float],
    slippage: Optional[float],
    fee_rate: Optional[float],
):
    """Replay traders' history through the copy rules"""
    overrides = {
        name: value for name, value in (
            ("portfolio_value", capital),
            ("backtest_slippage", slippage),
            ("backtest_fee_rate", fee_rate),
        ) if value is not None
    }
    if overrides:
        try:
            settings = get_settings(**{**settings.model_dump(), **overrides})
        except ConfigInvalid as e:
            console.print(f"[red]✗ Invalid configuration:[/red] {e}")
            raise SystemExit(2) from e

    async def _backtest() -> BacktestResult:
        backtester = Backtester(settings=settings)
        try:
            if len(addresses) == 1:
                return await backtester.run_single_trader(addresses[0])
            return await backtester.run_multiple_traders(addresses)
        finally:
            await backtester.close()

    try:
        result = asyncio.run(_backtest())
    except (InsufficientData, TransientError) as e:
        console.print(f"[red]✗ Backtest failed: {e}[/red]")
        raise SystemExit(1) from e

    m = result.metrics
    table = Table(title=f"Backtest {result.start:%Y-%m-%d} → {result.end:%Y-%m-%d}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")
    table.add_row("Capital", f"${result.initial_capital:,.2f} → ${result.final_capital:,.2f}")
    table.add_row("Total Return", f"{result.total_return:.2%}")
    table.add_row("Closed Trades", str(len(result.trades)))
    table.add_row("Win Rate", _fmt(m.win_rate, ".1%"))
    table.add_row("Avg Win / Loss", f"${m.avg_win:,.2f} / ${m.avg_loss:,.2f}")
    table.add_row("Profit Factor", _fmt(m.profit_factor, ".2f"))
    table.add_row("Sharpe", _fmt(m.sharpe_ratio))
    table.add_row("Sortino", _fmt(m.sortino_ratio))
    table.add_row("Max Drawdown", f"{result.max_drawdown:.1%}")
    table.add_row("Avg Holding", f"{result.avg_holding_hours:.1f}h")
    table.add_row("Fees Paid", f"${result.total_fees:,.2f}")
    table.add_row("Skipped", str(sum(result.skipped.values())))
    console.print(table)

    if result.skipped:
        reasons = ", ".join(f"{reason} ({count})" for reason, count in result.skipped.most_common(5))
        console.print(f"[dim]Skipped: {reasons}[/dim]")


if __name__ == "__main__":
    cli()
