"""Backtest replay tests."""

from dataclasses import replace

import pytest

from polycopy.backtest import (
    END_OF_BACKTEST, TRADER_EXIT, BacktestConfig, Backtester,
)
from polycopy.config import get_settings
from polycopy.domain import TradeSide
from polycopy.errors import InsufficientData
from polycopy.position_sizer import SkipReason

from conftest import OTHER_TRADER, TRADER, make_trade, winning_history


def closed_history(trader=TRADER):
    """Admission history on a token the replay never holds"""
    return [replace(t, asset_id="old", side=TradeSide.SELL) for t in winning_history(trader)]


def round_trip(trader=TRADER):
    entry = replace(make_trade(30, trader=trader, size=1000.0, price=0.4), asset_id="tok")
    exit_ = replace(
        make_trade(31, trader=trader, size=1000.0, price=0.6, side=TradeSide.SELL), asset_id="tok"
    )
    return [entry, exit_]


@pytest.fixture()
def backtest_settings(settings):
    return get_settings(**{**settings.model_dump(), "sizing_method": "fixed_fraction", "fixed_fraction": 0.05})


def build_backtester(feed, settings, slippage=0.0, fee_rate=0.0):
    config = BacktestConfig(initial_capital=1000.0, slippage=slippage, fee_rate=fee_rate)
    return Backtester(feed, settings, config)


class TestReplay:
    def test_round_trip_without_costs(self, feed, backtest_settings):
        backtester = build_backtester(feed, backtest_settings)

        result = backtester.replay({TRADER: closed_history() + round_trip()})

        [trade] = result.trades
        # 5% of $1000 buys 125 shares at 0.4, sold at 0.6
        assert trade.cost == pytest.approx(50.0)
        assert trade.shares == pytest.approx(125.0)
        assert trade.pnl == pytest.approx(25.0)
        assert trade.return_pct == pytest.approx(0.5)
        assert trade.exit_reason == TRADER_EXIT
        assert result.final_capital == pytest.approx(1025.0)
        assert result.total_return == pytest.approx(0.025)
        assert result.total_fees == 0.0
        assert result.max_drawdown == 0.0
        assert result.avg_holding_hours == pytest.approx(24.0)
        assert result.skipped["admission_failed:trade_count"] == 19
        assert result.skipped[SkipReason.NO_OPEN_POSITION] == 11
        assert sum(result.skipped.values()) == 30
        assert result.metrics.trade_count == 1
        assert result.metrics.win_rate == 1.0

    def test_slippage_and_fees(self, feed, backtest_settings):
        backtester = build_backtester(feed, backtest_settings, slippage=0.01, fee_rate=0.001)

        result = backtester.replay({TRADER: closed_history() + round_trip()})

        entry_fee = 50.0 * 0.001
        shares = 50.0 / (0.4 * 1.01)
        proceeds = shares * 0.6 * 0.99
        exit_fee = proceeds * 0.001
        [trade] = result.trades
        assert trade.cost == pytest.approx(50.0 + entry_fee)
        assert trade.pnl == pytest.approx(proceeds - exit_fee - 50.0 - entry_fee)
        assert result.total_fees == pytest.approx(entry_fee + exit_fee)
        assert result.final_capital == pytest.approx(1000.0 + trade.pnl)

    def test_open_positions_are_closed_at_last_price(self, feed, backtest_settings):
        backtester = build_backtester(feed, backtest_settings)
        last = replace(make_trade(31, trader=OTHER_TRADER, size=10.0, price=0.5), asset_id="tok")

        result = backtester.replay({
            TRADER: closed_history() + round_trip()[:1],
            OTHER_TRADER: [last],
        })

        [trade] = result.trades
        assert trade.exit_reason == END_OF_BACKTEST
        assert trade.closed_at == last.timestamp
        assert trade.pnl == pytest.approx(12.5)
        assert result.final_capital == pytest.approx(1012.5)
        assert result.skipped["admission_failed:trade_count"] == 20

    def test_losing_exit_records_drawdown(self, feed, backtest_settings):
        backtester = build_backtester(feed, backtest_settings)
        entry, exit_ = round_trip()

        result = backtester.replay({TRADER: closed_history() + [entry, replace(exit_, price=0.2)]})

        # 5% of the marked-down $975 equity is sold; the rest closes at the end
        assert [t.exit_reason for t in result.trades] == [TRADER_EXIT, END_OF_BACKTEST]
        assert result.trades[0].cost == pytest.approx(48.75)
        assert sum(t.pnl for t in result.trades) == pytest.approx(-25.0)
        assert result.max_drawdown == pytest.approx(25.0 / 1000.0)
        assert result.final_capital == pytest.approx(975.0)

    def test_empty_history(self, feed, backtest_settings):
        with pytest.raises(InsufficientData):
            build_backtester(feed, backtest_settings).replay({TRADER: []})


class TestFeed:
    @pytest.mark.asyncio
    async def test_single_trader(self, feed, backtest_settings):
        feed.add(*closed_history(), *round_trip())
        backtester = build_backtester(feed, backtest_settings)

        result = await backtester.run_single_trader(TRADER.upper().replace("0X", "0x"))

        assert result.final_capital == pytest.approx(1025.0)
        assert feed.calls == [(TRADER, None)]

    @pytest.mark.asyncio
    async def test_unreachable_trader_is_left_out(self, feed, backtest_settings):
        feed.add(*closed_history(), *round_trip())
        feed.failures[OTHER_TRADER] = 5
        backtester = build_backtester(feed, backtest_settings)

        result = await backtester.run_multiple_traders([TRADER, OTHER_TRADER])

        assert len(result.trades) == 1
        assert result.final_capital == pytest.approx(1025.0)

    @pytest.mark.asyncio
    async def test_nothing_to_replay(self, feed, backtest_settings):
        feed.failures[TRADER] = 5
        backtester = build_backtester(feed, backtest_settings)

        with pytest.raises(InsufficientData):
            await backtester.run_multiple_traders([TRADER])


def test_config_from_settings(settings):
    config = BacktestConfig.from_settings(settings)
    assert config.initial_capital == settings.portfolio_value
    assert config.slippage == settings.backtest_slippage
    assert config.fee_rate == settings.backtest_fee_rate
