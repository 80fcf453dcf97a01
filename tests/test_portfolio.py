import asyncio

import pytest

from polycopy.domain import TradeSide
from polycopy.portfolio import PortfolioLedger


@pytest.mark.asyncio
async def test_reserve_commit_release():
    ledger = PortfolioLedger(equity=1000.0)

    async with ledger.allocation():
        ledger.reserve(("0xa", "t1"), 40.0)
        ledger.reserve(("0xa", "t2"), 10.0)

    assert ledger.exposure == pytest.approx(50.0)
    assert ledger.reserved == pytest.approx(50.0)

    ledger.commit(("0xa", "t1"))
    assert ledger.committed == pytest.approx(40.0)
    assert ledger.exposure == pytest.approx(50.0)

    assert ledger.release(("0xa", "t2")) == pytest.approx(10.0)
    assert ledger.exposure == pytest.approx(40.0)
    assert ledger.release(("0xa", "t2")) == 0.0


@pytest.mark.asyncio
async def test_commit_actual_fill_size():
    ledger = PortfolioLedger(equity=1000.0)
    async with ledger.allocation():
        ledger.reserve(("0xa", "t1"), 40.0)
    assert ledger.commit(("0xa", "t1"), filled=35.0) == 35.0
    assert ledger.exposure == pytest.approx(35.0)


def test_reserve_outside_critical_section():
    ledger = PortfolioLedger(equity=1000.0)
    with pytest.raises(RuntimeError):
        ledger.reserve(("0xa", "t1"), 1.0)


@pytest.mark.asyncio
async def test_duplicate_reservation_rejected():
    ledger = PortfolioLedger(equity=1000.0)
    async with ledger.allocation():
        ledger.reserve(("0xa", "t1"), 1.0)
        with pytest.raises(ValueError):
            ledger.reserve(("0xa", "t1"), 1.0)


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overspend():
    ledger = PortfolioLedger(equity=1000.0)
    limit = 100.0

    async def claim(i):
        async with ledger.allocation():
            remaining = limit - ledger.exposure
            await asyncio.sleep(0)  # yield while holding the lock
            if remaining >= 30.0:
                ledger.reserve(("0xa", str(i)), 30.0)

    await asyncio.gather(*(claim(i) for i in range(10)))

    assert ledger.exposure == pytest.approx(90.0)


@pytest.mark.asyncio
async def test_sell_unwinds_position():
    ledger = PortfolioLedger(equity=1000.0)
    async with ledger.allocation():
        ledger.reserve(("0xa", "buy"), 80.0, "tok", TradeSide.BUY)
    ledger.commit(("0xa", "buy"))

    async with ledger.allocation():
        assert ledger.open_position("tok") == pytest.approx(80.0)
        ledger.reserve(("0xa", "sell"), 30.0, "tok", TradeSide.SELL)
        # a pending exit adds no exposure but is no longer available to sell
        assert ledger.exposure == pytest.approx(80.0)
        assert ledger.open_position("tok") == pytest.approx(50.0)

    assert ledger.commit(("0xa", "sell")) == pytest.approx(30.0)
    assert ledger.exposure == pytest.approx(50.0)
    assert ledger.positions == {"tok": pytest.approx(50.0)}


@pytest.mark.asyncio
async def test_sell_never_goes_short():
    ledger = PortfolioLedger(equity=1000.0, positions={"tok": 20.0})
    async with ledger.allocation():
        ledger.reserve(("0xa", "sell"), 25.0, "tok", TradeSide.SELL)

    assert ledger.commit(("0xa", "sell")) == pytest.approx(20.0)
    assert ledger.positions == {}
    assert ledger.exposure == 0.0


@pytest.mark.asyncio
async def test_restore_positions():
    ledger = PortfolioLedger(equity=500.0)
    ledger.restore({"tok": 120.0, "other": 0.0})
    assert ledger.committed == 120.0
    assert ledger.positions == {"tok": 120.0}

    async with ledger.allocation():
        ledger.reserve(("0xa", "t1"), 1.0)
    with pytest.raises(RuntimeError):
        ledger.restore({})
