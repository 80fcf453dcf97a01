"""Trade feed client against a local aiohttp server."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from polycopy.api_client import PolymarketDataClient
from polycopy.config import get_settings
from polycopy.domain import Trade, TradeSide
from polycopy.errors import FeedUnavailable, RateLimited

from conftest import TRADER

BASE_TS = 1709251200  # 2024-03-01T00:00:00Z


def raw_trade(i: int) -> dict:
    return {
        "proxyWallet": TRADER.upper().replace("0X", "0x"),
        "side": "buy" if i % 2 else "SELL",
        "asset": f"asset-{i}",
        "conditionId": "0xcond",
        "size": 10 + i,
        "price": "0.42",
        "timestamp": BASE_TS + i * 60,
        "title": "Will it rain?",
        "outcome": "Yes",
        "transactionHash": f"0xtx{i}",
    }


class FeedServer:
    def __init__(self, trades):
        self.trades = trades  # newest first, like the data API
        self.status = 200
        self.requests = []
        self.leaders = [
            {"rank": str(i + 1), "proxyWallet": f"0x{i:040x}", "userName": f"user{i}", "vol": 1000.0, "pnl": 5000.0 - i * 100}
            for i in range(60)
        ]

    async def handle_trades(self, request):
        self.requests.append(dict(request.query))
        if self.status != 200:
            return web.json_response({"error": "nope"}, status=self.status, headers={"Retry-After": "3"})
        offset = int(request.query.get("offset", 0))
        limit = int(request.query.get("limit", 100))
        return web.json_response(self.trades[offset:offset + limit])

    async def handle_leaderboard(self, request):
        self.requests.append(dict(request.query))
        offset = int(request.query["offset"])
        limit = int(request.query["limit"])
        return web.json_response(self.leaders[offset:offset + limit])

    async def handle_positions(self, request):
        return web.json_response([{
            "conditionId": "0xcond", "asset": "asset-1", "outcome": "Yes",
            "size": 100, "avgPrice": 0.4, "currentValue": 55.5, "cashPnl": 15.5,
        }])


@pytest_asyncio.fixture()
async def feed_server():
    state = FeedServer([raw_trade(i) for i in reversed(range(12))])
    app = web.Application()
    app.router.add_get("/trades", state.handle_trades)
    app.router.add_get("/positions", state.handle_positions)
    app.router.add_get("/v1/leaderboard", state.handle_leaderboard)
    server = test_utils.TestServer(app)
    await server.start_server()
    state.url = str(server.make_url("/"))
    yield state
    await server.close()


@pytest_asyncio.fixture()
async def client(feed_server):
    settings = get_settings(data_api_host=feed_server.url, feed_page_size=5)
    api = PolymarketDataClient(settings)
    yield api
    await api.close()


@pytest.mark.asyncio
async def test_pages_through_history_oldest_first(client, feed_server):
    trades = await client.fetch_trades(TRADER)

    assert len(trades) == 12
    assert [t.timestamp for t in trades] == sorted(t.timestamp for t in trades)
    assert [q["offset"] for q in feed_server.requests] == ["0", "5", "10"]
    assert all(t.trader_address == TRADER for t in trades)


@pytest.mark.asyncio
async def test_watermark_is_inclusive(client):
    watermark = datetime.fromtimestamp(BASE_TS + 9 * 60, tz=timezone.utc)

    trades = await client.fetch_trades(TRADER, watermark)

    assert [t.asset_id for t in trades] == ["asset-9", "asset-10", "asset-11"]


@pytest.mark.asyncio
async def test_rate_limit(client, feed_server):
    feed_server.status = 429
    with pytest.raises(RateLimited) as exc_info:
        await client.fetch_trades(TRADER)
    assert exc_info.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_server_error_is_feed_unavailable(client, feed_server):
    feed_server.status = 503
    with pytest.raises(FeedUnavailable):
        await client.fetch_trades(TRADER)


@pytest.mark.asyncio
async def test_open_positions(client):
    [position] = await client.fetch_open_positions(TRADER)
    assert position.current_value == 55.5
    assert position.trader_address == TRADER


def test_trade_from_dict():
    trade = Trade.from_dict(raw_trade(3))

    assert trade.id == "0xtx3:asset-3"
    assert trade.side == TradeSide.BUY
    assert trade.price == 0.42
    assert trade.notional == pytest.approx(13 * 0.42)
    assert trade.timestamp == datetime(2024, 3, 1, 0, 3, tzinfo=timezone.utc)
    assert trade.realized_pnl is None
    assert not trade.is_closed


def test_trade_from_dict_millis_and_pnl():
    data = dict(raw_trade(0), timestamp=BASE_TS * 1000, realizedPnl="-4.5", id="abc")
    trade = Trade.from_dict(data, trader_address=TRADER)

    assert trade.id == "abc"
    assert trade.timestamp == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert trade.realized_pnl == -4.5


@pytest.mark.asyncio
async def test_leaderboard_pages_and_filters(client, feed_server):
    entries = await client.fetch_leaderboard("week", limit=100, min_pnl=0.0)

    # 60 leaders, pnl from 5000 down to -900
    assert len(entries) == 51
    assert entries[0].address == "0x" + "0" * 40
    assert entries[0].rank == 1
    assert entries[0].name == "user0"
    assert entries[-1].pnl == 0.0
    assert [q["offset"] for q in feed_server.requests] == ["0", "50"]
    assert feed_server.requests[0]["timePeriod"] == "WEEK"


@pytest.mark.asyncio
async def test_leaderboard_limit(client, feed_server):
    entries = await client.fetch_leaderboard(limit=5, min_pnl=4000.0)

    assert [e.pnl for e in entries] == [5000.0, 4900.0, 4800.0, 4700.0, 4600.0]
    assert len(feed_server.requests) == 1
