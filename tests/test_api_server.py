import pytest
from aiohttp import test_utils

import perps_core
from api_server import create_app
from exchanges.base import build_snapshot
from fakes import StubResolver
from models import ExchangeName, FundingHistory, FundingPoint, IndexConstituent, MarketDataEntry


def btc_record():
    snapshot = build_snapshot(
        "BTCUSDT", ExchangeName.BINANCE, mark_price=50_000, last_price=49_990,
        contracts=100, insurance_fund=500,
    )
    return perps_core.build_record(snapshot, MarketDataEntry(coin_id="bitcoin", market_cap=1e12, fdv=1.1e12))


async def fixed_aggregator():
    return [btc_record()]


async def failing_aggregator():
    raise RuntimeError("every venue exploded")


async def fixed_history(symbol, exchange):
    return FundingHistory(
        points=[FundingPoint(time=1, rate=0.0001), FundingPoint(time=2, rate=0.0002)],
        constituents=[IndexConstituent(exchange="binance", symbol=symbol, price=50_000, weight=1.0)],
    )


async def failing_history(symbol, exchange):
    raise RuntimeError("venue down")


class FailingResolver:
    async def resolve_market_data(self, symbols, session=None):
        raise RuntimeError("provider down")


def client_for(**kwargs):
    kwargs.setdefault("resolver", StubResolver())
    return test_utils.TestClient(test_utils.TestServer(create_app(**kwargs)))


@pytest.mark.anyio
async def test_perps_success():
    async with client_for(aggregator=fixed_aggregator) as client:
        resp = await client.get("/api/perps")
        assert resp.status == 200
        body = await resp.json()

    assert body["success"] is True
    assert isinstance(body["timestamp"], int)
    [row] = body["data"]
    assert row["symbol"] == "BTCUSDT"
    assert row["exchange"] == "Binance"
    assert row["openInterestValue"] == 5_000_000
    assert row["fundOiRatio"] == pytest.approx(0.01)
    assert row["marketCap"] == 1e12


@pytest.mark.anyio
async def test_perps_failure_is_structured_500():
    async with client_for(aggregator=failing_aggregator) as client:
        resp = await client.get("/api/perps")
        assert resp.status == 500
        body = await resp.json()

    assert body == {"success": False, "error": "Failed to fetch perpetual data", "data": []}


@pytest.mark.anyio
async def test_market_data_success():
    resolver = StubResolver({"BTC": MarketDataEntry(coin_id="bitcoin", market_cap=1e12, fdv=1.1e12)})
    async with client_for(resolver=resolver) as client:
        resp = await client.get("/api/market-data", params={"symbols": "BTCUSDT, NOPEUSDT,"})
        assert resp.status == 200
        body = await resp.json()

    assert body["success"] is True
    assert body["data"] == {
        "BTCUSDT": {"marketCap": 1e12, "fdv": 1.1e12},
        "NOPEUSDT": {"marketCap": None, "fdv": None},
    }
    assert resolver.calls == [{"BTCUSDT", "NOPEUSDT"}]


@pytest.mark.anyio
async def test_market_data_missing_symbols_is_400():
    async with client_for() as client:
        resp = await client.get("/api/market-data")
        assert resp.status == 400
        body = await resp.json()

    assert body["success"] is False
    assert body["error"] == "Missing symbols parameter"


@pytest.mark.anyio
async def test_market_data_blank_symbols_is_empty():
    resolver = StubResolver()
    async with client_for(resolver=resolver) as client:
        resp = await client.get("/api/market-data", params={"symbols": " , "})
        assert resp.status == 200
        body = await resp.json()

    assert body["data"] == {}
    assert resolver.calls == []


@pytest.mark.anyio
async def test_market_data_failure_is_500():
    async with client_for(resolver=FailingResolver()) as client:
        resp = await client.get("/api/market-data", params={"symbols": "BTCUSDT"})
        assert resp.status == 500
        body = await resp.json()

    assert body == {"success": False, "error": "Failed to fetch market data", "data": {}}


@pytest.mark.anyio
async def test_funding_history_success():
    async with client_for(history_fetcher=fixed_history) as client:
        resp = await client.get("/api/funding-history", params={"symbol": "BTCUSDT", "exchange": "binance"})
        assert resp.status == 200
        body = await resp.json()

    assert body["success"] is True
    assert body["data"] == [{"time": 1, "rate": 0.0001}, {"time": 2, "rate": 0.0002}]
    assert body["constituents"][0]["symbol"] == "BTCUSDT"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "params,error",
    [
        ({"symbol": "BTCUSDT"}, "Missing symbol or exchange"),
        ({"exchange": "Binance"}, "Missing symbol or exchange"),
        ({"symbol": "BTCUSDT", "exchange": "OKX"}, "Unsupported exchange: OKX"),
    ],
)
async def test_funding_history_bad_request(params, error):
    async with client_for(history_fetcher=fixed_history) as client:
        resp = await client.get("/api/funding-history", params=params)
        assert resp.status == 400
        body = await resp.json()

    assert body["success"] is False
    assert body["error"] == error


@pytest.mark.anyio
async def test_funding_history_failure_is_500():
    async with client_for(history_fetcher=failing_history) as client:
        resp = await client.get("/api/funding-history", params={"symbol": "BTCUSDT", "exchange": "Bybit"})
        assert resp.status == 500
        body = await resp.json()

    assert body["error"] == "Failed to fetch history"
    assert body["data"] == []
