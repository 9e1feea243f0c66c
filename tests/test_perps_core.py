import pytest

import market_data
import perps_core
from exchanges.base import build_snapshot
from fakes import StaticExchange, StubResolver
from models import ExchangeName, MarketDataEntry

BTC_MARKET = MarketDataEntry(
    coin_id="bitcoin", market_cap=1.0e12, fdv=1.05e12, name="Bitcoin", image="btc.png"
)


def snap(symbol, exchange, price=100.0, contracts=10.0, fund=0.0, **kw):
    return build_snapshot(
        symbol, exchange, mark_price=price, last_price=price,
        contracts=contracts, insurance_fund=fund, **kw,
    )


def test_fund_oi_ratio():
    assert perps_core.fund_oi_ratio(500, 5_000_000) == pytest.approx(0.01)
    assert perps_core.fund_oi_ratio(1_000_000, 5_000_000) == pytest.approx(20.0)
    assert perps_core.fund_oi_ratio(1_000, 0) == 0
    assert perps_core.fund_oi_ratio(0, 5_000_000) == 0


def test_calculate_apy():
    assert perps_core.calculate_apy(0.0001, 8) == pytest.approx(10.95)
    assert perps_core.calculate_apy(0.0001, 4) == pytest.approx(21.9)
    assert perps_core.calculate_apy(None, 8) is None
    assert perps_core.calculate_apy(0.0001, 0) is None


@pytest.mark.anyio
async def test_single_venue_record():
    binance = StaticExchange(ExchangeName.BINANCE, [
        build_snapshot(
            "BTCUSDT", ExchangeName.BINANCE, mark_price=50_000, last_price=49_990,
            contracts=100, insurance_fund=500, funding_rate=0.0001,
        ),
    ])
    resolver = StubResolver({"BTC": BTC_MARKET})

    records = await perps_core.aggregate([binance], resolver)

    assert len(records) == 1
    r = records[0].to_dict()
    assert r["symbol"] == "BTCUSDT"
    assert r["exchange"] == "Binance"
    assert r["price"] == 50_000
    assert r["openInterestValue"] == 5_000_000
    assert r["insuranceFund"] == 500
    assert r["fundOiRatio"] == pytest.approx(0.01)
    assert r["marketCap"] == 1.0e12
    assert r["fdv"] == 1.05e12
    assert r["coinName"] == "Bitcoin"
    assert r["fundingApy"] == pytest.approx(10.95)


@pytest.mark.anyio
async def test_same_symbol_on_both_venues_shares_market_data():
    binance = StaticExchange(ExchangeName.BINANCE, [snap("BTCUSDT", ExchangeName.BINANCE, fund=10)])
    bybit = StaticExchange(ExchangeName.BYBIT, [snap("BTCUSDT", ExchangeName.BYBIT, fund=20)])
    resolver = StubResolver({"BTC": BTC_MARKET})

    records = await perps_core.aggregate([binance, bybit], resolver)

    by_venue = {r.exchange: r for r in records}
    assert set(by_venue) == {ExchangeName.BINANCE, ExchangeName.BYBIT}
    assert by_venue[ExchangeName.BINANCE].market_cap == by_venue[ExchangeName.BYBIT].market_cap
    assert by_venue[ExchangeName.BINANCE].fdv == by_venue[ExchangeName.BYBIT].fdv
    assert by_venue[ExchangeName.BINANCE].insurance_fund == 10
    assert by_venue[ExchangeName.BYBIT].insurance_fund == 20


@pytest.mark.anyio
async def test_resolver_called_once_with_distinct_symbols():
    binance = StaticExchange(ExchangeName.BINANCE, [
        snap("BTCUSDT", ExchangeName.BINANCE),
        snap("ETHUSDT", ExchangeName.BINANCE),
    ])
    bybit = StaticExchange(ExchangeName.BYBIT, [snap("BTCUSDT", ExchangeName.BYBIT)])
    resolver = StubResolver()

    await perps_core.aggregate([binance, bybit], resolver)

    assert resolver.calls == [{"BTCUSDT", "ETHUSDT"}]


@pytest.mark.anyio
async def test_default_resolution_uses_shared_resolver(monkeypatch):
    shared = StubResolver({"BTC": BTC_MARKET})
    monkeypatch.setattr(market_data, "DEFAULT_RESOLVER", shared)
    raw = [{"exchange_name": "Binance", "snapshots": [snap("BTCUSDT", ExchangeName.BINANCE)]}]

    [record] = await perps_core.build_records(raw)

    assert record.market_cap == 1.0e12
    assert shared.calls == [{"BTCUSDT"}]


@pytest.mark.anyio
async def test_failing_venue_contributes_nothing():
    binance = StaticExchange(ExchangeName.BINANCE, error=RuntimeError("venue down"))
    bybit = StaticExchange(ExchangeName.BYBIT, [
        snap("BTCUSDT", ExchangeName.BYBIT),
        snap("ETHUSDT", ExchangeName.BYBIT),
    ])

    raw = await perps_core.fetch_all_raw([binance, bybit])
    assert raw[0]["exchange_name"] == "Binance"
    assert raw[0]["snapshots"] == []
    assert raw[0]["error"] == "venue down"
    assert "error" not in raw[1]

    records = await perps_core.build_records(raw, StubResolver())
    assert {r.exchange for r in records} == {ExchangeName.BYBIT}
    assert len(records) == 2


@pytest.mark.anyio
async def test_slow_venue_times_out():
    slow = StaticExchange(ExchangeName.BINANCE, [snap("BTCUSDT", ExchangeName.BINANCE)], delay=1.0)
    fast = StaticExchange(ExchangeName.BYBIT, [snap("BTCUSDT", ExchangeName.BYBIT)])

    records = await perps_core.aggregate([slow, fast], StubResolver(), timeout=0.05)

    assert [r.exchange for r in records] == [ExchangeName.BYBIT]


@pytest.mark.anyio
async def test_no_snapshots_skips_market_data():
    resolver = StubResolver()
    records = await perps_core.aggregate(
        [StaticExchange(ExchangeName.BINANCE), StaticExchange(ExchangeName.BYBIT)], resolver
    )
    assert records == []
    assert resolver.calls == []


@pytest.mark.anyio
async def test_shared_pool_ratio_uses_full_balance():
    # three contracts behind one 1,000,000 pool each see the whole pool
    venue = StaticExchange(ExchangeName.BYBIT, [
        snap("AUSDT", ExchangeName.BYBIT, price=1.0, contracts=5_000_000, fund=1_000_000),
        snap("BUSDT", ExchangeName.BYBIT, price=1.0, contracts=10_000_000, fund=1_000_000),
        snap("CUSDT", ExchangeName.BYBIT, price=1.0, contracts=0, fund=1_000_000),
    ])
    records = await perps_core.aggregate([venue], StubResolver())
    ratios = {r.symbol: r.fund_oi_ratio for r in records}
    assert ratios == pytest.approx({"AUSDT": 20.0, "BUSDT": 10.0, "CUSDT": 0.0})


def test_duplicate_snapshot_keeps_first():
    first = snap("BTCUSDT", ExchangeName.BINANCE, price=1.0)
    second = snap("BTCUSDT", ExchangeName.BINANCE, price=2.0)
    merged = perps_core.merge_snapshots([
        {"exchange_name": "Binance", "snapshots": [first, second]},
    ])
    assert list(merged.values()) == [first]


def frame_records():
    # OI value: BTC 5,000,000 / ETH 30,000 / DOGE 1
    return [
        perps_core.build_record(
            snap("BTCUSDT", ExchangeName.BINANCE, price=50_000, contracts=100, fund=5_000,
                 funding_rate=0.0001),
            BTC_MARKET,
        ),
        perps_core.build_record(
            snap("ETHUSDT", ExchangeName.BYBIT, price=3_000, contracts=10, fund=300,
                 funding_rate=0.0003)
        ),
        perps_core.build_record(
            snap("DOGEUSDT", ExchangeName.BYBIT, price=0.1, contracts=10, volume_24h=5_000_000,
                 funding_rate=-0.0002)
        ),
    ]


def test_records_to_frame_highest_apy_first():
    df = perps_core.records_to_frame(frame_records())

    assert list(df.columns) == list(perps_core.TABLE_COLUMNS.values())
    assert list(df["Symbol"]) == ["ETHUSDT", "BTCUSDT", "DOGEUSDT"]
    assert df.loc[1, "Market Cap"] == 1.0e12


def test_filters():
    df = perps_core.records_to_frame(frame_records())

    def symbols(**kw):
        return list(perps_core.filter_frame(df, **kw)["Symbol"])

    assert symbols(selected_exchanges=["Bybit"]) == ["ETHUSDT", "DOGEUSDT"]
    assert symbols(search="eth") == ["ETHUSDT"]
    assert symbols(min_oi_value=10_000) == ["ETHUSDT", "BTCUSDT"]
    assert symbols(min_volume=1) == ["DOGEUSDT"]
    assert perps_core.filter_frame(df, []).empty


def test_min_fund_oi_ratio_filter():
    df = perps_core.records_to_frame(frame_records())

    def symbols(threshold):
        return list(perps_core.filter_frame(df, min_fund_oi_ratio=threshold)["Symbol"])

    # Fund/OI: ETH 1.0%, BTC 0.1%, DOGE 0%
    assert symbols(0) == ["ETHUSDT", "BTCUSDT", "DOGEUSDT"]
    assert symbols(0.05) == ["ETHUSDT", "BTCUSDT"]
    assert symbols(0.5) == ["ETHUSDT"]
    assert symbols(5) == []
    # thresholds combine with the other filters
    assert list(
        perps_core.filter_frame(df, ["Binance"], min_fund_oi_ratio=0.5)["Symbol"]
    ) == []


def test_empty_frame_keeps_columns():
    df = perps_core.records_to_frame([])
    assert df.empty
    assert list(df.columns) == list(perps_core.TABLE_COLUMNS.values())
    assert perps_core.filter_frame(df, ["Binance"], search="BTC").empty


def test_mock_data_is_consistent():
    records = perps_core.generate_mock_data(rows=20)
    assert records
    assert all(r.exchange in ExchangeName for r in records)
    for r in records:
        assert r.open_interest_value == pytest.approx(r.open_interest * r.mark_price)
        assert r.fund_oi_ratio == pytest.approx(
            perps_core.fund_oi_ratio(r.insurance_fund, r.open_interest_value)
        )
