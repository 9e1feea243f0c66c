import asyncio
import logging
import random
import time
from typing import Iterable, Optional

import pandas as pd

import market_data
from exchanges.base import Exchange
from exchanges.binance import Binance
from exchanges.bybit import Bybit
from market_data import MarketDataResolver
from models import (
    EMPTY_MARKET_DATA,
    ContractSnapshot,
    ExchangeName,
    MarketDataEntry,
    UnifiedPerpRecord,
)

logger = logging.getLogger("perps_core")

EXCHANGE_FACTORIES: list[type[Exchange]] = [Binance, Bybit]
EXCHANGE_NAMES = [name.value for name in ExchangeName]

# Caller-side timeout per venue; a venue that overruns contributes nothing.
ADAPTER_TIMEOUT_S = 60


def fund_oi_ratio(insurance_fund: float, open_interest_value: float) -> float:
    """Insurance fund as a percentage of OI notional; 0 when there is no OI."""
    if not open_interest_value or open_interest_value <= 0:
        return 0.0
    return max(0.0, insurance_fund) / open_interest_value * 100


def calculate_apy(rate, interval_hours: float = 8):
    if rate is None or interval_hours in (None, 0):
        return None
    return rate * (24 / interval_hours) * 365 * 100


def build_record(
    snapshot: ContractSnapshot,
    market: MarketDataEntry = EMPTY_MARKET_DATA,
) -> UnifiedPerpRecord:
    return UnifiedPerpRecord(
        symbol=snapshot.symbol,
        exchange=snapshot.exchange,
        price=snapshot.price,
        mark_price=snapshot.mark_price,
        last_price=snapshot.last_price,
        open_interest=snapshot.open_interest,
        open_interest_value=snapshot.open_interest_value,
        insurance_fund=snapshot.insurance_fund,
        fund_oi_ratio=fund_oi_ratio(snapshot.insurance_fund, snapshot.open_interest_value),
        volume_24h=snapshot.volume_24h,
        funding_rate=snapshot.funding_rate,
        funding_apy=calculate_apy(snapshot.funding_rate, snapshot.funding_interval_hours),
        next_funding_time=snapshot.next_funding_time,
        funding_interval_hours=snapshot.funding_interval_hours,
        market_cap=market.market_cap,
        fdv=market.fdv,
        coin_name=market.name,
        coin_image=market.image,
    )


async def fetch_all_raw(
    exchanges: Optional[Iterable[Exchange]] = None,
    timeout: float = ADAPTER_TIMEOUT_S,
) -> list[dict]:
    """
    Run every adapter concurrently. Each entry carries the venue name, its
    snapshots (empty on failure) and how long it took.
    """
    if exchanges is None:
        exchanges = [factory() for factory in EXCHANGE_FACTORIES]

    async def fetch_one(exchange: Exchange) -> dict:
        start = time.time()
        try:
            snapshots = await asyncio.wait_for(exchange.fetch_venue_perps(), timeout)
            duration = time.time() - start
            logger.info(
                "[Fetch] %s success: %d items in %.2fs",
                exchange.name.value, len(snapshots), duration,
            )
            return {"exchange_name": exchange.name.value, "snapshots": snapshots, "duration": duration}
        except Exception as e:
            duration = time.time() - start
            logger.error("[Fetch] %s failed in %.2fs: %r", exchange.name.value, duration, e)
            return {
                "exchange_name": exchange.name.value,
                "snapshots": [],
                "error": str(e) or type(e).__name__,
                "duration": duration,
            }

    return await asyncio.gather(*[fetch_one(ex) for ex in exchanges])


def merge_snapshots(
    raw_results: Iterable[dict],
) -> dict[tuple[str, ExchangeName], ContractSnapshot]:
    """Key snapshots by (symbol, exchange); a venue repeating a symbol keeps the first."""
    merged: dict[tuple[str, ExchangeName], ContractSnapshot] = {}
    for entry in raw_results:
        for snapshot in entry.get("snapshots") or []:
            key = (snapshot.symbol, snapshot.exchange)
            if key in merged:
                logger.warning("Duplicate %s on %s ignored", snapshot.symbol, snapshot.exchange.value)
                continue
            merged[key] = snapshot
    return merged


async def build_records(
    raw_results: Iterable[dict],
    resolver: Optional[MarketDataResolver] = None,
) -> list[UnifiedPerpRecord]:
    merged = merge_snapshots(raw_results)
    if not merged:
        return []

    symbols = {symbol for symbol, _ in merged}
    if resolver is None:
        # process-wide caches
        market = await market_data.resolve_market_data(symbols)
    else:
        market = await resolver.resolve_market_data(symbols)

    return [
        build_record(snapshot, market.get(snapshot.symbol, EMPTY_MARKET_DATA))
        for snapshot in merged.values()
    ]


async def aggregate(
    exchanges: Optional[Iterable[Exchange]] = None,
    resolver: Optional[MarketDataResolver] = None,
    timeout: float = ADAPTER_TIMEOUT_S,
) -> list[UnifiedPerpRecord]:
    """
    One full pass: every venue, merged, enriched with market data.
    Ordering of the result is unspecified.
    """
    start = time.time()
    raw_results = await fetch_all_raw(exchanges, timeout)
    records = await build_records(raw_results, resolver)
    logger.info("[Aggregate] %d records in %.2fs", len(records), time.time() - start)
    return records


def generate_mock_data(rows: int = 200) -> list[UnifiedPerpRecord]:
    """Random records for working on the dashboard without hitting venues."""
    records = []
    now_ms = int(time.time() * 1000)
    symbols = [f"MOCK{i}USDT" for i in range(rows)]

    for ex in ExchangeName:
        for sym in symbols:
            # 10% chance the venue does not list it
            if random.random() < 0.1:
                continue
            price = random.uniform(0.01, 50_000)
            contracts = random.uniform(0, 1_000_000) / price
            snapshot = ContractSnapshot(
                symbol=sym,
                exchange=ex,
                mark_price=price,
                last_price=price * random.uniform(0.999, 1.001),
                open_interest=contracts,
                open_interest_value=contracts * price,
                insurance_fund=random.choice([0.0, random.uniform(1_000, 5_000_000)]),
                volume_24h=random.uniform(0, 50_000_000),
                funding_rate=(random.random() - 0.5) * 0.001,
                next_funding_time=now_ms + random.randint(0, 8) * 3_600_000,
                funding_interval_hours=random.choice([1, 4, 8]),
            )
            market_cap = random.choice([None, random.uniform(1e6, 1e11)])
            market = MarketDataEntry(
                coin_id=sym.lower(),
                market_cap=market_cap,
                fdv=market_cap * random.uniform(1, 3) if market_cap else None,
                name=sym[:-4],
            )
            records.append(build_record(snapshot, market))
    return records


TABLE_COLUMNS = {
    "symbol": "Symbol",
    "exchange": "Exchange",
    "price": "Price",
    "openInterestValue": "OI Value",
    "insuranceFund": "Insurance Fund",
    "fundOiRatio": "Fund/OI %",
    "marketCap": "Market Cap",
    "fdv": "FDV",
    "volume24h": "24h Volume",
    "fundingRate": "Funding Rate",
    "fundingIntervalHours": "Interval (h)",
    "fundingApy": "APY%",
    "nextFundingTime": "Next Funding",
}


def records_to_frame(records: Iterable[UnifiedPerpRecord]) -> pd.DataFrame:
    """
    Flatten records into the dashboard's table, display column names.
    Highest APY first; rows without a funding rate sink to the bottom.
    """
    df = pd.DataFrame([r.to_dict() for r in records])
    if df.empty:
        return pd.DataFrame(columns=list(TABLE_COLUMNS.values()))
    df = df[list(TABLE_COLUMNS)].rename(columns=TABLE_COLUMNS)
    return df.sort_values("APY%", ascending=False, na_position="last", ignore_index=True)


def filter_frame(
    df: pd.DataFrame,
    selected_exchanges: Optional[Iterable[str]] = None,
    search: str = "",
    min_oi_value: float = 0.0,
    min_fund_oi_ratio: float = 0.0,
    min_volume: float = 0.0,
) -> pd.DataFrame:
    if df.empty:
        return df
    mask = pd.Series(True, index=df.index)
    if selected_exchanges is not None:
        mask &= df["Exchange"].isin(list(selected_exchanges))
    if search:
        mask &= df["Symbol"].str.contains(search.strip().upper(), regex=False)
    if min_oi_value:
        mask &= df["OI Value"] >= min_oi_value
    if min_fund_oi_ratio:
        mask &= df["Fund/OI %"] >= min_fund_oi_ratio
    if min_volume:
        mask &= df["24h Volume"] >= min_volume
    return df[mask].reset_index(drop=True)
