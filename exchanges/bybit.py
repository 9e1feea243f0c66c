import asyncio
from typing import Optional

import aiohttp

from batching import BatchScheduler
from models import ContractSnapshot, ExchangeName, FundingPoint
from utils import UpstreamError

from .base import Exchange, assign_pool_balances, build_snapshot, interval_from_minutes
from .schemas import (
    BybitFundingRate,
    BybitInstrument,
    BybitInsurancePool,
    BybitOpenInterest,
    BybitTicker,
    bybit_result,
    parse_rows,
)

CATEGORY = "linear"
QUOTE_COIN = "USDT"
PAGE_LIMIT = 1000
MAX_PAGES = 10


class Bybit(Exchange):
    def __init__(self, scheduler: Optional[BatchScheduler] = None):
        super().__init__(ExchangeName.BYBIT, "https://api.bybit.com", scheduler)

    async def _get_result(
        self,
        session: aiohttp.ClientSession,
        path: str,
        params: dict,
        what: str,
    ) -> dict:
        data = await self._get(session, path, params)
        return bybit_result(data, f"Bybit {what}")

    async def _fetch_instruments(
        self, session: aiohttp.ClientSession
    ) -> list[BybitInstrument]:
        instruments: list[BybitInstrument] = []
        cursor = ""
        for _ in range(MAX_PAGES):
            params = {"category": CATEGORY, "limit": PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            result = await self._get_result(
                session, "/v5/market/instruments-info", params, "instruments-info"
            )
            instruments.extend(
                parse_rows(BybitInstrument, result.get("list") or [], "Bybit instruments-info")
            )
            cursor = result.get("nextPageCursor") or ""
            if not cursor:
                break

        return [
            i
            for i in instruments
            if i.status == "Trading"
            and i.quoteCoin == QUOTE_COIN
            and i.contractType == "LinearPerpetual"
        ]

    async def _fetch_tickers(
        self, session: aiohttp.ClientSession
    ) -> dict[str, BybitTicker]:
        result = await self._get_result(
            session, "/v5/market/tickers", {"category": CATEGORY}, "tickers"
        )
        rows = parse_rows(BybitTicker, result.get("list") or [], "Bybit tickers")
        return {r.symbol: r for r in rows}

    async def _fetch_insurance_fund(
        self, session: aiohttp.ClientSession, universe: set[str]
    ) -> dict[str, float]:
        """
        Pools list the symbols sharing them as "BTCUSDT,ETHUSDT,...".
        Every listed symbol shows the whole pool balance.
        """
        result = await self._get_result(
            session, "/v5/market/insurance", {"coin": QUOTE_COIN}, "insurance"
        )
        pools = parse_rows(BybitInsurancePool, result.get("list") or [], "Bybit insurance")
        return assign_pool_balances(
            ((p.balance, p.symbol_list()) for p in pools), universe
        )

    async def _fetch_open_interest(
        self, symbol: str, session: aiohttp.ClientSession
    ) -> float:
        # linear contracts report OI in base coin
        result = await self._get_result(
            session,
            "/v5/market/open-interest",
            {"category": CATEGORY, "symbol": symbol, "intervalTime": "5min", "limit": 1},
            f"open-interest {symbol}",
        )
        points = parse_rows(BybitOpenInterest, result.get("list") or [], "Bybit open-interest")
        if not points:
            raise UpstreamError(f"Bybit open-interest {symbol}: no data points")
        return points[0].openInterest

    async def _fetch_open_interests(
        self, symbols: list[str], session: aiohttp.ClientSession
    ) -> dict[str, float]:
        results = await self.scheduler.run(
            symbols, lambda s: self._fetch_open_interest(s, session)
        )
        return {s: oi for s, oi in zip(symbols, results) if oi is not None}

    async def _collect(self, session: aiohttp.ClientSession) -> list[ContractSnapshot]:
        instruments = await self._fetch_instruments(session)
        if not instruments:
            return []
        universe = {i.symbol for i in instruments}

        tickers, insurance = await asyncio.gather(
            self._absorb("tickers", self._fetch_tickers(session), {}),
            self._absorb("insurance", self._fetch_insurance_fund(session, universe), {}),
        )

        priced = [
            i for i in instruments
            if i.symbol in tickers
            and max(tickers[i.symbol].markPrice, tickers[i.symbol].lastPrice) > 0
        ]
        open_interest = await self._fetch_open_interests([i.symbol for i in priced], session)

        results: list[ContractSnapshot] = []
        for instrument in priced:
            ticker = tickers[instrument.symbol]
            snapshot = build_snapshot(
                instrument.symbol,
                self.name,
                mark_price=ticker.markPrice,
                last_price=ticker.lastPrice,
                contracts=open_interest.get(instrument.symbol, 0.0),
                insurance_fund=insurance.get(instrument.symbol, 0.0),
                # turnover24h is already quote-currency volume
                volume_24h=ticker.turnover24h,
                funding_rate=ticker.fundingRate,
                next_funding_time=ticker.nextFundingTime,
                funding_interval_hours=interval_from_minutes(instrument.fundingInterval),
            )
            if snapshot is not None:
                results.append(snapshot)
        return results

    async def fetch_funding_history(
        self, symbol: str, session: aiohttp.ClientSession, limit: int = 100
    ) -> list[FundingPoint]:
        """Bybit answers newest first; flip to oldest first."""
        result = await self._get_result(
            session,
            "/v5/market/funding/history",
            {"category": CATEGORY, "symbol": symbol.upper(), "limit": limit},
            f"funding/history {symbol}",
        )
        rows = parse_rows(BybitFundingRate, result.get("list") or [], "Bybit funding/history")
        points = [FundingPoint(time=r.fundingRateTimestamp, rate=r.fundingRate) for r in rows]
        return sorted(points, key=lambda p: p.time)
