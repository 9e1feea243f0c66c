import asyncio
from typing import Optional

import aiohttp

from batching import BatchScheduler
from models import (
    DEFAULT_INTERVAL_HOURS,
    ContractSnapshot,
    ExchangeName,
    FundingPoint,
    IndexConstituent,
)
from ttl_cache import TTLCache

from .base import Exchange, assign_pool_balances, build_snapshot, infer_interval_hours
from .schemas import (
    BinanceConstituent,
    BinanceConstituents,
    BinanceExchangeInfo,
    BinanceFundingInfo,
    BinanceFundingRate,
    BinanceInsuranceGroup,
    BinanceOpenInterest,
    BinancePremiumIndex,
    BinanceSymbolInfo,
    BinanceTicker24h,
    parse_model,
    parse_rows,
)

QUOTE_ASSET = "USDT"
# Inferred intervals rarely change; re-check hourly.
INTERVAL_CACHE_TTL_S = 3600


class Binance(Exchange):
    def __init__(
        self,
        scheduler: Optional[BatchScheduler] = None,
        interval_cache: Optional[TTLCache] = None,
    ):
        super().__init__(ExchangeName.BINANCE, "https://fapi.binance.com", scheduler)
        if interval_cache is None:
            interval_cache = TTLCache(INTERVAL_CACHE_TTL_S)
        self.interval_cache = interval_cache

    def _normalize_symbol(self, symbol: str) -> str:
        return symbol.upper()

    # =============================
    # Bulk endpoints
    # =============================

    async def _fetch_symbols(self, session: aiohttp.ClientSession) -> list[str]:
        data = await self._get(session, "/fapi/v1/exchangeInfo")
        info = parse_model(BinanceExchangeInfo, data, "Binance exchangeInfo")
        rows = parse_rows(BinanceSymbolInfo, info.symbols, "Binance exchangeInfo")
        return [
            s.symbol
            for s in rows
            if s.contractType == "PERPETUAL"
            and s.status == "TRADING"
            and s.quoteAsset == QUOTE_ASSET
        ]

    async def _fetch_premium_index(
        self, session: aiohttp.ClientSession
    ) -> dict[str, BinancePremiumIndex]:
        data = await self._get(session, "/fapi/v1/premiumIndex")
        rows = parse_rows(BinancePremiumIndex, data, "Binance premiumIndex")
        return {r.symbol: r for r in rows}

    async def _fetch_tickers(
        self, session: aiohttp.ClientSession
    ) -> dict[str, BinanceTicker24h]:
        data = await self._get(session, "/fapi/v1/ticker/24hr")
        rows = parse_rows(BinanceTicker24h, data, "Binance ticker/24hr")
        return {r.symbol: r for r in rows}

    async def _fetch_insurance_fund(
        self, session: aiohttp.ClientSession, universe: set[str]
    ) -> dict[str, float]:
        """
        Without a symbol the endpoint returns one entry per shared fund.
        Each symbol of a group is credited with the group's whole USDT
        balance.
        """
        data = await self._get(session, "/fapi/v1/insuranceBalance")
        if isinstance(data, dict):
            data = [data]
        groups = parse_rows(BinanceInsuranceGroup, data, "Binance insuranceBalance")

        pools = []
        for group in groups:
            usdt = next((a for a in group.assets if a.asset == QUOTE_ASSET), None)
            if usdt is None:
                continue
            # delivery contracts look like BTCUSDT_250926
            perps = [s for s in group.symbols if "_" not in s]
            pools.append((usdt.marginBalance, perps))
        return assign_pool_balances(pools, universe)

    async def _fetch_funding_info(self, session: aiohttp.ClientSession) -> dict[str, int]:
        """Only symbols with an adjusted interval are listed here."""
        data = await self._get(session, "/fapi/v1/fundingInfo")
        rows = parse_rows(BinanceFundingInfo, data, "Binance fundingInfo")
        return {r.symbol: r.fundingIntervalHours for r in rows if r.fundingIntervalHours > 0}

    # =============================
    # Per-symbol endpoints
    # =============================

    async def _fetch_open_interest(
        self, symbol: str, session: aiohttp.ClientSession
    ) -> float:
        # contracts only; notional is computed from our own price
        data = await self._get(session, "/fapi/v1/openInterest", {"symbol": symbol})
        return parse_model(BinanceOpenInterest, data, f"Binance openInterest {symbol}").openInterest

    async def _fetch_open_interests(
        self, symbols: list[str], session: aiohttp.ClientSession
    ) -> dict[str, float]:
        results = await self.scheduler.run(
            symbols, lambda s: self._fetch_open_interest(s, session)
        )
        return {s: oi for s, oi in zip(symbols, results) if oi is not None}

    async def _fetch_interval_hours(
        self, symbol: str, session: aiohttp.ClientSession
    ) -> Optional[int]:
        """
        Infer the funding interval from the last two fundingRate settlements.
        """
        norm_symbol = self._normalize_symbol(symbol)
        cached = self.interval_cache.get(norm_symbol)
        if cached is not None:
            return cached

        data = await self._get(
            session, "/fapi/v1/fundingRate", {"symbol": norm_symbol, "limit": 2}
        )
        rows = parse_rows(BinanceFundingRate, data, f"Binance fundingRate {norm_symbol}")
        hrs = infer_interval_hours(r.fundingTime for r in rows)
        if hrs is not None:
            self.interval_cache.set(norm_symbol, hrs)
        return hrs

    async def _resolve_intervals(
        self, symbols: list[str], session: aiohttp.ClientSession
    ) -> dict[str, int]:
        adjusted = await self._absorb("fundingInfo", self._fetch_funding_info(session), None)
        if adjusted is not None:
            return {s: adjusted.get(s, DEFAULT_INTERVAL_HOURS) for s in symbols}

        # fundingInfo unavailable: fall back to per-symbol inference
        results = await self.scheduler.run(
            symbols, lambda s: self._fetch_interval_hours(s, session)
        )
        return {s: (hrs or DEFAULT_INTERVAL_HOURS) for s, hrs in zip(symbols, results)}

    # =============================
    # Public interface
    # =============================

    async def _collect(self, session: aiohttp.ClientSession) -> list[ContractSnapshot]:
        symbols = await self._fetch_symbols(session)
        if not symbols:
            return []

        premium, tickers, insurance = await asyncio.gather(
            self._absorb("premiumIndex", self._fetch_premium_index(session), {}),
            self._absorb("ticker/24hr", self._fetch_tickers(session), {}),
            self._absorb(
                "insuranceBalance", self._fetch_insurance_fund(session, set(symbols)), {}
            ),
        )

        def prices(symbol: str) -> tuple[float, float]:
            p, t = premium.get(symbol), tickers.get(symbol)
            return (p.markPrice if p else 0.0, t.lastPrice if t else 0.0)

        # no point spending request weight on symbols we will drop
        priced = [s for s in symbols if max(prices(s)) > 0]
        open_interest = await self._fetch_open_interests(priced, session)
        intervals = await self._resolve_intervals(priced, session)

        results: list[ContractSnapshot] = []
        for symbol in priced:
            p, t = premium.get(symbol), tickers.get(symbol)
            mark_price, last_price = prices(symbol)
            snapshot = build_snapshot(
                symbol,
                self.name,
                mark_price=mark_price,
                last_price=last_price,
                contracts=open_interest.get(symbol, 0.0),
                insurance_fund=insurance.get(symbol, 0.0),
                volume_24h=t.quoteVolume if t else 0.0,
                funding_rate=p.lastFundingRate if p else 0.0,
                next_funding_time=p.nextFundingTime if p else 0,
                funding_interval_hours=intervals.get(symbol),
            )
            if snapshot is not None:
                results.append(snapshot)
        return results

    async def fetch_funding_history(
        self, symbol: str, session: aiohttp.ClientSession, limit: int = 100
    ) -> list[FundingPoint]:
        norm_symbol = self._normalize_symbol(symbol)
        data = await self._get(
            session, "/fapi/v1/fundingRate", {"symbol": norm_symbol, "limit": limit}
        )
        rows = parse_rows(BinanceFundingRate, data, f"Binance fundingRate {norm_symbol}")
        points = [FundingPoint(time=r.fundingTime, rate=r.fundingRate) for r in rows]
        return sorted(points, key=lambda p: p.time)

    async def fetch_constituents(
        self, symbol: str, session: aiohttp.ClientSession
    ) -> list[IndexConstituent]:
        norm_symbol = self._normalize_symbol(symbol)
        data = await self._get(session, "/fapi/v1/constituents", {"symbol": norm_symbol})
        payload = parse_model(BinanceConstituents, data, f"Binance constituents {norm_symbol}")
        rows = parse_rows(BinanceConstituent, payload.constituents, "Binance constituents")
        return [
            IndexConstituent(exchange=r.exchange, symbol=r.symbol, price=r.price, weight=r.weight)
            for r in rows
        ]
