"""
Market cap / FDV lookup for contract symbols via CoinGecko.

Contract symbol -> base asset -> CoinGecko id -> /coins/markets row.
Id resolution is cached forever, market rows for MARKET_DATA_TTL_S.
Nothing here raises to the caller: a symbol we cannot resolve simply maps
to an empty MarketDataEntry.
"""
import logging
import re
from typing import Iterable, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict

from batching import BatchScheduler
from exchanges.schemas import parse_rows
from models import EMPTY_MARKET_DATA, MarketDataEntry
from ttl_cache import TTLCache
from utils import fetch_json

logger = logging.getLogger("market_data")

COINGECKO_API_BASE = "https://api.coingecko.com/api/v3"
MARKET_DATA_TTL_S = 300
MISS_TTL_S = MARKET_DATA_TTL_S
MARKETS_BATCH_SIZE = 100
LOOKUP_CONCURRENCY = 5
BATCH_DELAY_S = 0.3

# longest first so "BUSD" is not read as "B" + "USD"
QUOTE_SUFFIXES = ("USDT", "BUSD", "USDC", "USD", "EUR", "GBP")
# 1000PEPEUSDT, 10000SATSUSDT, 10000000AIDOGEUSDT ...
MULTIPLIER_PREFIX = re.compile(r"^10{3,}(?=[A-Z])")

SYMBOL_TO_COINGECKO_ID = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "TRX": "tron",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "POL": "polygon-ecosystem-token",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "ATOM": "cosmos",
    "ETC": "ethereum-classic",
    "LTC": "litecoin",
    "NEAR": "near",
    "APT": "aptos",
    "ARB": "arbitrum",
    "OP": "optimism",
    "SUI": "sui",
    "INJ": "injective-protocol",
    "TIA": "celestia",
    "SEI": "sei-network",
    "WLD": "worldcoin-wld",
    "PEPE": "pepe",
    "SHIB": "shiba-inu",
    "FLOKI": "floki",
    "CRV": "curve-dao-token",
    "AAVE": "aave",
    "MKR": "maker",
    "COMP": "compound-governance-token",
    "SNX": "havven",
    "SUSHI": "sushi",
    "1INCH": "1inch",
    "YFI": "yearn-finance",
    "BAL": "balancer",
    "ALPHA": "alpha-finance",
    "CAKE": "pancakeswap-token",
    "FTM": "fantom",
    "ALGO": "algorand",
    "FIL": "filecoin",
    "ICP": "internet-computer",
    "THETA": "theta-token",
    "EOS": "eos",
    "XLM": "stellar",
    "VET": "vechain",
    "HBAR": "hedera-hashgraph",
    "AXS": "axie-infinity",
    "SAND": "the-sandbox",
    "MANA": "decentraland",
    "GALA": "gala",
    "ENJ": "enjincoin",
    "CHZ": "chiliz",
    "FLOW": "flow",
    "EGLD": "elrond-erd-2",
    "ZIL": "zilliqa",
    "IOTA": "iota",
    "XTZ": "tezos",
    "KLAY": "klay-token",
    "ZEC": "zcash",
    "DASH": "dash",
    "BCH": "bitcoin-cash",
}


class CoinGeckoSearchCoin(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    symbol: str = ""
    name: str = ""


class CoinGeckoMarket(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: Optional[str] = None
    image: Optional[str] = None
    market_cap: Optional[float] = None
    fully_diluted_valuation: Optional[float] = None

    def to_entry(self) -> MarketDataEntry:
        # CoinGecko reports 0 for "unknown"
        return MarketDataEntry(
            coin_id=self.id,
            market_cap=self.market_cap or None,
            fdv=self.fully_diluted_valuation or None,
            name=self.name,
            image=self.image,
        )


def extract_base_symbol(symbol: str) -> str:
    """BTCUSDT -> BTC, 1000PEPEUSDT -> PEPE, ETHUSD -> ETH."""
    s = symbol.upper().strip()
    for suffix in QUOTE_SUFFIXES:
        if s.endswith(suffix) and len(s) > len(suffix):
            s = s[: -len(suffix)]
            break
    return MULTIPLIER_PREFIX.sub("", s)


class MarketDataResolver:
    def __init__(
        self,
        base_url: str = COINGECKO_API_BASE,
        market_cache: Optional[TTLCache] = None,
        id_cache: Optional[TTLCache] = None,
        miss_cache: Optional[TTLCache] = None,
        lookup_scheduler: Optional[BatchScheduler] = None,
        markets_scheduler: Optional[BatchScheduler] = None,
        static_ids: Optional[dict[str, str]] = None,
    ):
        self.base_url = base_url
        self.timeout = aiohttp.ClientTimeout(total=15)
        self.market_cache = market_cache if market_cache is not None else TTLCache(MARKET_DATA_TTL_S)
        # ticker -> id is stable, keep it for the life of the process
        self.id_cache = id_cache if id_cache is not None else TTLCache(None)
        self.miss_cache = miss_cache if miss_cache is not None else TTLCache(MISS_TTL_S)
        self.lookup_scheduler = lookup_scheduler or BatchScheduler(
            LOOKUP_CONCURRENCY, BATCH_DELAY_S, name="coingecko-search"
        )
        # one /coins/markets call at a time
        self.markets_scheduler = markets_scheduler or BatchScheduler(
            1, BATCH_DELAY_S, name="coingecko-markets"
        )
        self.static_ids = SYMBOL_TO_COINGECKO_ID if static_ids is None else static_ids

    async def resolve_market_data(
        self,
        symbols: Iterable[str],
        session: Optional[aiohttp.ClientSession] = None,
    ) -> dict[str, MarketDataEntry]:
        """
        Map every contract symbol to its market data. Unresolvable symbols
        map to an empty entry (market_cap/fdv None).
        """
        symbols = list(dict.fromkeys(s for s in symbols if s))
        if not symbols:
            return {}
        if session is None:
            async with aiohttp.ClientSession(timeout=self.timeout) as own:
                return await self._resolve(symbols, own)
        return await self._resolve(symbols, session)

    async def _resolve(
        self, symbols: list[str], session: aiohttp.ClientSession
    ) -> dict[str, MarketDataEntry]:
        base_by_symbol = {s: extract_base_symbol(s) for s in symbols}
        bases = list(dict.fromkeys(base_by_symbol.values()))

        ids_by_base = await self._resolve_ids(bases, session)
        entries = await self._fetch_entries(set(ids_by_base.values()), session)

        result: dict[str, MarketDataEntry] = {}
        for symbol, base in base_by_symbol.items():
            coin_id = ids_by_base.get(base)
            result[symbol] = entries.get(coin_id, EMPTY_MARKET_DATA) if coin_id else EMPTY_MARKET_DATA

        logger.info(
            "[MarketData] %d symbols -> %d assets -> %d ids (%d with data)",
            len(symbols),
            len(bases),
            len(ids_by_base),
            sum(1 for e in entries.values() if e.market_cap is not None),
        )
        return result

    # =============================
    # ticker -> CoinGecko id
    # =============================

    async def _resolve_ids(
        self, bases: list[str], session: aiohttp.ClientSession
    ) -> dict[str, str]:
        resolved: dict[str, str] = {}
        pending: list[str] = []
        for base in bases:
            coin_id = self.static_ids.get(base) or self.id_cache.get(base)
            if coin_id:
                resolved[base] = coin_id
            elif base not in self.miss_cache:
                pending.append(base)

        if pending:
            found = await self.lookup_scheduler.run(
                pending, lambda b: self._search_coin_id(b, session)
            )
            for base, coin_id in zip(pending, found):
                if coin_id:
                    resolved[base] = coin_id
        return resolved

    async def _search_coin_id(
        self, base: str, session: aiohttp.ClientSession
    ) -> Optional[str]:
        """
        Exact, case-insensitive ticker match against /search. Network errors
        propagate (and are not cached); a clean "no match" is remembered for
        MISS_TTL_S.
        """
        data = await fetch_json(
            session, f"{self.base_url}/search", {"query": base}, source="CoinGecko"
        )
        coins = parse_rows(CoinGeckoSearchCoin, (data or {}).get("coins") or [], "CoinGecko search")
        match = next((c for c in coins if c.symbol.upper() == base.upper()), None)
        if match is None:
            self.miss_cache.set(base, True)
            return None
        self.id_cache.set(base, match.id)
        return match.id

    # =============================
    # id -> market data
    # =============================

    async def _fetch_entries(
        self, coin_ids: set[str], session: aiohttp.ClientSession
    ) -> dict[str, MarketDataEntry]:
        entries: dict[str, MarketDataEntry] = {}
        stale: list[str] = []
        for coin_id in sorted(coin_ids):
            cached = self.market_cache.get(coin_id)
            if cached is not None:
                entries[coin_id] = cached
            else:
                stale.append(coin_id)

        if not stale:
            return entries

        chunks = [
            stale[i:i + MARKETS_BATCH_SIZE]
            for i in range(0, len(stale), MARKETS_BATCH_SIZE)
        ]
        fetched = await self.markets_scheduler.run(
            chunks, lambda chunk: self._fetch_markets(chunk, session)
        )
        for chunk, rows in zip(chunks, fetched):
            if rows is None:
                # failed chunk: leave blank, try again next poll
                continue
            for coin_id in chunk:
                entry = rows.get(coin_id) or MarketDataEntry(coin_id=coin_id)
                self.market_cache.set(coin_id, entry)
                entries[coin_id] = entry
        return entries

    async def _fetch_markets(
        self, coin_ids: list[str], session: aiohttp.ClientSession
    ) -> dict[str, MarketDataEntry]:
        params = {
            "vs_currency": "usd",
            "ids": ",".join(coin_ids),
            "per_page": len(coin_ids),
            "page": 1,
            "sparkline": "false",
        }
        data = await fetch_json(
            session, f"{self.base_url}/coins/markets", params, source="CoinGecko"
        )
        rows = parse_rows(CoinGeckoMarket, data, "CoinGecko markets")
        return {r.id: r.to_entry() for r in rows}


DEFAULT_RESOLVER = MarketDataResolver()


async def resolve_market_data(
    symbols: Iterable[str],
    session: Optional[aiohttp.ClientSession] = None,
) -> dict[str, MarketDataEntry]:
    """Module-level entry point sharing the process-wide caches."""
    return await DEFAULT_RESOLVER.resolve_market_data(symbols, session)
