import logging
from typing import Optional

import aiohttp

from exchanges.base import Exchange
from exchanges.binance import Binance
from exchanges.bybit import Bybit
from models import ExchangeName, FundingHistory

logger = logging.getLogger("funding_history")

HISTORY_LIMIT = 100
ADAPTERS: dict[ExchangeName, type[Exchange]] = {
    ExchangeName.BINANCE: Binance,
    ExchangeName.BYBIT: Bybit,
}


def parse_exchange(name: str) -> ExchangeName:
    """Case-insensitive venue lookup; ValueError for anything unsupported."""
    for exchange in ExchangeName:
        if exchange.value.lower() == (name or "").strip().lower():
            return exchange
    raise ValueError(f"Unsupported exchange: {name}")


async def fetch_funding_history(
    symbol: str,
    exchange: str,
    session: Optional[aiohttp.ClientSession] = None,
    adapter: Optional[Exchange] = None,
) -> FundingHistory:
    """
    Recent funding settlements for one contract, oldest first, plus the
    index constituents when the venue publishes them. A failing history call
    raises; a failing constituents call only leaves the list empty.
    """
    venue = parse_exchange(exchange)
    adapter = adapter or ADAPTERS[venue]()

    if session is None:
        async with aiohttp.ClientSession(timeout=adapter.timeout) as own:
            return await _fetch(adapter, symbol, own)
    return await _fetch(adapter, symbol, session)


async def _fetch(
    adapter: Exchange, symbol: str, session: aiohttp.ClientSession
) -> FundingHistory:
    points = await adapter.fetch_funding_history(symbol, session, limit=HISTORY_LIMIT)
    try:
        constituents = await adapter.fetch_constituents(symbol, session)
    except Exception as e:
        logger.warning("%s constituents for %s unavailable: %s", adapter.name.value, symbol, e)
        constituents = []
    return FundingHistory(points=points, constituents=constituents)
