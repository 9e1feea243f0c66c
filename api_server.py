import functools
import logging
from typing import Awaitable, Callable, Optional

from aiohttp import web

import perps_core
from funding_history import fetch_funding_history, parse_exchange
from market_data import DEFAULT_RESOLVER, MarketDataResolver
from models import FundingHistory, UnifiedPerpRecord
from utils import now_ms

logger = logging.getLogger("api_server")

Aggregator = Callable[[], Awaitable[list[UnifiedPerpRecord]]]
HistoryFetcher = Callable[[str, str], Awaitable[FundingHistory]]

AGGREGATOR = web.AppKey("aggregator")
RESOLVER = web.AppKey("resolver")
HISTORY_FETCHER = web.AppKey("history_fetcher")


async def handle_perps(request: web.Request) -> web.Response:
    try:
        records = await request.app[AGGREGATOR]()
    except Exception:
        logger.exception("Aggregation failed")
        return web.json_response(
            {"success": False, "error": "Failed to fetch perpetual data", "data": []},
            status=500,
        )
    return web.json_response(
        {"success": True, "data": [r.to_dict() for r in records], "timestamp": now_ms()}
    )


async def handle_market_data(request: web.Request) -> web.Response:
    """GET /api/market-data?symbols=BTCUSDT,ETHUSDT"""
    symbols_param = request.query.get("symbols")
    if symbols_param is None:
        return web.json_response(
            {"success": False, "error": "Missing symbols parameter", "data": {}},
            status=400,
        )

    symbols = [s.strip() for s in symbols_param.split(",") if s.strip()]
    if not symbols:
        return web.json_response({"success": True, "data": {}, "timestamp": now_ms()})

    try:
        market = await request.app[RESOLVER].resolve_market_data(symbols)
    except Exception:
        logger.exception("Market data lookup failed")
        return web.json_response(
            {"success": False, "error": "Failed to fetch market data", "data": {}},
            status=500,
        )
    return web.json_response(
        {
            "success": True,
            "data": {symbol: entry.to_dict() for symbol, entry in market.items()},
            "timestamp": now_ms(),
        }
    )


async def handle_funding_history(request: web.Request) -> web.Response:
    """GET /api/funding-history?symbol=BTCUSDT&exchange=Binance"""
    symbol = request.query.get("symbol", "").strip()
    exchange = request.query.get("exchange", "").strip()

    def failure(message: str, status: int) -> web.Response:
        return web.json_response(
            {"success": False, "error": message, "data": [], "constituents": []},
            status=status,
        )

    if not symbol or not exchange:
        return failure("Missing symbol or exchange", 400)
    try:
        parse_exchange(exchange)
    except ValueError as e:
        return failure(str(e), 400)

    try:
        history = await request.app[HISTORY_FETCHER](symbol, exchange)
    except Exception:
        logger.exception("Funding history for %s on %s failed", symbol, exchange)
        return failure("Failed to fetch history", 500)

    return web.json_response(
        {
            "success": True,
            "data": [p.to_dict() for p in history.points],
            "constituents": [c.to_dict() for c in history.constituents],
        }
    )


def create_app(
    aggregator: Optional[Aggregator] = None,
    resolver: Optional[MarketDataResolver] = None,
    history_fetcher: Optional[HistoryFetcher] = None,
) -> web.Application:
    resolver = resolver or DEFAULT_RESOLVER
    app = web.Application()
    app[RESOLVER] = resolver
    app[AGGREGATOR] = aggregator or functools.partial(perps_core.aggregate, resolver=resolver)
    app[HISTORY_FETCHER] = history_fetcher or fetch_funding_history
    app.router.add_get("/api/perps", handle_perps)
    app.router.add_get("/api/market-data", handle_market_data)
    app.router.add_get("/api/funding-history", handle_funding_history)
    return app


def run_server(host: str = "127.0.0.1", port: int = 8080) -> None:
    logger.info("Serving perps API on http://%s:%d", host, port)
    web.run_app(create_app(), host=host, port=port, print=None)
