import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Iterable, Optional

import aiohttp

from batching import BatchScheduler
from models import (
    DEFAULT_INTERVAL_HOURS,
    ContractSnapshot,
    ExchangeName,
    FundingPoint,
    IndexConstituent,
)
from utils import fetch_json

HOUR_MS = 3_600_000
MIN_INTERVAL_H = 1

# Per-symbol calls (open interest, interval inference) are batched to stay
# under venue request weights.
BATCH_SIZE = 15
BATCH_DELAY_S = 0.2


def infer_interval_hours(funding_times: Iterable[int]) -> Optional[int]:
    """
    Funding interval from the two most recent settlement timestamps (ms),
    rounded to the nearest whole hour and floored at 1h.
    Returns None when fewer than two timestamps are available.
    """
    times = sorted((int(t) for t in funding_times if t), reverse=True)
    if len(times) < 2:
        return None
    hrs = abs(times[0] - times[1]) / HOUR_MS
    return max(MIN_INTERVAL_H, math.floor(hrs + 0.5))


def interval_from_minutes(minutes) -> int:
    if not minutes or minutes <= 0:
        return DEFAULT_INTERVAL_HOURS
    return max(MIN_INTERVAL_H, math.floor(minutes / 60 + 0.5))


def assign_pool_balances(
    pools: Iterable[tuple[float, Iterable[str]]],
    universe: Optional[set[str]] = None,
) -> dict[str, float]:
    """
    Every symbol of a shared insurance pool gets the full pool balance.
    A symbol listed in several pools keeps the largest balance seen.
    """
    balances: dict[str, float] = {}
    for balance, symbols in pools:
        if balance <= 0:
            continue
        for symbol in symbols:
            if universe is not None and symbol not in universe:
                continue
            balances[symbol] = max(balances.get(symbol, 0.0), balance)
    return balances


def build_snapshot(
    symbol: str,
    exchange: ExchangeName,
    mark_price: float,
    last_price: float,
    contracts: float = 0.0,
    insurance_fund: float = 0.0,
    volume_24h: float = 0.0,
    funding_rate: float = 0.0,
    next_funding_time: int = 0,
    funding_interval_hours: Optional[int] = None,
) -> Optional[ContractSnapshot]:
    """
    Normalize one symbol into a ContractSnapshot.
    Symbols with neither a positive mark price nor a positive last price are
    dropped (None); missing OI / insurance data just stays at zero.
    """
    mark_price = max(0.0, mark_price or 0.0)
    last_price = max(0.0, last_price or 0.0)
    if mark_price <= 0 and last_price <= 0:
        return None

    price = mark_price if mark_price > 0 else last_price
    contracts = max(0.0, contracts or 0.0)
    interval = int(funding_interval_hours or DEFAULT_INTERVAL_HOURS)

    return ContractSnapshot(
        symbol=symbol,
        exchange=exchange,
        mark_price=mark_price,
        last_price=last_price,
        open_interest=contracts,
        open_interest_value=contracts * price,
        insurance_fund=max(0.0, insurance_fund or 0.0),
        volume_24h=max(0.0, volume_24h or 0.0),
        funding_rate=funding_rate or 0.0,
        next_funding_time=int(next_funding_time or 0),
        funding_interval_hours=max(MIN_INTERVAL_H, interval),
    )


class Exchange(ABC):
    def __init__(
        self,
        name: ExchangeName,
        base_url: str,
        scheduler: Optional[BatchScheduler] = None,
    ):
        self.name = name
        self.base_url = base_url
        self.timeout = aiohttp.ClientTimeout(total=10)
        self.scheduler = scheduler or BatchScheduler(
            BATCH_SIZE, BATCH_DELAY_S, name=name.value
        )
        self.logger = logging.getLogger(name.value)

    async def _get(
        self,
        session: aiohttp.ClientSession,
        path: str,
        params: Optional[dict] = None,
    ) -> Any:
        return await fetch_json(
            session, f"{self.base_url}{path}", params=params, source=self.name.value
        )

    async def _absorb(self, what: str, coro: Awaitable, default: Any) -> Any:
        """Await a sub-call; on any failure log it and hand back ``default``."""
        try:
            return await coro
        except Exception as e:
            self.logger.warning("%s %s failed: %s", self.name.value, what, e)
            return default

    async def fetch_venue_perps(
        self, session: Optional[aiohttp.ClientSession] = None
    ) -> list[ContractSnapshot]:
        """
        All active USDT-settled perpetuals of this venue, normalized.
        Never raises: a venue-wide failure yields an empty list.
        """
        try:
            if session is None:
                async with aiohttp.ClientSession(timeout=self.timeout) as own:
                    return await self._collect(own)
            return await self._collect(session)
        except Exception as e:
            self.logger.error("%s perps fetch failed: %s", self.name.value, e)
            return []

    @abstractmethod
    async def _collect(self, session: aiohttp.ClientSession) -> list[ContractSnapshot]:
        """
        Fetch and merge the venue's endpoints into snapshots.
        Only the symbol-universe call may raise; every other sub-call must
        degrade to an empty/default value.
        """

    @abstractmethod
    async def fetch_funding_history(
        self, symbol: str, session: aiohttp.ClientSession, limit: int = 100
    ) -> list[FundingPoint]:
        """Funding settlements for ``symbol``, oldest first."""

    async def fetch_constituents(
        self, symbol: str, session: aiohttp.ClientSession
    ) -> list[IndexConstituent]:
        return []
