import logging
import time
from typing import Any, Optional

import aiohttp

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class UpstreamError(Exception):
    """An upstream REST call answered with something we cannot use."""


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )
    # aiohttp access lines are noisy at INFO
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


async def fetch_json(
    session: aiohttp.ClientSession,
    url: str,
    params: Optional[dict] = None,
    source: str = "upstream",
) -> Any:
    """
    GET ``url`` and decode the JSON body.
    Raises UpstreamError on any non-200 status.
    """
    async with session.get(url, params=params) as resp:
        if resp.status != 200:
            raise UpstreamError(f"{source} API error: {resp.status} ({url})")
        return await resp.json(content_type=None)


def to_float(value, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def now_ms() -> int:
    return int(time.time() * 1000)


def format_rate(rate) -> str:
    if rate is None:
        return "-"
    return f"{rate * 100:.4f}%"


def format_timestamp(ts_ms) -> str:
    if not ts_ms:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(int(ts_ms) / 1000))


def format_countdown(ts_ms, now: Optional[int] = None) -> str:
    """Time left until ``ts_ms``: 3h20m, or 4m05s inside the last hour."""
    if not ts_ms:
        return "-"
    left_s = (int(ts_ms) - (now_ms() if now is None else now)) // 1000
    if left_s <= 0:
        return "00m00s"
    hours, rest = divmod(left_s, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    return f"{minutes:02d}m{seconds:02d}s"


def format_usd(value) -> str:
    """Compact dollar figure: 1.23B / 45.6M / 7.8K."""
    if value is None:
        return "-"
    value = float(value)
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if abs(value) >= threshold:
            return f"${value / threshold:.2f}{suffix}"
    return f"${value:.2f}"
