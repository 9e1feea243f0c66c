import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger("batching")


class BatchScheduler:
    """
    Run one coroutine per item in fixed-size batches.

    Requests inside a batch run concurrently, batches run one after another
    with ``delay`` seconds between them (none after the last batch). This is
    the only backpressure we apply against venue rate limits.
    """

    def __init__(
        self,
        batch_size: int,
        delay: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "batch",
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.delay = delay
        self._sleep = sleep
        self.name = name

    async def run(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[Any]],
    ) -> list[Optional[Any]]:
        """
        Returns results aligned with ``items``. A worker that raises yields
        None in its slot; the rest of the batch is unaffected.
        """
        items = list(items)
        results: list[Optional[Any]] = []
        for start in range(0, len(items), self.batch_size):
            batch = items[start:start + self.batch_size]
            outcome = await asyncio.gather(
                *(worker(item) for item in batch), return_exceptions=True
            )
            for item, res in zip(batch, outcome):
                if isinstance(res, BaseException):
                    logger.warning("[%s] %s failed: %s", self.name, item, res)
                    results.append(None)
                else:
                    results.append(res)

            if start + self.batch_size < len(items) and self.delay > 0:
                await self._sleep(self.delay)
        return results
