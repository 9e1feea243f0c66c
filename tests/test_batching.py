import asyncio

import pytest

from batching import BatchScheduler


@pytest.mark.anyio
async def test_results_keep_item_order(sleep):
    scheduler = BatchScheduler(3, 0.2, sleep=sleep)

    async def double(x):
        # later items finish first inside a batch
        await asyncio.sleep(0.001 * (10 - x))
        return x * 2

    results = await scheduler.run(range(7), double)
    assert results == [0, 2, 4, 6, 8, 10, 12]


@pytest.mark.anyio
async def test_delay_between_batches_only(sleep):
    scheduler = BatchScheduler(3, 0.2, sleep=sleep)

    async def echo(x):
        return x

    await scheduler.run(range(7), echo)
    # 3 batches -> 2 pauses, none after the last
    assert sleep.delays == [0.2, 0.2]

    sleep.delays.clear()
    await scheduler.run(range(3), echo)
    assert sleep.delays == []


@pytest.mark.anyio
async def test_concurrent_within_batch_sequential_across(sleep):
    scheduler = BatchScheduler(4, 0.2, sleep=sleep)
    in_flight = 0
    peak = 0
    finished = set()

    async def worker(x):
        nonlocal in_flight, peak
        # every item of earlier batches is done before this one starts
        assert set(range(x // 4 * 4)) <= finished
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.001)
        in_flight -= 1
        finished.add(x)
        return x

    # a failed ordering assertion would surface as a None slot
    assert await scheduler.run(range(10), worker) == list(range(10))
    assert peak == 4


@pytest.mark.anyio
async def test_failed_worker_yields_none(sleep):
    scheduler = BatchScheduler(2, 0.0, sleep=sleep)

    async def flaky(x):
        if x == 1:
            raise RuntimeError("boom")
        return x

    assert await scheduler.run([0, 1, 2], flaky) == [0, None, 2]


@pytest.mark.anyio
async def test_empty_input(sleep):
    scheduler = BatchScheduler(2, 0.2, sleep=sleep)

    async def never(x):  # pragma: no cover
        raise AssertionError

    assert await scheduler.run([], never) == []
    assert sleep.delays == []


def test_batch_size_must_be_positive():
    with pytest.raises(ValueError):
        BatchScheduler(0, 0.1)
