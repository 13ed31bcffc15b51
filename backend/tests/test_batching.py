"""
run_in_batches: fixed-width chunks, inter-chunk delay, failures isolated.
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from utils.batching import run_in_batches

pytestmark = pytest.mark.asyncio


async def test_results_keep_order_and_sleep_between_chunks():
    sleep = AsyncMock()

    async def double(x):
        return x * 2

    results = await run_in_batches(list(range(7)), double, batch_size=3, delay_seconds=0.5, sleep=sleep)
    assert results == [0, 2, 4, 6, 8, 10, 12]
    assert sleep.await_count == 2
    sleep.assert_awaited_with(0.5)


async def test_failure_does_not_stop_other_items():
    async def worker(x):
        if x == 2:
            raise RuntimeError("boom")
        return x

    results = await run_in_batches([1, 2, 3, 4], worker, batch_size=2, delay_seconds=0, sleep=AsyncMock())
    assert results[0] == 1
    assert isinstance(results[1], RuntimeError)
    assert results[2:] == [3, 4]


async def test_chunk_runs_concurrently():
    in_flight = 0
    peak = 0

    async def worker(x):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return x

    await run_in_batches(list(range(6)), worker, batch_size=3, delay_seconds=0, sleep=AsyncMock())
    assert peak == 3


async def test_empty_input():
    sleep = AsyncMock()
    assert await run_in_batches([], AsyncMock(), sleep=sleep) == []
    sleep.assert_not_awaited()
