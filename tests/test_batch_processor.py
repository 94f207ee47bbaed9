import asyncio

import pytest

from shared.batch_processor import BatchProcessor


@pytest.mark.asyncio
async def test_results_keep_input_order():
    processor = BatchProcessor(batch_size=3, concurrency=2, delay_between_batches=0)

    async def double(value):
        await asyncio.sleep(0.001 * (10 - value))
        return value * 2

    results = await processor.process(list(range(7)), double)
    assert results == [0, 2, 4, 6, 8, 10, 12]


@pytest.mark.asyncio
async def test_exceptions_are_returned_not_raised():
    processor = BatchProcessor(batch_size=10, concurrency=5, delay_between_batches=0)

    async def fail_on_odd(value):
        if value % 2:
            raise RuntimeError(f"odd {value}")
        return value

    results = await processor.process([0, 1, 2, 3], fail_on_odd)

    assert results[0] == 0
    assert isinstance(results[1], RuntimeError)
    assert results[2] == 2
    assert isinstance(results[3], RuntimeError)


@pytest.mark.asyncio
async def test_concurrency_is_capped():
    processor = BatchProcessor(batch_size=20, concurrency=3, delay_between_batches=0)
    in_flight = 0
    peak = 0

    async def track(_):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.005)
        in_flight -= 1

    await processor.process(list(range(12)), track)
    assert peak == 3


@pytest.mark.asyncio
async def test_sleeps_between_batches_only(monkeypatch):
    sleeps = []
    real_sleep = asyncio.sleep

    async def record_sleep(delay):
        sleeps.append(delay)
        await real_sleep(0)

    monkeypatch.setattr("shared.batch_processor.asyncio.sleep", record_sleep)
    processor = BatchProcessor(batch_size=2, concurrency=2, delay_between_batches=0.25)

    async def identity(value):
        return value

    await processor.process([1, 2, 3, 4, 5], identity)
    assert sleeps == [0.25, 0.25]


@pytest.mark.asyncio
async def test_empty_input():
    processor = BatchProcessor()

    async def never(_):
        raise AssertionError("should not run")

    assert await processor.process([], never) == []
