"""Tests for timeout and bounded fan-out utilities."""

import asyncio

import pytest

from polyarb.utils.resilience import BoundedGather, with_timeout


@pytest.mark.asyncio
async def test_with_timeout_returns_result() -> None:
    async def quick() -> int:
        return 7

    assert await with_timeout(quick(), timeout=1.0) == 7


@pytest.mark.asyncio
async def test_with_timeout_raises_with_message() -> None:
    async def slow() -> None:
        await asyncio.sleep(1.0)

    with pytest.raises(TimeoutError, match="reserves fetch timed out"):
        await with_timeout(slow(), timeout=0.01, error_message="reserves fetch timed out")


@pytest.mark.asyncio
async def test_with_timeout_propagates_errors() -> None:
    async def broken() -> None:
        raise ValueError("bad pool")

    with pytest.raises(ValueError, match="bad pool"):
        await with_timeout(broken(), timeout=1.0)


@pytest.mark.asyncio
async def test_bounded_gather_limits_concurrency() -> None:
    in_flight = 0
    peak = 0

    async def work(item: int) -> int:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return item * 2

    results = await BoundedGather(max_concurrency=2).map(work, range(6))
    assert results == [0, 2, 4, 6, 8, 10]
    assert peak == 2


@pytest.mark.asyncio
async def test_bounded_gather_isolates_failures() -> None:
    async def work(item: int) -> int:
        if item == 1:
            raise RuntimeError("quote failed")
        return item

    results = await BoundedGather(max_concurrency=4).map(work, [0, 1, 2])
    assert results[0] == 0
    assert isinstance(results[1], RuntimeError)
    assert results[2] == 2


def test_bounded_gather_rejects_zero_concurrency() -> None:
    with pytest.raises(ValueError, match="max_concurrency"):
        BoundedGather(max_concurrency=0)
