import asyncio

import pytest

from services.platforms.concurrency import gather_bounded


@pytest.mark.asyncio
async def test_gather_bounded_limits_in_flight_work_and_keeps_order():
    in_flight = {"now": 0, "peak": 0}

    async def worker(item: int) -> int:
        in_flight["now"] += 1
        in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
        await asyncio.sleep(0.01)
        in_flight["now"] -= 1
        return item * 10

    results = await gather_bounded(range(12), worker, limit=3)

    assert results == [item * 10 for item in range(12)]
    assert in_flight["peak"] == 3


@pytest.mark.asyncio
async def test_gather_bounded_replaces_failed_items_with_fallback():
    async def worker(item: str) -> str:
        if item == "bad":
            raise ValueError("insights unavailable")
        return item.upper()

    results = await gather_bounded(["a", "bad", "c"], worker, limit=2, on_error=lambda item, exc: f"{item}:zero")

    assert results == ["A", "bad:zero", "C"]


@pytest.mark.asyncio
async def test_gather_bounded_without_fallback_raises():
    async def worker(item: str) -> str:
        raise RuntimeError(f"{item} failed")

    with pytest.raises(RuntimeError):
        await gather_bounded(["a"], worker, limit=1)
