"""Bounded fan-out for per-item and per-account work."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar


T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: int,
    on_error: Optional[Callable[[T, Exception], R]] = None,
) -> List[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight, preserving order.

    When ``on_error`` is given, an item's failure is replaced by its return
    value instead of failing the whole batch.
    """
    semaphore = asyncio.Semaphore(max(int(limit), 1))

    async def _run(item: T) -> R:
        async with semaphore:
            try:
                return await worker(item)
            except Exception as exc:
                if on_error is None:
                    raise
                return on_error(item, exc)

    return list(await asyncio.gather(*(_run(item) for item in items)))
