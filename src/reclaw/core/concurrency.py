from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")


async def run_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    worker: Callable[[T, int], Awaitable[None]],
) -> None:
    """Drain ``items`` with at most ``concurrency`` workers.

    Each item is claimed by exactly one worker. Returns once every worker has drained
    the queue; an exception raised by ``worker`` propagates after siblings are cancelled.
    """
    if not items:
        return

    pool_size = max(1, min(concurrency, len(items)))
    queue: asyncio.Queue[tuple[int, T]] = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    async def consume() -> None:
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await worker(item, index)

    tasks = [asyncio.create_task(consume()) for _ in range(pool_size)]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
