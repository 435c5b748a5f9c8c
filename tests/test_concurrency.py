from __future__ import annotations

import asyncio

import pytest

from reclaw.core.concurrency import run_with_concurrency


def test_each_item_is_processed_exactly_once_within_the_limit() -> None:
    seen: list[int] = []
    active = 0
    peak = 0

    async def worker(item: int, _index: int) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        seen.append(item)
        active -= 1

    asyncio.run(run_with_concurrency(list(range(10)), 3, worker))

    assert sorted(seen) == list(range(10))
    assert peak <= 3


def test_pool_is_clamped_to_item_count_and_empty_input_is_a_noop() -> None:
    calls: list[tuple[str, int]] = []

    async def worker(item: str, index: int) -> None:
        calls.append((item, index))

    asyncio.run(run_with_concurrency([], 4, worker))
    asyncio.run(run_with_concurrency(["a"], 8, worker))

    assert calls == [("a", 0)]


def test_worker_errors_propagate() -> None:
    async def worker(item: int, _index: int) -> None:
        if item == 2:
            raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        asyncio.run(run_with_concurrency([1, 2, 3], 2, worker))
