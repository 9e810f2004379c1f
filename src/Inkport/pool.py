"""Concurrency primitives shared by the upserter, resolver and media pipeline.

- ``run_bounded``: a task queue drained by a fixed number of workers.
- ``KeyedLocks``: per-key asyncio locks for single-flight creation.
- ``retry_async``: bounded retry with exponential backoff.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable, Sequence
from typing import TypeVar

import structlog

log = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
) -> list[R]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Items are dequeued in input order; results are returned in input order even
    though individual calls may finish out of order. The first exception raised
    by a worker cancels the remaining workers and propagates, so callers that
    need per-item isolation must catch inside ``worker``.
    """
    if not items:
        return []
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    queue: asyncio.Queue[tuple[int, T]] = asyncio.Queue()
    for idx, item in enumerate(items):
        queue.put_nowait((idx, item))
    results: list[R | None] = [None] * len(items)

    async def _drain() -> None:
        while True:
            try:
                idx, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                results[idx] = await worker(item)
            finally:
                queue.task_done()

    workers = [asyncio.create_task(_drain()) for _ in range(min(concurrency, len(items)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return results  # type: ignore[return-value]


class KeyedLocks:
    """One ``asyncio.Lock`` per key, alive only while someone holds or awaits it.

    Used as ``async with locks.hold(key):`` so that concurrent callers for the
    same key run one at a time while different keys proceed in parallel.
    A key's lock is dropped once its last holder releases it.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        # No await between lookup and registration, so this is atomic on the loop
        lk = self._locks.get(key)
        if lk is None:
            lk = asyncio.Lock()
            self._locks[key] = lk
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lk:
                yield None
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


async def retry_async(
    fn: Callable[[], Awaitable[R]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    should_retry: Callable[[BaseException], bool] | None = None,
    label: str = "operation",
) -> R:
    """Call ``fn`` up to ``attempts`` times.

    Exponential backoff: base_delay * 2^i between attempts. The last error is
    re-raised unchanged.
    """
    for i in range(attempts):
        try:
            return await fn()
        except retry_on as exc:
            if i == attempts - 1 or (should_retry is not None and not should_retry(exc)):
                raise
            delay = base_delay * (2**i)
            log.debug("retry.scheduled", label=label, attempt=i + 1, delay=delay, error=str(exc))
            if delay:
                await asyncio.sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
