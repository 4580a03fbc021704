"""
Async concurrency helpers.

map_with_concurrency: process every item exactly once with at most
``limit`` mappers in flight; results come back in input order.

SingleFlight: callers sharing a key await one in-flight call.
"""

import asyncio
import hashlib
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def map_with_concurrency(
    items: Sequence[T],
    limit: int,
    mapper: Callable[[T], Awaitable[R]],
) -> List[R]:
    """
    Run ``mapper`` over ``items`` with a fixed pool of workers.

    Args:
        items: Items to process
        limit: Maximum number of mappers running at once (min 1)
        mapper: Async function applied to each item

    Returns:
        Results in the same order as ``items``
    """
    if not items:
        return []

    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    results: List[Any] = [None] * len(items)

    async def worker():
        while True:
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            results[index] = await mapper(item)

    workers = max(1, min(limit, len(items)))
    await asyncio.gather(*(worker() for _ in range(workers)))
    return results


class SingleFlight:
    """
    Deduplicate concurrent async calls by key.

    Keys are hashed before use so raw secrets are not kept as dict keys.
    The entry is dropped once the call settles (success or failure), so a
    later call with the same key runs again.
    """

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Future] = {}

    @staticmethod
    def _key(key: Hashable) -> str:
        return hashlib.sha256(str(key).encode("utf-8")).hexdigest()

    def in_flight(self) -> int:
        return len(self._in_flight)

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[R]]) -> R:
        hashed = self._key(key)
        existing = self._in_flight.get(hashed)
        if existing is not None:
            return await asyncio.shield(existing)

        task = asyncio.ensure_future(fn())
        self._in_flight[hashed] = task

        def _settled(done: asyncio.Future):
            if self._in_flight.get(hashed) is done:
                del self._in_flight[hashed]
            if not done.cancelled() and done.exception() is not None:
                logger.debug("Single-flight call failed", extra={"error": str(done.exception())})

        task.add_done_callback(_settled)
        return await asyncio.shield(task)
