import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, TypeVar


T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Counter gate around an asyncio.Semaphore. One instance per pipeline
    invocation; `running` never exceeds `capacity`.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.running = 0
        self.peak = 0
        self._semaphore = asyncio.Semaphore(capacity)

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self._semaphore.acquire()
        self.running += 1
        self.peak = max(self.peak, self.running)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.running -= 1
        self._semaphore.release()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self:
            return await fn()


async def gather_limited(
    limiter: ConcurrencyLimiter, factories: Iterable[Callable[[], Awaitable[T]]]
) -> List[T]:
    """
    Run every factory under the limiter. The first failure cancels the rest and
    is re-raised; results come back in submission order.
    """
    tasks = [asyncio.create_task(limiter.run(f)) for f in factories]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
