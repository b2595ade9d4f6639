import asyncio

import pytest

from design_tools.limiter import ConcurrencyLimiter, gather_limited


async def _yield(n):
    for _ in range(n):
        await asyncio.sleep(0)


class TestConcurrencyLimiter:
    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            ConcurrencyLimiter(0)

    @pytest.mark.parametrize("capacity,jobs", [(1, 5), (3, 10), (4, 2)])
    def test_running_never_exceeds_capacity(self, capacity, jobs):
        async def main():
            limiter = ConcurrencyLimiter(capacity)
            seen = []

            def work(i):
                async def go():
                    seen.append(limiter.running)
                    await _yield(jobs - i)
                    return i

                return go

            results = await gather_limited(limiter, [work(i) for i in range(jobs)])
            return limiter, seen, results

        limiter, seen, results = asyncio.run(main())
        assert results == list(range(jobs))
        assert max(seen) <= capacity
        assert limiter.peak == min(capacity, jobs)
        assert limiter.running == 0

    def test_first_failure_cancels_the_rest(self):
        cancelled = []

        async def main():
            limiter = ConcurrencyLimiter(2)

            async def fails():
                await _yield(1)
                raise RuntimeError("page broke")

            async def slow(i):
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(i)
                    raise

            factories = [fails] + [lambda i=i: slow(i) for i in range(4)]
            await gather_limited(limiter, factories)

        with pytest.raises(RuntimeError, match="page broke"):
            asyncio.run(main())
        # The one slow job admitted alongside the failing one was running.
        assert 0 in cancelled
