"""Tests for the FIFO provider rate limiter.

Each test follows the pattern:
- Given: A limiter and some queued coroutine tasks
- When: The tasks are awaited (or the limiter is cleared)
- Then: Start order, spacing and error delivery are as expected
"""
import asyncio

import pytest

from ledger_sync.core.exceptions import RateLimiterCleared
from ledger_sync.services.core.rate_limiter import (
    RateLimiter, get_rate_limiter, get_rate_limiter_status,
)

# Event loop timers can fire a hair early
TIMER_SLACK = 0.005


class TestRateLimiter:
    """Ordering, pacing and failure isolation."""

    @pytest.mark.asyncio
    async def test_tasks_start_in_submission_order_with_minimum_gap(self):
        """Starts are FIFO and at least 1 / calls_per_second apart."""
        limiter = RateLimiter(calls_per_second=20, name="test")
        loop = asyncio.get_running_loop()
        starts = []

        def make_task(index):
            async def task():
                starts.append((index, loop.time()))
                return index
            return task

        results = await asyncio.gather(*(limiter.enqueue(make_task(i)) for i in range(5)))

        assert results == [0, 1, 2, 3, 4]
        assert [index for index, _ in starts] == [0, 1, 2, 3, 4]
        gaps = [b[1] - a[1] for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.05 - TIMER_SLACK for gap in gaps)

    @pytest.mark.asyncio
    async def test_failure_reaches_only_its_own_caller(self):
        """A failing task does not stop later tasks."""
        limiter = RateLimiter(calls_per_second=100, name="test")

        async def ok():
            return "ok"

        async def boom():
            raise ValueError("provider exploded")

        results = await asyncio.gather(
            limiter.enqueue(ok), limiter.enqueue(boom), limiter.enqueue(ok),
            return_exceptions=True,
        )

        assert results[0] == "ok"
        assert isinstance(results[1], ValueError)
        assert results[2] == "ok"

    @pytest.mark.asyncio
    async def test_clear_rejects_pending_tasks_but_not_running_one(self):
        """clear() drops queued tasks with RateLimiterCleared."""
        limiter = RateLimiter(calls_per_second=1, name="test")
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "first"

        async def never():
            return "should not run"

        running = asyncio.create_task(limiter.enqueue(slow))
        pending = [asyncio.create_task(limiter.enqueue(never)) for _ in range(2)]
        await asyncio.sleep(0.01)

        assert limiter.queue_length == 2
        assert limiter.clear() == 2
        assert limiter.queue_length == 0

        release.set()
        assert await running == "first"
        for task in pending:
            with pytest.raises(RateLimiterCleared):
                await task

    @pytest.mark.asyncio
    async def test_idle_limiter_has_no_worker(self):
        """The drain worker exits once the queue is empty."""
        limiter = RateLimiter(calls_per_second=100, name="test")

        async def task():
            return 1

        await limiter.enqueue(task)
        await asyncio.sleep(0)

        assert limiter.busy is False
        assert limiter.queue_length == 0

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RateLimiter(calls_per_second=0)


class TestSharedLimiters:
    """Per-provider singletons."""

    def test_oroplay_is_throttled_and_shared(self):
        first = get_rate_limiter("oroplay")

        assert first is not None
        assert get_rate_limiter("oroplay") is first
        assert first.min_interval == pytest.approx(1.0)
        assert "oroplay" in get_rate_limiter_status()

    def test_unthrottled_provider_has_no_limiter(self):
        assert get_rate_limiter("invest") is None
        assert get_rate_limiter("honorapi") is None
