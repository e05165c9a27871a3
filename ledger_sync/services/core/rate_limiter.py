"""
FIFO rate limiter for providers with strict per-second quotas.

Tasks run one at a time, in submission order, and the start of each task is
at least ``1 / calls_per_second`` seconds after the start of the previous
one. A single drain task is spawned on demand and exits when the queue is
empty, so an idle limiter costs nothing.

Usage:
    limiter = get_rate_limiter("oroplay")
    response = await limiter.enqueue(lambda: http.post(url, json=body))
"""
import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from ledger_sync.core.config import settings
from ledger_sync.core.exceptions import RateLimiterCleared
from ledger_sync.core.logging import get_logger
from ledger_sync.core.metrics import rate_limiter_queue_length

logger = get_logger(__name__)

Task = Callable[[], Awaitable[Any]]


class RateLimiter:
    """
    Serializes coroutine calls with a minimum start-to-start gap.

    Attributes:
        name: Label used in logs and metrics (usually the api_type)
        min_interval: Minimum seconds between two task starts
    """

    def __init__(self, calls_per_second: float = 1.0, name: str = "default"):
        if calls_per_second <= 0:
            raise ValueError("calls_per_second must be positive")

        self.name = name
        self.min_interval = 1.0 / calls_per_second
        self._queue: Deque[Tuple[Task, asyncio.Future]] = deque()
        self._last_start: Optional[float] = None
        self._drain_task: Optional[asyncio.Task] = None

    @property
    def queue_length(self) -> int:
        """Number of tasks waiting to start."""
        return len(self._queue)

    @property
    def busy(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def enqueue(self, task: Task) -> Any:
        """
        Queue ``task`` (a zero-argument coroutine function) and await its result.

        Exceptions raised by the task propagate to this caller only.

        Raises:
            RateLimiterCleared: if ``clear()`` dropped the task before it started
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._queue.append((task, future))
        self._publish_queue_length()

        if not self.busy:
            self._drain_task = loop.create_task(self._drain())

        return await future

    def clear(self) -> int:
        """
        Drop every task that has not started yet.

        Each dropped caller receives ``RateLimiterCleared``; the task currently
        running (if any) is left to finish.

        Returns:
            Number of tasks dropped
        """
        dropped = 0
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(RateLimiterCleared(f"rate limiter '{self.name}' was cleared"))
                dropped += 1

        self._publish_queue_length()
        if dropped:
            logger.warning(f"Rate limiter '{self.name}' cleared, {dropped} pending task(s) rejected")
        return dropped

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()

        while self._queue:
            if self._last_start is not None:
                wait = self._last_start + self.min_interval - loop.time()
                if wait > 0:
                    await asyncio.sleep(wait)

            # clear() may have emptied the queue while we slept
            if not self._queue:
                break

            task, future = self._queue.popleft()
            self._publish_queue_length()

            if future.done():  # Caller gave up (cancelled) before the task started
                continue

            self._last_start = loop.time()
            try:
                result = await task()
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    def _publish_queue_length(self) -> None:
        rate_limiter_queue_length.labels(api_type=self.name).set(len(self._queue))


# =============================================================================
# PER-PROVIDER LIMITERS
# =============================================================================

# api_type -> calls per second, for providers that enforce a strict quota
RATE_LIMITED_PROVIDERS: Dict[str, float] = {
    "oroplay": settings.OROPLAY_CALLS_PER_SECOND,
}

_limiters: Dict[str, RateLimiter] = {}


def get_rate_limiter(api_type: str) -> Optional[RateLimiter]:
    """Shared limiter for ``api_type``, or None if the provider is not throttled."""
    calls_per_second = RATE_LIMITED_PROVIDERS.get(api_type)
    if calls_per_second is None:
        return None

    if api_type not in _limiters:
        _limiters[api_type] = RateLimiter(calls_per_second, name=api_type)
    return _limiters[api_type]


def get_rate_limiter_status() -> Dict[str, Dict[str, Any]]:
    """Diagnostics for every limiter created so far."""
    return {
        name: {
            "queue_length": limiter.queue_length,
            "busy": limiter.busy,
            "min_interval_seconds": limiter.min_interval,
        }
        for name, limiter in _limiters.items()
    }


def reset_rate_limiters() -> None:
    """Clear and forget all shared limiters (used on shutdown and in tests)."""
    for limiter in _limiters.values():
        limiter.clear()
    _limiters.clear()
