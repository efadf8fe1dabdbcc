"""
rate_limit.py

In-process rate limiting and bounded retry for the TMDB detail API.

- MinIntervalLimiter enforces one minimum spacing between calls for every
  caller in the process (threads and event loops alike).
- RetryPolicy / with_backoff retry throttled calls a bounded number of times
  with exponential backoff. Sleeping during backoff does not hold a limiter
  slot, so the next attempt queues behind whoever grabbed the slot meanwhile.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimitExceeded(Exception):
    """Raised when the upstream API keeps throttling after all retries."""

    def __init__(self, message: str, service: str = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.service = service
        self.retry_after = retry_after


class MinIntervalLimiter:
    """Hands out call slots at least `min_interval` seconds apart.

    Slots are reserved under a thread lock and waited for with asyncio.sleep,
    so one instance can be shared by the Celery worker's event loop and the
    API server's loop without binding to either.
    """

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def reserve(self) -> float:
        """Reserve the next slot and return how long the caller must wait for it."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        return slot - now

    async def acquire(self) -> None:
        delay = self.reserve()
        if delay > 0:
            await self._sleep(delay)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: delays of base, base*factor, ... capped at max_delay."""
    max_attempts: int = 3
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        return min(self.base_delay * (self.factor ** attempt), self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1)


async def with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy = NO_RETRY,
    retry_on: Tuple[Type[BaseException], ...] = (RateLimitExceeded,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "request",
) -> T:
    """Run `func`, retrying on `retry_on` errors until the policy is exhausted.

    The last error is re-raised once `policy.max_attempts` calls have failed.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await func()
        except retry_on as e:
            if attempt + 1 >= attempts:
                raise
            delay = policy.delay_for(attempt)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = min(max(delay, retry_after), policy.max_delay)
            logger.warning(f"{label} rate limited, retrying in {delay:.1f}s (attempt {attempt + 1}/{attempts})")
            await sleep(delay)
    raise AssertionError("unreachable")


_tmdb_limiter: Optional[MinIntervalLimiter] = None
_tmdb_limiter_lock = threading.Lock()


def get_tmdb_limiter(min_interval: Optional[float] = None) -> MinIntervalLimiter:
    """The process-wide limiter shared by backfill and lazy-fetch callers."""
    global _tmdb_limiter
    with _tmdb_limiter_lock:
        if _tmdb_limiter is None:
            if min_interval is None:
                from mediacanon.core.config import settings
                min_interval = settings.tmdb_min_interval_seconds
            _tmdb_limiter = MinIntervalLimiter(min_interval)
        return _tmdb_limiter
