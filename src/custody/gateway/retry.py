"""Retry and rate-limit policy for chain RPC calls."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from custody.errors import NetworkError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(initial * 2^attempt, max)`` plus jitter."""

    max_retries: int = 5
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> int:
        """Backoff delay in milliseconds before retry ``attempt`` (0-based), without jitter."""
        return min(self.initial_delay_ms * (2 ** attempt), self.max_delay_ms)

    def jittered_delay(self, attempt: int) -> float:
        """Backoff delay in seconds with +/- jitter applied."""
        delay_ms = self.delay_for(attempt)
        if self.jitter > 0:
            delay_ms += delay_ms * random.uniform(-self.jitter, self.jitter)
        return max(0.0, delay_ms / 1000)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.rpc_max_retries,
            initial_delay_ms=settings.rpc_initial_delay_ms,
            max_delay_ms=settings.rpc_max_delay_ms,
            jitter=settings.rpc_jitter,
        )


class RateLimiter:
    """Token bucket limiting requests per second for one gateway.

    A rate of zero or less disables limiting.
    """

    def __init__(self, rate_per_second: float, burst: Optional[int] = None):
        self.rate = rate_per_second
        self.capacity = float(burst if burst is not None else max(1, int(rate_per_second)))
        self._tokens = self.capacity
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.capacity, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        if self.rate <= 0:
            return
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str,
    chain: Optional[str] = None,
) -> T:
    """Run ``operation`` retrying on NetworkError and RateLimitError.

    Any other exception propagates immediately. After the retry budget is
    spent the last failure is raised as NetworkError.
    """
    last_error: Optional[NetworkError] = None

    for attempt in range(policy.max_retries + 1):
        try:
            return await operation()
        except RateLimitError as e:
            last_error = e
            if attempt >= policy.max_retries:
                break
            if e.retry_after is not None:
                delay = e.retry_after
            else:
                delay = policy.jittered_delay(attempt)
            logger.warning(f"{label} rate limited (attempt {attempt + 1}), retrying in {delay:.2f}s")
        except NetworkError as e:
            last_error = e
            if attempt >= policy.max_retries:
                break
            delay = policy.jittered_delay(attempt)
            logger.warning(f"{label} failed (attempt {attempt + 1}): {e}, retrying in {delay:.2f}s")

        await asyncio.sleep(delay)

    raise NetworkError(
        f"{label} failed after {policy.max_retries + 1} attempts: {last_error}",
        chain=chain,
    )
