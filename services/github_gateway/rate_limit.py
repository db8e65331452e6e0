"""
Rate-limited request gateway.

All host calls are admitted one at a time through a FIFO queue that keeps a
minimum delay between the end of one call and the start of the next, and are
retried with capped exponential backoff when the failure is retryable. A
rate-limit failure that says when the limit resets waits exactly until then.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple, TypeVar

from config.settings import GatewaySettings
from services.github_gateway.errors import HostError, RateLimitedError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RateLimitInfo:
    """Rate limit state reported by the host in response headers."""

    limit: int
    remaining: int
    reset: int  # Unix timestamp when the window resets

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> Optional["RateLimitInfo"]:
        """Parse X-RateLimit-* headers; None unless all three are present and numeric."""
        limit = headers.get("x-ratelimit-limit")
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        if not limit or remaining is None or not reset:
            return None
        try:
            return cls(limit=int(limit), remaining=int(remaining), reset=int(reset))
        except ValueError:
            logger.warning(f"Non-numeric rate limit headers: {limit!r}, {remaining!r}, {reset!r}")
            return None

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset, tz=timezone.utc)

    def seconds_until_reset(self, now: float) -> float:
        return max(0.0, self.reset - now)


@dataclass
class RetryPolicy:
    """Capped exponential backoff over a fixed set of retryable statuses."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    retryable_status_codes: Tuple[int, ...] = field(default=(429, 500, 502, 503, 504))

    @classmethod
    def from_settings(cls, config: GatewaySettings) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            backoff_multiplier=config.backoff_multiplier,
            max_delay=config.max_delay,
            retryable_status_codes=tuple(config.retryable_status_codes),
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay in seconds after the given zero-based attempt."""
        return min(self.initial_delay * self.backoff_multiplier ** attempt, self.max_delay)

    def is_retryable(self, error: HostError) -> bool:
        if isinstance(error, RateLimitedError):
            return True
        if isinstance(error, TransientError) and error.status_code is None:
            # Connection failures and timeouts carry no status
            return True
        return error.status_code in self.retryable_status_codes


class RequestQueue:
    """Admits one call at a time, in arrival order, spaced by ``min_delay`` seconds."""

    def __init__(
        self,
        min_delay: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_delay = min_delay
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_finished: Optional[float] = None
        self._pending = 0

    @property
    def length(self) -> int:
        """Number of calls waiting for or holding the queue."""
        return self._pending

    async def enqueue(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._pending += 1
        try:
            async with self._lock:
                if self._last_finished is not None:
                    wait = self.min_delay - (self._clock() - self._last_finished)
                    if wait > 0:
                        await self._sleep(wait)
                try:
                    return await fn()
                finally:
                    self._last_finished = self._clock()
        finally:
            self._pending -= 1


class Gateway:
    """Throttled, retrying executor shared by every host call in the process."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        queue: Optional[RequestQueue] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.policy = policy or RetryPolicy()
        self.queue = queue or RequestQueue()
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, config: GatewaySettings) -> "Gateway":
        return cls(
            policy=RetryPolicy.from_settings(config),
            queue=RequestQueue(min_delay=config.min_request_delay_ms / 1000.0),
        )

    def _rate_limit_wait(self, error: HostError) -> Optional[float]:
        if not isinstance(error, RateLimitedError):
            return None
        if error.rate_limit is not None:
            wait = error.rate_limit.seconds_until_reset(self._clock())
            if wait > 0:
                return wait
        if error.retry_after:
            return error.retry_after
        return None

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Run ``fn`` through the queue with retries.

        Returns the first successful result, or re-raises the last error
        unchanged once it is not retryable or the retries are used up. A wait
        for a rate-limit reset counts as one retry.
        """
        for attempt in range(self.policy.max_retries + 1):
            try:
                return await self.queue.enqueue(lambda: fn(*args, **kwargs))
            except HostError as error:
                if attempt >= self.policy.max_retries or not self.policy.is_retryable(error):
                    raise

                wait = self._rate_limit_wait(error)
                if wait is not None:
                    logger.warning(f"Rate limit hit. Waiting {wait:.0f}s until reset...")
                else:
                    wait = self.policy.delay_for(attempt)
                    logger.warning(
                        f"{error} - retry attempt {attempt + 1}/{self.policy.max_retries} "
                        f"after {wait:.1f}s"
                    )
                await self._sleep(wait)
