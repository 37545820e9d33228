"""
Rate limiting for the enqueue endpoint.
"""

import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import HTTPException, status

from taskqueue.api.auth import CurrentUser
from taskqueue.config import get_settings


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Starts full; refills continuously at refill_rate tokens per second.
    """

    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float

    def consume(self, now: float, tokens: float = 1.0) -> bool:
        """
        Try to consume tokens from the bucket.

        Args:
            now: Current monotonic time in seconds.
            tokens: Number of tokens to consume.

        Returns:
            True if tokens were consumed, False if rate limited.
        """
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True

        return False

    @property
    def wait_time(self) -> float:
        """Time in seconds until at least 1 token is available."""
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.refill_rate


class RateLimiter:
    """
    In-memory per-user rate limiter using token buckets.

    Limits are per process; several API replicas each enforce their own.
    """

    def __init__(
        self,
        requests_per_minute: int = 10,
        burst_capacity: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the rate limiter.

        Args:
            requests_per_minute: Sustained requests per minute per user.
            burst_capacity: Maximum burst size. Defaults to the per-minute rate.
            clock: Monotonic time source.
        """
        self._refill_rate = requests_per_minute / 60.0
        self._capacity = burst_capacity or requests_per_minute
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = defaultdict(self._create_bucket)

    def _create_bucket(self) -> TokenBucket:
        return TokenBucket(
            capacity=self._capacity,
            tokens=self._capacity,
            refill_rate=self._refill_rate,
            last_refill=self._clock(),
        )

    def check(self, key: str, tokens: float = 1.0) -> tuple[bool, float]:
        """
        Check if a request is allowed.

        Args:
            key: Rate limit key (the user id).
            tokens: Number of tokens to consume.

        Returns:
            Tuple of (allowed, wait_time_seconds).
        """
        bucket = self._buckets[key]
        allowed = bucket.consume(self._clock(), tokens)
        return allowed, bucket.wait_time

    def reset(self, key: str | None = None) -> None:
        """Reset one key, or every key when none is given."""
        if key is None:
            self._buckets.clear()
        else:
            self._buckets.pop(key, None)


# Global rate limiter instance
_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            requests_per_minute=get_settings().enqueue_rate_limit_per_minute
        )
    return _rate_limiter


async def enforce_enqueue_rate_limit(user: CurrentUser) -> None:
    """
    FastAPI dependency limiting enqueues per user.

    Raises:
        HTTPException: 429 if the user's bucket is empty.
    """
    allowed, wait_time = get_rate_limiter().check(user.user_id)

    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Retry after {wait_time:.1f} seconds",
            headers={"Retry-After": str(int(wait_time) + 1)},
        )
