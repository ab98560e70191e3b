"""
Rate Limiting

Token bucket per caller identity. Each bucket holds up to ``capacity`` tokens
and refills continuously; a request spends one token.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }


class TokenBucketRateLimiter:
    """In-memory token bucket limiter, safe to share across worker threads."""

    def __init__(
        self,
        capacity: int = 60,
        refill_per_second: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            capacity: Burst size and nominal requests per minute
            refill_per_second: Refill rate, ``capacity / 60`` by default
            clock: Monotonic time source (injectable for tests)
        """
        self.capacity = capacity
        self.refill_per_second = (
            refill_per_second if refill_per_second is not None else capacity / 60.0
        )
        self._clock = clock
        self._buckets: dict[str, tuple[float, float]] = {}  # identity -> (tokens, updated_at)
        self._lock = threading.Lock()

    @classmethod
    def per_minute(cls, requests_per_minute: int) -> "TokenBucketRateLimiter":
        return cls(capacity=requests_per_minute, refill_per_second=requests_per_minute / 60.0)

    def check(self, identity: str, cost: float = 1.0) -> RateLimitResult:
        """Spend ``cost`` tokens from the caller's bucket if it has them."""
        now = self._clock()
        with self._lock:
            tokens, updated_at = self._buckets.get(identity, (float(self.capacity), now))
            tokens = min(
                float(self.capacity),
                tokens + (now - updated_at) * self.refill_per_second,
            )
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[identity] = (tokens, now)

        if not allowed:
            logger.info(f"Rate limit exceeded for {identity}")
        return RateLimitResult(allowed=allowed, limit=self.capacity, remaining=int(tokens))

    def reset(self) -> None:
        """Forget all buckets (for testing)."""
        with self._lock:
            self._buckets.clear()
