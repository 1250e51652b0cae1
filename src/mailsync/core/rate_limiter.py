"""Token bucket rate limiting for outbound provider calls.

Each provider kind gets its own bucket so a burst of IMAP fetches cannot
starve the webmail API budget. Buckets are owned by a ProviderRateLimiter
instance that the sync orchestrator holds; there is no module-level
registry.

Usage:
    limiter = ProviderRateLimiter(rate=5.0)
    await limiter.acquire("google")
"""

import asyncio
import time

from mailsync.core.errors import RateLimitExceeded
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

# Longest wait a caller is allowed to block for before the bucket gives up
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate and each request consumes one. If no
    tokens are available, the caller sleeps until one becomes available.

    Example:
        limiter = TokenBucket(rate=1.0, capacity=1)
        await limiter.consume()
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: float | None = None,
    ):
        """Initialize a token bucket rate limiter.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Initial number of tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    async def consume(self, tokens: int = 1) -> bool:
        """Consume tokens from the bucket, waiting if needed.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens were consumed

        Raises:
            RateLimitExceeded: If the wait would exceed MAX_WAIT_SECONDS or
                tokens are still unavailable after waiting
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        async with self.lock:
            self._refill()

            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate

            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_wait_excessive",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")

        # Lock released during sleep so other consumers can check
        logger.debug("rate_limit_waiting", wait_time=wait_time)
        await asyncio.sleep(wait_time)

        async with self.lock:
            self._refill()
            if self.tokens < tokens:
                raise RateLimitExceeded("Failed to get enough tokens even after waiting")
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


class ProviderRateLimiter:
    """One TokenBucket per provider kind, created lazily."""

    def __init__(self, rate: float, capacity: int | None = None):
        self._fixed_capacity = capacity
        self._rate = rate
        self._capacity = capacity if capacity is not None else max(1, int(rate))
        self._buckets: dict[str, TokenBucket] = {}

    @property
    def rate(self) -> float:
        return self._rate

    def update_rate(self, rate: float) -> None:
        """Apply a new refill rate to existing and future buckets."""
        if rate == self._rate:
            return
        self._rate = rate
        if self._fixed_capacity is None:
            self._capacity = max(1, int(rate))
        for bucket in self._buckets.values():
            bucket._refill()
            bucket.rate = rate
            bucket.capacity = self._capacity
            bucket.tokens = min(bucket.tokens, self._capacity)
        logger.info("provider_rate_updated", rate=rate)

    def bucket(self, provider: str) -> TokenBucket:
        """Return the bucket for a provider, creating it on first use."""
        if provider not in self._buckets:
            self._buckets[provider] = TokenBucket(rate=self._rate, capacity=self._capacity)
        return self._buckets[provider]

    async def acquire(self, provider: str) -> None:
        """Wait for one request slot for the given provider.

        Raises:
            RateLimitExceeded: If the bucket cannot grant a slot in time
        """
        await self.bucket(provider).consume()
