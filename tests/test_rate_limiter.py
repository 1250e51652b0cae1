"""Tests for the per-provider token bucket rate limiter."""

import time

import pytest

from mailsync.core.errors import RateLimitExceeded
from mailsync.core.rate_limiter import ProviderRateLimiter, TokenBucket


class TestTokenBucket:
    async def test_consumes_available_tokens(self) -> None:
        bucket = TokenBucket(rate=1.0, capacity=3)

        for _ in range(3):
            assert await bucket.consume()
        assert bucket.tokens < 1

    async def test_waits_for_refill(self) -> None:
        bucket = TokenBucket(rate=20.0, capacity=1, initial_tokens=0)

        start = time.monotonic()
        assert await bucket.consume()

        assert time.monotonic() - start >= 0.04

    async def test_request_larger_than_capacity(self) -> None:
        with pytest.raises(RateLimitExceeded, match="exceed bucket capacity"):
            await TokenBucket(rate=1.0, capacity=1).consume(tokens=2)

    async def test_excessive_wait_rejected(self) -> None:
        bucket = TokenBucket(rate=0.01, capacity=1, initial_tokens=0)

        with pytest.raises(RateLimitExceeded, match="would require"):
            await bucket.consume()


class TestProviderRateLimiter:
    def test_bucket_per_provider(self) -> None:
        limiter = ProviderRateLimiter(rate=5.0)

        assert limiter.bucket("google") is limiter.bucket("google")
        assert limiter.bucket("google") is not limiter.bucket("imap")
        assert limiter.bucket("imap").capacity == 5

    def test_fractional_rate_keeps_one_token(self) -> None:
        assert ProviderRateLimiter(rate=0.5).bucket("imap").capacity == 1

    async def test_providers_do_not_share_budget(self) -> None:
        limiter = ProviderRateLimiter(rate=0.01, capacity=1)

        await limiter.acquire("google")
        await limiter.acquire("imap")

        with pytest.raises(RateLimitExceeded):
            await limiter.acquire("google")

    def test_update_rate_reaches_existing_buckets(self) -> None:
        limiter = ProviderRateLimiter(rate=10.0)
        bucket = limiter.bucket("google")

        limiter.update_rate(2.0)

        assert limiter.rate == 2.0
        assert bucket.rate == 2.0
        assert bucket.capacity == 2
        assert bucket.tokens <= 2
        assert limiter.bucket("imap").rate == 2.0

    def test_update_rate_keeps_explicit_capacity(self) -> None:
        limiter = ProviderRateLimiter(rate=10.0, capacity=4)

        limiter.update_rate(1.0)

        assert limiter.bucket("google").capacity == 4
