"""Tests for the per-email magic-link rate limiter."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock

import pytest

from swifttravel.service.errors import InternalError
from swifttravel.service.rate_limit import MagicLinkRateLimiter, rate_limit_key


class TestMagicLinkRateLimiter:
    async def test_fifth_request_reports_zero_remaining(self, token_store):
        limiter = MagicLinkRateLimiter(token_store, max_per_window=5, window_minutes=15)
        results = [await limiter.check_and_increment("a@example.com") for _ in range(5)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

    async def test_sixth_request_denied_without_increment(self, token_store):
        limiter = MagicLinkRateLimiter(token_store, max_per_window=5, window_minutes=15)
        for _ in range(5):
            await limiter.check_and_increment("a@example.com")
        denied = await limiter.check_and_increment("a@example.com")
        assert denied.allowed is False
        assert denied.remaining == 0
        assert denied.limit == 5
        assert await token_store.get(rate_limit_key("a@example.com")) == "5"

    async def test_counters_are_per_email(self, token_store):
        limiter = MagicLinkRateLimiter(token_store, max_per_window=1, window_minutes=15)
        assert (await limiter.check_and_increment("a@example.com")).allowed
        assert (await limiter.check_and_increment("b@example.com")).allowed
        assert not (await limiter.check_and_increment("a@example.com")).allowed

    async def test_window_expiry_resets_counter(self, token_store, monotonic):
        limiter = MagicLinkRateLimiter(
            token_store, max_per_window=1, window_minutes=15, refresh_window=False
        )
        await limiter.check_and_increment("a@example.com")
        assert not (await limiter.check_and_increment("a@example.com")).allowed
        monotonic.advance(15 * 60)
        assert (await limiter.check_and_increment("a@example.com")).allowed

    async def test_reset_seconds_reflects_remaining_window(self, token_store, monotonic):
        limiter = MagicLinkRateLimiter(
            token_store, max_per_window=2, window_minutes=15, refresh_window=False
        )
        first = await limiter.check_and_increment("a@example.com")
        assert first.reset_seconds == 900
        monotonic.advance(300)
        second = await limiter.check_and_increment("a@example.com")
        assert second.reset_seconds == 600

    async def test_store_failure_fails_closed_by_default(self):
        store = AsyncMock()
        store.increment_if_below.side_effect = ConnectionError("redis down")
        limiter = MagicLinkRateLimiter(store)
        with pytest.raises(InternalError):
            await limiter.check_and_increment("a@example.com")

    async def test_store_failure_allows_when_fail_open(self):
        store = AsyncMock()
        store.increment_if_below.side_effect = ConnectionError("redis down")
        limiter = MagicLinkRateLimiter(store, max_per_window=5, fail_open=True)
        result = await limiter.check_and_increment("a@example.com")
        assert result.allowed is True
        assert result.remaining == 4

    async def test_concurrent_requests_admit_exactly_the_limit(self, token_store):
        limiter = MagicLinkRateLimiter(token_store, max_per_window=5, window_minutes=15)
        results = await asyncio.gather(
            *(limiter.check_and_increment("a@example.com") for _ in range(12))
        )
        assert sum(r.allowed for r in results) == 5
        assert await token_store.get(rate_limit_key("a@example.com")) == "5"

    def test_threaded_requests_admit_exactly_the_limit(self, token_store):
        limiter = MagicLinkRateLimiter(token_store, max_per_window=5, window_minutes=15)

        def attempt(_):
            return asyncio.run(limiter.check_and_increment("a@example.com")).allowed

        with ThreadPoolExecutor(max_workers=8) as pool:
            allowed = list(pool.map(attempt, range(40)))

        assert allowed.count(True) == 5
        assert asyncio.run(token_store.get(rate_limit_key("a@example.com"))) == "5"
