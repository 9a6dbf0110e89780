"""Tests for the key/value token stores backing magic tokens and counters."""

from unittest.mock import MagicMock, patch

from redis.exceptions import ResponseError

from swifttravel.storage.redis_cache import RedisCache, SyncRedisCache


class TestMemoryTokenStore:
    """In-process store used in test mode and the dev fallback."""

    async def test_set_and_get(self, token_store):
        await token_store.set_with_expiry("k", "v", 60)
        assert await token_store.get("k") == "v"
        assert await token_store.exists("k") is True

    async def test_value_expires_after_ttl(self, token_store, monotonic):
        await token_store.set_with_expiry("k", "v", 60)
        monotonic.advance(59)
        assert await token_store.get("k") == "v"
        monotonic.advance(1)
        assert await token_store.get("k") is None
        assert await token_store.exists("k") is False

    async def test_get_and_delete_returns_value_once(self, token_store):
        await token_store.set_with_expiry("k", "v", 60)
        assert await token_store.get_and_delete("k") == "v"
        assert await token_store.get_and_delete("k") is None

    async def test_delete_reports_presence(self, token_store):
        await token_store.set_with_expiry("k", "v", 60)
        assert await token_store.delete("k") is True
        assert await token_store.delete("k") is False

    async def test_increment_if_below_stops_at_limit(self, token_store):
        results = [await token_store.increment_if_below("c", 3, 60) for _ in range(5)]
        assert [r[0] for r in results] == [True, True, True, False, False]
        assert [r[1] for r in results] == [1, 2, 3, 3, 3]

    async def test_refresh_mode_restarts_window(self, token_store, monotonic):
        await token_store.increment_if_below("c", 5, 60, refresh_ttl=True)
        monotonic.advance(50)
        await token_store.increment_if_below("c", 5, 60, refresh_ttl=True)
        monotonic.advance(50)
        # 100s after the first hit but only 50s after the second
        allowed, count, _ = await token_store.increment_if_below("c", 5, 60, refresh_ttl=True)
        assert allowed is True
        assert count == 3

    async def test_fixed_mode_keeps_original_expiry(self, token_store, monotonic):
        await token_store.increment_if_below("c", 5, 60, refresh_ttl=False)
        monotonic.advance(50)
        _, _, ttl = await token_store.increment_if_below("c", 5, 60, refresh_ttl=False)
        assert ttl == 10
        monotonic.advance(10)
        allowed, count, _ = await token_store.increment_if_below("c", 5, 60, refresh_ttl=False)
        assert allowed is True
        assert count == 1

    async def test_denied_increment_does_not_touch_expiry(self, token_store, monotonic):
        await token_store.increment_if_below("c", 1, 60)
        monotonic.advance(30)
        allowed, count, ttl = await token_store.increment_if_below("c", 1, 60)
        assert allowed is False
        assert count == 1
        assert ttl == 30


class TestSyncRedisCache:
    """Redis wrapper behaviour with the client stubbed out."""

    def _cache(self) -> SyncRedisCache:
        cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
        cache.redis_url = "redis://localhost:6379/0"
        cache._sync_client = MagicMock()
        cache._increment_if_below = MagicMock()
        return cache

    async def test_get_and_delete_uses_getdel(self):
        cache = self._cache()
        cache._sync_client.getdel.return_value = "payload"
        assert await cache.get_and_delete("magic_token:abc") == "payload"
        cache._sync_client.getdel.assert_called_once_with("magic_token:abc")
        cache._sync_client.eval.assert_not_called()

    async def test_get_and_delete_falls_back_to_lua(self):
        cache = self._cache()
        cache._sync_client.getdel.side_effect = ResponseError("unknown command 'GETDEL'")
        cache._sync_client.eval.return_value = "payload"
        assert await cache.get_and_delete("magic_token:abc") == "payload"
        script, numkeys, key = cache._sync_client.eval.call_args[0]
        assert "DEL" in script
        assert numkeys == 1
        assert key == "magic_token:abc"

    async def test_increment_if_below_passes_refresh_flag(self):
        cache = self._cache()
        cache._increment_if_below.return_value = [1, 2, 900]
        allowed, count, ttl = await cache.increment_if_below(
            "rate_limit:magic_link:a@b.co", 5, 900, refresh_ttl=False
        )
        assert (allowed, count, ttl) == (True, 2, 900)
        kwargs = cache._increment_if_below.call_args.kwargs
        assert kwargs["keys"] == ["rate_limit:magic_link:a@b.co"]
        assert kwargs["args"] == [5, 900, "0"]

    async def test_set_with_expiry_clamps_ttl(self):
        cache = self._cache()
        await cache.set_with_expiry("revoked_token:x", "revoked", 0)
        cache._sync_client.set.assert_called_once_with("revoked_token:x", "revoked", ex=1)

    def test_script_denies_before_incrementing(self):
        script = RedisCache._INCREMENT_IF_BELOW_SCRIPT
        assert script.index("current >= limit") < script.index("INCR")

    def test_socket_timeout_applies_to_connect_and_reads(self):
        with patch("swifttravel.storage.redis_cache.Redis.from_url") as from_url:
            SyncRedisCache("redis://localhost:6379/0", socket_timeout=2.5)
        kwargs = from_url.call_args.kwargs
        assert kwargs["socket_timeout"] == 2.5
        assert kwargs["socket_connect_timeout"] == 2.5
