"""
Tests for FeatureFlagCache.
"""

import asyncio

import pytest

from core.feature_flags import FeatureFlagCache, integration_flag_key
from tests.fakes import InMemoryFlags


class _Ticker:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def ticker():
    return _Ticker()


class TestReads:
    @pytest.mark.asyncio
    async def test_unknown_flag_is_false(self, ticker):
        cache = FeatureFlagCache(InMemoryFlags({"a": True}), monotonic=ticker)
        assert await cache.is_enabled("missing") is False

    @pytest.mark.asyncio
    async def test_integration_flag(self, ticker):
        cache = FeatureFlagCache(InMemoryFlags({"integration_strava": True}), monotonic=ticker)
        assert await cache.is_integration_enabled("strava") is True
        assert await cache.is_integration_enabled("garmin") is False
        assert integration_flag_key("strava") == "integration_strava"

    @pytest.mark.asyncio
    async def test_enabled_integrations(self, ticker):
        store = InMemoryFlags(
            {"integration_strava": True, "integration_garmin": False, "new_dashboard": True}
        )
        cache = FeatureFlagCache(store, monotonic=ticker)
        assert await cache.enabled_integrations() == ["strava"]


class TestTtl:
    @pytest.mark.asyncio
    async def test_served_from_cache_within_ttl(self, ticker):
        store = InMemoryFlags({"a": True})
        cache = FeatureFlagCache(store, ttl_seconds=5, monotonic=ticker)
        await cache.is_enabled("a")
        store.flags["a"] = False
        ticker.now += 4
        assert await cache.is_enabled("a") is True
        assert store.loads == 1

    @pytest.mark.asyncio
    async def test_refreshed_after_ttl(self, ticker):
        store = InMemoryFlags({"a": True})
        cache = FeatureFlagCache(store, ttl_seconds=5, monotonic=ticker)
        await cache.is_enabled("a")
        store.flags["a"] = False
        ticker.now += 6
        assert await cache.is_enabled("a") is False
        assert store.loads == 2

    @pytest.mark.asyncio
    async def test_concurrent_stale_readers_share_one_refresh(self, ticker):
        store = InMemoryFlags({"a": True})
        cache = FeatureFlagCache(store, monotonic=ticker)
        results = await asyncio.gather(*(cache.is_enabled("a") for _ in range(10)))
        assert all(results)
        assert store.loads == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_map(self, ticker):
        store = InMemoryFlags({"a": True})
        cache = FeatureFlagCache(store, ttl_seconds=5, monotonic=ticker)
        await cache.is_enabled("a")
        store.fail = True
        ticker.now += 10
        assert await cache.is_enabled("a") is True


class TestWrites:
    @pytest.mark.asyncio
    async def test_update_flag_invalidates(self, ticker):
        store = InMemoryFlags({"integration_strava": True})
        cache = FeatureFlagCache(store, monotonic=ticker)
        assert await cache.is_integration_enabled("strava")
        assert await cache.update_flag("integration_strava", False) is True
        assert await cache.is_integration_enabled("strava") is False

    @pytest.mark.asyncio
    async def test_update_unknown_flag(self, ticker):
        cache = FeatureFlagCache(InMemoryFlags({}), monotonic=ticker)
        assert await cache.update_flag("nope", True) is False

    @pytest.mark.asyncio
    async def test_ensure_defaults_does_not_overwrite(self, ticker):
        store = InMemoryFlags({"integration_strava": False})
        cache = FeatureFlagCache(store, monotonic=ticker)
        await cache.ensure_defaults()
        assert await cache.is_integration_enabled("strava") is False

    @pytest.mark.asyncio
    async def test_ensure_defaults_seeds_strava(self, ticker):
        store = InMemoryFlags({})
        cache = FeatureFlagCache(store, monotonic=ticker)
        await cache.ensure_defaults()
        assert await cache.is_integration_enabled("strava") is True
