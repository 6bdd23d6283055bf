"""
Tests for stale-while-revalidate reads.
"""

import asyncio
from datetime import timedelta

import pytest

from shelfsync.staleness.controller import StalenessController, newest_scraped_at

DAY = 86400


class Backend:
    """Cached records per key plus a counting acquire function."""

    def __init__(self, cached: dict = None, fresh: list = None, fail: bool = False):
        self.cached = cached or {}
        self.fresh = fresh if fresh is not None else [{"slug": "fresh"}]
        self.fail = fail
        self.acquired = []
        self.gate = None

    def read_cached(self, key: str) -> list:
        return self.cached.get(key, [])

    async def acquire(self, key: str) -> list:
        self.acquired.append(key)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RuntimeError("remote site unreachable")
        self.cached[key] = self.fresh
        return self.fresh


def records_at(when) -> list:
    return [{"slug": "books", "last_scraped_at": when.isoformat()}]


def controller_for(backend: Backend, now) -> StalenessController:
    return StalenessController(backend.read_cached, backend.acquire, ttl_seconds=DAY, clock=lambda: now)


class TestStaleness:
    """Test the fresh/stale/cold decision."""

    @pytest.mark.asyncio
    async def test_fresh_data_served_without_acquire(self, now):
        cached = records_at(now - timedelta(hours=1))
        backend = Backend({"navigation": cached})
        controller = controller_for(backend, now)

        assert await controller.get_or_refresh("navigation") == cached
        assert backend.acquired == []
        assert controller.in_flight == set()

    @pytest.mark.asyncio
    async def test_stale_data_served_and_refreshed(self, now):
        cached = records_at(now - timedelta(hours=25))
        backend = Backend({"navigation": cached})
        controller = controller_for(backend, now)

        result = await controller.get_or_refresh("navigation")
        assert result == cached

        await controller.drain()
        assert backend.acquired == ["navigation"]
        assert backend.cached["navigation"] == backend.fresh

    @pytest.mark.asyncio
    async def test_exactly_at_ttl_is_stale(self, now):
        backend = Backend({"navigation": records_at(now - timedelta(seconds=DAY))})
        controller = controller_for(backend, now)

        await controller.get_or_refresh("navigation")
        await controller.drain()
        assert backend.acquired == ["navigation"]

    @pytest.mark.asyncio
    async def test_concurrent_stale_reads_refresh_once(self, now):
        backend = Backend({"categories:books": records_at(now - timedelta(days=2))})
        backend.gate = asyncio.Event()
        controller = controller_for(backend, now)

        await asyncio.gather(*(controller.get_or_refresh("categories:books") for _ in range(5)))
        await asyncio.sleep(0)
        assert controller.in_flight == {"categories:books"}

        backend.gate.set()
        await controller.drain()
        assert backend.acquired == ["categories:books"]
        assert controller.in_flight == set()

    @pytest.mark.asyncio
    async def test_refresh_allowed_again_after_completion(self, now):
        backend = Backend({"navigation": records_at(now - timedelta(days=2))}, fresh=records_at(now - timedelta(days=2)))
        controller = controller_for(backend, now)

        await controller.get_or_refresh("navigation")
        await controller.drain()
        await controller.get_or_refresh("navigation")
        await controller.drain()

        assert backend.acquired == ["navigation", "navigation"]

    @pytest.mark.asyncio
    async def test_keys_refresh_independently(self, now):
        old = records_at(now - timedelta(days=2))
        backend = Backend({"products:fiction": old, "products:crime": old})
        backend.gate = asyncio.Event()
        controller = controller_for(backend, now)

        assert controller.schedule_refresh("products:fiction") is True
        assert controller.schedule_refresh("products:crime") is True
        assert controller.schedule_refresh("products:fiction") is False

        backend.gate.set()
        await controller.drain()
        assert sorted(backend.acquired) == ["products:crime", "products:fiction"]

    @pytest.mark.asyncio
    async def test_cold_read_acquires_synchronously(self, now):
        backend = Backend()
        controller = controller_for(backend, now)

        result = await controller.get_or_refresh("navigation")

        assert result == backend.fresh
        assert backend.acquired == ["navigation"]
        assert controller.in_flight == set()

    @pytest.mark.asyncio
    async def test_cold_read_failure_propagates(self, now):
        controller = controller_for(Backend(fail=True), now)
        with pytest.raises(RuntimeError):
            await controller.get_or_refresh("navigation")

    @pytest.mark.asyncio
    async def test_background_failure_keeps_cached_data(self, now):
        cached = records_at(now - timedelta(days=3))
        backend = Backend({"navigation": cached}, fail=True)
        controller = controller_for(backend, now)

        assert await controller.get_or_refresh("navigation") == cached
        await controller.drain()

        assert backend.cached["navigation"] == cached
        assert controller.in_flight == set()


class TestNewestScrapedAt:
    def test_empty(self):
        assert newest_scraped_at([]) is None

    def test_naive_and_missing_timestamps(self, now):
        records = [
            {"last_scraped_at": None},
            {"last_scraped_at": now.replace(tzinfo=None)},
            {"last_scraped_at": (now - timedelta(days=1)).isoformat()},
        ]
        assert newest_scraped_at(records) == now
