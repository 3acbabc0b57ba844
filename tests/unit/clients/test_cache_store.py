"""
Tests for the JSON file cache store.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from replguard.clients.cache_store import JsonFileCacheStore
from replguard.core.errors import CacheCorruptionError, CacheStoreError
from replguard.primitives.fleet import NodeStatus
from replguard.systems.delta.cache import DeltaCache
from replguard.systems.delta.types import CacheEntry


def _entries() -> dict[str, CacheEntry]:
    at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    return {
        "dc01": CacheEntry(node="dc01", last_check=at, status=NodeStatus.HEALTHY, consecutive_healthy=4),
        "dc02": CacheEntry(node="dc02", last_check=at, status=NodeStatus.UNREACHABLE),
    }


class TestJsonFileCacheStore:
    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        store = JsonFileCacheStore(tmp_path / "cache.json")
        assert await store.load() == {}

    @pytest.mark.asyncio
    async def test_save_then_load(self, tmp_path):
        store = JsonFileCacheStore(tmp_path / "nested" / "cache.json")
        await store.save(_entries())
        loaded = await store.load()
        assert loaded == _entries()

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, tmp_path):
        store = JsonFileCacheStore(tmp_path / "cache.json")
        await store.save(_entries())
        await store.save(_entries())
        assert [p.name for p in tmp_path.iterdir()] == ["cache.json"]

    @pytest.mark.asyncio
    async def test_garbage_raises_corruption(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("{not json")
        with pytest.raises(CacheCorruptionError):
            await JsonFileCacheStore(path).load()

    @pytest.mark.asyncio
    async def test_wrong_shape_raises_corruption(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text('{"version": 1, "entries": {"dc01": {"node": "dc01"}}}')
        with pytest.raises(CacheCorruptionError):
            await JsonFileCacheStore(path).load()

    @pytest.mark.asyncio
    async def test_unwritable_location_raises_store_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = JsonFileCacheStore(blocker / "cache.json")
        with pytest.raises(CacheStoreError):
            await store.save(_entries())

    @pytest.mark.asyncio
    async def test_naive_timestamp_raises_corruption(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text(
            '{"version": 1, "entries": {"dc01": '
            '{"node": "dc01", "last_check": "2026-01-01T00:00:00", "status": "healthy"}}}'
        )
        with pytest.raises(CacheCorruptionError):
            await JsonFileCacheStore(path).load()

    @pytest.mark.asyncio
    async def test_naive_timestamp_degrades_delta_cache(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text(
            '{"version": 1, "entries": {"dc01": '
            '{"node": "dc01", "last_check": "2026-01-01T00:00:00", "status": "healthy"}}}'
        )
        cache = DeltaCache(JsonFileCacheStore(path))

        await cache.load()

        assert cache.degraded
        assert cache.size == 0
