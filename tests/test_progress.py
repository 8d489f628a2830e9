"""Tests for sync progress stores and percentage calculation."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from conftest import _make_settings
from src.app.pipedrive.progress import (
    InMemoryProgressStore,
    ProgressStatus,
    RedisProgressStore,
    SyncProgress,
    calculate_percentage,
    create_progress_store,
)


def _progress(sync_id: str, **overrides) -> SyncProgress:
    return SyncProgress(sync_id=sync_id, user_id="user-1", **overrides)


@pytest.mark.parametrize(
    ("processed", "total", "expected"),
    [
        (0, 0, 0),
        (5, 0, 0),
        (0, 10, 0),
        (1, 3, 33),
        (2, 3, 67),
        (10, 10, 100),
        (15, 10, 100),
    ],
)
def test_calculate_percentage(processed: int, total: int, expected: int) -> None:
    assert calculate_percentage(processed, total) == expected


class TestInMemoryProgressStore:
    async def test_publish_and_get(self) -> None:
        store = InMemoryProgressStore()

        await store.publish(_progress("s-1", processed_contacts=3, total_contacts=10))
        snapshot = await store.get("s-1")

        assert snapshot.processed_contacts == 3
        assert snapshot.status == ProgressStatus.processing

    async def test_latest_snapshot_wins(self) -> None:
        store = InMemoryProgressStore()

        await store.publish(_progress("s-1", processed_contacts=3))
        await store.publish(_progress("s-1", processed_contacts=8, status=ProgressStatus.completed))

        snapshot = await store.get("s-1")
        assert snapshot.processed_contacts == 8
        assert snapshot.status == ProgressStatus.completed
        assert len(store) == 1

    async def test_returned_snapshot_is_a_copy(self) -> None:
        store = InMemoryProgressStore()
        await store.publish(_progress("s-1"))

        snapshot = await store.get("s-1")
        snapshot.processed_contacts = 99

        assert (await store.get("s-1")).processed_contacts == 0

    async def test_evicts_least_recently_used(self) -> None:
        store = InMemoryProgressStore(max_entries=2)
        await store.publish(_progress("s-1"))
        await store.publish(_progress("s-2"))
        await store.get("s-1")

        await store.publish(_progress("s-3"))

        assert len(store) == 2
        assert await store.get("s-2") is None
        assert await store.get("s-1") is not None
        assert await store.get("s-3") is not None

    async def test_clear(self) -> None:
        store = InMemoryProgressStore()
        await store.publish(_progress("s-1"))

        await store.clear("s-1")
        await store.clear("missing")

        assert await store.get("s-1") is None


class TestRedisProgressStore:
    async def test_publish_sets_json_with_ttl(self) -> None:
        redis = AsyncMock()
        store = RedisProgressStore(redis, ttl_seconds=120)
        progress = _progress("s-1", processed_contacts=4, errors=["Alice: boom"])

        await store.publish(progress)

        redis.set.assert_awaited_once_with(
            "pipedrive:sync:progress:s-1", progress.model_dump_json(), ex=120
        )

    async def test_get_parses_snapshot(self) -> None:
        redis = AsyncMock()
        redis.get.return_value = _progress("s-1", percentage=40).model_dump_json()
        store = RedisProgressStore(redis)

        snapshot = await store.get("s-1")

        redis.get.assert_awaited_once_with("pipedrive:sync:progress:s-1")
        assert snapshot.percentage == 40

    async def test_get_missing(self) -> None:
        redis = AsyncMock()
        redis.get.return_value = None

        assert await RedisProgressStore(redis).get("s-1") is None

    async def test_clear_deletes_key(self) -> None:
        redis = AsyncMock()

        await RedisProgressStore(redis).clear("s-1")

        redis.delete.assert_awaited_once_with("pipedrive:sync:progress:s-1")


class TestCreateProgressStore:
    def test_memory_backend(self) -> None:
        store = create_progress_store(
            _make_settings(SYNC_PROGRESS_BACKEND="memory", SYNC_PROGRESS_MAX_ENTRIES=5)
        )

        assert isinstance(store, InMemoryProgressStore)

    def test_redis_backend(self) -> None:
        pool = AsyncMock()
        with patch("src.app.core.redis.get_redis_pool", return_value=pool):
            store = create_progress_store(
                _make_settings(SYNC_PROGRESS_BACKEND="redis", SYNC_PROGRESS_TTL_SECONDS=60)
            )

        assert isinstance(store, RedisProgressStore)
        assert store._redis is pool
        assert store._ttl_seconds == 60
