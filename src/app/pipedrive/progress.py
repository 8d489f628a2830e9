"""Sync progress reporting.

The orchestrator publishes a SyncProgress snapshot after every batch and on
finalization. Stores are injected (no module-level state):
- InMemoryProgressStore: bounded LRU for single-process deployments and tests
- RedisProgressStore: JSON snapshots with TTL, shared across instances
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import OrderedDict
from enum import Enum

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field

from src.app.config import ProgressBackend, Settings

logger = structlog.get_logger(__name__)


class ProgressStatus(str, Enum):
    processing = "processing"
    completed = "completed"
    failed = "failed"


class SyncProgress(BaseModel):
    """Point-in-time progress of one sync run."""

    sync_id: str
    user_id: str
    total_contacts: int = 0
    processed_contacts: int = 0
    current_contact: str | None = None
    percentage: int = 0
    status: ProgressStatus = ProgressStatus.processing
    errors: list[str] = Field(default_factory=list)
    batch_number: int | None = None
    total_batches: int | None = None


def calculate_percentage(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round(processed / total * 100))


class ProgressStore(ABC):
    """Where progress snapshots are published and read back."""

    @abstractmethod
    async def publish(self, progress: SyncProgress) -> None:
        ...

    @abstractmethod
    async def get(self, sync_id: str) -> SyncProgress | None:
        ...

    @abstractmethod
    async def clear(self, sync_id: str) -> None:
        ...


class InMemoryProgressStore(ProgressStore):
    """Bounded LRU of progress snapshots, oldest evicted first.

    Args:
        max_entries: Maximum number of sync runs retained.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[str, SyncProgress] = OrderedDict()
        self._lock = asyncio.Lock()

    async def publish(self, progress: SyncProgress) -> None:
        async with self._lock:
            self._entries[progress.sync_id] = progress.model_copy()
            self._entries.move_to_end(progress.sync_id)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def get(self, sync_id: str) -> SyncProgress | None:
        async with self._lock:
            progress = self._entries.get(sync_id)
            if progress is None:
                return None
            self._entries.move_to_end(sync_id)
            return progress.model_copy()

    async def clear(self, sync_id: str) -> None:
        async with self._lock:
            self._entries.pop(sync_id, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisProgressStore(ProgressStore):
    """Progress snapshots stored as JSON strings with a TTL.

    Args:
        redis: ``redis.asyncio`` client (decode_responses=True).
        ttl_seconds: Expiry applied on every publish.
    """

    KEY_PREFIX = "pipedrive:sync:progress:"

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 3600) -> None:
        self._redis = redis
        self._ttl_seconds = ttl_seconds

    def _key(self, sync_id: str) -> str:
        return f"{self.KEY_PREFIX}{sync_id}"

    async def publish(self, progress: SyncProgress) -> None:
        await self._redis.set(
            self._key(progress.sync_id),
            progress.model_dump_json(),
            ex=self._ttl_seconds,
        )

    async def get(self, sync_id: str) -> SyncProgress | None:
        raw = await self._redis.get(self._key(sync_id))
        if raw is None:
            return None
        return SyncProgress.model_validate_json(raw)

    async def clear(self, sync_id: str) -> None:
        await self._redis.delete(self._key(sync_id))


def create_progress_store(settings: Settings) -> ProgressStore:
    """Build the progress store selected by SYNC_PROGRESS_BACKEND."""
    if settings.SYNC_PROGRESS_BACKEND == ProgressBackend.redis:
        from src.app.core.redis import get_redis_pool

        logger.info("progress.store_selected", backend="redis")
        return RedisProgressStore(get_redis_pool(), settings.SYNC_PROGRESS_TTL_SECONDS)
    logger.info("progress.store_selected", backend="memory")
    return InMemoryProgressStore(settings.SYNC_PROGRESS_MAX_ENTRIES)
