"""Deadline enforcement for sync runs and batches.

Sync-level and batch-level operations run under ``asyncio.wait_for``; on
expiry the operation is cancelled rather than left running in the
background. Batch samples are kept in memory per sync id for pattern
analysis and must be cleared by the caller once the sync finishes.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Generic, TypeVar

import structlog
from pydantic import BaseModel, Field

from src.app.contacts.schemas import (
    SyncHistoryUpdate,
    SyncStatus,
    UserSyncStatus,
    UserUpdate,
)
from src.app.contacts.store import SyncStore
from src.app.core.monitoring import (
    sync_batch_duration_seconds,
    sync_batch_timeouts_total,
)
from src.app.pipedrive.errors import SyncTimeoutError, error_message

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class TimeoutConfig(BaseModel):
    """Deadlines in milliseconds. Validate with TimeoutProtection.validate_timeout_config."""

    sync_timeout_ms: int = 300000
    batch_timeout_ms: int = 30000
    max_batch_timeout_ms: int = 120000
    progressive_timeout_enabled: bool = True


@dataclass
class TimeoutResult(Generic[T]):
    success: bool
    duration_ms: int
    data: T | None = None
    error: str | None = None
    timed_out: bool = False
    exception: BaseException | None = field(default=None, repr=False)


class TimeoutMetric(BaseModel):
    """One recorded batch sample."""

    sync_id: str
    batch_number: int
    timeout_ms: int
    actual_duration_ms: int
    was_timeout: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TimeoutPatterns(BaseModel):
    timeout_count: int = 0
    total_batches: int = 0
    timeout_rate: float = 0.0
    average_duration_ms: float = 0.0
    max_duration_ms: int = 0


class TimeoutSuggestion(BaseModel):
    should_increase: bool
    recommended_timeout_ms: int
    reason: str


class ConfigValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)


class TimeoutProtection:
    """Sync and batch deadline wrappers plus timeout metrics.

    Args:
        store: Persistent store used for best-effort timeout bookkeeping.
        config: Default TimeoutConfig (progressive calculation and suggestions
            use its batch and max batch timeouts).
    """

    def __init__(self, store: SyncStore, config: TimeoutConfig | None = None) -> None:
        self._store = store
        self.config = config or TimeoutConfig()
        self._metrics: dict[str, list[TimeoutMetric]] = defaultdict(list)

    def get_default_config(self) -> TimeoutConfig:
        return self.config.model_copy()

    # ── Execution ───────────────────────────────────────────────────────────

    async def execute_sync_with_timeout(
        self,
        operation: Callable[[], Awaitable[T]],
        config: TimeoutConfig | None = None,
        sync_id: str | None = None,
        user_id: str | None = None,
    ) -> TimeoutResult[T]:
        """Run a whole sync under ``sync_timeout_ms``.

        On timeout with both ``sync_id`` and ``user_id`` supplied, the sync row
        is marked FAILED and the user's watermark and status are reset.
        """
        cfg = config or self.config
        start = time.monotonic()
        try:
            data = await asyncio.wait_for(operation(), timeout=cfg.sync_timeout_ms / 1000)
        except asyncio.TimeoutError:
            duration_ms = _elapsed_ms(start)
            message = f"Sync timeout after {cfg.sync_timeout_ms}ms"
            logger.error(
                "timeout.sync_exceeded",
                sync_id=sync_id,
                user_id=user_id,
                timeout_ms=cfg.sync_timeout_ms,
                duration_ms=duration_ms,
            )
            if sync_id and user_id:
                await self._handle_sync_timeout(sync_id, user_id, message)
            return TimeoutResult(
                success=False,
                duration_ms=duration_ms,
                error=message,
                timed_out=True,
                exception=SyncTimeoutError(message),
            )
        except Exception as exc:
            return TimeoutResult(
                success=False,
                duration_ms=_elapsed_ms(start),
                error=error_message(exc),
                exception=exc,
            )
        return TimeoutResult(success=True, duration_ms=_elapsed_ms(start), data=data)

    async def execute_batch_with_timeout(
        self,
        operation: Callable[[], Awaitable[T]],
        config: TimeoutConfig | None = None,
        sync_id: str | None = None,
        batch_number: int | None = None,
    ) -> TimeoutResult[T]:
        """Run one batch under ``batch_timeout_ms``.

        A metric sample is recorded for every outcome when ``sync_id`` and
        ``batch_number`` are supplied. On timeout the sync row's error is
        updated (best-effort).
        """
        cfg = config or self.config
        start = time.monotonic()
        try:
            data = await asyncio.wait_for(operation(), timeout=cfg.batch_timeout_ms / 1000)
        except asyncio.TimeoutError:
            duration_ms = _elapsed_ms(start)
            message = f"Batch {batch_number or 'unknown'} timeout after {cfg.batch_timeout_ms}ms"
            sync_batch_timeouts_total.inc()
            self._record_batch(sync_id, batch_number, cfg, duration_ms, was_timeout=True)
            logger.warning(
                "timeout.batch_exceeded",
                sync_id=sync_id,
                batch_number=batch_number,
                timeout_ms=cfg.batch_timeout_ms,
                duration_ms=duration_ms,
            )
            if sync_id:
                await self._handle_batch_timeout(sync_id, batch_number, message)
            return TimeoutResult(
                success=False,
                duration_ms=duration_ms,
                error=message,
                timed_out=True,
                exception=SyncTimeoutError(message),
            )
        except Exception as exc:
            duration_ms = _elapsed_ms(start)
            self._record_batch(sync_id, batch_number, cfg, duration_ms, was_timeout=False)
            return TimeoutResult(
                success=False,
                duration_ms=duration_ms,
                error=error_message(exc),
                exception=exc,
            )

        duration_ms = _elapsed_ms(start)
        self._record_batch(sync_id, batch_number, cfg, duration_ms, was_timeout=False)
        return TimeoutResult(success=True, duration_ms=duration_ms, data=data)

    def _record_batch(
        self,
        sync_id: str | None,
        batch_number: int | None,
        cfg: TimeoutConfig,
        duration_ms: int,
        was_timeout: bool,
    ) -> None:
        sync_batch_duration_seconds.observe(duration_ms / 1000)
        if sync_id and batch_number is not None:
            self.track_timeout_metrics(
                TimeoutMetric(
                    sync_id=sync_id,
                    batch_number=batch_number,
                    timeout_ms=cfg.batch_timeout_ms,
                    actual_duration_ms=duration_ms,
                    was_timeout=was_timeout,
                )
            )

    async def _handle_sync_timeout(self, sync_id: str, user_id: str, message: str) -> None:
        try:
            await asyncio.gather(
                self._store.update_sync_history(
                    sync_id,
                    SyncHistoryUpdate(
                        status=SyncStatus.FAILED,
                        error=message,
                        end_time=datetime.now(timezone.utc),
                    ),
                ),
                self._store.update_user(
                    user_id,
                    UserUpdate(sync_status=UserSyncStatus.FAILED, last_sync_timestamp=None),
                ),
            )
        except Exception:
            logger.exception("timeout.sync_bookkeeping_failed", sync_id=sync_id, user_id=user_id)

    async def _handle_batch_timeout(
        self, sync_id: str, batch_number: int | None, message: str
    ) -> None:
        try:
            await self._store.update_sync_history(
                sync_id,
                SyncHistoryUpdate(error=message, end_time=datetime.now(timezone.utc)),
            )
        except Exception:
            logger.exception(
                "timeout.batch_bookkeeping_failed", sync_id=sync_id, batch_number=batch_number
            )

    # ── Configuration ───────────────────────────────────────────────────────

    def calculate_progressive_timeout(self, total_contacts: int, batch_size: int) -> TimeoutConfig:
        """Scale the batch deadline with the batch's share of the whole sync.

        Batches covering everything (or >= 1000 contacts) get the max batch
        timeout; batches of <= 10 contacts or <= 5% of the total get the base
        timeout; others interpolate linearly between the two.
        """
        base = self.config.batch_timeout_ms
        ceiling = self.config.max_batch_timeout_ms

        if not self.config.progressive_timeout_enabled:
            return self.config.model_copy()

        if batch_size >= total_contacts or batch_size >= 1000:
            return self.config.model_copy(update={"batch_timeout_ms": ceiling})

        if batch_size <= 10 or batch_size <= total_contacts * 0.05:
            return self.config.model_copy(update={"batch_timeout_ms": base})

        ratio = batch_size / total_contacts
        progressive = base + ratio * (ceiling - base)
        progressive = min(max(progressive, base), ceiling)
        return self.config.model_copy(update={"batch_timeout_ms": round(progressive)})

    @staticmethod
    def validate_timeout_config(config: TimeoutConfig) -> ConfigValidation:
        errors: list[str] = []
        if config.sync_timeout_ms <= 0:
            errors.append("sync_timeout_ms must be positive")
        if config.batch_timeout_ms <= 0:
            errors.append("batch_timeout_ms must be positive")
        if config.max_batch_timeout_ms <= 0:
            errors.append("max_batch_timeout_ms must be positive")
        if config.batch_timeout_ms > config.sync_timeout_ms:
            errors.append("batch_timeout_ms cannot exceed sync_timeout_ms")
        if config.max_batch_timeout_ms > config.sync_timeout_ms:
            errors.append("max_batch_timeout_ms cannot exceed sync_timeout_ms")
        return ConfigValidation(is_valid=not errors, errors=errors)

    # ── Metrics ─────────────────────────────────────────────────────────────

    def track_timeout_metrics(self, metric: TimeoutMetric) -> TimeoutMetric:
        self._metrics[metric.sync_id].append(metric)
        return metric

    def get_timeout_metrics(self, sync_id: str) -> list[TimeoutMetric]:
        return list(self._metrics.get(sync_id, []))

    def analyze_timeout_patterns(self, sync_id: str) -> TimeoutPatterns:
        samples = self._metrics.get(sync_id)
        if not samples:
            return TimeoutPatterns()

        timeout_count = sum(1 for m in samples if m.was_timeout)
        durations = [m.actual_duration_ms for m in samples]
        return TimeoutPatterns(
            timeout_count=timeout_count,
            total_batches=len(samples),
            timeout_rate=timeout_count / len(samples),
            average_duration_ms=sum(durations) / len(samples),
            max_duration_ms=max(durations),
        )

    def suggest_timeout_adjustments(
        self,
        current_timeout_ms: int,
        average_duration_ms: float,
        timeout_rate: float,
        total_batches: int,
    ) -> TimeoutSuggestion:
        ceiling = self.config.max_batch_timeout_ms

        if average_duration_ms > current_timeout_ms * 0.8:
            return TimeoutSuggestion(
                should_increase=True,
                recommended_timeout_ms=min(round(average_duration_ms * 1.5), ceiling),
                reason="average duration exceeds current timeout",
            )

        if timeout_rate > 0.2 and total_batches > 5:
            return TimeoutSuggestion(
                should_increase=True,
                recommended_timeout_ms=min(round(current_timeout_ms * 1.5), ceiling),
                reason=(
                    f"High timeout rate ({timeout_rate * 100:.1f}%) "
                    "suggests timeout is too aggressive"
                ),
            )

        return TimeoutSuggestion(
            should_increase=False,
            recommended_timeout_ms=current_timeout_ms,
            reason="low timeout rate",
        )

    def clear_timeout_metrics(self, sync_id: str) -> None:
        self._metrics.pop(sync_id, None)


def _elapsed_ms(start: float) -> int:
    return round((time.monotonic() - start) * 1000)
