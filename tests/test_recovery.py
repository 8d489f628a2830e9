"""Tests for RecoveryService: strategy selection, retry execution, resume
parameters, batch recovery plans and error logging.

Retries use a recording sleep, so no test waits in real time.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import InMemorySyncStore, RecordingSleep
from src.app.contacts.schemas import SyncStatus, SyncType
from src.app.pipedrive.errors import (
    AuthenticationError,
    ErrorKind,
    NetworkError,
    RateLimitError,
    SyncTimeoutError,
)
from src.app.pipedrive.recovery import (
    FailedBatch,
    RecoveryPoint,
    RecoveryService,
    RecoveryStrategy,
)


def _make_recovery(store: InMemorySyncStore | None = None, sleep: RecordingSleep | None = None):
    sleep = sleep or RecordingSleep()
    return RecoveryService(store or InMemorySyncStore(), sleep=sleep), sleep


class _FlakyOperation:
    """Fails with the queued errors, then returns ``result``."""

    def __init__(self, errors: list[Exception], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# ── Strategy Selection ───────────────────────────────────────────────────────


class TestStrategySelection:
    @pytest.mark.parametrize(
        ("message", "strategy"),
        [
            ("Rate limit exceeded", RecoveryStrategy.RETRY_WITH_BACKOFF),
            ("network timeout", RecoveryStrategy.RESUME_FROM_LAST_SUCCESS),
            ("database connection dropped", RecoveryStrategy.FULL_RETRY),
            ("API key expired or invalid", RecoveryStrategy.NO_RECOVERY),
            ("validation failed", RecoveryStrategy.NO_RECOVERY),
            ("Pipedrive API error: HTTP 500", RecoveryStrategy.RETRY_WITH_BACKOFF),
            ("something odd", RecoveryStrategy.RETRY_WITH_BACKOFF),
        ],
    )
    def test_strategy_by_message(self, message: str, strategy: RecoveryStrategy) -> None:
        recovery, _ = _make_recovery()
        assert recovery.select_strategy(message) == strategy

    def test_strategy_for_every_kind(self) -> None:
        assert RecoveryService.strategy_for(ErrorKind.UNKNOWN) == RecoveryStrategy.RETRY_WITH_BACKOFF
        assert RecoveryService.strategy_for(ErrorKind.EXTERNAL_API) == RecoveryStrategy.RETRY_WITH_BACKOFF
        assert RecoveryService.strategy_for(ErrorKind.DATABASE) == RecoveryStrategy.FULL_RETRY

    def test_tagged_error(self) -> None:
        recovery, _ = _make_recovery()
        assert recovery.select_strategy(AuthenticationError("x")) == RecoveryStrategy.NO_RECOVERY


# ── Execution ────────────────────────────────────────────────────────────────


class TestExecuteWithRecovery:
    async def test_success_on_first_attempt(self) -> None:
        recovery, sleep = _make_recovery()
        operation = _FlakyOperation([])

        result = await recovery.execute_with_recovery(operation, RecoveryStrategy.RETRY_WITH_BACKOFF)

        assert result.success is True
        assert result.data == "ok"
        assert result.attempts == 1
        assert result.strategy == RecoveryStrategy.RETRY_WITH_BACKOFF
        assert sleep.delays == []

    async def test_backoff_doubles_between_attempts(self) -> None:
        """maxRetries=3, base 1000ms, all fail -> waits 1s, 2s, 4s and 4 attempts."""
        recovery, sleep = _make_recovery()
        operation = _FlakyOperation([RateLimitError() for _ in range(10)])

        result = await recovery.execute_with_recovery(
            operation, RecoveryStrategy.RETRY_WITH_BACKOFF, max_retries=3, base_delay_ms=1000
        )

        assert result.success is False
        assert result.attempts == 4
        assert operation.calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert result.error == "Rate limit exceeded"
        assert isinstance(result.exception, RateLimitError)

    async def test_backoff_continues_after_prior_attempts(self) -> None:
        recovery, sleep = _make_recovery()
        operation = _FlakyOperation([RateLimitError() for _ in range(10)])

        result = await recovery.execute_with_recovery(
            operation,
            RecoveryStrategy.RETRY_WITH_BACKOFF,
            max_retries=2,
            base_delay_ms=1000,
            prior_attempts=1,
        )

        assert result.attempts == 3
        assert sleep.delays == [2.0, 4.0]

    async def test_flat_delay_for_other_strategies(self) -> None:
        recovery, sleep = _make_recovery()
        operation = _FlakyOperation([NetworkError("network timeout")] * 2)

        result = await recovery.execute_with_recovery(
            operation, RecoveryStrategy.RESUME_FROM_LAST_SUCCESS, max_retries=3, base_delay_ms=500
        )

        assert result.success is True
        assert result.attempts == 3
        assert sleep.delays == [0.5, 0.5]

    async def test_no_recovery_makes_one_attempt(self) -> None:
        recovery, sleep = _make_recovery()
        operation = _FlakyOperation([AuthenticationError("API key expired or invalid")] * 5)

        result = await recovery.execute_with_recovery(
            operation, RecoveryStrategy.NO_RECOVERY, max_retries=10
        )

        assert result.success is False
        assert result.attempts == 1
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_zero_retries_means_single_attempt(self) -> None:
        recovery, sleep = _make_recovery()
        operation = _FlakyOperation([NetworkError("x")])

        result = await recovery.execute_with_recovery(
            operation, RecoveryStrategy.FULL_RETRY, max_retries=0
        )

        assert result.success is False
        assert result.attempts == 1
        assert sleep.delays == []

    async def test_attempt_deadline_raises_timeout(self) -> None:
        recovery, _ = _make_recovery()

        async def slow() -> str:
            await asyncio.sleep(1)
            return "late"

        result = await recovery.execute_with_recovery(
            slow, RecoveryStrategy.FULL_RETRY, max_retries=1, base_delay_ms=1, timeout_ms=10
        )

        assert result.success is False
        assert result.attempts == 2
        assert isinstance(result.exception, SyncTimeoutError)
        assert result.error == "Operation timeout after 10ms"


# ── Resumption ───────────────────────────────────────────────────────────────


class TestResumption:
    async def test_no_successful_sync_means_no_point(self) -> None:
        store = InMemorySyncStore()
        store.add_sync_history("user-1", status=SyncStatus.FAILED)
        recovery, _ = _make_recovery(store)

        assert await recovery.find_last_successful_sync_point("user-1") is None

    async def test_latest_success_by_end_time(self) -> None:
        store = InMemorySyncStore()
        store.add_sync_history(
            "user-1",
            contacts_processed=10,
            end_time=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        store.add_sync_history(
            "user-1",
            contacts_processed=40,
            contacts_created=30,
            contacts_updated=8,
            contacts_failed=2,
            end_time=datetime(2026, 2, 1, tzinfo=timezone.utc),
        )
        store.add_sync_history(
            "user-1",
            status=SyncStatus.FAILED,
            contacts_processed=99,
            end_time=datetime(2026, 3, 1, tzinfo=timezone.utc),
        )
        recovery, _ = _make_recovery(store)

        point = await recovery.find_last_successful_sync_point("user-1")

        assert point is not None
        assert point.contacts_processed == 40
        assert point.contacts_created == 30
        assert point.contacts_updated == 8
        assert point.contacts_failed == 2
        assert point.last_successful_time == datetime(2026, 2, 1, tzinfo=timezone.utc)

    def test_resume_parameters(self) -> None:
        point = RecoveryPoint(
            contacts_processed=120,
            contacts_updated=20,
            contacts_created=100,
            contacts_failed=0,
            last_successful_time=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )

        params = RecoveryService.calculate_resume_parameters(point, batch_size=50, estimated_total=500)

        assert params.start_from_contact == 120
        assert params.skip_contacts == 120
        assert params.estimated_remaining == 380
        assert params.batch_size == 50

    def test_resume_parameters_default_estimate(self) -> None:
        point = RecoveryPoint(
            contacts_processed=100,
            contacts_updated=0,
            contacts_created=100,
            contacts_failed=0,
            last_successful_time=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        assert RecoveryService.calculate_resume_parameters(point, 25).estimated_remaining == 400


# ── Batch Plans ──────────────────────────────────────────────────────────────


class TestBatchRecoveryPlans:
    def test_single_batch_plan(self) -> None:
        recovery, _ = _make_recovery()
        batch = FailedBatch(
            batch_number=3,
            start_index=100,
            end_index=150,
            failed_contacts=["p-101", "p-102"],
            error="Rate limit exceeded",
        )

        plan = recovery.create_batch_recovery_plan(batch)

        assert plan.retry_batch == 3
        assert plan.start_index == 100
        assert plan.end_index == 150
        assert plan.skip_contacts == ["p-101", "p-102"]
        assert plan.strategy == RecoveryStrategy.RETRY_WITH_BACKOFF
        assert plan.estimated_duration_ms == 50 * 2000

    def test_multi_batch_plan_sums_durations(self) -> None:
        recovery, _ = _make_recovery()
        batches = [
            FailedBatch(batch_number=1, start_index=0, end_index=10, error="network timeout"),
            FailedBatch(
                batch_number=2,
                start_index=10,
                end_index=30,
                failed_contacts=["p-12"],
                error="database connection",
            ),
        ]

        plan = recovery.create_multi_batch_recovery_plan(batches)

        assert [p.retry_batch for p in plan.batches_to_retry] == [1, 2]
        assert [p.strategy for p in plan.batches_to_retry] == [
            RecoveryStrategy.RESUME_FROM_LAST_SUCCESS,
            RecoveryStrategy.FULL_RETRY,
        ]
        assert all(p.skip_contacts == [] for p in plan.batches_to_retry)
        assert plan.total_estimated_duration_ms == (10 + 20) * 2000
        assert plan.strategy == RecoveryStrategy.RESUME_FROM_LAST_SUCCESS


# ── Error Logging ────────────────────────────────────────────────────────────


class TestLogError:
    async def test_marks_sync_failed_with_kind_prefix(self) -> None:
        store = InMemorySyncStore()
        row = store.add_sync_history("user-1", status=SyncStatus.PENDING, sync_type=SyncType.FULL)
        recovery, _ = _make_recovery(store)

        metrics = await recovery.log_error(RateLimitError(), "user-1", row.id, batch_number=2)

        updated = store.sync_history[row.id]
        assert updated.status == SyncStatus.FAILED
        assert updated.error == "RATE_LIMIT: Rate limit exceeded"
        assert updated.end_time is not None
        assert metrics.kind == ErrorKind.RATE_LIMIT
        assert metrics.recoverable is True
        assert metrics.user_id == "user-1"

    async def test_audit_write_failure_is_swallowed(self) -> None:
        store = InMemorySyncStore()
        row = store.add_sync_history("user-1", status=SyncStatus.PENDING)
        store.fail_sync_history_update = RuntimeError("database connection lost")
        recovery, _ = _make_recovery(store)

        metrics = await recovery.log_error("API key expired", "user-1", row.id)

        assert metrics.kind == ErrorKind.AUTHENTICATION
        assert metrics.recoverable is False
        assert store.sync_history[row.id].status == SyncStatus.PENDING
