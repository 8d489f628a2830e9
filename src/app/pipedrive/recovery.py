"""Error recovery for Pipedrive sync runs.

Maps classified errors to recovery strategies, executes operations under a
strategy-specific retry policy (tenacity), derives resume parameters from
the last successful SyncHistory row, and builds batch recovery plans.

Strategy table:
    RATE_LIMIT -> RETRY_WITH_BACKOFF
    NETWORK -> RESUME_FROM_LAST_SUCCESS
    DATABASE -> FULL_RETRY
    AUTHENTICATION, VALIDATION -> NO_RECOVERY
    anything else -> RETRY_WITH_BACKOFF
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from src.app.contacts.schemas import SyncHistoryUpdate, SyncStatus
from src.app.contacts.store import SyncStore
from src.app.core.monitoring import sync_errors_total
from src.app.pipedrive.errors import (
    ErrorClassifier,
    ErrorKind,
    SyncTimeoutError,
    error_message,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Assumed remote cost per contact when estimating a batch retry
MS_PER_CONTACT = 2000


class RecoveryStrategy(str, Enum):
    RETRY_WITH_BACKOFF = "RETRY_WITH_BACKOFF"
    RESUME_FROM_LAST_SUCCESS = "RESUME_FROM_LAST_SUCCESS"
    FULL_RETRY = "FULL_RETRY"
    NO_RECOVERY = "NO_RECOVERY"


_STRATEGY_BY_KIND: dict[ErrorKind, RecoveryStrategy] = {
    ErrorKind.RATE_LIMIT: RecoveryStrategy.RETRY_WITH_BACKOFF,
    ErrorKind.NETWORK: RecoveryStrategy.RESUME_FROM_LAST_SUCCESS,
    ErrorKind.DATABASE: RecoveryStrategy.FULL_RETRY,
    ErrorKind.AUTHENTICATION: RecoveryStrategy.NO_RECOVERY,
    ErrorKind.VALIDATION: RecoveryStrategy.NO_RECOVERY,
}


# ── Records ─────────────────────────────────────────────────────────────────


@dataclass
class RecoveryResult(Generic[T]):
    """Outcome of execute_with_recovery.

    Attributes:
        success: Whether some attempt succeeded.
        data: Value returned by the successful attempt.
        error: Message of the last failure.
        attempts: Number of attempts actually made (1-indexed).
        strategy: Strategy the operation ran under.
        exception: Last exception raised, for callers that re-raise.
    """

    success: bool
    attempts: int
    strategy: RecoveryStrategy
    data: T | None = None
    error: str | None = None
    exception: BaseException | None = field(default=None, repr=False)


class RecoveryPoint(BaseModel):
    """Counters of the most recent successful sync."""

    contacts_processed: int
    contacts_updated: int
    contacts_created: int
    contacts_failed: int
    last_successful_time: datetime


class ResumeParameters(BaseModel):
    start_from_contact: int
    skip_contacts: int
    estimated_remaining: int
    batch_size: int


class FailedBatch(BaseModel):
    """A batch that failed, with its index range and triggering error."""

    batch_number: int
    start_index: int
    end_index: int
    failed_contacts: list[str] = Field(default_factory=list)
    error: str


class BatchRecoveryPlan(BaseModel):
    retry_batch: int
    start_index: int
    end_index: int
    skip_contacts: list[str] = Field(default_factory=list)
    strategy: RecoveryStrategy
    estimated_duration_ms: int


class MultiBatchRecoveryPlan(BaseModel):
    batches_to_retry: list[BatchRecoveryPlan] = Field(default_factory=list)
    total_estimated_duration_ms: int = 0
    strategy: RecoveryStrategy = RecoveryStrategy.RESUME_FROM_LAST_SUCCESS


class ErrorMetrics(BaseModel):
    kind: ErrorKind
    user_id: str
    timestamp: datetime
    recoverable: bool


# ── Service ─────────────────────────────────────────────────────────────────


class RecoveryService:
    """Recovery strategy selection and execution for sync operations.

    Args:
        store: Persistent store (SyncHistory reads and audit writes).
        classifier: ErrorClassifier; a default one is created when omitted.
        sleep: Awaitable sleep in seconds used between attempts.
    """

    def __init__(
        self,
        store: SyncStore,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep

    def select_strategy(self, error: BaseException | str) -> RecoveryStrategy:
        return self.strategy_for(self.classifier.classify(error).kind)

    @staticmethod
    def strategy_for(kind: ErrorKind) -> RecoveryStrategy:
        return _STRATEGY_BY_KIND.get(kind, RecoveryStrategy.RETRY_WITH_BACKOFF)

    # ── Execution ───────────────────────────────────────────────────────────

    async def execute_with_recovery(
        self,
        operation: Callable[[], Awaitable[T]],
        strategy: RecoveryStrategy,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        timeout_ms: int = 30000,
        prior_attempts: int = 0,
    ) -> RecoveryResult[T]:
        """Run ``operation`` until it succeeds or the attempt budget is spent.

        Every attempt races a ``timeout_ms`` deadline. Between attempts
        RETRY_WITH_BACKOFF waits base * 2^(attempt-1), NO_RECOVERY stops after
        the first attempt and other strategies wait a flat base delay. At most
        ``max_retries + 1`` attempts are made.

        ``prior_attempts`` counts attempts the caller already made (and waited
        after) before handing over, so the backoff schedule continues from
        there instead of restarting at the base delay.
        """
        if strategy == RecoveryStrategy.NO_RECOVERY:
            stop = stop_after_attempt(1)
        else:
            stop = stop_after_attempt(max(max_retries, 0) + 1)

        base_delay_s = base_delay_ms / 1000
        if strategy == RecoveryStrategy.RETRY_WITH_BACKOFF:
            wait = wait_exponential(
                multiplier=base_delay_s * 2 ** max(prior_attempts, 0), exp_base=2
            )
        else:
            wait = wait_fixed(base_delay_s)

        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "recovery.retrying",
                strategy=strategy.value,
                attempt=retry_state.attempt_number,
                delay_ms=round(retry_state.next_action.sleep * 1000)
                if retry_state.next_action
                else None,
                error=error_message(exc) if exc else None,
            )

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop,
                wait=wait,
                sleep=self._sleep,
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    data = await self._run_with_deadline(operation, timeout_ms)
        except Exception as exc:
            logger.warning(
                "recovery.exhausted",
                strategy=strategy.value,
                attempts=attempts,
                error=error_message(exc),
            )
            return RecoveryResult(
                success=False,
                error=error_message(exc),
                attempts=attempts,
                strategy=strategy,
                exception=exc,
            )

        return RecoveryResult(
            success=True, data=data, attempts=attempts, strategy=strategy
        )

    @staticmethod
    async def _run_with_deadline(
        operation: Callable[[], Awaitable[T]], timeout_ms: int
    ) -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise SyncTimeoutError(f"Operation timeout after {timeout_ms}ms") from exc

    # ── Resumption ──────────────────────────────────────────────────────────

    async def find_last_successful_sync_point(self, user_id: str) -> RecoveryPoint | None:
        """Counters of the user's most recent SUCCESS sync, or None (FULL sync required)."""
        row = await self._store.get_latest_sync_history(user_id, SyncStatus.SUCCESS)
        if row is None:
            return None
        return RecoveryPoint(
            contacts_processed=row.contacts_processed,
            contacts_updated=row.contacts_updated,
            contacts_created=row.contacts_created,
            contacts_failed=row.contacts_failed,
            last_successful_time=row.end_time or row.start_time,
        )

    @staticmethod
    def calculate_resume_parameters(
        point: RecoveryPoint, batch_size: int, estimated_total: int = 500
    ) -> ResumeParameters:
        processed = point.contacts_processed
        return ResumeParameters(
            start_from_contact=processed,
            skip_contacts=processed,
            estimated_remaining=estimated_total - processed,
            batch_size=batch_size,
        )

    # ── Batch Plans ─────────────────────────────────────────────────────────

    def create_batch_recovery_plan(self, batch: FailedBatch) -> BatchRecoveryPlan:
        return BatchRecoveryPlan(
            retry_batch=batch.batch_number,
            start_index=batch.start_index,
            end_index=batch.end_index,
            skip_contacts=list(batch.failed_contacts),
            strategy=self.select_strategy(batch.error),
            estimated_duration_ms=(batch.end_index - batch.start_index) * MS_PER_CONTACT,
        )

    def create_multi_batch_recovery_plan(
        self, batches: list[FailedBatch]
    ) -> MultiBatchRecoveryPlan:
        plans = [
            self.create_batch_recovery_plan(b.model_copy(update={"failed_contacts": []}))
            for b in batches
        ]
        return MultiBatchRecoveryPlan(
            batches_to_retry=plans,
            total_estimated_duration_ms=sum(p.estimated_duration_ms for p in plans),
            strategy=RecoveryStrategy.RESUME_FROM_LAST_SUCCESS,
        )

    # ── Error Logging ───────────────────────────────────────────────────────

    async def log_error(
        self,
        error: BaseException | str,
        user_id: str,
        sync_id: str,
        batch_number: int | None = None,
    ) -> ErrorMetrics:
        """Mark the sync row FAILED with "{kind}: {message}" and record error metrics.

        Failures writing the audit row are logged and swallowed.
        """
        classification = self.classifier.classify(error)
        message = error_message(error)
        try:
            await self._store.update_sync_history(
                sync_id,
                SyncHistoryUpdate(
                    status=SyncStatus.FAILED,
                    error=f"{classification.kind.value}: {message}",
                    end_time=datetime.now(timezone.utc),
                ),
            )
        except Exception:
            logger.exception(
                "recovery.log_error_failed",
                sync_id=sync_id,
                user_id=user_id,
                batch_number=batch_number,
            )

        logger.error(
            "recovery.error_logged",
            sync_id=sync_id,
            user_id=user_id,
            batch_number=batch_number,
            kind=classification.kind.value,
            recoverable=classification.recoverable,
            error=message,
        )
        return self.track_error_metrics(error, user_id)

    def track_error_metrics(self, error: BaseException | str, user_id: str) -> ErrorMetrics:
        classification = self.classifier.classify(error)
        sync_errors_total.labels(
            kind=classification.kind.value,
            recoverable=str(classification.recoverable).lower(),
        ).inc()
        return ErrorMetrics(
            kind=classification.kind,
            user_id=user_id,
            timestamp=datetime.now(timezone.utc),
            recoverable=classification.recoverable,
        )
