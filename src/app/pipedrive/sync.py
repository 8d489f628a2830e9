"""Pipedrive contact sync orchestrator.

Drives one reconciliation pass from Pipedrive into the local contact store:

    PENDING -> fetch pages -> process contacts -> SUCCESS | FAILED

Each remote page is one batch. Page fetches run under a progressive batch
deadline; a failed fetch is classified and retried according to its recovery
strategy (non-recoverable kinds fail the run at once). Contacts are processed
strictly in the order returned. A failing contact is counted and logged but
never aborts the run. Organizations are resolved once per Pipedrive org id
per run through OrganizationCache.

Status policy: a run finalizes FAILED when a batch-level error propagates or
when every processed contact failed; otherwise SUCCESS. The user's
last_sync_timestamp advances to the run's start time only on SUCCESS.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.config import Settings, get_settings
from src.app.contacts.organizations import OrganizationResolver
from src.app.contacts.schemas import (
    ContactCreate,
    ContactUpdate,
    OrganizationCreate,
    OrganizationRead,
    SyncHistoryCreate,
    SyncHistoryRead,
    SyncHistoryUpdate,
    SyncStatus,
    SyncType,
    UserRead,
    UserSyncStatus,
    UserUpdate,
)
from src.app.contacts.store import SyncStore
from src.app.core.monitoring import record_sync_contacts, sync_runs_total
from src.app.pipedrive.client import PipedriveClient, create_pipedrive_client
from src.app.pipedrive.errors import (
    AuthenticationError,
    DataValidationError,
    SyncError,
    SyncFailedError,
    error_message,
)
from src.app.pipedrive.progress import (
    ProgressStatus,
    ProgressStore,
    SyncProgress,
    calculate_percentage,
)
from src.app.pipedrive.recovery import (
    RecoveryService,
    RecoveryStrategy,
    ResumeParameters,
)
from src.app.pipedrive.schemas import (
    PersonsPage,
    RemoteOrgRef,
    RemotePerson,
    SyncRunResult,
    parse_person,
)
from src.app.pipedrive.timeouts import TimeoutConfig, TimeoutProtection

logger = structlog.get_logger(__name__)

MAX_PROGRESS_ERRORS = 50

ClientFactory = Callable[[UserRead], PipedriveClient | None]


# ── Per-run State ───────────────────────────────────────────────────────────


class OrganizationCache:
    """Per-run cache of resolved organizations keyed by Pipedrive org id.

    Concurrent lookups for the same key are serialized so the resolver sees
    exactly one miss per organization. Unresolvable organizations are cached
    as None.
    """

    def __init__(self, resolver: OrganizationResolver) -> None:
        self._resolver = resolver
        self._resolved: dict[str, OrganizationRead | None] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def resolve(
        self,
        pipedrive_org_id: str,
        build: Callable[[], Awaitable[OrganizationCreate | None]],
    ) -> OrganizationRead | None:
        if pipedrive_org_id in self._resolved:
            return self._resolved[pipedrive_org_id]

        lock = self._locks.setdefault(pipedrive_org_id, asyncio.Lock())
        async with lock:
            if pipedrive_org_id in self._resolved:
                return self._resolved[pipedrive_org_id]
            data = await build()
            organization = (
                await self._resolver.find_or_create_organization(data) if data else None
            )
            self._resolved[pipedrive_org_id] = organization
            return organization

    @property
    def organization_ids(self) -> list[str]:
        return [org.id for org in self._resolved.values() if org is not None]

    def __len__(self) -> int:
        return len(self._resolved)


@dataclass
class _RunStats:
    processed: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_PROGRESS_ERRORS:
            self.errors.append(message)


@dataclass
class _SyncRun:
    user_id: str
    sync_id: str
    sync_type: SyncType
    since: datetime | None
    client: PipedriveClient
    organizations: OrganizationCache
    batch_config: TimeoutConfig
    start_time: datetime
    started: float
    contacts_total: int
    total_batches: int | None
    stats: _RunStats = field(default_factory=_RunStats)
    batch_number: int = 0
    current_contact: str | None = None

    def elapsed_ms(self) -> int:
        return round((time.monotonic() - self.started) * 1000)


# ── Service ─────────────────────────────────────────────────────────────────


class ContactSyncService:
    """Runs Pipedrive-to-local contact syncs.

    Args:
        store: Persistent store for users, contacts, organizations, sync history.
        progress: Store progress snapshots are published to.
        settings: Application settings (defaults to get_settings()).
        client_factory: Builds a PipedriveClient for a user (None when the
            user has no API key). Defaults to create_pipedrive_client.
        recovery: RecoveryService; built from ``store`` when omitted.
        timeouts: TimeoutProtection; built from settings when omitted.
        sleep: Awaitable sleep in seconds used before batch retries.
    """

    def __init__(
        self,
        store: SyncStore,
        progress: ProgressStore,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
        recovery: RecoveryService | None = None,
        timeouts: TimeoutProtection | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._progress = progress
        self._client_factory = client_factory or (
            lambda user: create_pipedrive_client(user, self._settings)
        )
        self._recovery = recovery or RecoveryService(store, sleep=sleep)
        self._timeouts = timeouts or TimeoutProtection(store, self._settings.timeout_config())
        self._resolver = OrganizationResolver(
            store, substring_fallback=self._settings.ORGANIZATION_SUBSTRING_FALLBACK
        )
        self._sleep = sleep

        validation = TimeoutProtection.validate_timeout_config(self._timeouts.config)
        if not validation.is_valid:
            raise ValueError(f"Invalid timeout configuration: {', '.join(validation.errors)}")

    @property
    def resolver(self) -> OrganizationResolver:
        return self._resolver

    # ── Entry Point ─────────────────────────────────────────────────────────

    async def run_sync(
        self,
        user_id: str,
        sync_type: SyncType | None = None,
        since: datetime | None = None,
    ) -> SyncRunResult:
        """Run one sync for ``user_id``.

        Args:
            user_id: Owner of the Pipedrive credential and local contacts.
            sync_type: Force FULL or INCREMENTAL; inferred from the user's
                last_sync_timestamp when None.
            since: Incremental cutoff overriding last_sync_timestamp.

        Returns:
            SyncRunResult with counters, duration and the new watermark.

        Raises:
            SyncError: Pre-flight failure (unknown user, no API key, failed
                connection test). No SyncHistory row is created.
            SyncFailedError: Fatal failure during the run. The SyncHistory
                row is finalized FAILED before raising.
        """
        user = await self._store.get_user(user_id)
        if user is None:
            raise DataValidationError(f"User {user_id} not found")

        client = self._client_factory(user)
        if client is None:
            raise AuthenticationError("No Pipedrive API key configured")

        connection = await client.test_connection()
        if not connection.success:
            kind = connection.exception.kind if connection.exception else None
            logger.warning("sync.connection_failed", user_id=user_id, error=connection.error)
            raise SyncError(f"Pipedrive connection failed: {connection.error}", kind=kind)

        resolved_type, cutoff = self._determine_sync_type(user, sync_type, since)
        start_time = datetime.now(timezone.utc)

        contacts_total = 0
        if resolved_type == SyncType.FULL:
            contacts_total = await self._store.count_contacts(user_id=user_id)

        history = await self._store.create_sync_history(
            SyncHistoryCreate(
                user_id=user_id,
                sync_type=resolved_type,
                start_time=start_time,
                contacts_total=contacts_total,
            )
        )
        await self._store.update_user(user_id, UserUpdate(sync_status=UserSyncStatus.SYNCING))

        page_size = client.page_size
        estimate = contacts_total or self._settings.SYNC_ESTIMATED_TOTAL_CONTACTS
        run = _SyncRun(
            user_id=user_id,
            sync_id=history.id,
            sync_type=resolved_type,
            since=cutoff,
            client=client,
            organizations=OrganizationCache(self._resolver),
            batch_config=self._timeouts.calculate_progressive_timeout(estimate, page_size),
            start_time=start_time,
            started=time.monotonic(),
            contacts_total=contacts_total,
            total_batches=math.ceil(contacts_total / page_size) if contacts_total else None,
        )
        logger.info(
            "sync.run_started",
            user_id=user_id,
            sync_id=run.sync_id,
            sync_type=resolved_type.value,
            since=cutoff.isoformat() if cutoff else None,
            contacts_total=contacts_total,
            batch_timeout_ms=run.batch_config.batch_timeout_ms,
        )

        try:
            outcome = await self._timeouts.execute_sync_with_timeout(
                lambda: self._process_batches(run),
                sync_id=run.sync_id,
                user_id=user_id,
            )
            if not outcome.success:
                failure = await self._fail_run(run, outcome.exception, outcome.timed_out)
                raise failure from outcome.exception
            try:
                return await self._finalize(run, user)
            except Exception as exc:
                failure = await self._fail_run(run, exc, timed_out=False)
                raise failure from exc
        finally:
            self._review_timeouts(run)

    def _determine_sync_type(
        self,
        user: UserRead,
        requested: SyncType | None,
        since: datetime | None,
    ) -> tuple[SyncType, datetime | None]:
        if requested == SyncType.FULL:
            return SyncType.FULL, None

        cutoff = since or user.last_sync_timestamp
        if cutoff is None:
            if requested == SyncType.INCREMENTAL:
                logger.info("sync.incremental_without_watermark", user_id=user.id)
            return SyncType.FULL, None
        return SyncType.INCREMENTAL, cutoff

    # ── Batches ─────────────────────────────────────────────────────────────

    async def _process_batches(self, run: _SyncRun) -> None:
        start = 0
        while True:
            run.batch_number += 1
            page = await self._fetch_page(run, start)

            for person in page.persons:
                await self._process_person(run, person)

            await self._checkpoint(run)
            await self._publish(run, ProgressStatus.processing)
            logger.info(
                "sync.batch_completed",
                sync_id=run.sync_id,
                batch_number=run.batch_number,
                batch_size=len(page.persons),
                processed=run.stats.processed,
                failed=run.stats.failed,
            )

            if not page.more_items or not page.persons:
                return
            start = page.next_start if page.next_start is not None else start + len(page.persons)

    async def _fetch_page(self, run: _SyncRun, start: int) -> PersonsPage:
        """Fetch one page under the batch deadline, recovering per strategy."""
        batch_number = run.batch_number

        async def fetch() -> PersonsPage:
            result = await run.client.get_persons(
                since=run.since, start=start, limit=run.client.page_size
            )
            return result.unwrap()

        async def timed_fetch() -> PersonsPage:
            result = await self._timeouts.execute_batch_with_timeout(
                fetch,
                config=run.batch_config,
                sync_id=run.sync_id,
                batch_number=batch_number,
            )
            if not result.success:
                raise result.exception or SyncError(result.error or "Batch failed")
            return result.data  # type: ignore[return-value]

        try:
            return await timed_fetch()
        except Exception as exc:
            first_error = exc

        classification = self._recovery.classifier.classify(first_error)
        strategy = self._recovery.strategy_for(classification.kind)
        self._recovery.track_error_metrics(first_error, run.user_id)
        logger.warning(
            "sync.batch_failed",
            sync_id=run.sync_id,
            batch_number=batch_number,
            kind=classification.kind.value,
            strategy=strategy.value,
            error=error_message(first_error),
        )
        if strategy == RecoveryStrategy.NO_RECOVERY or self._settings.SYNC_MAX_RETRIES <= 0:
            raise first_error

        # The first attempt above counts against the retry budget and the backoff schedule
        await self._sleep(self._settings.SYNC_RETRY_BASE_DELAY_MS / 1000)
        recovered = await self._recovery.execute_with_recovery(
            timed_fetch,
            strategy,
            max_retries=self._settings.SYNC_MAX_RETRIES - 1,
            base_delay_ms=self._settings.SYNC_RETRY_BASE_DELAY_MS,
            timeout_ms=run.batch_config.max_batch_timeout_ms,
            prior_attempts=1,
        )
        if recovered.success:
            logger.info(
                "sync.batch_recovered",
                sync_id=run.sync_id,
                batch_number=batch_number,
                strategy=strategy.value,
                attempts=recovered.attempts + 1,
            )
            return recovered.data  # type: ignore[return-value]
        raise recovered.exception or SyncError(recovered.error or "Batch failed")

    # ── Contacts ────────────────────────────────────────────────────────────

    async def _process_person(self, run: _SyncRun, raw: Any) -> None:
        person_id = raw.get("id") if isinstance(raw, dict) else None
        run.current_contact = _contact_label(raw)
        try:
            person = parse_person(raw)
            outcome = await self._sync_contact(run, person)
        except Exception as exc:
            run.stats.failed += 1
            classification = self._recovery.classifier.classify(exc)
            self._recovery.track_error_metrics(exc, run.user_id)
            run.stats.add_error(f"{run.current_contact}: {error_message(exc)}")
            logger.warning(
                "sync.contact_failed",
                sync_id=run.sync_id,
                pipedrive_person_id=person_id,
                kind=classification.kind.value,
                error=error_message(exc),
            )
        else:
            if outcome == "created":
                run.stats.created += 1
            elif outcome == "updated":
                run.stats.updated += 1
            else:
                run.stats.unchanged += 1
        finally:
            run.stats.processed += 1

    async def _sync_contact(self, run: _SyncRun, person: RemotePerson) -> str:
        """Create or update the local contact for ``person``.

        Returns:
            "created", "updated" or "unchanged".
        """
        pipedrive_org_id: str | None = None
        organization: OrganizationRead | None = None
        org_ref = person.org_id
        if org_ref is not None:
            pipedrive_org_id = str(org_ref.value)
            organization = await run.organizations.resolve(
                pipedrive_org_id,
                lambda: self._organization_data(run, person, org_ref),
            )

        organisation_name = person.organization_name() or (
            organization.name if organization else None
        )
        organization_id = organization.id if organization else None
        name = person.name.strip() or "Unknown Contact"

        existing = await self._store.find_contact_by_person_id(run.user_id, str(person.id))
        if existing is None:
            await self._store.create_contact(
                ContactCreate(
                    user_id=run.user_id,
                    name=name,
                    email=person.primary_email(),
                    phone=person.primary_phone(),
                    organisation=organisation_name,
                    pipedrive_person_id=str(person.id),
                    pipedrive_org_id=pipedrive_org_id,
                    organization_id=organization_id,
                    last_pipedrive_update=person.update_time,
                )
            )
            return "created"

        if not _is_newer(person.update_time, existing.last_pipedrive_update):
            return "unchanged"

        await self._store.update_contact(
            existing.id,
            ContactUpdate(
                name=name,
                email=person.primary_email(),
                phone=person.primary_phone(),
                organisation=organisation_name,
                pipedrive_org_id=pipedrive_org_id,
                organization_id=organization_id,
                last_pipedrive_update=person.update_time,
            ),
        )
        return "updated"

    async def _organization_data(
        self, run: _SyncRun, person: RemotePerson, ref: RemoteOrgRef
    ) -> OrganizationCreate | None:
        """Organization fields for a cache miss, enriched from Pipedrive when enabled.

        Enrichment failures fall back to the reference embedded in the person.
        """
        name = person.organization_name()
        data = OrganizationCreate(
            name=name or "",
            pipedrive_org_id=str(ref.value),
            address=ref.address,
        )

        if self._settings.PIPEDRIVE_ENRICH_ORGANIZATIONS:
            details = await run.client.get_organization_details(ref.value)
            if details.success and details.data is not None:
                org = details.data
                data = OrganizationCreate(
                    name=org.name or data.name,
                    pipedrive_org_id=str(org.id),
                    industry=org.industry,
                    website=org.website,
                    address=org.address or ref.address,
                    country=org.address_country,
                    city=org.address_locality,
                )
            else:
                logger.warning(
                    "sync.organization_enrichment_failed",
                    sync_id=run.sync_id,
                    pipedrive_org_id=ref.value,
                    error=details.error,
                )

        if not data.name.strip():
            logger.warning(
                "sync.organization_unnamed",
                sync_id=run.sync_id,
                pipedrive_org_id=ref.value,
            )
            return None
        return data

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    def _counters(self, run: _SyncRun) -> dict[str, int]:
        return {
            "contacts_processed": run.stats.processed,
            "contacts_created": run.stats.created,
            "contacts_updated": run.stats.updated,
            "contacts_failed": run.stats.failed,
        }

    async def _checkpoint(self, run: _SyncRun) -> None:
        try:
            await self._store.update_sync_history(
                run.sync_id, SyncHistoryUpdate(**self._counters(run))
            )
        except Exception:
            logger.warning(
                "sync.checkpoint_failed",
                sync_id=run.sync_id,
                batch_number=run.batch_number,
                exc_info=True,
            )

    async def _publish(self, run: _SyncRun, status: ProgressStatus) -> None:
        total = max(run.contacts_total, run.stats.processed)
        if status != ProgressStatus.processing:
            total = run.stats.processed
        try:
            await self._progress.publish(
                SyncProgress(
                    sync_id=run.sync_id,
                    user_id=run.user_id,
                    total_contacts=total,
                    processed_contacts=run.stats.processed,
                    current_contact=run.current_contact,
                    percentage=(
                        100
                        if status == ProgressStatus.completed
                        else calculate_percentage(run.stats.processed, total)
                    ),
                    status=status,
                    errors=list(run.stats.errors),
                    batch_number=run.batch_number or None,
                    total_batches=(
                        run.batch_number
                        if status != ProgressStatus.processing
                        else run.total_batches
                    ),
                )
            )
        except Exception:
            logger.warning("sync.progress_publish_failed", sync_id=run.sync_id, exc_info=True)

    async def _finalize(self, run: _SyncRun, user: UserRead) -> SyncRunResult:
        stats = run.stats
        all_failed = stats.processed > 0 and stats.failed == stats.processed
        status = SyncStatus.FAILED if all_failed else SyncStatus.SUCCESS
        duration_ms = run.elapsed_ms()

        await self._store.update_sync_history(
            run.sync_id,
            SyncHistoryUpdate(
                status=status,
                contacts_total=max(run.contacts_total, stats.processed),
                end_time=datetime.now(timezone.utc),
                duration_ms=duration_ms,
                error=(
                    f"All {stats.processed} contacts failed: {stats.errors[0]}"
                    if all_failed and stats.errors
                    else None
                ),
                **self._counters(run),
            ),
        )

        if status == SyncStatus.SUCCESS:
            last_sync_timestamp = run.start_time
            await self._store.update_user(
                run.user_id,
                UserUpdate(
                    last_sync_timestamp=run.start_time,
                    sync_status=UserSyncStatus.COMPLETED,
                ),
            )
        else:
            last_sync_timestamp = user.last_sync_timestamp
            await self._store.update_user(
                run.user_id, UserUpdate(sync_status=UserSyncStatus.FAILED)
            )

        await self._resolver.refresh_stats(run.organizations.organization_ids)
        await self._publish(
            run,
            ProgressStatus.completed if status == SyncStatus.SUCCESS else ProgressStatus.failed,
        )

        sync_runs_total.labels(sync_type=run.sync_type.value, status=status.value).inc()
        record_sync_contacts(stats.created, stats.updated, stats.failed, stats.unchanged)
        logger.info(
            "sync.run_completed",
            user_id=run.user_id,
            sync_id=run.sync_id,
            status=status.value,
            processed=stats.processed,
            created=stats.created,
            updated=stats.updated,
            failed=stats.failed,
            organizations=len(run.organizations),
            duration_ms=duration_ms,
        )

        return SyncRunResult(
            sync_id=run.sync_id,
            sync_type=run.sync_type,
            status=status,
            contacts_processed=stats.processed,
            contacts_created=stats.created,
            contacts_updated=stats.updated,
            contacts_failed=stats.failed,
            sync_duration_ms=duration_ms,
            last_sync_timestamp=last_sync_timestamp,
        )

    async def _fail_run(
        self, run: _SyncRun, exc: BaseException | None, timed_out: bool
    ) -> SyncFailedError:
        """Finalize the run FAILED and build the error to raise."""
        error = exc or SyncError("Sync failed")
        classification = self._recovery.classifier.classify(error)
        duration_ms = run.elapsed_ms()

        try:
            await self._store.update_sync_history(
                run.sync_id,
                SyncHistoryUpdate(duration_ms=duration_ms, **self._counters(run)),
            )
        except Exception:
            logger.warning("sync.checkpoint_failed", sync_id=run.sync_id, exc_info=True)

        if timed_out:
            # Row and user already marked FAILED by the sync deadline handler
            self._recovery.track_error_metrics(error, run.user_id)
        else:
            await self._recovery.log_error(
                error, run.user_id, run.sync_id, batch_number=run.batch_number or None
            )
            try:
                await self._store.update_user(
                    run.user_id, UserUpdate(sync_status=UserSyncStatus.FAILED)
                )
            except Exception:
                logger.warning("sync.user_status_failed", user_id=run.user_id, exc_info=True)

        run.stats.add_error(error_message(error))
        await self._publish(run, ProgressStatus.failed)
        sync_runs_total.labels(
            sync_type=run.sync_type.value, status=SyncStatus.FAILED.value
        ).inc()
        logger.error(
            "sync.run_failed",
            user_id=run.user_id,
            sync_id=run.sync_id,
            kind=classification.kind.value,
            timed_out=timed_out,
            processed=run.stats.processed,
            error=error_message(error),
        )

        return SyncFailedError(classification, error_message(error), sync_id=run.sync_id)

    def _review_timeouts(self, run: _SyncRun) -> None:
        """Log a deadline adjustment when the run's batch samples suggest one, then drop them."""
        patterns = self._timeouts.analyze_timeout_patterns(run.sync_id)
        if patterns.total_batches:
            suggestion = self._timeouts.suggest_timeout_adjustments(
                current_timeout_ms=run.batch_config.batch_timeout_ms,
                average_duration_ms=patterns.average_duration_ms,
                timeout_rate=patterns.timeout_rate,
                total_batches=patterns.total_batches,
            )
            if suggestion.should_increase:
                logger.warning(
                    "sync.timeout_adjustment_suggested",
                    sync_id=run.sync_id,
                    current_timeout_ms=run.batch_config.batch_timeout_ms,
                    recommended_timeout_ms=suggestion.recommended_timeout_ms,
                    reason=suggestion.reason,
                    timeout_rate=patterns.timeout_rate,
                )
        self._timeouts.clear_timeout_metrics(run.sync_id)

    # ── Queries ─────────────────────────────────────────────────────────────

    async def resume_parameters(
        self,
        user_id: str,
        batch_size: int,
        estimated_total: int | None = None,
    ) -> ResumeParameters | None:
        """Resume parameters from the last successful sync, or None when a FULL sync is required."""
        point = await self._recovery.find_last_successful_sync_point(user_id)
        if point is None:
            return None
        return self._recovery.calculate_resume_parameters(
            point,
            batch_size,
            estimated_total or self._settings.SYNC_ESTIMATED_TOTAL_CONTACTS,
        )

    async def latest_sync(self, user_id: str) -> SyncHistoryRead | None:
        return await self._store.get_latest_sync_history(user_id)

    async def get_progress(self, sync_id: str) -> SyncProgress | None:
        return await self._progress.get(sync_id)


def _contact_label(raw: Any) -> str:
    """Name shown in progress and error lists, falling back to the person id."""
    if not isinstance(raw, dict):
        return "Unknown Contact"
    name = raw.get("name")
    if isinstance(name, str) and name:
        return name
    return str(raw.get("id", "Unknown Contact"))


def _is_newer(remote: datetime | None, local: datetime | None) -> bool:
    """Whether the remote update time should overwrite the local copy."""
    if local is None:
        return True
    if remote is None:
        return False
    return remote > local
