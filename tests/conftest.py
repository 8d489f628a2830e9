"""Shared test doubles and fixtures for the contact sync engine.

Provides:
- InMemorySyncStore: SyncStore implementation backed by dicts
- FakePipedriveClient: paginated person source with failure toggles
- _make_* helpers for users, persons and settings
- Fixtures: store, client, service (ContactSyncService wired to the fakes)

No test touches a real database, Redis or the Pipedrive API.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import pytest

from src.app.config import Settings
from src.app.contacts.schemas import (
    ContactCreate,
    ContactRead,
    ContactUpdate,
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
    SyncHistoryCreate,
    SyncHistoryRead,
    SyncHistoryUpdate,
    SyncStatus,
    UserRead,
    UserUpdate,
)
from src.app.contacts.store import SyncStore
from src.app.pipedrive.errors import ExternalAPIError, SyncError
from src.app.pipedrive.progress import InMemoryProgressStore
from src.app.pipedrive.schemas import (
    PersonsPage,
    PipedriveResult,
    RemoteOrganization,
)
from src.app.pipedrive.sync import ContactSyncService


# ── In-Memory Store ──────────────────────────────────────────────────────────


class InMemorySyncStore(SyncStore):
    """In-memory SyncStore for testing without a database.

    Attributes:
        fail_contact_create: Exception raised by every create_contact call.
        fail_sync_history_update: Exception raised by every update_sync_history call.
        organization_creates: Number of create_organization calls.
    """

    def __init__(self) -> None:
        self.users: dict[str, UserRead] = {}
        self.contacts: dict[str, ContactRead] = {}
        self.organizations: dict[str, OrganizationRead] = {}
        self.sync_history: dict[str, SyncHistoryRead] = {}
        self.activities: dict[str, list[datetime]] = {}
        self.fail_contact_create: Exception | None = None
        self.fail_sync_history_update: Exception | None = None
        self.organization_creates = 0

    # Users

    async def get_user(self, user_id: str) -> UserRead | None:
        return self.users.get(user_id)

    async def update_user(self, user_id: str, data: UserUpdate) -> None:
        user = self.users[user_id]
        self.users[user_id] = user.model_copy(update=data.model_dump(exclude_unset=True))

    # Contacts

    async def find_contact_by_person_id(
        self, user_id: str, pipedrive_person_id: str
    ) -> ContactRead | None:
        for contact in self.contacts.values():
            if contact.user_id == user_id and contact.pipedrive_person_id == pipedrive_person_id:
                return contact
        return None

    async def create_contact(self, data: ContactCreate) -> ContactRead:
        if self.fail_contact_create is not None:
            raise self.fail_contact_create
        now = datetime.now(timezone.utc)
        contact = ContactRead(id=str(uuid.uuid4()), created_at=now, updated_at=now, **data.model_dump())
        self.contacts[contact.id] = contact
        return contact

    async def update_contact(self, contact_id: str, data: ContactUpdate) -> ContactRead:
        contact = self.contacts[contact_id].model_copy(
            update={**data.model_dump(exclude_unset=True), "updated_at": datetime.now(timezone.utc)}
        )
        self.contacts[contact_id] = contact
        return contact

    async def count_contacts(
        self, user_id: str | None = None, organization_id: str | None = None
    ) -> int:
        return sum(
            1
            for c in self.contacts.values()
            if (user_id is None or c.user_id == user_id)
            and (organization_id is None or c.organization_id == organization_id)
        )

    # Organizations

    async def find_organization(
        self, pipedrive_org_id: str | None, normalized_name: str
    ) -> OrganizationRead | None:
        if pipedrive_org_id:
            for org in self.organizations.values():
                if org.pipedrive_org_id == pipedrive_org_id:
                    return org
        for org in self.organizations.values():
            if org.normalized_name == normalized_name:
                return org
        return None

    async def find_organization_by_name_fragment(
        self, normalized_name: str
    ) -> OrganizationRead | None:
        for org in self.organizations.values():
            if normalized_name in org.normalized_name:
                return org
        return None

    async def create_organization(
        self, data: OrganizationCreate, normalized_name: str
    ) -> OrganizationRead:
        self.organization_creates += 1
        org = OrganizationRead(
            id=str(uuid.uuid4()),
            normalized_name=normalized_name,
            created_at=datetime.now(timezone.utc),
            **data.model_dump(),
        )
        self.organizations[org.id] = org
        return org

    async def update_organization(
        self, organization_id: str, data: OrganizationUpdate
    ) -> OrganizationRead:
        org = self.organizations[organization_id].model_copy(
            update=data.model_dump(exclude_unset=True)
        )
        self.organizations[organization_id] = org
        return org

    async def list_organizations(self) -> list[OrganizationRead]:
        return list(self.organizations.values())

    async def latest_activity_for_organization(self, organization_id: str) -> datetime | None:
        times = [
            t
            for contact in self.contacts.values()
            if contact.organization_id == organization_id
            for t in self.activities.get(contact.id, [])
        ]
        return max(times) if times else None

    # Sync history

    async def create_sync_history(self, data: SyncHistoryCreate) -> SyncHistoryRead:
        row = SyncHistoryRead(id=str(uuid.uuid4()), **data.model_dump())
        self.sync_history[row.id] = row
        return row

    async def update_sync_history(
        self, sync_id: str, data: SyncHistoryUpdate
    ) -> SyncHistoryRead:
        if self.fail_sync_history_update is not None:
            raise self.fail_sync_history_update
        row = self.sync_history[sync_id].model_copy(update=data.model_dump(exclude_unset=True))
        self.sync_history[sync_id] = row
        return row

    async def get_latest_sync_history(
        self, user_id: str, status: SyncStatus | None = None
    ) -> SyncHistoryRead | None:
        rows = [
            r
            for r in self.sync_history.values()
            if r.user_id == user_id and (status is None or r.status == status)
        ]
        if not rows:
            return None
        if status is not None:
            floor = datetime.min.replace(tzinfo=timezone.utc)
            return max(rows, key=lambda r: r.end_time or floor)
        return max(rows, key=lambda r: r.start_time)

    async def list_sync_history(self, user_id: str, limit: int = 20) -> list[SyncHistoryRead]:
        rows = sorted(
            (r for r in self.sync_history.values() if r.user_id == user_id),
            key=lambda r: r.start_time,
            reverse=True,
        )
        return rows[:limit]

    # Helpers

    def add_user(self, **overrides: Any) -> UserRead:
        user = _make_user(**overrides)
        self.users[user.id] = user
        return user

    def add_contact(self, user_id: str, **overrides: Any) -> ContactRead:
        contact = ContactRead(
            id=overrides.pop("id", str(uuid.uuid4())),
            user_id=user_id,
            name=overrides.pop("name", "Existing Contact"),
            **overrides,
        )
        self.contacts[contact.id] = contact
        return contact

    def add_sync_history(self, user_id: str, **overrides: Any) -> SyncHistoryRead:
        row = SyncHistoryRead(
            id=overrides.pop("id", str(uuid.uuid4())),
            user_id=user_id,
            sync_type=overrides.pop("sync_type", "FULL"),
            status=overrides.pop("status", SyncStatus.SUCCESS),
            start_time=overrides.pop("start_time", datetime(2026, 1, 1, tzinfo=timezone.utc)),
            **overrides,
        )
        self.sync_history[row.id] = row
        return row


# ── Fake Pipedrive Client ────────────────────────────────────────────────────


class FakePipedriveClient:
    """Stand-in for PipedriveClient serving persons from a list.

    Attributes:
        persons: Raw person payloads served in order, ``page_size`` per page.
        organizations: Raw organization payloads keyed by Pipedrive org id.
        connection_error: When set, test_connection fails with it.
        persons_errors: Errors returned by successive get_persons calls before
            pages are served normally.
        organization_error: When set, get_organization_details fails with it.
    """

    def __init__(
        self,
        persons: list[dict[str, Any]] | None = None,
        organizations: dict[int, dict[str, Any]] | None = None,
        page_size: int = 100,
    ) -> None:
        self.persons = persons or []
        self.organizations = organizations or {}
        self.page_size = page_size
        self.connection_error: SyncError | None = None
        self.persons_errors: list[SyncError] = []
        self.organization_error: SyncError | None = None
        self.get_persons_calls: list[dict[str, Any]] = []
        self.organization_detail_calls: list[int | str] = []

    async def test_connection(self) -> PipedriveResult[dict[str, Any]]:
        if self.connection_error is not None:
            return PipedriveResult(
                success=False,
                error=self.connection_error.message,
                exception=self.connection_error,
            )
        return PipedriveResult(success=True, data={"id": 1})

    async def get_persons(
        self,
        since: datetime | None = None,
        start: int = 0,
        limit: int | None = None,
    ) -> PipedriveResult[PersonsPage]:
        self.get_persons_calls.append({"since": since, "start": start, "limit": limit})
        if self.persons_errors:
            error = self.persons_errors.pop(0)
            return PipedriveResult(success=False, error=error.message, exception=error)

        limit = limit or self.page_size
        chunk = self.persons[start : start + limit]
        more = start + limit < len(self.persons)
        return PipedriveResult(
            success=True,
            data=PersonsPage(
                persons=list(chunk),
                start=start,
                more_items=more,
                next_start=start + limit if more else None,
            ),
        )

    async def get_organization_details(
        self, org_id: int | str
    ) -> PipedriveResult[RemoteOrganization]:
        self.organization_detail_calls.append(org_id)
        if self.organization_error is not None:
            return PipedriveResult(
                success=False,
                error=self.organization_error.message,
                exception=self.organization_error,
            )
        raw = self.organizations.get(int(org_id))
        if raw is None:
            error = ExternalAPIError(f"Pipedrive API error: organization {org_id} not found")
            return PipedriveResult(success=False, error=error.message, exception=error)
        return PipedriveResult(success=True, data=RemoteOrganization.model_validate(raw))


# ── Helpers ──────────────────────────────────────────────────────────────────


def _make_user(**overrides: Any) -> UserRead:
    defaults: dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "email": "owner@example.com",
        "name": "Owner",
        "pipedrive_api_key": "test-api-key",
        "last_sync_timestamp": None,
    }
    defaults.update(overrides)
    return UserRead(**defaults)


def _make_person(
    person_id: int,
    name: str = "Person",
    *,
    email: Any = None,
    org_id: Any = None,
    org_name: str | None = None,
    update_time: str | None = "2026-01-01 10:00:00",
) -> dict[str, Any]:
    """Raw Pipedrive person payload."""
    return {
        "id": person_id,
        "name": name,
        "email": email if email is not None else [],
        "phone": [],
        "org_id": org_id,
        "org_name": org_name,
        "add_time": "2025-12-01 09:00:00",
        "update_time": update_time,
    }


def _make_settings(**overrides: Any) -> Settings:
    defaults: dict[str, Any] = {
        "PIPEDRIVE_ENRICH_ORGANIZATIONS": False,
        "SYNC_MAX_RETRIES": 3,
        "SYNC_RETRY_BASE_DELAY_MS": 1000,
        "SYNC_PROGRESS_BACKEND": "memory",
    }
    defaults.update(overrides)
    return Settings(**defaults)


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _make_service(
    store: InMemorySyncStore,
    client: FakePipedriveClient | None,
    settings: Settings | None = None,
    sleep: RecordingSleep | None = None,
    progress: InMemoryProgressStore | None = None,
) -> ContactSyncService:
    return ContactSyncService(
        store=store,
        progress=progress if progress is not None else InMemoryProgressStore(),
        settings=settings or _make_settings(),
        client_factory=lambda user: client,
        sleep=sleep or RecordingSleep(),
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def client() -> FakePipedriveClient:
    return FakePipedriveClient()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def progress() -> InMemoryProgressStore:
    return InMemoryProgressStore()


@pytest.fixture
def service(
    store: InMemorySyncStore,
    client: FakePipedriveClient,
    sleep: RecordingSleep,
    progress: InMemoryProgressStore,
) -> ContactSyncService:
    return _make_service(store, client, sleep=sleep, progress=progress)
