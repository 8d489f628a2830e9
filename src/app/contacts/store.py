"""Persistent store contract used by the Pipedrive sync engine.

The sync core never talks to the ORM directly. It depends on SyncStore, which
exposes the find/create/update/count operations it needs keyed by entity id.
ContactRepository is the PostgreSQL implementation; tests use an in-memory one.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

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


class SyncStore(ABC):
    """Abstract interface for the sync engine's persistent state.

    Methods:
        get_user / update_user: Read the credential and sync watermark, write status.
        find_contact_by_person_id: Locate a local contact by Pipedrive person id.
        create_contact / update_contact: Single-row contact writes.
        count_contacts: Count contacts for a user or an organization.
        find_organization: Match by Pipedrive org id OR normalized name.
        find_organization_by_name_fragment: Legacy substring match on normalized name.
        create_organization / update_organization: Single-row organization writes.
        latest_activity_for_organization: Most recent activity across an org's contacts.
        create_sync_history / update_sync_history: Sync audit rows.
        get_latest_sync_history / list_sync_history: Audit and recovery lookups.
    """

    # ── Users ───────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_user(self, user_id: str) -> UserRead | None:
        """Fetch a user by id."""
        ...

    @abstractmethod
    async def update_user(self, user_id: str, data: UserUpdate) -> None:
        """Apply the explicitly set fields of ``data`` to the user."""
        ...

    # ── Contacts ────────────────────────────────────────────────────────────

    @abstractmethod
    async def find_contact_by_person_id(
        self, user_id: str, pipedrive_person_id: str
    ) -> ContactRead | None:
        """Find the user's contact linked to a Pipedrive person."""
        ...

    @abstractmethod
    async def create_contact(self, data: ContactCreate) -> ContactRead:
        """Create a contact, return it with its generated id."""
        ...

    @abstractmethod
    async def update_contact(self, contact_id: str, data: ContactUpdate) -> ContactRead:
        """Apply the explicitly set fields of ``data`` to the contact."""
        ...

    @abstractmethod
    async def count_contacts(
        self, user_id: str | None = None, organization_id: str | None = None
    ) -> int:
        """Count contacts, optionally filtered by owner and/or organization."""
        ...

    # ── Organizations ───────────────────────────────────────────────────────

    @abstractmethod
    async def find_organization(
        self, pipedrive_org_id: str | None, normalized_name: str
    ) -> OrganizationRead | None:
        """Find an organization by Pipedrive org id OR exact normalized name.

        A row matching the Pipedrive org id is preferred over a name match.
        """
        ...

    @abstractmethod
    async def find_organization_by_name_fragment(
        self, normalized_name: str
    ) -> OrganizationRead | None:
        """Find an organization whose normalized name contains ``normalized_name``."""
        ...

    @abstractmethod
    async def create_organization(
        self, data: OrganizationCreate, normalized_name: str
    ) -> OrganizationRead:
        """Create an organization row with its computed normalized name."""
        ...

    @abstractmethod
    async def update_organization(
        self, organization_id: str, data: OrganizationUpdate
    ) -> OrganizationRead:
        """Apply the explicitly set fields of ``data`` to the organization."""
        ...

    @abstractmethod
    async def list_organizations(self) -> list[OrganizationRead]:
        """List every organization."""
        ...

    @abstractmethod
    async def latest_activity_for_organization(
        self, organization_id: str
    ) -> datetime | None:
        """Return the newest activity timestamp across the organization's contacts."""
        ...

    # ── Sync History ────────────────────────────────────────────────────────

    @abstractmethod
    async def create_sync_history(self, data: SyncHistoryCreate) -> SyncHistoryRead:
        """Create a sync audit row."""
        ...

    @abstractmethod
    async def update_sync_history(
        self, sync_id: str, data: SyncHistoryUpdate
    ) -> SyncHistoryRead:
        """Apply the explicitly set fields of ``data`` to the sync row."""
        ...

    @abstractmethod
    async def get_latest_sync_history(
        self, user_id: str, status: SyncStatus | None = None
    ) -> SyncHistoryRead | None:
        """Most recent sync row for a user.

        With a status filter rows are ordered by end time descending,
        otherwise by start time descending.
        """
        ...

    @abstractmethod
    async def list_sync_history(
        self, user_id: str, limit: int = 20
    ) -> list[SyncHistoryRead]:
        """Recent sync rows for a user, newest first."""
        ...
