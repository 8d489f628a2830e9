"""Pydantic schemas for contacts, organizations, users and sync history.

Defines the types that cross the persistence boundary:
- Enums: SyncType, SyncStatus, UserSyncStatus
- Users: UserRead, UserUpdate
- Contacts: ContactCreate, ContactUpdate, ContactRead
- Organizations: OrganizationCreate, OrganizationUpdate, OrganizationRead
- Sync audit: SyncHistoryCreate, SyncHistoryUpdate, SyncHistoryRead
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncType(str, Enum):
    """Whether a sync pulls every remote contact or only recent changes."""

    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class SyncStatus(str, Enum):
    """Lifecycle status of one SyncHistory row."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class UserSyncStatus(str, Enum):
    """Coarse sync status kept on the user record."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# ── Users ───────────────────────────────────────────────────────────────────


class UserRead(BaseModel):
    """User fields read by the sync engine."""

    id: str
    email: str | None = None
    name: str | None = None
    pipedrive_api_key: str | None = None
    pipedrive_user_id: int | None = None
    last_sync_timestamp: datetime | None = None
    sync_status: UserSyncStatus = UserSyncStatus.IDLE


class UserUpdate(BaseModel):
    """Partial user update. Only explicitly set fields are written."""

    last_sync_timestamp: datetime | None = None
    sync_status: UserSyncStatus | None = None


# ── Contacts ────────────────────────────────────────────────────────────────


class ContactCreate(BaseModel):
    """Schema for creating a local contact from a remote person."""

    user_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    organisation: str | None = None
    warmness_score: int = Field(default=0, ge=0, le=10)
    last_contacted: datetime | None = None
    added_to_campaign: bool = False
    pipedrive_person_id: str | None = None
    pipedrive_org_id: str | None = None
    organization_id: str | None = None
    last_pipedrive_update: datetime | None = None


class ContactUpdate(BaseModel):
    """Partial contact update applied when the remote record is newer."""

    name: str | None = None
    email: str | None = None
    phone: str | None = None
    organisation: str | None = None
    pipedrive_org_id: str | None = None
    organization_id: str | None = None
    last_pipedrive_update: datetime | None = None


class ContactRead(BaseModel):
    """Schema for reading a contact (includes all persisted fields)."""

    id: str
    user_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    organisation: str | None = None
    warmness_score: int = Field(default=0, ge=0, le=10)
    last_contacted: datetime | None = None
    added_to_campaign: bool = False
    pipedrive_person_id: str | None = None
    pipedrive_org_id: str | None = None
    organization_id: str | None = None
    last_pipedrive_update: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Organizations ───────────────────────────────────────────────────────────


class OrganizationCreate(BaseModel):
    """Input for find-or-create organization resolution."""

    name: str
    pipedrive_org_id: str | None = None
    industry: str | None = None
    size: str | None = None
    website: str | None = None
    address: str | None = None
    country: str | None = None
    city: str | None = None


class OrganizationUpdate(BaseModel):
    """Partial organization update."""

    name: str | None = None
    normalized_name: str | None = None
    pipedrive_org_id: str | None = None
    contact_count: int | None = None
    last_activity: datetime | None = None


class OrganizationRead(BaseModel):
    """Schema for reading an organization."""

    id: str
    name: str
    normalized_name: str
    pipedrive_org_id: str | None = None
    industry: str | None = None
    size: str | None = None
    website: str | None = None
    address: str | None = None
    country: str | None = None
    city: str | None = None
    contact_count: int = 0
    last_activity: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Sync History ────────────────────────────────────────────────────────────


class SyncHistoryCreate(BaseModel):
    """Initial SyncHistory row written when a run starts."""

    user_id: str
    sync_type: SyncType
    status: SyncStatus = SyncStatus.PENDING
    start_time: datetime
    contacts_total: int = 0


class SyncHistoryUpdate(BaseModel):
    """Partial SyncHistory update (checkpoints and finalization)."""

    status: SyncStatus | None = None
    contacts_total: int | None = None
    contacts_processed: int | None = None
    contacts_created: int | None = None
    contacts_updated: int | None = None
    contacts_failed: int | None = None
    end_time: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None


class SyncHistoryRead(BaseModel):
    """One persisted sync attempt."""

    id: str
    user_id: str
    sync_type: SyncType
    status: SyncStatus
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: int | None = None
    contacts_total: int = 0
    contacts_processed: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    contacts_failed: int = 0
    error: str | None = None
