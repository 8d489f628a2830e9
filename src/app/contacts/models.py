"""Contact persistence models -- users, organizations, contacts, activities and sync history.

Five SQLAlchemy models on the shared declarative Base:
- UserModel: Account owner holding the Pipedrive credential and sync watermark
- OrganizationModel: Deduplicated companies (normalized name / Pipedrive org id)
- ContactModel: Local contacts mirrored from Pipedrive persons
- ActivityModel: Logged touches per contact (read for organization stats)
- SyncHistoryModel: One row per sync attempt (audit trail + recovery checkpoint)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class UserModel(Base):
    """Owner of contacts and sync runs.

    Only the columns the sync engine reads or writes are mapped here;
    authentication data lives with the auth layer.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    pipedrive_api_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    pipedrive_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sync_status: Mapped[str] = mapped_column(
        String(20), default="IDLE", server_default=text("'IDLE'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class OrganizationModel(Base):
    """Company a contact belongs to.

    normalized_name is the dedup key; pipedrive_org_id is unique when set.
    contact_count and last_activity are denormalized and refreshed on demand.
    """

    __tablename__ = "organizations"
    __table_args__ = (
        Index("ix_organizations_normalized_name", "normalized_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(300), nullable=False)
    pipedrive_org_id: Mapped[str | None] = mapped_column(
        String(50), nullable=True, unique=True
    )
    industry: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size: Mapped[str | None] = mapped_column(String(50), nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    last_activity: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ContactModel(Base):
    """Local contact, optionally linked to a Pipedrive person.

    warmness_score is 0-10 (higher = warmer relationship).
    last_pipedrive_update stores the remote update_time seen at last write
    and drives the newer-wins comparison during sync.
    """

    __tablename__ = "contacts"
    __table_args__ = (
        Index("ix_contacts_user_person", "user_id", "pipedrive_person_id"),
        Index("ix_contacts_organization", "organization_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organisation: Mapped[str | None] = mapped_column(String(300), nullable=True)
    warmness_score: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    last_contacted: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    added_to_campaign: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    pipedrive_person_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    pipedrive_org_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    organization_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
    )
    last_pipedrive_update: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class ActivityModel(Base):
    """Logged interaction with a contact (call, email, meeting, ...)."""

    __tablename__ = "activities"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(300), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SyncHistoryModel(Base):
    """One Pipedrive sync attempt.

    Created PENDING at run start, checkpointed after each batch and
    finalized SUCCESS or FAILED. The most recent SUCCESS row seeds
    recovery (see RecoveryService.find_last_successful_sync_point).
    """

    __tablename__ = "sync_history"
    __table_args__ = (
        Index("ix_sync_history_user_status_end", "user_id", "status", "end_time"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default="PENDING", server_default=text("'PENDING'")
    )
    contacts_total: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_processed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_created: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_updated: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    contacts_failed: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
