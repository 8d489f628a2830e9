"""Contact repository -- async PostgreSQL implementation of SyncStore.

Uses the session_factory callable pattern: each method opens one session,
performs a single-row read or write, and commits. Partial updates write only
the fields explicitly set on the Pydantic update schema (model_dump with
exclude_unset), so an explicit None clears a column.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.contacts.models import (
    ActivityModel,
    ContactModel,
    OrganizationModel,
    SyncHistoryModel,
    UserModel,
)
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
    SyncType,
    UserRead,
    UserSyncStatus,
    UserUpdate,
)
from src.app.contacts.store import SyncStore

logger = structlog.get_logger(__name__)

_UUID_COLUMNS = {"user_id", "organization_id"}


# ── Serialization Helpers ───────────────────────────────────────────────────


def _opt_str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _column_values(data: BaseModel) -> dict[str, Any]:
    """Explicitly set schema fields as column values (enums unwrapped, ids as UUID)."""
    values: dict[str, Any] = {}
    for key, value in data.model_dump(exclude_unset=True).items():
        if isinstance(value, Enum):
            value = value.value
        elif key in _UUID_COLUMNS and value is not None:
            value = uuid.UUID(value)
        values[key] = value
    return values


def _model_to_user(model: UserModel) -> UserRead:
    """Convert UserModel to UserRead schema."""
    return UserRead(
        id=str(model.id),
        email=model.email,
        name=model.name,
        pipedrive_api_key=model.pipedrive_api_key,
        pipedrive_user_id=model.pipedrive_user_id,
        last_sync_timestamp=model.last_sync_timestamp,
        sync_status=UserSyncStatus(model.sync_status or UserSyncStatus.IDLE.value),
    )


def _model_to_contact(model: ContactModel) -> ContactRead:
    """Convert ContactModel to ContactRead schema."""
    return ContactRead(
        id=str(model.id),
        user_id=str(model.user_id),
        name=model.name,
        email=model.email,
        phone=model.phone,
        organisation=model.organisation,
        warmness_score=model.warmness_score or 0,
        last_contacted=model.last_contacted,
        added_to_campaign=bool(model.added_to_campaign),
        pipedrive_person_id=model.pipedrive_person_id,
        pipedrive_org_id=model.pipedrive_org_id,
        organization_id=_opt_str(model.organization_id),
        last_pipedrive_update=model.last_pipedrive_update,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_organization(model: OrganizationModel) -> OrganizationRead:
    """Convert OrganizationModel to OrganizationRead schema."""
    return OrganizationRead(
        id=str(model.id),
        name=model.name,
        normalized_name=model.normalized_name,
        pipedrive_org_id=model.pipedrive_org_id,
        industry=model.industry,
        size=model.size,
        website=model.website,
        address=model.address,
        country=model.country,
        city=model.city,
        contact_count=model.contact_count or 0,
        last_activity=model.last_activity,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_sync_history(model: SyncHistoryModel) -> SyncHistoryRead:
    """Convert SyncHistoryModel to SyncHistoryRead schema."""
    return SyncHistoryRead(
        id=str(model.id),
        user_id=str(model.user_id),
        sync_type=SyncType(model.sync_type),
        status=SyncStatus(model.status),
        start_time=model.start_time,
        end_time=model.end_time,
        duration_ms=model.duration_ms,
        contacts_total=model.contacts_total or 0,
        contacts_processed=model.contacts_processed or 0,
        contacts_created=model.contacts_created or 0,
        contacts_updated=model.contacts_updated or 0,
        contacts_failed=model.contacts_failed or 0,
        error=model.error,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class ContactRepository(SyncStore):
    """Async CRUD for users, contacts, organizations and sync history.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Users ───────────────────────────────────────────────────────────────

    async def get_user(self, user_id: str) -> UserRead | None:
        async for session in self._session_factory():
            model = await session.get(UserModel, uuid.UUID(user_id))
            if model is None:
                return None
            return _model_to_user(model)

    async def update_user(self, user_id: str, data: UserUpdate) -> None:
        async for session in self._session_factory():
            model = await session.get(UserModel, uuid.UUID(user_id))
            if model is None:
                raise ValueError(f"User {user_id} not found")
            for key, value in _column_values(data).items():
                setattr(model, key, value)
            await session.commit()

    # ── Contacts ────────────────────────────────────────────────────────────

    async def find_contact_by_person_id(
        self, user_id: str, pipedrive_person_id: str
    ) -> ContactRead | None:
        async for session in self._session_factory():
            stmt = select(ContactModel).where(
                ContactModel.user_id == uuid.UUID(user_id),
                ContactModel.pipedrive_person_id == pipedrive_person_id,
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            if model is None:
                return None
            return _model_to_contact(model)

    async def create_contact(self, data: ContactCreate) -> ContactRead:
        """Create a contact from a remote person.

        Args:
            data: ContactCreate schema; organization_id is a local UUID string.

        Returns:
            ContactRead with all persisted fields.
        """
        async for session in self._session_factory():
            model = ContactModel(
                user_id=uuid.UUID(data.user_id),
                name=data.name,
                email=data.email,
                phone=data.phone,
                organisation=data.organisation,
                warmness_score=data.warmness_score,
                last_contacted=data.last_contacted,
                added_to_campaign=data.added_to_campaign,
                pipedrive_person_id=data.pipedrive_person_id,
                pipedrive_org_id=data.pipedrive_org_id,
                organization_id=(
                    uuid.UUID(data.organization_id) if data.organization_id else None
                ),
                last_pipedrive_update=data.last_pipedrive_update,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def update_contact(self, contact_id: str, data: ContactUpdate) -> ContactRead:
        async for session in self._session_factory():
            model = await session.get(ContactModel, uuid.UUID(contact_id))
            if model is None:
                raise ValueError(f"Contact {contact_id} not found")
            for key, value in _column_values(data).items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_contact(model)

    async def count_contacts(
        self, user_id: str | None = None, organization_id: str | None = None
    ) -> int:
        async for session in self._session_factory():
            stmt = select(func.count()).select_from(ContactModel)
            if user_id is not None:
                stmt = stmt.where(ContactModel.user_id == uuid.UUID(user_id))
            if organization_id is not None:
                stmt = stmt.where(
                    ContactModel.organization_id == uuid.UUID(organization_id)
                )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    # ── Organizations ───────────────────────────────────────────────────────

    async def find_organization(
        self, pipedrive_org_id: str | None, normalized_name: str
    ) -> OrganizationRead | None:
        """Find by Pipedrive org id OR exact normalized name.

        When both could match different rows, the org id match wins.
        """
        async for session in self._session_factory():
            name_match = OrganizationModel.normalized_name == normalized_name
            stmt = select(OrganizationModel)
            if pipedrive_org_id:
                id_match = OrganizationModel.pipedrive_org_id == pipedrive_org_id
                stmt = stmt.where(id_match | name_match).order_by(
                    case((id_match, 0), else_=1),
                    OrganizationModel.created_at,
                )
            else:
                stmt = stmt.where(name_match).order_by(OrganizationModel.created_at)
            result = await session.execute(stmt.limit(1))
            model = result.scalars().first()
            if model is None:
                return None
            return _model_to_organization(model)

    async def find_organization_by_name_fragment(
        self, normalized_name: str
    ) -> OrganizationRead | None:
        async for session in self._session_factory():
            stmt = (
                select(OrganizationModel)
                .where(
                    OrganizationModel.normalized_name.contains(normalized_name, autoescape=True)
                )
                .order_by(OrganizationModel.created_at)
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalars().first()
            if model is None:
                return None
            return _model_to_organization(model)

    async def create_organization(
        self, data: OrganizationCreate, normalized_name: str
    ) -> OrganizationRead:
        async for session in self._session_factory():
            model = OrganizationModel(
                name=data.name,
                normalized_name=normalized_name,
                pipedrive_org_id=data.pipedrive_org_id,
                industry=data.industry,
                size=data.size,
                website=data.website,
                address=data.address,
                country=data.country,
                city=data.city,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "organization.created",
                organization_id=str(model.id),
                normalized_name=normalized_name,
                pipedrive_org_id=data.pipedrive_org_id,
            )
            return _model_to_organization(model)

    async def update_organization(
        self, organization_id: str, data: OrganizationUpdate
    ) -> OrganizationRead:
        async for session in self._session_factory():
            model = await session.get(OrganizationModel, uuid.UUID(organization_id))
            if model is None:
                raise ValueError(f"Organization {organization_id} not found")
            for key, value in _column_values(data).items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_organization(model)

    async def list_organizations(self) -> list[OrganizationRead]:
        async for session in self._session_factory():
            stmt = select(OrganizationModel).order_by(OrganizationModel.created_at)
            result = await session.execute(stmt)
            return [_model_to_organization(m) for m in result.scalars().all()]

    async def latest_activity_for_organization(
        self, organization_id: str
    ) -> datetime | None:
        async for session in self._session_factory():
            stmt = (
                select(func.max(ActivityModel.created_at))
                .join(ContactModel, ActivityModel.contact_id == ContactModel.id)
                .where(ContactModel.organization_id == uuid.UUID(organization_id))
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    # ── Sync History ────────────────────────────────────────────────────────

    async def create_sync_history(self, data: SyncHistoryCreate) -> SyncHistoryRead:
        async for session in self._session_factory():
            model = SyncHistoryModel(
                user_id=uuid.UUID(data.user_id),
                sync_type=data.sync_type.value,
                status=data.status.value,
                start_time=data.start_time,
                contacts_total=data.contacts_total,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_history(model)

    async def update_sync_history(
        self, sync_id: str, data: SyncHistoryUpdate
    ) -> SyncHistoryRead:
        async for session in self._session_factory():
            model = await session.get(SyncHistoryModel, uuid.UUID(sync_id))
            if model is None:
                raise ValueError(f"Sync history {sync_id} not found")
            for key, value in _column_values(data).items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_history(model)

    async def get_latest_sync_history(
        self, user_id: str, status: SyncStatus | None = None
    ) -> SyncHistoryRead | None:
        async for session in self._session_factory():
            stmt = select(SyncHistoryModel).where(
                SyncHistoryModel.user_id == uuid.UUID(user_id)
            )
            if status is not None:
                stmt = stmt.where(SyncHistoryModel.status == status.value).order_by(
                    SyncHistoryModel.end_time.desc().nulls_last()
                )
            else:
                stmt = stmt.order_by(SyncHistoryModel.start_time.desc())
            result = await session.execute(stmt.limit(1))
            model = result.scalars().first()
            if model is None:
                return None
            return _model_to_sync_history(model)

    async def list_sync_history(
        self, user_id: str, limit: int = 20
    ) -> list[SyncHistoryRead]:
        async for session in self._session_factory():
            stmt = (
                select(SyncHistoryModel)
                .where(SyncHistoryModel.user_id == uuid.UUID(user_id))
                .order_by(SyncHistoryModel.start_time.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_history(m) for m in result.scalars().all()]
