"""Pipedrive payload models and sync result records.

Remote models parse the subset of the Pipedrive v1 payloads the sync engine
consumes and tolerate the API's loose shapes: ``org_id`` may be a bare id,
null, or an expanded object; ``email``/``phone`` may be lists of objects or
of plain strings; timestamps come as ISO strings or ``YYYY-MM-DD HH:MM:SS``
(UTC).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.app.contacts.schemas import SyncStatus, SyncType
from src.app.pipedrive.errors import DataValidationError, SyncError

T = TypeVar("T")


def parse_pipedrive_timestamp(value: Any) -> datetime | None:
    """Parse a Pipedrive timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_pipedrive_timestamp(value: datetime) -> str:
    """Format as the ``YYYY-MM-DD HH:MM:SS`` UTC form Pipedrive filters expect."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%d %H:%M:%S")


# ── Remote Payloads ─────────────────────────────────────────────────────────


class RemoteEmail(BaseModel):
    """One email or phone entry on a person."""

    model_config = ConfigDict(extra="ignore")

    value: str = ""
    primary: bool = False
    label: str | None = None

    @field_validator("value", mode="before")
    @classmethod
    def _value_or_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class RemoteOrgRef(BaseModel):
    """Organization reference embedded in a person."""

    model_config = ConfigDict(extra="ignore")

    value: int
    name: str | None = None
    address: str | None = None
    people_count: int | None = None


def _coerce_entries(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    entries = []
    for index, entry in enumerate(value):
        if entry is None:
            continue
        if isinstance(entry, str):
            entries.append({"value": entry, "primary": index == 0})
        else:
            entries.append(entry)
    return entries


def _pick_primary(entries: list[RemoteEmail]) -> str | None:
    populated = [e for e in entries if e.value and e.value.strip()]
    if not populated:
        return None
    for entry in populated:
        if entry.primary:
            return entry.value.strip()
    return populated[0].value.strip()


class RemotePerson(BaseModel):
    """Pipedrive person (minimum consumed fields)."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    email: list[RemoteEmail] = Field(default_factory=list)
    phone: list[RemoteEmail] = Field(default_factory=list)
    org_id: RemoteOrgRef | None = None
    org_name: str | None = None
    add_time: datetime | None = None
    update_time: datetime | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _name_or_empty(cls, value: Any) -> Any:
        return value if value is not None else ""

    @field_validator("email", "phone", mode="before")
    @classmethod
    def _entries(cls, value: Any) -> list[Any]:
        return _coerce_entries(value)

    @field_validator("org_id", mode="before")
    @classmethod
    def _org_ref(cls, value: Any) -> Any:
        if value is None or value == "" or value == 0:
            return None
        if isinstance(value, (int, str)):
            return {"value": int(value)}
        if isinstance(value, dict) and "value" not in value and "id" in value:
            return {**value, "value": value["id"]}
        return value

    @field_validator("add_time", "update_time", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> datetime | None:
        return parse_pipedrive_timestamp(value)

    def primary_email(self) -> str | None:
        """Primary-flagged email, else the first one; None when there are none."""
        return _pick_primary(self.email)

    def primary_phone(self) -> str | None:
        return _pick_primary(self.phone)

    def organization_name(self) -> str | None:
        if self.org_id is not None and self.org_id.name:
            return self.org_id.name
        return self.org_name or None


class RemoteOrganization(BaseModel):
    """Pipedrive organization detail."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    address: str | None = None
    address_country: str | None = None
    address_locality: str | None = None
    industry: str | None = None
    website: str | None = None
    people_count: int | None = None
    update_time: datetime | None = None

    @field_validator("industry", "website", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("update_time", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> datetime | None:
        return parse_pipedrive_timestamp(value)


def parse_person(raw: Any) -> RemotePerson:
    """Validate one raw person payload.

    Raises:
        DataValidationError: The payload does not fit RemotePerson.
    """
    try:
        return RemotePerson.model_validate(raw)
    except ValidationError as exc:
        raise DataValidationError(f"Invalid person format: {exc.error_count()} errors") from exc


class PersonsPage(BaseModel):
    """One page of raw person payloads with Pipedrive's pagination cursor."""

    persons: list[Any] = Field(default_factory=list)
    start: int = 0
    more_items: bool = False
    next_start: int | None = None


# ── Client Results ──────────────────────────────────────────────────────────


@dataclass
class PipedriveResult(Generic[T]):
    """Outcome of one client call: success plus payload, or the error."""

    success: bool
    data: T | None = None
    error: str | None = None
    exception: SyncError | None = field(default=None, repr=False)

    def unwrap(self) -> T:
        """Return the payload or raise the captured error."""
        if not self.success:
            if self.exception is not None:
                raise self.exception
            raise SyncError(self.error or "Pipedrive request failed")
        return self.data  # type: ignore[return-value]


# ── Sync API ────────────────────────────────────────────────────────────────


class SyncRequest(BaseModel):
    """Body of a sync trigger. Both fields optional."""

    sync_type: SyncType | None = None
    since: datetime | None = None


class SyncRunResult(BaseModel):
    """Result returned by ContactSyncService.run_sync."""

    sync_id: str
    sync_type: SyncType
    status: SyncStatus
    contacts_processed: int = 0
    contacts_created: int = 0
    contacts_updated: int = 0
    contacts_failed: int = 0
    sync_duration_ms: int = 0
    last_sync_timestamp: datetime | None = None
