"""Organization resolution -- normalize names and find-or-create deduplicated organizations.

At most one organization exists per normalized name or per Pipedrive org id.
Lookups try the org id and exact normalized name together, then (while
legacy rows with partially normalized names remain) a substring match.
The substring fallback is a migration shim gated by
ORGANIZATION_SUBSTRING_FALLBACK; scripts/renormalize_organizations.py
rewrites stored names so it can be switched off.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable

import structlog

from src.app.contacts.schemas import (
    OrganizationCreate,
    OrganizationRead,
    OrganizationUpdate,
)
from src.app.contacts.store import SyncStore

logger = structlog.get_logger(__name__)

_SEPARATORS = re.compile(r"[.,&\-_]")
_WHITESPACE = re.compile(r"\s+")


def normalize_organization_name(name: str) -> str:
    """Lower-case, turn . , & - _ into spaces, collapse whitespace, trim.

    >>> normalize_organization_name("Acme, Inc.")
    'acme inc'
    """
    lowered = _SEPARATORS.sub(" ", name.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


class OrganizationResolver:
    """Finds or creates local organizations for remote organization references.

    Args:
        store: Persistent store for organization and contact reads/writes.
        substring_fallback: Whether to fall back to a normalized-name
            substring match when the exact lookup misses.
    """

    def __init__(self, store: SyncStore, substring_fallback: bool = True) -> None:
        self._store = store
        self._substring_fallback = substring_fallback

    async def find_or_create_organization(
        self, data: OrganizationCreate
    ) -> OrganizationRead:
        """Return the organization matching ``data``, creating it if absent.

        An existing row without a Pipedrive org id is backfilled when
        ``data`` carries one.
        """
        normalized_name = normalize_organization_name(data.name)

        existing = await self._store.find_organization(
            data.pipedrive_org_id, normalized_name
        )
        if existing is None and self._substring_fallback and normalized_name:
            existing = await self._store.find_organization_by_name_fragment(
                normalized_name
            )
            if existing is not None:
                logger.info(
                    "organization.substring_match",
                    organization_id=existing.id,
                    stored_name=existing.normalized_name,
                    normalized_name=normalized_name,
                )

        if existing is not None:
            if data.pipedrive_org_id and not existing.pipedrive_org_id:
                existing = await self._store.update_organization(
                    existing.id,
                    OrganizationUpdate(pipedrive_org_id=data.pipedrive_org_id),
                )
                logger.info(
                    "organization.pipedrive_id_backfilled",
                    organization_id=existing.id,
                    pipedrive_org_id=data.pipedrive_org_id,
                )
            return existing

        return await self._store.create_organization(data, normalized_name)

    async def find_organization_match(self, name: str) -> OrganizationRead | None:
        """Exact normalized-name match only (no org id, no substring fallback)."""
        return await self._store.find_organization(
            None, normalize_organization_name(name)
        )

    async def update_organization_stats(self, organization_id: str) -> OrganizationRead:
        """Recompute and persist contact count and last activity for one organization."""
        contact_count, last_activity = await asyncio.gather(
            self._store.count_contacts(organization_id=organization_id),
            self._store.latest_activity_for_organization(organization_id),
        )
        return await self._store.update_organization(
            organization_id,
            OrganizationUpdate(contact_count=contact_count, last_activity=last_activity),
        )

    async def refresh_stats(self, organization_ids: Iterable[str]) -> int:
        """Best-effort stats refresh for several organizations.

        Returns:
            Number of organizations refreshed successfully.
        """
        refreshed = 0
        for organization_id in organization_ids:
            try:
                await self.update_organization_stats(organization_id)
                refreshed += 1
            except Exception:
                logger.warning(
                    "organization.stats_refresh_failed",
                    organization_id=organization_id,
                    exc_info=True,
                )
        return refreshed
