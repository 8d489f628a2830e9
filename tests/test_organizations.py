"""Tests for organization name normalization and OrganizationResolver."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest

from conftest import InMemorySyncStore
from src.app.contacts.organizations import OrganizationResolver, normalize_organization_name
from src.app.contacts.schemas import OrganizationCreate, OrganizationRead


def _legacy_org(store: InMemorySyncStore, name: str, normalized_name: str, **fields) -> OrganizationRead:
    """Insert a row whose stored normalized name predates current normalization."""
    org = OrganizationRead(id=str(uuid.uuid4()), name=name, normalized_name=normalized_name, **fields)
    store.organizations[org.id] = org
    return org


# ── Normalization ────────────────────────────────────────────────────────────


class TestNormalizeOrganizationName:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Acme, Inc.", "acme inc"),
            ("ACME INC", "acme inc"),
            ("  Smith & Jones  ", "smith jones"),
            ("Foo-Bar_Baz", "foo bar baz"),
            ("a.b,c", "a b c"),
            ("Multiple     Spaces\tHere", "multiple spaces here"),
            ("", ""),
        ],
    )
    def test_normalizes(self, raw: str, expected: str) -> None:
        assert normalize_organization_name(raw) == expected

    def test_idempotent(self) -> None:
        once = normalize_organization_name("Acme, Inc. & Co-op")
        assert normalize_organization_name(once) == once


# ── Find Or Create ───────────────────────────────────────────────────────────


class TestFindOrCreateOrganization:
    async def test_repeated_calls_create_one_row(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        data = OrganizationCreate(name="Acme Corp", pipedrive_org_id="1")

        first = await resolver.find_or_create_organization(data)
        second = await resolver.find_or_create_organization(data)

        assert store.organization_creates == 1
        assert second.id == first.id
        assert first.normalized_name == "acme corp"

    async def test_creates_with_all_fields(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)

        org = await resolver.find_or_create_organization(
            OrganizationCreate(
                name="Globex, Ltd.",
                pipedrive_org_id="42",
                industry="Manufacturing",
                website="https://globex.example",
                country="UK",
                city="London",
            )
        )

        assert org.name == "Globex, Ltd."
        assert org.normalized_name == "globex ltd"
        assert org.pipedrive_org_id == "42"
        assert org.industry == "Manufacturing"
        assert org.city == "London"

    async def test_matches_by_normalized_name(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        existing = await resolver.find_or_create_organization(
            OrganizationCreate(name="Acme, Inc.", pipedrive_org_id="7")
        )

        again = await resolver.find_or_create_organization(OrganizationCreate(name="ACME INC"))

        assert again.id == existing.id
        assert store.organization_creates == 1

    async def test_matches_by_pipedrive_id_despite_rename(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        existing = await resolver.find_or_create_organization(
            OrganizationCreate(name="Initech", pipedrive_org_id="9")
        )

        renamed = await resolver.find_or_create_organization(
            OrganizationCreate(name="Initech Global", pipedrive_org_id="9")
        )

        assert renamed.id == existing.id

    async def test_backfills_missing_pipedrive_id(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        existing = await resolver.find_or_create_organization(OrganizationCreate(name="Umbrella"))
        assert existing.pipedrive_org_id is None

        matched = await resolver.find_or_create_organization(
            OrganizationCreate(name="Umbrella", pipedrive_org_id="55")
        )

        assert matched.id == existing.id
        assert matched.pipedrive_org_id == "55"
        assert store.organizations[existing.id].pipedrive_org_id == "55"

    async def test_does_not_overwrite_existing_pipedrive_id(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        await resolver.find_or_create_organization(
            OrganizationCreate(name="Hooli", pipedrive_org_id="1")
        )

        matched = await resolver.find_or_create_organization(
            OrganizationCreate(name="Hooli", pipedrive_org_id="2")
        )

        assert matched.pipedrive_org_id == "1"


class TestSubstringFallback:
    async def test_legacy_row_matched_by_fragment(self) -> None:
        store = InMemorySyncStore()
        legacy = _legacy_org(store, "Acme Corporation Ltd", "the acme corporation ltd")
        resolver = OrganizationResolver(store)

        matched = await resolver.find_or_create_organization(
            OrganizationCreate(name="Acme Corporation")
        )

        assert matched.id == legacy.id
        assert store.organization_creates == 0

    async def test_fallback_disabled_creates_new_row(self) -> None:
        store = InMemorySyncStore()
        legacy = _legacy_org(store, "Acme Corporation Ltd", "the acme corporation ltd")
        resolver = OrganizationResolver(store, substring_fallback=False)

        created = await resolver.find_or_create_organization(
            OrganizationCreate(name="Acme Corporation")
        )

        assert created.id != legacy.id
        assert store.organization_creates == 1

    async def test_empty_name_never_substring_matches(self) -> None:
        store = InMemorySyncStore()
        _legacy_org(store, "Anything", "anything")
        resolver = OrganizationResolver(store)

        created = await resolver.find_or_create_organization(OrganizationCreate(name="..."))

        assert created.normalized_name == ""
        assert store.organization_creates == 1

    async def test_find_organization_match_is_exact_only(self) -> None:
        store = InMemorySyncStore()
        _legacy_org(store, "Acme Corporation Ltd", "the acme corporation ltd")
        resolver = OrganizationResolver(store)

        assert await resolver.find_organization_match("Acme Corporation") is None
        assert await resolver.find_organization_match("The Acme Corporation, Ltd.") is not None


# ── Stats ────────────────────────────────────────────────────────────────────


class TestOrganizationStats:
    async def test_update_stats_counts_contacts_and_latest_activity(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        org = await resolver.find_or_create_organization(OrganizationCreate(name="Acme"))
        first = store.add_contact("user-1", organization_id=org.id)
        second = store.add_contact("user-2", organization_id=org.id)
        store.add_contact("user-1")
        store.activities[first.id] = [datetime(2026, 1, 5, tzinfo=timezone.utc)]
        store.activities[second.id] = [datetime(2026, 2, 1, tzinfo=timezone.utc)]

        updated = await resolver.update_organization_stats(org.id)

        assert updated.contact_count == 2
        assert updated.last_activity == datetime(2026, 2, 1, tzinfo=timezone.utc)

    async def test_update_stats_without_activity(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        org = await resolver.find_or_create_organization(OrganizationCreate(name="Quiet Co"))
        store.add_contact("user-1", organization_id=org.id)

        updated = await resolver.update_organization_stats(org.id)

        assert updated.contact_count == 1
        assert updated.last_activity is None

    async def test_refresh_stats_is_best_effort(self) -> None:
        store = InMemorySyncStore()
        resolver = OrganizationResolver(store)
        org = await resolver.find_or_create_organization(OrganizationCreate(name="Acme"))
        store.add_contact("user-1", organization_id=org.id)

        refreshed = await resolver.refresh_stats([org.id, "missing-org"])

        assert refreshed == 1
        assert store.organizations[org.id].contact_count == 1
