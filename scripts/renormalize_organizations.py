#!/usr/bin/env python3
"""CLI script to rewrite stored organization normalized names.

Usage:
    uv run python scripts/renormalize_organizations.py --dry-run
    uv run python scripts/renormalize_organizations.py

Older rows were stored with partially normalized names, which is why the
resolver keeps a substring fallback. After this script has run, set
ORGANIZATION_SUBSTRING_FALLBACK=false.

Connects directly to the database using DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def renormalize(dry_run: bool) -> None:
    from src.app.contacts.organizations import normalize_organization_name
    from src.app.contacts.repository import ContactRepository
    from src.app.contacts.schemas import OrganizationUpdate
    from src.app.core.database import close_db, get_session

    repository = ContactRepository(session_factory=get_session)
    organizations = await repository.list_organizations()
    print(f"Checking {len(organizations)} organizations")

    changed = 0
    seen: dict[str, str] = {}
    for org in organizations:
        normalized = normalize_organization_name(org.name)
        if normalized in seen and seen[normalized] != org.id:
            print(f"  Duplicate after renormalizing: {org.name!r} ({org.id}) matches {seen[normalized]}")
        seen.setdefault(normalized, org.id)

        if normalized == org.normalized_name:
            continue
        changed += 1
        print(f"  {org.normalized_name!r} -> {normalized!r}")
        if not dry_run:
            await repository.update_organization(
                org.id, OrganizationUpdate(normalized_name=normalized)
            )

    action = "Would update" if dry_run else "Updated"
    print(f"{action} {changed} organizations")
    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Renormalize organization names")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report changes without writing them",
    )
    args = parser.parse_args()
    asyncio.run(renormalize(args.dry_run))


if __name__ == "__main__":
    main()
