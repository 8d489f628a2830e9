#!/usr/bin/env python3
"""CLI script to run a Pipedrive contact sync for one user.

Usage:
    uv run python scripts/run_sync.py --user-id 7f6c...e2
    uv run python scripts/run_sync.py --user-id 7f6c...e2 --type FULL
    uv run python scripts/run_sync.py --user-id 7f6c...e2 --since 2026-01-01T00:00:00Z

Connects directly to the database using DATABASE_URL from environment or .env file.
Progress is kept in memory unless SYNC_PROGRESS_BACKEND=redis.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime

# Ensure project root is on sys.path so we can import src.app
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(user_id: str, sync_type: str | None, since: datetime | None) -> int:
    """Run one sync and print its counters. Returns the process exit code."""
    from src.app.api.middleware.logging import configure_structlog
    from src.app.config import get_settings
    from src.app.contacts.repository import ContactRepository
    from src.app.contacts.schemas import SyncStatus, SyncType
    from src.app.core.database import close_db, get_session
    from src.app.core.redis import close_redis
    from src.app.pipedrive.errors import SyncError, SyncFailedError
    from src.app.pipedrive.progress import create_progress_store
    from src.app.pipedrive.sync import ContactSyncService

    configure_structlog()
    settings = get_settings()
    service = ContactSyncService(
        store=ContactRepository(session_factory=get_session),
        progress=create_progress_store(settings),
        settings=settings,
    )

    try:
        result = await service.run_sync(
            user_id,
            sync_type=SyncType(sync_type) if sync_type else None,
            since=since,
        )
    except SyncFailedError as exc:
        print(f"Sync failed: {exc.user_message}")
        print(f"  Sync ID: {exc.sync_id}")
        print(f"  Detail:  {exc.detail}")
        return 1
    except SyncError as exc:
        print(f"Sync failed: {exc.message}")
        return 1
    finally:
        await close_redis()
        await close_db()

    print(f"Sync {result.status.value}:")
    print(f"  Sync ID:   {result.sync_id}")
    print(f"  Type:      {result.sync_type.value}")
    print(f"  Processed: {result.contacts_processed}")
    print(f"  Created:   {result.contacts_created}")
    print(f"  Updated:   {result.contacts_updated}")
    print(f"  Failed:    {result.contacts_failed}")
    print(f"  Duration:  {result.sync_duration_ms}ms")
    return 0 if result.status == SyncStatus.SUCCESS else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a Pipedrive contact sync")
    parser.add_argument("--user-id", required=True, help="Local user id owning the Pipedrive key")
    parser.add_argument(
        "--type",
        dest="sync_type",
        choices=["FULL", "INCREMENTAL"],
        default=None,
        help="Force a sync type (default: inferred from the last sync)",
    )
    parser.add_argument(
        "--since",
        default=None,
        help="Incremental cutoff as an ISO timestamp (overrides the last sync time)",
    )
    args = parser.parse_args()

    since = None
    if args.since:
        try:
            since = datetime.fromisoformat(args.since.replace("Z", "+00:00"))
        except ValueError:
            parser.error(f"--since is not an ISO timestamp: {args.since}")

    sys.exit(asyncio.run(run(args.user_id, args.sync_type, since)))


if __name__ == "__main__":
    main()
