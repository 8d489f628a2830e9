"""Pipedrive contact sync endpoints.

Provides:
- POST /api/v1/pipedrive/contacts/sync: run a sync for the calling user
- GET /api/v1/pipedrive/contacts/sync/latest: most recent SyncHistory row
- GET /api/v1/pipedrive/contacts/sync/progress/{sync_id}: live progress snapshot

Only one sync per user runs at a time within this process; a second request
while one is running gets 409. Failures map to 400 when the caller must fix
something (credential or input) and 500 otherwise.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.app.api.deps import get_sync_service, get_user_id
from src.app.pipedrive.errors import ErrorClassifier, ErrorKind, SyncError, SyncFailedError
from src.app.pipedrive.schemas import SyncRequest
from src.app.pipedrive.sync import ContactSyncService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/pipedrive/contacts", tags=["pipedrive"])

_CLIENT_ERROR_KINDS = frozenset({ErrorKind.AUTHENTICATION, ErrorKind.VALIDATION})


def _status_for(kind: ErrorKind) -> int:
    if kind in _CLIENT_ERROR_KINDS:
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _active_syncs(request: Request) -> set[str]:
    active = getattr(request.app.state, "active_syncs", None)
    if active is None:
        active = set()
        request.app.state.active_syncs = active
    return active


# ── Sync Endpoints ───────────────────────────────────────────────────────────


@router.post("/sync")
async def trigger_sync(
    request: Request,
    body: SyncRequest | None = None,
    user_id: str = Depends(get_user_id),
    service: ContactSyncService = Depends(get_sync_service),
) -> Any:
    """Run a FULL or INCREMENTAL sync and return its counters."""
    active = _active_syncs(request)
    if user_id in active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A sync is already running for this user",
        )

    body = body or SyncRequest()
    active.add(user_id)
    try:
        result = await service.run_sync(user_id, sync_type=body.sync_type, since=body.since)
    except SyncFailedError as exc:
        return JSONResponse(
            status_code=_status_for(exc.classification.kind),
            content={
                "success": False,
                "error": f"Sync failed: {exc.user_message}",
                "sync_id": exc.sync_id,
            },
        )
    except SyncError as exc:
        # Pre-flight failure: raw text stays in the log, the caller gets the user message
        classification = ErrorClassifier().classify(exc)
        logger.warning(
            "sync.request_rejected",
            user_id=user_id,
            kind=classification.kind.value,
            error=exc.message,
        )
        return JSONResponse(
            status_code=_status_for(classification.kind),
            content={"success": False, "error": f"Sync failed: {classification.user_message}"},
        )
    finally:
        active.discard(user_id)

    return {"success": True, "data": result.model_dump(mode="json")}


@router.get("/sync/latest")
async def latest_sync(
    user_id: str = Depends(get_user_id),
    service: ContactSyncService = Depends(get_sync_service),
) -> Any:
    """Most recent sync attempt for the calling user."""
    history = await service.latest_sync(user_id)
    if history is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No sync history found",
        )
    return {"success": True, "data": history.model_dump(mode="json")}


@router.get("/sync/progress/{sync_id}")
async def sync_progress(
    sync_id: str,
    user_id: str = Depends(get_user_id),
    service: ContactSyncService = Depends(get_sync_service),
) -> Any:
    progress = await service.get_progress(sync_id)
    if progress is None or progress.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync progress not found: {sync_id}",
        )
    return {"success": True, "data": progress.model_dump(mode="json")}
