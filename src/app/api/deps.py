"""FastAPI dependency injection for the sync service and caller identity.

The sync service is built once in the application lifespan and stored on
``app.state``; these dependencies hand it to endpoint functions.
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from src.app.pipedrive.sync import ContactSyncService


async def get_sync_service(request: Request) -> ContactSyncService:
    """Retrieve ContactSyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Contact sync not initialized",
        )
    return service


async def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identify the caller from the X-User-ID header.

    Authentication happens upstream (API gateway); the header carries the
    already-authenticated user id.

    Raises:
        HTTPException(401): If the header is missing or blank.
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_user_id.strip()
