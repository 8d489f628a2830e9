"""Liveness and readiness endpoints.

/health answers as long as the process serves requests. /health/ready
checks PostgreSQL and, only when progress snapshots live there, Redis.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from src.app.config import ProgressBackend, get_settings
from src.app.core.database import check_database
from src.app.core.redis import check_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return {"status": "ok", "environment": get_settings().ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check():
    """200 with status "ready" when every used dependency answers, else 503 "degraded"."""
    checks: dict[str, str] = {}

    database_error = await check_database()
    checks["database"] = "error" if database_error else "ok"
    if database_error:
        checks["database_error"] = database_error

    if get_settings().SYNC_PROGRESS_BACKEND == ProgressBackend.redis:
        redis_error = await check_redis()
        checks["redis"] = "error" if redis_error else "ok"
        if redis_error:
            checks["redis_error"] = redis_error
    else:
        checks["redis"] = "unused"

    ready = database_error is None and checks["redis"] != "error"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
