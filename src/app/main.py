"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, lifespan
events for database initialization and sync service wiring, and the v1 API
router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings, validate_pipedrive_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response
from src.app.core.redis import close_redis
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.pipedrive.sync import ContactSyncService


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and the sync service on startup, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    # Tests inject a ready service through create_app(sync_service=...)
    if getattr(app.state, "sync_service", None) is not None:
        yield
        return

    problems = validate_pipedrive_settings(settings)
    if problems:
        log.warning("config.pipedrive_settings_invalid", problems=problems)

    await init_db()

    from src.app.contacts.repository import ContactRepository
    from src.app.pipedrive.progress import create_progress_store

    repository = ContactRepository(session_factory=get_session)
    app.state.contact_repository = repository
    app.state.sync_service = ContactSyncService(
        store=repository,
        progress=create_progress_store(settings),
        settings=settings,
    )
    log.info(
        "sync.service_initialized",
        environment=settings.ENVIRONMENT.value,
        progress_backend=settings.SYNC_PROGRESS_BACKEND.value,
    )

    yield

    await close_db()
    await close_redis()


def create_app(sync_service: ContactSyncService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        sync_service: Pre-built service to serve requests with. When given,
            the lifespan skips database and Redis setup.
    """
    settings = get_settings()

    app = FastAPI(
        title="WarmLead Pipedrive Sync API",
        version="0.1.0",
        description="Pipedrive contact synchronization with error recovery and timeout protection",
        lifespan=lifespan,
    )
    app.state.sync_service = sync_service
    app.state.active_syncs = set()

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, pipedrive sync)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
