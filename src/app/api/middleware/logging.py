"""structlog configuration and per-request logging.

configure_structlog() installs the processor chain once at startup: JSON
lines in production, console rendering elsewhere. LoggingMiddleware binds
``request_id`` and ``user_id`` (X-User-ID) into structlog's context vars
for the duration of a request, so every event the sync engine logs while
serving it carries both. The request id is echoed as X-Request-ID.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings

logger = structlog.get_logger(__name__)


def _renderer(environment: Environment):
    if environment == Environment.production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def configure_structlog() -> None:
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _renderer(settings.ENVIRONMENT),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log one ``http.request`` event per request with status and timing."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            user_id=request.headers.get("X-User-ID"),
        )
        started = time.monotonic()

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.monotonic() - started) * 1000, 2),
                )
                raise

            if response.status_code >= 500:
                log = logger.error
            elif response.status_code >= 400:
                log = logger.warning
            else:
                log = logger.info
            log(
                "http.request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "user_id")

        response.headers["X-Request-ID"] = request_id
        return response
