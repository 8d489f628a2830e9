"""Async HTTP client for the Pipedrive v1 REST API.

Provides PipedriveClient with transport-level retry (tenacity, 3 attempts,
exponential backoff 1-10s). Authentication uses the ``api_token`` query
parameter. Every public method returns a PipedriveResult instead of raising;
failures carry a tagged SyncError:

- HTTP 429 -> RateLimitError ("Rate limit exceeded")
- HTTP 401 -> AuthenticationError ("API key expired or invalid")
- other non-2xx -> ExternalAPIError ("Pipedrive API error: ...")
- transport failures after retries -> NetworkError
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.config import Settings
from src.app.contacts.schemas import UserRead
from src.app.pipedrive.errors import (
    AuthenticationError,
    DataValidationError,
    ExternalAPIError,
    NetworkError,
    RateLimitError,
    SyncError,
)
from src.app.pipedrive.schemas import (
    PersonsPage,
    PipedriveResult,
    RemoteOrganization,
    RemotePerson,
    format_pipedrive_timestamp,
)

logger = structlog.get_logger(__name__)

_pipedrive_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


class PipedriveClient:
    """Async client for the Pipedrive persons/organizations endpoints.

    Args:
        api_key: Pipedrive personal API token.
        base_url: API host (default https://api.pipedrive.com).
        api_version: Path version segment.
        timeout_ms: Per-request timeout.
        page_size: Default page size for list endpoints.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.pipedrive.com",
        api_version: str = "v1",
        timeout_ms: int = 30000,
        page_size: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key or not api_key.strip():
            raise AuthenticationError("Pipedrive API key is required")
        self._api_key = api_key.strip()
        self._base_url = f"{base_url.rstrip('/')}/{api_version}"
        self._timeout = timeout_ms / 1000
        self.page_size = page_size
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client for one request."""
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        )

    # ── Transport ───────────────────────────────────────────────────────────

    @_pipedrive_retry
    async def _send(self, path: str, params: dict[str, Any]) -> httpx.Response:
        async with self._client() as client:
            return await client.get(path, params={**params, "api_token": self._api_key})

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET ``path`` and return the decoded body, raising tagged errors."""
        try:
            response = await self._send(path, params or {})
        except httpx.TimeoutException as exc:
            logger.warning("pipedrive.request_timeout", path=path, error=str(exc))
            raise NetworkError("Pipedrive API network timeout") from exc
        except httpx.TransportError as exc:
            logger.warning("pipedrive.request_failed", path=path, error=str(exc))
            raise NetworkError("Failed to connect to Pipedrive API") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            logger.warning("pipedrive.rate_limited", path=path, retry_after=retry_after)
            retry_after_ms = (
                int(float(retry_after) * 1000)
                if retry_after and retry_after.replace(".", "", 1).isdigit()
                else None
            )
            raise RateLimitError("Rate limit exceeded", retry_after_ms=retry_after_ms)

        if response.status_code == 401:
            logger.warning("pipedrive.unauthorized", path=path)
            raise AuthenticationError("API key expired or invalid")

        if response.is_error:
            detail = _error_detail(response)
            logger.error(
                "pipedrive.api_error",
                path=path,
                status_code=response.status_code,
                detail=detail,
            )
            raise ExternalAPIError(
                f"Pipedrive API error: HTTP {response.status_code} {detail}".rstrip(),
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalAPIError("Pipedrive API error: invalid JSON response") from exc

        if isinstance(body, dict) and body.get("success") is False:
            raise ExternalAPIError(
                f"Pipedrive API error: {body.get('error') or 'request unsuccessful'}",
                status_code=response.status_code,
            )
        return body

    # ── Operations ──────────────────────────────────────────────────────────

    async def test_connection(self) -> PipedriveResult[dict[str, Any]]:
        """Verify the API key by fetching the token owner (GET /users/me)."""
        try:
            body = await self._get("/users/me")
        except SyncError as exc:
            return _failure(exc)
        user = body.get("data") or {}
        logger.info("pipedrive.connection_ok", pipedrive_user_id=user.get("id"))
        return PipedriveResult(success=True, data=user)

    async def get_persons(
        self,
        since: datetime | None = None,
        start: int = 0,
        limit: int | None = None,
    ) -> PipedriveResult[PersonsPage]:
        """Fetch one page of persons as raw payloads.

        Without ``since`` this lists /persons; with it, /recents filtered to
        persons changed since that time. Persons are not validated here, so
        one malformed record cannot reject the whole page; see parse_person.
        """
        params: dict[str, Any] = {"start": start, "limit": limit or self.page_size}
        try:
            if since is None:
                body = await self._get("/persons", params)
                persons = [p for p in body.get("data") or [] if p is not None]
            else:
                params.update(
                    items="person", since_timestamp=format_pipedrive_timestamp(since)
                )
                body = await self._get("/recents", params)
                persons = [
                    entry.get("data")
                    for entry in body.get("data") or []
                    if entry.get("item") == "person" and entry.get("data")
                ]
        except SyncError as exc:
            return _failure(exc)

        pagination = (body.get("additional_data") or {}).get("pagination") or {}
        page = PersonsPage(
            persons=persons,
            start=start,
            more_items=bool(pagination.get("more_items_in_collection")),
            next_start=pagination.get("next_start"),
        )
        logger.debug(
            "pipedrive.persons_fetched",
            count=len(persons),
            start=start,
            more_items=page.more_items,
            incremental=since is not None,
        )
        return PipedriveResult(success=True, data=page)

    async def get_organizations(self) -> PipedriveResult[list[RemoteOrganization]]:
        """Fetch every organization, following pagination."""
        organizations: list[RemoteOrganization] = []
        start = 0
        try:
            while True:
                body = await self._get(
                    "/organizations", {"start": start, "limit": self.page_size}
                )
                organizations.extend(
                    RemoteOrganization.model_validate(o) for o in body.get("data") or []
                )
                pagination = (body.get("additional_data") or {}).get("pagination") or {}
                if not pagination.get("more_items_in_collection"):
                    break
                start = pagination.get("next_start", start + self.page_size)
        except SyncError as exc:
            return _failure(exc)
        except ValidationError as exc:
            return _failure(
                DataValidationError(f"Invalid organization format: {exc.error_count()} errors")
            )
        return PipedriveResult(success=True, data=organizations)

    async def get_organization_details(
        self, org_id: int | str
    ) -> PipedriveResult[RemoteOrganization]:
        try:
            body = await self._get(f"/organizations/{org_id}")
            data = body.get("data")
            if not data:
                raise ExternalAPIError(f"Pipedrive API error: organization {org_id} not found")
            organization = RemoteOrganization.model_validate(data)
        except SyncError as exc:
            return _failure(exc)
        except ValidationError as exc:
            return _failure(
                DataValidationError(f"Invalid organization format: {exc.error_count()} errors")
            )
        return PipedriveResult(success=True, data=organization)

    async def search_persons(self, term: str) -> PipedriveResult[list[RemotePerson]]:
        """Search persons by name, email or phone (GET /persons/search)."""
        try:
            body = await self._get("/persons/search", {"term": term})
            items = (body.get("data") or {}).get("items") or []
            persons = []
            for entry in items:
                # Search items use emails/phones string lists and an organization object
                item = dict(entry.get("item") or entry)
                organization = item.pop("organization", None) or {}
                item.setdefault("org_id", organization.get("id"))
                item.setdefault("org_name", organization.get("name"))
                item.setdefault("email", item.pop("emails", None))
                item.setdefault("phone", item.pop("phones", None))
                persons.append(RemotePerson.model_validate(item))
        except SyncError as exc:
            return _failure(exc)
        except ValidationError as exc:
            return _failure(DataValidationError(f"Invalid person format: {exc.error_count()} errors"))
        return PipedriveResult(success=True, data=persons)


# ── Helpers ─────────────────────────────────────────────────────────────────


def _failure(exc: SyncError) -> PipedriveResult[Any]:
    return PipedriveResult(success=False, error=exc.message, exception=exc)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or ""
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.reason_phrase or ""


def create_pipedrive_client(user: UserRead, settings: Settings) -> PipedriveClient | None:
    """Build a client for ``user``, or None when no API key is configured."""
    if not user.pipedrive_api_key or not user.pipedrive_api_key.strip():
        logger.warning("pipedrive.no_api_key", user_id=user.id)
        return None
    return PipedriveClient(
        api_key=user.pipedrive_api_key,
        base_url=settings.PIPEDRIVE_BASE_URL,
        api_version=settings.PIPEDRIVE_API_VERSION,
        timeout_ms=settings.PIPEDRIVE_TIMEOUT_MS,
        page_size=settings.PIPEDRIVE_PAGE_SIZE,
    )
