"""Sync error taxonomy and classifier.

Errors raised inside the sync engine carry an explicit ErrorKind. Errors
crossing a library boundary without one are classified by matching their
message against an ordered table of case-insensitive patterns.

Canonical pattern order (first match wins):
RATE_LIMIT, AUTHENTICATION, NETWORK, DATABASE, VALIDATION, EXTERNAL_API.
No match yields UNKNOWN, which is treated as recoverable.
"""

from __future__ import annotations

import asyncio
import re
from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    VALIDATION = "VALIDATION"
    EXTERNAL_API = "EXTERNAL_API"
    UNKNOWN = "UNKNOWN"


class ErrorClassification(BaseModel):
    """Result of classifying one error."""

    kind: ErrorKind
    recoverable: bool
    retry_after_ms: int | None = None
    user_message: str


# ── Exceptions ──────────────────────────────────────────────────────────────


class SyncError(Exception):
    """Base class for errors raised by the sync engine.

    Attributes:
        message: Human-readable message (kept classifiable by pattern).
        kind: Explicit ErrorKind, or None to classify by message.
    """

    kind: ErrorKind | None = None

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        self.message = message
        if kind is not None:
            self.kind = kind
        super().__init__(message)


class RateLimitError(SyncError):
    """Remote API rejected the call with HTTP 429."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str = "Rate limit exceeded", retry_after_ms: int | None = None) -> None:
        self.retry_after_ms = retry_after_ms
        super().__init__(message)


class AuthenticationError(SyncError):
    kind = ErrorKind.AUTHENTICATION


class NetworkError(SyncError):
    kind = ErrorKind.NETWORK


class DatabaseError(SyncError):
    kind = ErrorKind.DATABASE


class DataValidationError(SyncError):
    kind = ErrorKind.VALIDATION


class ExternalAPIError(SyncError):
    """Remote API returned a non-success response."""

    kind = ErrorKind.EXTERNAL_API

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class SyncTimeoutError(SyncError):
    """A sync, batch or single operation exceeded its deadline."""

    kind = ErrorKind.NETWORK


class SyncFailedError(SyncError):
    """Raised by a sync run that ended on a fatal error.

    The exception message is the classification's user message; the raw
    failure text is kept in ``detail``.

    Attributes:
        classification: ErrorClassification of the underlying failure.
        user_message: Actionable message safe to show to the user.
        detail: Raw message of the underlying failure.
        sync_id: SyncHistory row id, when one was created.
    """

    def __init__(
        self,
        classification: ErrorClassification,
        detail: str,
        sync_id: str | None = None,
    ) -> None:
        self.classification = classification
        self.user_message = classification.user_message
        self.detail = detail
        self.sync_id = sync_id
        super().__init__(classification.user_message, kind=classification.kind)


# ── Classifier ──────────────────────────────────────────────────────────────

ERROR_PATTERNS: tuple[tuple[ErrorKind, tuple[re.Pattern[str], ...]], ...] = tuple(
    (kind, tuple(re.compile(p, re.IGNORECASE) for p in patterns))
    for kind, patterns in (
        (ErrorKind.RATE_LIMIT, (r"rate limit", r"too many requests", r"retry after")),
        (
            ErrorKind.AUTHENTICATION,
            (r"api key", r"invalid.*token", r"unauthorized", r"authentication failed"),
        ),
        (
            ErrorKind.NETWORK,
            (r"network timeout", r"connection failed", r"failed to connect", r"timeout"),
        ),
        (
            ErrorKind.DATABASE,
            (r"database connection", r"connection lost", r"prisma.*error"),
        ),
        (
            ErrorKind.VALIDATION,
            (r"invalid.*format", r"validation failed", r"required field"),
        ),
        (ErrorKind.EXTERNAL_API, (r"pipedrive.*error", r"api.*error")),
    )
)

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMIT: "Rate limit exceeded. Please wait a moment and try again.",
    ErrorKind.AUTHENTICATION: "Authentication failed. Please check your API key.",
    ErrorKind.NETWORK: "Network connection issue. Please check your internet connection.",
    ErrorKind.DATABASE: "Database connection issue. Please try again later.",
    ErrorKind.VALIDATION: "Invalid data format. Please check your input.",
    ErrorKind.EXTERNAL_API: "Pipedrive API error. Please try again later.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}

_RETRY_AFTER_MS: dict[ErrorKind, int] = {
    ErrorKind.RATE_LIMIT: 60000,
    ErrorKind.NETWORK: 5000,
}

_NON_RECOVERABLE = frozenset({ErrorKind.AUTHENTICATION, ErrorKind.VALIDATION})


def error_message(error: BaseException | str) -> str:
    """Message text of an error, falling back to its type name when empty."""
    if isinstance(error, str):
        return error
    if isinstance(error, SyncError):
        return error.message
    return str(error) or type(error).__name__


class ErrorClassifier:
    """Maps errors to an ErrorClassification."""

    def classify(self, error: BaseException | str) -> ErrorClassification:
        kind = self._explicit_kind(error)
        if kind is None:
            kind = self.match_kind(error_message(error))
        return self.classification_for(kind)

    def match_kind(self, message: str) -> ErrorKind:
        """Kind of the first pattern set matching ``message``, or UNKNOWN."""
        for kind, patterns in ERROR_PATTERNS:
            if any(pattern.search(message) for pattern in patterns):
                return kind
        return ErrorKind.UNKNOWN

    def classification_for(self, kind: ErrorKind) -> ErrorClassification:
        return ErrorClassification(
            kind=kind,
            recoverable=self.is_recoverable(kind),
            retry_after_ms=_RETRY_AFTER_MS.get(kind),
            user_message=USER_MESSAGES[kind],
        )

    @staticmethod
    def is_recoverable(kind: ErrorKind) -> bool:
        return kind not in _NON_RECOVERABLE

    @staticmethod
    def _explicit_kind(error: BaseException | str) -> ErrorKind | None:
        if isinstance(error, SyncError):
            return error.kind
        # Builtin timeouts carry no message to match on
        if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
            return ErrorKind.NETWORK
        return None
