"""
Error taxonomy for the sync engine.

Terminal errors (auth, validation, credentials) propagate immediately.
Transient errors (timeouts, 5xx, 429, connection failures, open circuits) are
retried by the retry policy and surface unchanged once retries are exhausted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

import aiohttp

from donorsync.logging_config import sanitize_text

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Classification used for retry and escalation decisions."""

    AUTH = "AUTH"
    TRANSIENT = "TRANSIENT"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    VALIDATION = "VALIDATION"
    DATA_QUALITY = "DATA_QUALITY"
    UNKNOWN = "UNKNOWN"


# Shown to the user alongside auth failures
REMEDIATION_HINTS: dict[str, str] = {
    "blackbaud": "Reconnect Blackbaud; the SKY API access token may have expired "
    "or the subscription key lacks permission.",
    "bloomerang": "Check the Bloomerang private API key under Settings > Integrations.",
    "donorperfect": "Verify the DonorPerfect API key and that XML API access is enabled.",
    "everyaction": "Check the EveryAction application name, API key and database mode.",
    "neoncrm": "Verify the Neon CRM organization id and API user key.",
    "salesforce": "Reconnect Salesforce; the session may have expired or the "
    "connected app lacks API access.",
    "virtuous": "Regenerate the Virtuous API key and reconnect.",
}

_DEFAULT_REMEDIATION = "Re-enter the CRM credentials and try again."


def remediation_for(provider: str | None) -> str:
    """User-facing hint for fixing a provider's credentials."""
    return REMEDIATION_HINTS.get(provider or "", _DEFAULT_REMEDIATION)


class SyncEngineError(Exception):
    """Base class for engine errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class AuthError(SyncEngineError):
    """Invalid credentials or permission denied. Never retried."""

    kind = ErrorKind.AUTH
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider: str | None = None,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, provider=provider)
        self.remediation = remediation or remediation_for(provider)


class CredentialError(SyncEngineError):
    """Stored credential token could not be decoded."""

    kind = ErrorKind.AUTH
    retryable = False


class ValidationError(SyncEngineError):
    """Malformed request or rejected input (4xx other than auth/429)."""

    kind = ErrorKind.VALIDATION
    retryable = False


class TransientError(SyncEngineError):
    """Server-side or network failure expected to clear on its own."""

    kind = ErrorKind.TRANSIENT
    retryable = True


class RequestTimeoutError(TransientError):
    """An externally-bound call exceeded its timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, *, timeout_ms: int = 0, provider: str | None = None) -> None:
        super().__init__(message, provider=provider)
        self.timeout_ms = timeout_ms


class RateLimitError(TransientError):
    """Vendor returned 429."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        *,
        retry_after_ms: int | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, status_code=429, provider=provider)
        self.retry_after_ms = retry_after_ms


class CircuitOpenError(TransientError):
    """Call rejected because the service's circuit breaker is open."""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, service: str, retry_after_ms: int = 0) -> None:
        super().__init__(
            f"Circuit breaker is open for service: {service}. "
            f"Retry after {-(-retry_after_ms // 1000)} seconds."
        )
        self.service = service
        self.retry_after_ms = retry_after_ms


# Keywords checked against lowercased messages of untyped errors
_RETRYABLE_KEYWORDS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "etimedout",
    "network",
    "fetch failed",
    "econnreset",
    "econnrefused",
    "enotfound",
    "dns",
    "name resolution",
    "connection reset",
    "connection refused",
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "429",
    "rate limit",
    "too many requests",
)


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an exception into an ErrorKind."""
    if isinstance(error, SyncEngineError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in (401, 403):
            return ErrorKind.AUTH
        if error.status == 429:
            return ErrorKind.RATE_LIMIT
        if error.status >= 500:
            return ErrorKind.TRANSIENT
        return ErrorKind.VALIDATION
    if isinstance(error, (aiohttp.ClientConnectionError, ConnectionError)):
        return ErrorKind.TRANSIENT

    message = str(error).lower()
    if any(keyword in message for keyword in _RETRYABLE_KEYWORDS):
        if "429" in message or "rate limit" in message or "too many requests" in message:
            return ErrorKind.RATE_LIMIT
        if "timeout" in message or "timed out" in message:
            return ErrorKind.TIMEOUT
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.TRANSIENT, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.CIRCUIT_OPEN}
)


def is_retryable(error: BaseException) -> bool:
    """Return True if the error should consume a retry rather than propagate."""
    if isinstance(error, SyncEngineError):
        return error.retryable
    return classify_error(error) in _RETRYABLE_KINDS


def sanitize_error_message(error: BaseException | str, max_length: int = 500) -> str:
    """Human-readable error text with keys and tokens redacted."""
    text = error if isinstance(error, str) else (str(error) or type(error).__name__)
    text = sanitize_text(text)
    if len(text) > max_length:
        return text[: max_length - 3] + "..."
    return text


# =============================================================================
# Adapter boundary result type
# =============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful adapter call."""

    value: T
    ok: bool = True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed adapter call; ``error`` carries the classification."""

    error: SyncEngineError
    ok: bool = False

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    def unwrap(self) -> None:
        raise self.error


AdapterResult = Ok[T] | Err
