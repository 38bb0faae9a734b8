"""
Shared aiohttp transport for vendor adapters.

Every request is paced per provider, bounded by an explicit timeout, and run
through the retry policy and the provider's circuit breaker. HTTP statuses are
mapped onto typed errors:

- 401/403: AuthError (terminal, with a remediation hint)
- 429: RateLimitError (retryable, honours Retry-After)
- 5xx: TransientError (retryable)
- other 4xx: ValidationError (terminal)

Error bodies are sanitized and truncated before they are logged or raised.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import aiohttp

from donorsync.config import RetryConfig, SyncConfig
from donorsync.contracts import Provider
from donorsync.errors import (
    AuthError,
    RateLimitError,
    TransientError,
    ValidationError,
    sanitize_error_message,
)
from donorsync.resilience.circuit_breaker import CircuitBreaker
from donorsync.resilience.rate_limiter import ProviderPacer
from donorsync.resilience.retry import RETRY_POLICIES, SleepFn, execute_with_retry
from donorsync.resilience.timeout import call_with_timeout

logger = logging.getLogger(__name__)

MAX_ERROR_BODY_LENGTH = 200


def parse_retry_after(value: str | None) -> int | None:
    """Parse a Retry-After header (seconds or HTTP-date) into milliseconds."""
    if not value:
        return None
    with contextlib.suppress(ValueError):
        return max(0, int(float(value) * 1000))
    with contextlib.suppress(TypeError, ValueError):
        when = parsedate_to_datetime(value)
        return max(0, int((when - datetime.now(tz=UTC)).total_seconds() * 1000))
    return None


class VendorHttpClient:
    """
    Async HTTP client bound to one vendor.

    Adapters own one instance and call ``request``; the client never parses
    vendor payloads beyond JSON/text decoding.
    """

    def __init__(
        self,
        provider: Provider | str,
        base_url: str,
        *,
        config: SyncConfig | None = None,
        pacer: ProviderPacer | None = None,
        breaker: CircuitBreaker | None = None,
        retry: RetryConfig | None = None,
        headers: Mapping[str, str] | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """
        Initialize the client.

        Args:
            provider: Vendor this client talks to (also the pacing key).
            base_url: Base URL prepended to request paths.
            config: Engine configuration (request timeout).
            pacer: Shared per-provider pacer.
            breaker: The provider's circuit breaker.
            retry: Retry policy. None makes a single attempt, for adapters
                whose page fetches are already retried by a PageStream.
            headers: Default headers (auth) sent with every request.
            sleep: Awaitable sleep used for backoff.
        """
        self.provider = Provider(provider)
        self._base_url = base_url.rstrip("/")
        self._config = config or SyncConfig()
        self._pacer = pacer
        self._breaker = breaker
        self._retry = retry if retry is not None else RETRY_POLICIES["none"]
        self._headers = dict(headers or {})
        self._sleep = sleep
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_ms / 1000)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=self._headers)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
        expect_json: bool = True,
    ) -> Any:
        """
        Make an HTTP request with pacing, timeout, retry and circuit breaker.

        Args:
            method: HTTP method.
            path: Path relative to the base URL (or an absolute next-link URL).
            params: Query parameters.
            json: JSON request body.
            headers: Extra per-request headers.
            expect_json: Decode the body as JSON (False returns text, e.g. XML).

        Returns:
            Decoded response body.

        Raises:
            AuthError, ValidationError: Terminal vendor rejections.
            RateLimitError, TransientError, RequestTimeoutError: After retries.
            CircuitOpenError: If the provider's circuit is open.
        """
        url = path if path.startswith(("http://", "https://")) else f"{self._base_url}/{path.lstrip('/')}"

        async def attempt() -> Any:
            if self._pacer is not None:
                await self._pacer.wait(self.provider.value)
            return await call_with_timeout(
                self._send(method, url, params=params, json=json, headers=headers, expect_json=expect_json),
                self._config.request_timeout_ms,
                f"{self.provider.value} {method} {path}",
                provider=self.provider.value,
            )

        return await execute_with_retry(
            attempt,
            self._retry,
            name=f"{self.provider.value} {method} {path}",
            breaker=self._breaker,
            sleep=self._sleep,
        )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None,
        json: Any,
        headers: Mapping[str, str] | None,
        expect_json: bool,
    ) -> Any:
        session = await self._get_session()
        try:
            async with session.request(method, url, params=params, json=json, headers=headers) as response:
                if response.status >= 400:
                    await self._raise_for_status(response)
                if expect_json:
                    return await response.json(content_type=None)
                return await response.text()
        except aiohttp.ClientConnectionError as e:
            raise TransientError(
                f"Network error: {sanitize_error_message(e, MAX_ERROR_BODY_LENGTH)}",
                provider=self.provider.value,
            ) from e

    async def _raise_for_status(self, response: aiohttp.ClientResponse) -> None:
        status = response.status
        try:
            body = await response.text()
        except (aiohttp.ClientError, UnicodeDecodeError):
            body = ""
        detail = sanitize_error_message(body or f"HTTP {status}", MAX_ERROR_BODY_LENGTH)
        provider = self.provider.value

        logger.warning(
            "Vendor HTTP error",
            extra={"provider": provider, "status": status, "detail": detail},
        )

        if status in (401, 403):
            raise AuthError(
                f"{provider} rejected credentials (HTTP {status}): {detail}",
                status_code=status,
                provider=provider,
            )
        if status == 429:
            raise RateLimitError(
                f"{provider} rate limit exceeded (HTTP 429)",
                retry_after_ms=parse_retry_after(response.headers.get("Retry-After")),
                provider=provider,
            )
        if status >= 500:
            raise TransientError(
                f"{provider} server error (HTTP {status}): {detail}",
                status_code=status,
                provider=provider,
            )
        raise ValidationError(
            f"{provider} rejected request (HTTP {status}): {detail}",
            status_code=status,
            provider=provider,
        )
