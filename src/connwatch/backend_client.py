"""Async REST client for the monitored backend.

Injects the API-key headers every request needs, decodes JSON row sets and
retries transient failures with exponential backoff and jitter:
- HTTP 429 (rate limited) and 503 (unavailable), honouring ``Retry-After``
- connection failures (``httpx.ConnectError``)

Other failures are raised immediately as ``BackendClientError`` (HTTP errors)
or as the underlying httpx exception (transport errors).

Usage:
    from connwatch.backend_client import create_backend_client

    client = create_backend_client(config.backend)
    rows = await client.select("companies", "id,name", limit=10)
    await client.aclose()
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Self

import httpx

from connwatch.config import BackendConfig, ConfigurationError
from connwatch.logging import get_logger

logger = get_logger(__name__)

# Status codes worth retrying; everything else is surfaced to the caller.
RETRYABLE_STATUS_CODES = frozenset({429, 503})

DEFAULT_ERROR_BODY_LENGTH = 150


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 2).
        initial_delay: Initial delay in seconds before first retry (default: 0.5).
        max_delay: Maximum delay in seconds between retries (default: 5.0).
        jitter_min: Minimum jitter multiplier (default: 0.7).
        jitter_max: Maximum jitter multiplier (default: 1.3).
    """

    max_retries: int = 2
    initial_delay: float = 0.5
    max_delay: float = 5.0
    jitter_min: float = 0.7
    jitter_max: float = 1.3


DEFAULT_RETRY_CONFIG = RetryConfig()


class BackendClientError(Exception):
    """Raised when the backend answers a request with an error status.

    Attributes:
        status_code: HTTP status code, or None when no response was decoded.
        body: Response body, truncated to a bounded length.
    """

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _truncate(text: str, limit: int = DEFAULT_ERROR_BODY_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit]


def _calculate_backoff_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
) -> float:
    """Calculate the delay before the next retry attempt.

    Args:
        attempt: Current retry attempt number (0-indexed).
        config: Retry configuration.
        retry_after: Optional Retry-After header value in seconds.

    Returns:
        Delay in seconds before next retry.
    """
    if retry_after is not None:
        base_delay = min(retry_after, config.max_delay)
    else:
        base_delay = min(config.initial_delay * (2**attempt), config.max_delay)

    jitter = random.uniform(config.jitter_min, config.jitter_max)
    return base_delay * jitter


def _get_retry_after(response: httpx.Response) -> float | None:
    """Extract Retry-After value from response headers.

    Args:
        response: HTTP response to check.

    Returns:
        Retry-After value in seconds, or None if not present.
    """
    retry_after = response.headers.get("Retry-After")
    if retry_after is not None:
        try:
            return float(retry_after)
        except ValueError:
            logger.warning("Invalid Retry-After header value: %s", retry_after)
    return None


async def _execute_with_retry[T](
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Execute an async operation with retry logic for transient failures.

    Args:
        operation: Coroutine factory performing the HTTP operation. Should raise
            ``httpx.HTTPStatusError`` for error responses.
        config: Retry configuration.
        sleep: Awaitable sleep used between attempts.

    Returns:
        Result from the operation.

    Raises:
        BackendClientError: For error responses, once retries are exhausted
            or immediately when the status is not retryable.
        httpx.TransportError: For transport failures that are not retried or
            that persist past the last attempt.
    """
    for attempt in range(config.max_retries + 1):
        retry_after: float | None = None
        try:
            return await operation()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status not in RETRYABLE_STATUS_CODES or attempt >= config.max_retries:
                raise BackendClientError(
                    f"Backend returned HTTP {status}",
                    status_code=status,
                    body=_truncate(e.response.text),
                ) from e
            retry_after = _get_retry_after(e.response)
            reason = f"HTTP {status}"
        except httpx.ConnectError as e:
            if attempt >= config.max_retries:
                raise
            reason = f"connect error: {e}"

        delay = _calculate_backoff_delay(attempt, config, retry_after)
        logger.warning(
            "Backend request failed (attempt %s/%s): %s. Retrying in %.2fs",
            attempt + 1,
            config.max_retries + 1,
            reason,
            delay,
        )
        await sleep(delay)

    # Unreachable: the last attempt either returns or raises.
    raise BackendClientError("Retry failed with no result")


class BackendClient:
    """Higher-level client for the backend's REST data API.

    Connection pooling uses a lazily created ``httpx.AsyncClient`` that is
    shared by every request; call ``aclose()`` (or use ``async with``) to
    release it.
    """

    def __init__(
        self,
        config: BackendConfig,
        *,
        timeout: float = 4.0,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the backend client.

        Args:
            config: Backend connection settings.
            timeout: Per-request timeout in seconds.
            retry_config: Retry behavior for transient failures.
            transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
        """
        self.config = config
        self.timeout = timeout
        self.retry_config = retry_config or DEFAULT_RETRY_CONFIG
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with every request."""
        return {
            "apikey": self.config.anon_key,
            "Authorization": f"Bearer {self.config.anon_key}",
            "X-Client-Info": self.config.client_info,
            "Content-Type": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.rest_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def is_ready(self) -> bool:
        """Check if the client has credentials and exposes its operations."""
        return self.config.configured and all(
            callable(getattr(self, name, None))
            for name in ("select", "fetch_rows", "test_connection")
        )

    async def select(
        self,
        table: str,
        columns: str = "*",
        *,
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        """Read rows from a table.

        Args:
            table: Table name.
            columns: Comma-separated column list for the ``select`` parameter.
            limit: Optional maximum number of rows.
            order: Optional ``order`` expression (e.g. ``"name.asc"``).

        Returns:
            Decoded rows.

        Raises:
            BackendClientError: If the backend answers with an error status or
                a payload that is not a JSON array.
            httpx.TransportError: On transport failures.
        """
        params: dict[str, str] = {"select": columns}
        if limit is not None:
            params["limit"] = str(limit)
        if order is not None:
            params["order"] = order

        async def _request() -> httpx.Response:
            response = await self._get_client().get(f"/{table}", params=params)
            response.raise_for_status()
            return response

        response = await _execute_with_retry(_request, self.retry_config)

        try:
            data = response.json()
        except ValueError as e:
            raise BackendClientError(
                f"Invalid JSON from table '{table}'",
                status_code=response.status_code,
                body=_truncate(response.text),
            ) from e
        if not isinstance(data, list):
            raise BackendClientError(
                f"Unexpected payload from table '{table}': expected a list",
                status_code=response.status_code,
                body=_truncate(response.text),
            )
        return data

    async def fetch_rows(self, table: str | None = None) -> list[dict[str, Any]]:
        """Read every row of a table (the primary table by default)."""
        return await self.select(table or self.config.primary_table)

    async def test_connection(self, timeout: float = 3.0) -> bool:
        """Run a minimal query against the primary table.

        Args:
            timeout: Overall bound in seconds, retries included.

        Returns:
            True if the query succeeded, False on any backend or transport
            failure (including the timeout).
        """
        if not self.is_ready():
            logger.error("Backend client is not ready")
            return False
        try:
            async with asyncio.timeout(timeout):
                await self.select(self.config.primary_table, "id", limit=1)
        except TimeoutError:
            logger.warning("Connection test timed out after %.1fs", timeout)
            return False
        except (BackendClientError, httpx.HTTPError) as e:
            logger.warning("Connection test failed: %s", e)
            return False
        logger.debug("Connection test succeeded", extra={"diagnostic_tag": "client"})
        return True

    async def aclose(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


def create_backend_client(config: BackendConfig, **kwargs: Any) -> BackendClient:
    """Create a backend client, refusing to build one without credentials.

    Args:
        config: Backend connection settings.
        **kwargs: Forwarded to ``BackendClient``.

    Returns:
        A new ``BackendClient``.

    Raises:
        ConfigurationError: If the project id or API key is missing.
    """
    if not config.configured:
        missing = [
            name
            for name, value in (("project_id", config.project_id), ("anon_key", config.anon_key))
            if not value
        ]
        raise ConfigurationError(f"Backend credentials not configured: missing {', '.join(missing)}")
    return BackendClient(config, **kwargs)
