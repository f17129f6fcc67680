"""Bounded-time probes with a shared outcome classification.

Every check the monitor or the diagnostic pipeline performs goes through a
``ProbeExecutor``. A probe is either an HTTP request or a logical backend call
(an awaitable factory). Either way the executor enforces a timeout and returns
a ``ProbeResult``; it never raises, except for task cancellation.

Classification:
- ``OK``: HTTP status below 400, or a logical call that returned a value
- ``APPLICATION``: HTTP 4xx, an unparseable 2xx payload, or an application
  exception from a logical call (the server is reachable)
- ``SERVER``: HTTP 5xx
- ``TIMEOUT``: no response within the bound
- ``NETWORK``: DNS/connect failure or another transport error
- ``CONFIGURATION``: the target itself is malformed (bad URL, missing
  credentials)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx

from connwatch.backend_client import BackendClientError
from connwatch.config import ConfigurationError
from connwatch.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_BODY_LENGTH = 150


class ProbeKind(StrEnum):
    """Outcome classification shared by the monitor and the pipeline."""

    OK = "ok"
    APPLICATION = "application"
    SERVER = "server"
    TIMEOUT = "timeout"
    NETWORK = "network"
    CONFIGURATION = "configuration"


@dataclass(frozen=True)
class ProbeError:
    """Short description of a failed probe.

    Attributes:
        kind: Failure classification.
        message: Human-readable description.
    """

    kind: ProbeKind
    message: str

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary representation."""
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class ProbeResult:
    """Classified outcome of a single probe.

    Attributes:
        kind: Outcome classification.
        message: Short human-readable outcome.
        status_code: HTTP status code when a response arrived.
        reason: HTTP reason phrase when a response arrived.
        body: Response or error text, truncated to a bounded length.
        value: Decoded JSON (HTTP probes with ``parse_json``) or the value
            returned by a logical call.
        elapsed_ms: Wall-clock time spent in the probe.
        timeout: Bound applied to the probe in seconds.
    """

    kind: ProbeKind
    message: str
    status_code: int | None = None
    reason: str = ""
    body: str = ""
    value: Any = None
    elapsed_ms: float = 0.0
    timeout: float = 0.0

    @property
    def ok(self) -> bool:
        """Check if the probe fully succeeded."""
        return self.kind is ProbeKind.OK

    @property
    def reachable(self) -> bool:
        """Check if the server answered, even with an application error."""
        return self.kind in (ProbeKind.OK, ProbeKind.APPLICATION)

    def to_error(self) -> ProbeError:
        """Describe this outcome as a ``ProbeError``."""
        return ProbeError(kind=self.kind, message=self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }
        if self.status_code is not None:
            result["status_code"] = self.status_code
            result["reason"] = self.reason
        if self.body:
            result["body"] = self.body
        return result


def classify_status(status_code: int) -> ProbeKind:
    """Map an HTTP status code onto a probe kind.

    Args:
        status_code: HTTP status code.

    Returns:
        ``OK`` below 400, ``APPLICATION`` for 4xx, ``SERVER`` for 5xx.
    """
    if status_code < 400:
        return ProbeKind.OK
    if status_code < 500:
        return ProbeKind.APPLICATION
    return ProbeKind.SERVER


class ProbeExecutor:
    """Runs bounded-time probes and classifies their outcome.

    The executor owns a lazily created ``httpx.AsyncClient`` shared by all
    HTTP probes. Pass ``transport`` to route requests through a custom
    transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        *,
        max_body_length: int = DEFAULT_MAX_BODY_LENGTH,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_body_length = max_body_length
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_body_length:
            return text
        return text[: self.max_body_length]

    async def http(
        self,
        url: str,
        *,
        timeout: float,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        parse_json: bool = False,
    ) -> ProbeResult:
        """Issue one HTTP request and classify the outcome.

        Args:
            url: Absolute URL to request.
            timeout: Bound in seconds for the whole request.
            method: HTTP method.
            headers: Optional request headers.
            parse_json: Decode a 2xx body as JSON into ``ProbeResult.value``;
                an undecodable body is classified as ``APPLICATION``.

        Returns:
            The classified ``ProbeResult``.
        """
        start = time.monotonic()

        def _elapsed_ms() -> float:
            return (time.monotonic() - start) * 1000

        try:
            async with asyncio.timeout(timeout):
                response = await self._get_client().request(
                    method, url, headers=headers, timeout=timeout
                )
        except (httpx.TimeoutException, TimeoutError):
            return ProbeResult(
                kind=ProbeKind.TIMEOUT,
                message=f"No response within {timeout:g}s",
                elapsed_ms=_elapsed_ms(),
                timeout=timeout,
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            return ProbeResult(
                kind=ProbeKind.CONFIGURATION,
                message=f"Invalid probe target {url!r}: {e}",
                elapsed_ms=_elapsed_ms(),
                timeout=timeout,
            )
        except httpx.TransportError as e:
            return ProbeResult(
                kind=ProbeKind.NETWORK,
                message=f"{type(e).__name__}: {e}",
                elapsed_ms=_elapsed_ms(),
                timeout=timeout,
            )

        elapsed_ms = _elapsed_ms()
        kind = classify_status(response.status_code)
        logger.debug(
            "%s %s -> HTTP %s",
            method,
            url,
            response.status_code,
            extra={"diagnostic_tag": "probes", "kind": kind.value, "elapsed_ms": elapsed_ms},
        )

        base = {
            "status_code": response.status_code,
            "reason": response.reason_phrase,
            "elapsed_ms": elapsed_ms,
            "timeout": timeout,
        }
        status_line = f"HTTP {response.status_code} {response.reason_phrase}".rstrip()

        if kind is not ProbeKind.OK:
            return ProbeResult(
                kind=kind, message=status_line, body=self._truncate(response.text), **base
            )

        value: Any = None
        if parse_json:
            try:
                value = response.json()
            except ValueError:
                return ProbeResult(
                    kind=ProbeKind.APPLICATION,
                    message=f"{status_line}: response body is not valid JSON",
                    body=self._truncate(response.text),
                    **base,
                )
        return ProbeResult(kind=kind, message=status_line, value=value, **base)

    async def call(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        timeout: float,
    ) -> ProbeResult:
        """Run one logical backend call and classify the outcome.

        Args:
            operation: Coroutine factory performing the call.
            timeout: Bound in seconds for the whole call.

        Returns:
            ``OK`` carrying the returned value, or a failure classification.
        """
        start = time.monotonic()

        def _result(kind: ProbeKind, message: str, **kwargs: Any) -> ProbeResult:
            return ProbeResult(
                kind=kind,
                message=message,
                elapsed_ms=(time.monotonic() - start) * 1000,
                timeout=timeout,
                **kwargs,
            )

        try:
            async with asyncio.timeout(timeout):
                value = await operation()
        except (httpx.TimeoutException, TimeoutError):
            return _result(ProbeKind.TIMEOUT, f"No response within {timeout:g}s")
        except BackendClientError as e:
            kind = (
                classify_status(e.status_code)
                if e.status_code is not None
                else ProbeKind.APPLICATION
            )
            # A decoded response with an unusable payload is still an application error.
            if kind is ProbeKind.OK:
                kind = ProbeKind.APPLICATION
            return _result(kind, str(e), status_code=e.status_code, body=self._truncate(e.body))
        except ConfigurationError as e:
            return _result(ProbeKind.CONFIGURATION, str(e))
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            return _result(ProbeKind.CONFIGURATION, f"Invalid probe target: {e}")
        except httpx.TransportError as e:
            return _result(ProbeKind.NETWORK, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.debug(
                "Logical probe raised %s",
                type(e).__name__,
                exc_info=True,
                extra={"diagnostic_tag": "probes"},
            )
            return _result(
                ProbeKind.APPLICATION,
                f"{type(e).__name__}: {e}",
                body=self._truncate(str(e)),
            )

        return _result(ProbeKind.OK, "Call completed", value=value)

    async def aclose(self) -> None:
        """Close the shared HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
