"""Tests for the backend REST client."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from connwatch.backend_client import (
    BackendClient,
    BackendClientError,
    RetryConfig,
    _calculate_backoff_delay,
    _execute_with_retry,
    create_backend_client,
)
from connwatch.config import BackendConfig, ConfigurationError
from tests.conftest import ANON_KEY, BASE_URL, mock_transport

NO_WAIT_RETRY = RetryConfig(max_retries=2, initial_delay=0.0, max_delay=0.0)


class TestBackoffDelay:
    """Tests for _calculate_backoff_delay."""

    def test_exponential_growth_with_jitter_bounds(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=30.0)
        for attempt, base in ((0, 1.0), (1, 2.0), (2, 4.0)):
            delay = _calculate_backoff_delay(attempt, config)
            assert base * 0.7 <= delay <= base * 1.3

    def test_capped_at_max_delay(self) -> None:
        config = RetryConfig(initial_delay=1.0, max_delay=5.0)
        assert _calculate_backoff_delay(10, config) <= 5.0 * 1.3

    def test_retry_after_used(self) -> None:
        config = RetryConfig(max_delay=30.0, jitter_min=1.0, jitter_max=1.0)
        assert _calculate_backoff_delay(0, config, retry_after=7.0) == 7.0


class TestExecuteWithRetry:
    """Tests for _execute_with_retry."""

    @pytest.mark.asyncio
    async def test_retries_rate_limit_then_succeeds(self) -> None:
        request = httpx.Request("GET", "https://example.test/")
        attempts = 0
        sleeps: list[float] = []

        async def operation() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                response = httpx.Response(429, request=request)
                raise httpx.HTTPStatusError("rate limited", request=request, response=response)
            return "done"

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        result = await _execute_with_retry(operation, RetryConfig(max_retries=3), sleep=fake_sleep)

        assert result == "done"
        assert attempts == 3
        assert len(sleeps) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_status_raises_immediately(self) -> None:
        request = httpx.Request("GET", "https://example.test/")
        attempts = 0

        async def operation() -> None:
            nonlocal attempts
            attempts += 1
            response = httpx.Response(401, request=request, text="invalid api key")
            raise httpx.HTTPStatusError("unauthorized", request=request, response=response)

        with pytest.raises(BackendClientError) as exc_info:
            await _execute_with_retry(operation, NO_WAIT_RETRY)

        assert attempts == 1
        assert exc_info.value.status_code == 401
        assert exc_info.value.body == "invalid api key"

    @pytest.mark.asyncio
    async def test_connect_error_reraised_after_retries(self) -> None:
        attempts = 0

        async def operation() -> None:
            nonlocal attempts
            attempts += 1
            raise httpx.ConnectError("refused")

        with pytest.raises(httpx.ConnectError):
            await _execute_with_retry(operation, NO_WAIT_RETRY)

        assert attempts == 3


class TestBackendClient:
    """Tests for BackendClient operations."""

    @pytest.mark.asyncio
    async def test_select_sends_headers_and_params(self, backend_config: BackendConfig) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"id": 1, "name": "Acme"}])

        async with BackendClient(backend_config, transport=mock_transport(handler)) as client:
            rows = await client.select("companies", "id,name", limit=5, order="name.asc")

        assert rows == [{"id": 1, "name": "Acme"}]
        request = seen[0]
        assert str(request.url).startswith(f"{BASE_URL}/rest/v1/companies?")
        assert request.url.params["select"] == "id,name"
        assert request.url.params["limit"] == "5"
        assert request.url.params["order"] == "name.asc"
        assert request.headers["apikey"] == ANON_KEY
        assert request.headers["authorization"] == f"Bearer {ANON_KEY}"
        assert request.headers["x-client-info"] == backend_config.client_info

    @pytest.mark.asyncio
    async def test_select_error_status(self, backend_config: BackendConfig) -> None:
        client = BackendClient(
            backend_config,
            retry_config=NO_WAIT_RETRY,
            transport=mock_transport(
                lambda request: httpx.Response(404, text='{"message":"relation does not exist"}')
            ),
        )

        with pytest.raises(BackendClientError) as exc_info:
            await client.select("missing")
        await client.aclose()

        assert exc_info.value.status_code == 404
        assert "relation does not exist" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_select_rejects_non_list_payload(self, backend_config: BackendConfig) -> None:
        client = BackendClient(
            backend_config,
            transport=mock_transport(lambda request: httpx.Response(200, json={"rows": []})),
        )

        with pytest.raises(BackendClientError, match="expected a list"):
            await client.select("companies")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_select_retries_unavailable(self, backend_config: BackendConfig) -> None:
        responses = iter([httpx.Response(503), httpx.Response(200, json=[])])
        client = BackendClient(
            backend_config,
            retry_config=NO_WAIT_RETRY,
            transport=mock_transport(lambda request: next(responses)),
        )

        assert await client.select("companies") == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_fetch_rows_defaults_to_primary_table(self, backend_config: BackendConfig) -> None:
        paths: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            return httpx.Response(200, json=[{"id": 1}, {"id": 2}])

        client = BackendClient(backend_config, transport=mock_transport(handler))
        rows = await client.fetch_rows()
        await client.aclose()

        assert len(rows) == 2
        assert paths == ["/rest/v1/companies"]

    @pytest.mark.asyncio
    async def test_test_connection_success(self, backend_config: BackendConfig) -> None:
        client = BackendClient(
            backend_config, transport=mock_transport(lambda request: httpx.Response(200, json=[]))
        )
        assert await client.test_connection() is True
        await client.aclose()

    @pytest.mark.asyncio
    async def test_test_connection_failure_returns_false(self, backend_config: BackendConfig) -> None:
        client = BackendClient(
            backend_config,
            retry_config=NO_WAIT_RETRY,
            transport=mock_transport(lambda request: httpx.Response(401, text="bad key")),
        )
        assert await client.test_connection() is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_test_connection_timeout_returns_false(self, backend_config: BackendConfig) -> None:
        class SlowTransport(httpx.AsyncBaseTransport):
            async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
                await asyncio.sleep(10)
                return httpx.Response(200, json=[])

        client = BackendClient(backend_config, transport=SlowTransport())
        assert await client.test_connection(timeout=0.05) is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_not_ready_without_credentials(self) -> None:
        client = BackendClient(BackendConfig())
        assert client.is_ready() is False
        assert await client.test_connection() is False

    def test_ready_with_credentials(self, backend_config: BackendConfig) -> None:
        assert BackendClient(backend_config).is_ready() is True


class TestCreateBackendClient:
    """Tests for create_backend_client."""

    def test_missing_credentials_raise(self) -> None:
        with pytest.raises(ConfigurationError, match="project_id, anon_key"):
            create_backend_client(BackendConfig())

    def test_missing_key_only(self) -> None:
        with pytest.raises(ConfigurationError, match="anon_key"):
            create_backend_client(BackendConfig(project_id="abcdefghij0123456789"))

    def test_creates_client(self, backend_config: BackendConfig) -> None:
        client = create_backend_client(backend_config, timeout=2.0)
        assert isinstance(client, BackendClient)
        assert client.timeout == 2.0
