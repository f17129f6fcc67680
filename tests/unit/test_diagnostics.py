"""Tests for the diagnostic pipeline and its report."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import httpx
import pytest

from connwatch.backend_client import BackendClient, RetryConfig
from connwatch.config import BackendConfig, DiagnosticsConfig
from connwatch.diagnostics import (
    STAGE_CLIENT_INIT,
    STAGE_CLIENT_QUERY,
    STAGE_COMPLETE,
    STAGE_CONFIGURATION,
    STAGE_NAMES,
    STAGE_REACHABILITY,
    STAGE_REST_API,
    STAGE_TABLE_ACCESS,
    DiagnosticPipeline,
    DiagnosticReport,
    DiagnosticResult,
    DiagnosticStatus,
    aggregate_status,
    format_report,
)
from connwatch.probes import ProbeExecutor
from tests.conftest import ANON_KEY, PROJECT_ID, mock_transport

NO_WAIT_RETRY = RetryConfig(max_retries=1, initial_delay=0.0, max_delay=0.0)


def healthy_backend(request: httpx.Request) -> httpx.Response:
    if request.method == "HEAD":
        return httpx.Response(200)
    return httpx.Response(200, json=[{"id": 1}, {"id": 2}])


def make_pipeline(
    backend: BackendConfig,
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    with_client: bool = True,
    config: DiagnosticsConfig | None = None,
    clock: Callable[[], float] | None = None,
) -> DiagnosticPipeline:
    transport = mock_transport(handler)
    client = (
        BackendClient(backend, retry_config=NO_WAIT_RETRY, transport=transport)
        if with_client
        else None
    )
    kwargs = {"clock": clock} if clock is not None else {}
    return DiagnosticPipeline(
        backend, ProbeExecutor(transport=transport), client, config, **kwargs
    )


def _result(name: str, status: DiagnosticStatus) -> DiagnosticResult:
    return DiagnosticResult(name=name, status=status, message=f"{name} {status.value}")


class TestAggregateStatus:
    """Tests for aggregate_status."""

    def test_empty_is_loading(self) -> None:
        assert aggregate_status([]) is DiagnosticStatus.LOADING

    def test_all_success(self) -> None:
        results = [_result("a", DiagnosticStatus.SUCCESS), _result("b", DiagnosticStatus.SUCCESS)]
        assert aggregate_status(results) is DiagnosticStatus.SUCCESS

    def test_warning_beats_success(self) -> None:
        results = [_result("a", DiagnosticStatus.SUCCESS), _result("b", DiagnosticStatus.WARNING)]
        assert aggregate_status(results) is DiagnosticStatus.WARNING

    def test_error_beats_everything(self) -> None:
        results = [
            _result("a", DiagnosticStatus.WARNING),
            _result("b", DiagnosticStatus.ERROR),
            _result("c", DiagnosticStatus.SUCCESS),
        ]
        assert aggregate_status(results) is DiagnosticStatus.ERROR


class TestDiagnosticReport:
    """Tests for DiagnosticReport."""

    def test_append_and_counts(self) -> None:
        report = DiagnosticReport(run_id=1)
        report.append(_result("a", DiagnosticStatus.SUCCESS))
        report.append(_result("b", DiagnosticStatus.ERROR))
        report.append(_result("c", DiagnosticStatus.SUCCESS))

        assert len(report) == 3
        assert [r.name for r in report] == ["a", "b", "c"]
        assert report.counts() == {"success": 2, "warning": 0, "error": 1}
        assert report.overall_status is DiagnosticStatus.ERROR
        assert not report.completed

    def test_complete_freezes_report(self) -> None:
        report = DiagnosticReport(run_id=4)
        report.complete(_result(STAGE_COMPLETE, DiagnosticStatus.SUCCESS), duration_seconds=0.5)

        assert report.completed
        assert report.finished_at is not None
        with pytest.raises(RuntimeError, match="complete"):
            report.append(_result("late", DiagnosticStatus.SUCCESS))
        assert len(report) == 1

    def test_to_dict(self) -> None:
        report = DiagnosticReport(run_id=2)
        report.append(_result("a", DiagnosticStatus.WARNING))
        report.complete(_result(STAGE_COMPLETE, DiagnosticStatus.SUCCESS), duration_seconds=1.23456)

        data = report.to_dict()

        assert data["run_id"] == 2
        assert data["completed"] is True
        assert data["overall_status"] == "warning"
        assert data["duration_seconds"] == 1.235
        assert [r["name"] for r in data["results"]] == ["a", STAGE_COMPLETE]
        assert data["results"][0]["status"] == "warning"


class TestFormatReport:
    """Tests for format_report."""

    def test_lists_results_then_errors_and_warnings(self) -> None:
        report = DiagnosticReport(run_id=1)
        report.append(
            DiagnosticResult(
                name=STAGE_REACHABILITY,
                status=DiagnosticStatus.WARNING,
                message="Servidor com problemas",
                details="Status HTTP: 503 - Service Unavailable",
            )
        )
        report.append(
            DiagnosticResult(
                name=STAGE_REST_API, status=DiagnosticStatus.ERROR, message="Erro na API"
            )
        )

        text = format_report(report)

        assert "Status geral: ERROR" in text
        assert "[AVISO]  Conectividade Básica: Servidor com problemas" in text
        assert "Status HTTP: 503 - Service Unavailable" in text
        assert "[ERRO]   API REST: Erro na API" in text
        errors_at = text.index("ERROS ENCONTRADOS:")
        warnings_at = text.index("AVISOS:")
        assert errors_at < warnings_at
        assert "  1. API REST: Erro na API" in text[errors_at:warnings_at]
        assert "  1. Conectividade Básica: Servidor com problemas" in text[warnings_at:]

    def test_clean_report_has_no_problem_sections(self) -> None:
        report = DiagnosticReport(run_id=1)
        report.append(_result("a", DiagnosticStatus.SUCCESS))

        text = format_report(report)

        assert "Status geral: SUCCESS" in text
        assert "ERROS ENCONTRADOS:" not in text
        assert "AVISOS:" not in text


class TestPipelineRun:
    """Tests for DiagnosticPipeline.run."""

    @pytest.mark.asyncio
    async def test_healthy_backend(self, backend_config: BackendConfig) -> None:
        pipeline = make_pipeline(backend_config, healthy_backend)

        report = await pipeline.run()

        assert [r.name for r in report] == [*STAGE_NAMES, STAGE_COMPLETE]
        assert report.completed
        assert report.overall_status is DiagnosticStatus.SUCCESS
        by_name = {r.name: r for r in report}
        assert by_name[STAGE_CONFIGURATION].message == "Credenciais válidas"
        assert by_name[STAGE_CONFIGURATION].details == (
            f"Project: {PROJECT_ID[:8]}..., Key: {ANON_KEY[:20]}..."
        )
        assert by_name[STAGE_CLIENT_INIT].message == "Cliente inicializado"
        assert by_name[STAGE_REACHABILITY].details == "Status HTTP: 200 - OK"
        assert by_name[STAGE_REST_API].details == "Status: 200, Registros: 2"
        assert by_name[STAGE_CLIENT_QUERY].message == "Cliente funcionando"
        assert by_name[STAGE_TABLE_ACCESS].details == "2 registros encontrados em 'companies'"
        assert by_name[STAGE_COMPLETE].message == "Finalizado"

    @pytest.mark.asyncio
    async def test_empty_table_reports_zero_records(self, backend_config: BackendConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[])

        report = await make_pipeline(backend_config, handler).run()

        rest = next(r for r in report if r.name == STAGE_REST_API)
        assert rest.status is DiagnosticStatus.SUCCESS
        assert rest.details == "Status: 200, Registros: 0"

    @pytest.mark.asyncio
    async def test_reachability_timeout_does_not_stop_later_stages(
        self, backend_config: BackendConfig
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                raise httpx.ConnectTimeout("timed out", request=request)
            return healthy_backend(request)

        report = await make_pipeline(backend_config, handler).run()

        assert len(report) == 7
        assert [r.name for r in report] == [*STAGE_NAMES, STAGE_COMPLETE]
        reach = report.results[2]
        assert reach.status is DiagnosticStatus.ERROR
        assert reach.message == "Timeout na conexão"
        assert reach.details == "Servidor não respondeu em 8 segundos"
        assert all(
            r.status is DiagnosticStatus.SUCCESS for r in report.results[3:]
        )
        assert report.overall_status is DiagnosticStatus.ERROR

    @pytest.mark.asyncio
    async def test_server_error_is_warning(self, backend_config: BackendConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                return httpx.Response(503)
            return healthy_backend(request)

        report = await make_pipeline(backend_config, handler).run()

        reach = report.results[2]
        assert reach.status is DiagnosticStatus.WARNING
        assert reach.message == "Servidor com problemas"
        assert reach.details == "Status HTTP: 503 - Service Unavailable"
        assert report.overall_status is DiagnosticStatus.WARNING

    @pytest.mark.asyncio
    async def test_rejected_key(self, backend_config: BackendConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                return httpx.Response(404)
            return httpx.Response(401, text='{"message":"Invalid API key"}')

        report = await make_pipeline(backend_config, handler).run()
        by_name = {r.name: r for r in report}

        assert by_name[STAGE_REACHABILITY].status is DiagnosticStatus.SUCCESS
        assert by_name[STAGE_REST_API].message == "Erro na API"
        assert by_name[STAGE_REST_API].details == (
            'Status: 401, Erro: {"message":"Invalid API key"}...'
        )
        assert by_name[STAGE_CLIENT_QUERY].message == "Falha no cliente"
        assert by_name[STAGE_TABLE_ACCESS].message == "Erro no acesso"
        assert "Invalid API key" in (by_name[STAGE_TABLE_ACCESS].details or "")

    @pytest.mark.asyncio
    async def test_rest_redirect_is_error(self, backend_config: BackendConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                return httpx.Response(200)
            if request.url.params.get("select") == "id":
                return httpx.Response(302, json=[], headers={"Location": "/login"})
            return healthy_backend(request)

        report = await make_pipeline(backend_config, handler).run()
        rest = report.results[3]

        assert rest.status is DiagnosticStatus.ERROR
        assert rest.message == "Erro na API"
        assert rest.details == "Status: 302, Erro: HTTP 302 Found..."

    @pytest.mark.asyncio
    async def test_rest_error_body_truncated(self, backend_config: BackendConfig) -> None:
        body = "e" * 400

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                return httpx.Response(200)
            return httpx.Response(400, text=body)

        report = await make_pipeline(backend_config, handler).run()
        details = report.results[3].details or ""

        prefix, suffix = "Status: 400, Erro: ", "..."
        assert details.startswith(prefix)
        assert details.endswith(suffix)
        assert details[len(prefix) : -len(suffix)] == "e" * 150

    @pytest.mark.asyncio
    async def test_rest_timeout(self, backend_config: BackendConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "HEAD":
                return httpx.Response(200)
            raise httpx.ReadTimeout("timed out", request=request)

        report = await make_pipeline(backend_config, handler).run()
        rest = report.results[3]

        assert rest.message == "Timeout na API"
        assert rest.details == "API não respondeu em 10 segundos"

    @pytest.mark.asyncio
    async def test_network_failure_everywhere(self, backend_config: BackendConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Name or service not known", request=request)

        report = await make_pipeline(backend_config, handler).run()
        by_name = {r.name: r for r in report}

        assert by_name[STAGE_REACHABILITY].message == "Erro de rede"
        assert by_name[STAGE_REST_API].message == "Falha na API"
        assert by_name[STAGE_CLIENT_QUERY].message == "Falha no cliente"
        assert by_name[STAGE_TABLE_ACCESS].message == "Erro no acesso"
        assert len(report) == 7

    @pytest.mark.asyncio
    async def test_missing_credentials(self) -> None:
        pipeline = make_pipeline(
            BackendConfig(), lambda request: httpx.Response(401), with_client=False
        )

        report = await pipeline.run()
        by_name = {r.name: r for r in report}

        assert by_name[STAGE_CONFIGURATION].message == "Credenciais não configuradas"
        assert by_name[STAGE_CONFIGURATION].details == "Project ID: FALTANDO, API Key: FALTANDO"
        assert by_name[STAGE_CLIENT_INIT].message == "Cliente não inicializado"
        assert by_name[STAGE_CLIENT_QUERY].details == "Cliente não inicializado"
        assert by_name[STAGE_TABLE_ACCESS].details == "Cliente não inicializado"
        assert len(report) == 7

    @pytest.mark.asyncio
    async def test_malformed_project_id(self) -> None:
        backend = BackendConfig(project_id="not-a-project", anon_key=ANON_KEY)
        report = await make_pipeline(backend, healthy_backend).run()

        config_result = report.results[0]
        assert config_result.status is DiagnosticStatus.ERROR
        assert config_result.message == "Project ID com formato inválido"

    @pytest.mark.asyncio
    async def test_stage_exception_becomes_error_result(
        self, backend_config: BackendConfig
    ) -> None:
        pipeline = make_pipeline(backend_config, healthy_backend)

        async def broken() -> DiagnosticResult:
            raise RuntimeError("stage exploded")

        pipeline._check_rest_api = broken  # type: ignore[method-assign]

        report = await pipeline.run()
        rest = report.results[3]

        assert rest.name == STAGE_REST_API
        assert rest.message == "Erro inesperado"
        assert "stage exploded" in (rest.details or "")
        assert report.results[4].status is DiagnosticStatus.SUCCESS
        assert len(report) == 7

    @pytest.mark.asyncio
    async def test_terminal_entry_carries_duration(self, backend_config: BackendConfig) -> None:
        ticks = iter([10.0, 11.26])
        pipeline = make_pipeline(backend_config, healthy_backend, clock=lambda: next(ticks))

        report = await pipeline.run()

        assert report.results[-1].details == "Duração: 1.3s"
        assert report.duration_seconds == pytest.approx(1.26)

    @pytest.mark.asyncio
    async def test_completed_report_rejects_appends(self, backend_config: BackendConfig) -> None:
        report = await make_pipeline(backend_config, healthy_backend).run()

        with pytest.raises(RuntimeError):
            report.append(_result("late", DiagnosticStatus.SUCCESS))


class TestPipelineRuns:
    """Tests for run bookkeeping, joining and streaming."""

    @pytest.mark.asyncio
    async def test_sequential_runs_get_new_reports(self, backend_config: BackendConfig) -> None:
        pipeline = make_pipeline(backend_config, healthy_backend)

        first = await pipeline.run()
        second = await pipeline.run()

        assert first is not second
        assert (first.run_id, second.run_id) == (1, 2)
        assert pipeline.latest_report is second
        assert not pipeline.is_running

    @pytest.mark.asyncio
    async def test_concurrent_run_joins_active_run(self, backend_config: BackendConfig) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return healthy_backend(request)

        pipeline = make_pipeline(backend_config, handler)

        first, second = await asyncio.gather(pipeline.run(), pipeline.run())

        assert first is second
        assert first.run_id == 1
        assert len([r for r in requests if r.method == "HEAD"]) == 1

    @pytest.mark.asyncio
    async def test_subscribers_see_each_result_as_appended(
        self, backend_config: BackendConfig
    ) -> None:
        pipeline = make_pipeline(backend_config, healthy_backend)
        events: list[tuple[str, bool, int]] = []
        pipeline.subscribe(
            lambda event: events.append((event[1].name, event[0].completed, len(event[0])))
        )

        await pipeline.run()

        assert [name for name, _, _ in events] == [*STAGE_NAMES, STAGE_COMPLETE]
        assert [size for _, _, size in events] == list(range(1, 8))
        assert [done for _, done, _ in events] == [False] * 6 + [True]

    @pytest.mark.asyncio
    async def test_latest_report_visible_while_running(self, backend_config: BackendConfig) -> None:
        release = asyncio.Event()
        pipeline = make_pipeline(backend_config, healthy_backend)
        original = pipeline._check_reachability

        async def slow_reachability() -> DiagnosticResult:
            await release.wait()
            return await original()

        pipeline._check_reachability = slow_reachability  # type: ignore[method-assign]

        task = asyncio.create_task(pipeline.run())
        await asyncio.sleep(0.01)

        assert pipeline.is_running
        partial = pipeline.latest_report
        assert partial is not None
        assert len(partial) == 2
        assert not partial.completed

        release.set()
        report = await task

        assert report is partial
        assert report.completed
