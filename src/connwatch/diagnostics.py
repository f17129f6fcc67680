"""On-demand diagnostic pipeline.

A run executes six stages in a fixed order, from the cheapest prerequisite to
the most specific check:

1. Configuração: credentials present and well-formed
2. Inicialização do Cliente: backend client constructed and usable
3. Conectividade Básica: header-only request against the backend host
4. API REST: minimal read through the REST data API
5. Consulta via Cliente: round-trip through ``BackendClient``
6. Acesso a Tabelas: read of the primary table, reporting the row count

Each stage appends exactly one ``DiagnosticResult``; a failing stage never
stops the following ones. The run ends with a terminal "Diagnóstico Completo"
entry carrying the run duration, after which the report is frozen.

Observers can follow a run as it progresses via ``subscribe()``; callers that
only need the outcome await ``run()``.

Calling ``run()`` while a run is active joins that run: the caller receives
the same report and no second run is started.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from connwatch.backend_client import BackendClient
from connwatch.config import BackendConfig, DiagnosticsConfig
from connwatch.logging import get_logger, log_report_summary
from connwatch.observers import ObserverRegistry
from connwatch.probes import ProbeExecutor, ProbeKind

logger = get_logger(__name__)

STAGE_CONFIGURATION = "Configuração"
STAGE_CLIENT_INIT = "Inicialização do Cliente"
STAGE_REACHABILITY = "Conectividade Básica"
STAGE_REST_API = "API REST"
STAGE_CLIENT_QUERY = "Consulta via Cliente"
STAGE_TABLE_ACCESS = "Acesso a Tabelas"
STAGE_COMPLETE = "Diagnóstico Completo"

STAGE_NAMES = (
    STAGE_CONFIGURATION,
    STAGE_CLIENT_INIT,
    STAGE_REACHABILITY,
    STAGE_REST_API,
    STAGE_CLIENT_QUERY,
    STAGE_TABLE_ACCESS,
)


class DiagnosticStatus(StrEnum):
    """Outcome of a diagnostic stage, or of a whole report."""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    LOADING = "loading"


@dataclass(frozen=True)
class DiagnosticResult:
    """Outcome of one diagnostic stage.

    Attributes:
        name: Stage name.
        status: Stage outcome.
        message: Short human-readable outcome.
        details: Optional elaboration (status codes, truncated error text).
        timestamp: When the stage finished (UTC).
    """

    name: str
    status: DiagnosticStatus
    message: str
    details: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


def aggregate_status(results: Iterable[DiagnosticResult]) -> DiagnosticStatus:
    """Combine stage outcomes into one status, worst first.

    Args:
        results: Stage results.

    Returns:
        ``ERROR`` if any result is an error, else ``WARNING`` if any is a
        warning, else ``SUCCESS`` if there is at least one result and all
        succeeded, else ``LOADING``.
    """
    statuses = [result.status for result in results]
    if DiagnosticStatus.ERROR in statuses:
        return DiagnosticStatus.ERROR
    if DiagnosticStatus.WARNING in statuses:
        return DiagnosticStatus.WARNING
    if statuses and all(status is DiagnosticStatus.SUCCESS for status in statuses):
        return DiagnosticStatus.SUCCESS
    return DiagnosticStatus.LOADING


class DiagnosticReport:
    """Ordered record of one diagnostic run.

    Results are append-only while the run is active. ``complete()`` appends
    the terminal entry and freezes the report; any later append raises
    ``RuntimeError``.
    """

    def __init__(self, run_id: int, started_at: datetime | None = None) -> None:
        self.run_id = run_id
        self.started_at = started_at or datetime.now(UTC)
        self.finished_at: datetime | None = None
        self.duration_seconds: float | None = None
        self._results: list[DiagnosticResult] = []
        self._completed = False

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[DiagnosticResult]:
        return iter(tuple(self._results))

    @property
    def results(self) -> tuple[DiagnosticResult, ...]:
        """Results appended so far, in stage order."""
        return tuple(self._results)

    @property
    def completed(self) -> bool:
        """Whether the run finished and the report is frozen."""
        return self._completed

    @property
    def overall_status(self) -> DiagnosticStatus:
        """Worst-of status over the results appended so far."""
        return aggregate_status(self._results)

    def counts(self) -> dict[str, int]:
        """Count results per status (success, warning, error)."""
        counts = {"success": 0, "warning": 0, "error": 0}
        for result in self._results:
            if result.status.value in counts:
                counts[result.status.value] += 1
        return counts

    def append(self, result: DiagnosticResult) -> None:
        """Append a stage result.

        Raises:
            RuntimeError: If the report is already complete.
        """
        if self._completed:
            raise RuntimeError(f"Diagnostic report {self.run_id} is complete and cannot change")
        self._results.append(result)

    def complete(
        self,
        terminal: DiagnosticResult,
        *,
        duration_seconds: float,
        finished_at: datetime | None = None,
    ) -> None:
        """Append the terminal entry and freeze the report."""
        self.append(terminal)
        self.duration_seconds = duration_seconds
        self.finished_at = finished_at or datetime.now(UTC)
        self._completed = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": (
                round(self.duration_seconds, 3) if self.duration_seconds is not None else None
            ),
            "completed": self._completed,
            "overall_status": self.overall_status.value,
            "counts": self.counts(),
            "results": [result.to_dict() for result in self._results],
        }


ReportObserver = Callable[[tuple[DiagnosticReport, DiagnosticResult]], None]

_STATUS_LABELS = {
    DiagnosticStatus.SUCCESS: "OK",
    DiagnosticStatus.WARNING: "AVISO",
    DiagnosticStatus.ERROR: "ERRO",
    DiagnosticStatus.LOADING: "...",
}


def format_report(report: DiagnosticReport) -> str:
    """Render a report as plain text for terminals and log files.

    Args:
        report: The report to render.

    Returns:
        Multi-line text: header, one block per result, then the numbered
        errors and warnings.
    """
    counts = report.counts()
    title = "RELATÓRIO DE DIAGNÓSTICO DE CONEXÃO"
    lines = [
        title,
        "=" * len(title),
        f"Executado em: {report.started_at.isoformat(timespec='seconds')}",
        (
            f"Status geral: {report.overall_status.value.upper()} "
            f"(sucesso: {counts['success']}, avisos: {counts['warning']}, erros: {counts['error']})"
        ),
        "",
    ]

    for result in report:
        label = f"[{_STATUS_LABELS[result.status]}]"
        lines.append(f"{label:8} {result.name}: {result.message}")
        if result.details:
            lines.append(f"{'':8} {result.details}")

    for heading, status in (
        ("ERROS ENCONTRADOS:", DiagnosticStatus.ERROR),
        ("AVISOS:", DiagnosticStatus.WARNING),
    ):
        matching = [r for r in report if r.status is status]
        if matching:
            lines.append("")
            lines.append(heading)
            for i, result in enumerate(matching, start=1):
                lines.append(f"  {i}. {result.name}: {result.message}")

    return "\n".join(lines)


class DiagnosticPipeline:
    """Runs the ordered diagnostic stages and publishes their results."""

    def __init__(
        self,
        backend: BackendConfig,
        executor: ProbeExecutor,
        client: BackendClient | None,
        config: DiagnosticsConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the pipeline.

        Args:
            backend: Backend connection settings being diagnosed.
            executor: Executor used for the raw HTTP and logical probes.
            client: Backend client under test, or None if it could not be built.
            config: Stage timeouts and error truncation settings.
            clock: Monotonic clock used to time the run.
        """
        self.backend = backend
        self.executor = executor
        self.client = client
        self.config = config or DiagnosticsConfig()
        self._clock = clock
        self._observers: ObserverRegistry[tuple[DiagnosticReport, DiagnosticResult]] = (
            ObserverRegistry("diagnostic results")
        )
        self._active: asyncio.Task[DiagnosticReport] | None = None
        self._latest: DiagnosticReport | None = None
        self._run_count = 0

    @property
    def latest_report(self) -> DiagnosticReport | None:
        """Report of the current or most recent run."""
        return self._latest

    @property
    def is_running(self) -> bool:
        """Whether a run is in progress."""
        return self._active is not None and not self._active.done()

    def subscribe(self, observer: ReportObserver) -> Callable[[], None]:
        """Register an observer receiving ``(report, result)`` per appended result."""
        return self._observers.subscribe(observer)

    async def run(self) -> DiagnosticReport:
        """Run every stage, or join the run already in progress.

        Returns:
            The completed report.
        """
        if self.is_running:
            assert self._active is not None
            logger.info("Diagnostic run already in progress, joining it")
            return await asyncio.shield(self._active)
        self._active = asyncio.create_task(self._execute(), name="connwatch-diagnostics")
        return await asyncio.shield(self._active)

    def _stages(self) -> list[tuple[str, Callable[[], Awaitable[DiagnosticResult]]]]:
        return [
            (STAGE_CONFIGURATION, self._check_configuration),
            (STAGE_CLIENT_INIT, self._check_client_init),
            (STAGE_REACHABILITY, self._check_reachability),
            (STAGE_REST_API, self._check_rest_api),
            (STAGE_CLIENT_QUERY, self._check_client_query),
            (STAGE_TABLE_ACCESS, self._check_table_access),
        ]

    def _truncate(self, text: str) -> str:
        limit = self.config.max_error_length
        return text if len(text) <= limit else text[:limit]

    def _append(self, report: DiagnosticReport, result: DiagnosticResult) -> None:
        report.append(result)
        self._observers.publish((report, result))

    async def _execute(self) -> DiagnosticReport:
        self._run_count += 1
        report = DiagnosticReport(self._run_count)
        self._latest = report
        log = logger.with_context(run_id=report.run_id)
        log.info("Starting connection diagnostics")
        start = self._clock()

        for name, stage in self._stages():
            try:
                result = await stage()
            except Exception as e:
                log.exception("Diagnostic stage %s raised", name)
                result = DiagnosticResult(
                    name=name,
                    status=DiagnosticStatus.ERROR,
                    message="Erro inesperado",
                    details=self._truncate(f"{type(e).__name__}: {e}"),
                )
            log.debug(
                "%s: %s (%s)",
                result.name,
                result.message,
                result.status.value,
                extra={"diagnostic_tag": "diagnostics", "stage": result.name},
            )
            self._append(report, result)

        duration = self._clock() - start
        terminal = DiagnosticResult(
            name=STAGE_COMPLETE,
            status=DiagnosticStatus.SUCCESS,
            message="Finalizado",
            details=f"Duração: {duration:.1f}s",
        )
        report.complete(terminal, duration_seconds=duration)
        self._observers.publish((report, terminal))

        counts = report.counts()
        log_report_summary(
            logger,
            report.run_id,
            report.overall_status.value,
            f"{counts['success']} ok, {counts['warning']} warnings, {counts['error']} errors",
            duration,
        )
        return report

    async def _check_configuration(self) -> DiagnosticResult:
        project_id = self.backend.project_id
        key = self.backend.anon_key
        if not project_id or not key:
            return DiagnosticResult(
                name=STAGE_CONFIGURATION,
                status=DiagnosticStatus.ERROR,
                message="Credenciais não configuradas",
                details=(
                    f"Project ID: {'OK' if project_id else 'FALTANDO'}, "
                    f"API Key: {'OK' if key else 'FALTANDO'}"
                ),
            )
        if not self.backend.project_id_valid:
            return DiagnosticResult(
                name=STAGE_CONFIGURATION,
                status=DiagnosticStatus.ERROR,
                message="Project ID com formato inválido",
                details=f"Project ID: {project_id} (deve ter 20 caracteres alfanuméricos)",
            )
        return DiagnosticResult(
            name=STAGE_CONFIGURATION,
            status=DiagnosticStatus.SUCCESS,
            message="Credenciais válidas",
            details=f"Project: {project_id[:8]}..., Key: {key[:20]}...",
        )

    async def _check_client_init(self) -> DiagnosticResult:
        if self.client is not None and self.client.is_ready():
            return DiagnosticResult(
                name=STAGE_CLIENT_INIT,
                status=DiagnosticStatus.SUCCESS,
                message="Cliente inicializado",
                details="Métodos disponíveis e funcionais",
            )
        return DiagnosticResult(
            name=STAGE_CLIENT_INIT,
            status=DiagnosticStatus.ERROR,
            message="Cliente não inicializado",
            details="Falha na criação do cliente",
        )

    async def _check_reachability(self) -> DiagnosticResult:
        timeout = self.config.reachability_timeout
        result = await self.executor.http(
            self.backend.base_url,
            method="HEAD",
            timeout=timeout,
            headers={"Accept": "*/*", "Cache-Control": "no-cache"},
        )
        if result.status_code is not None:
            details = f"Status HTTP: {result.status_code} - {result.reason}"
            if result.kind is ProbeKind.SERVER:
                return DiagnosticResult(
                    name=STAGE_REACHABILITY,
                    status=DiagnosticStatus.WARNING,
                    message="Servidor com problemas",
                    details=details,
                )
            return DiagnosticResult(
                name=STAGE_REACHABILITY,
                status=DiagnosticStatus.SUCCESS,
                message="Servidor acessível",
                details=details,
            )
        if result.kind is ProbeKind.TIMEOUT:
            message = "Timeout na conexão"
            details = f"Servidor não respondeu em {timeout:g} segundos"
        elif result.kind is ProbeKind.NETWORK:
            message = "Erro de rede"
            details = f"Possível problema de conexão à internet ({result.message})"
        else:
            message = "Falha na conectividade"
            details = result.message
        return DiagnosticResult(
            name=STAGE_REACHABILITY,
            status=DiagnosticStatus.ERROR,
            message=message,
            details=self._truncate(details),
        )

    async def _check_rest_api(self) -> DiagnosticResult:
        timeout = self.config.rest_timeout
        key = self.backend.anon_key
        result = await self.executor.http(
            f"{self.backend.rest_url}/{self.backend.primary_table}?select=id&limit=1",
            timeout=timeout,
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            parse_json=True,
        )
        status_code = result.status_code
        if result.ok and status_code is not None and 200 <= status_code < 300:
            count = len(result.value) if isinstance(result.value, list) else "N/A"
            return DiagnosticResult(
                name=STAGE_REST_API,
                status=DiagnosticStatus.SUCCESS,
                message="API funcionando",
                details=f"Status: {status_code}, Registros: {count}",
            )
        if status_code is not None:
            # Redirects carry no error body; report the status line instead.
            error = result.body or result.message
            message = "Erro na API"
            details = f"Status: {status_code}, Erro: {self._truncate(error)}..."
        elif result.kind is ProbeKind.TIMEOUT:
            message = "Timeout na API"
            details = f"API não respondeu em {timeout:g} segundos"
        else:
            message = "Falha na API"
            details = self._truncate(result.message)
        return DiagnosticResult(
            name=STAGE_REST_API,
            status=DiagnosticStatus.ERROR,
            message=message,
            details=details,
        )

    async def _check_client_query(self) -> DiagnosticResult:
        client = self.client
        if client is None:
            return DiagnosticResult(
                name=STAGE_CLIENT_QUERY,
                status=DiagnosticStatus.ERROR,
                message="Erro no cliente",
                details="Cliente não inicializado",
            )
        timeout = self.config.client_timeout
        result = await self.executor.call(
            lambda: client.test_connection(timeout=timeout), timeout=timeout
        )
        if result.ok and result.value:
            return DiagnosticResult(
                name=STAGE_CLIENT_QUERY,
                status=DiagnosticStatus.SUCCESS,
                message="Cliente funcionando",
                details="Query executada com sucesso",
            )
        if result.ok:
            return DiagnosticResult(
                name=STAGE_CLIENT_QUERY,
                status=DiagnosticStatus.ERROR,
                message="Falha no cliente",
                details="Não foi possível executar query de teste",
            )
        return DiagnosticResult(
            name=STAGE_CLIENT_QUERY,
            status=DiagnosticStatus.ERROR,
            message="Erro no cliente",
            details=self._truncate(result.message),
        )

    async def _check_table_access(self) -> DiagnosticResult:
        client = self.client
        table = self.backend.primary_table
        if client is None:
            return DiagnosticResult(
                name=STAGE_TABLE_ACCESS,
                status=DiagnosticStatus.ERROR,
                message="Erro no acesso",
                details="Cliente não inicializado",
            )
        result = await self.executor.call(
            lambda: client.fetch_rows(table), timeout=self.config.client_timeout
        )
        if result.ok:
            rows = result.value or []
            return DiagnosticResult(
                name=STAGE_TABLE_ACCESS,
                status=DiagnosticStatus.SUCCESS,
                message="Tabelas acessíveis",
                details=f"{len(rows)} registros encontrados em '{table}'",
            )
        details = result.message
        if result.body:
            details = f"{details}: {result.body}"
        return DiagnosticResult(
            name=STAGE_TABLE_ACCESS,
            status=DiagnosticStatus.ERROR,
            message="Erro no acesso",
            details=self._truncate(details),
        )
