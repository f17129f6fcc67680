"""Logging for connwatch.

Two kinds of records carry structured context and are rendered specially:

- probe records (monitor and executor) carry ``kind`` and ``elapsed_ms``,
  shown as an outcome suffix such as ``<- timeout 3001ms``;
- diagnostic records carry ``run_id`` and ``stage``, shown as a
  ``run 3/API REST`` scope.

Any other context fields (``generation``, ``failures``) are rendered as
``key=value`` pairs. DEBUG records tagged with ``diagnostic_tag`` are hidden
unless the tag is enabled through ``CONNWATCH_DIAGNOSTIC_TAGS``.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, MutableMapping
from datetime import UTC, datetime
from typing import Any

# Record attributes rendered as key=value context, in display order.
CONTEXT_FIELDS = ("generation", "failures")

# Libraries whose INFO output would repeat every probe request.
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _component(record: logging.LogRecord) -> str:
    return record.name.rpartition(".")[2]


def _scope(record: logging.LogRecord) -> str | None:
    run_id = getattr(record, "run_id", None)
    stage = getattr(record, "stage", None)
    if run_id is None and stage is None:
        return None
    if stage is None:
        return f"run {run_id}"
    return f"run {run_id}/{stage}" if run_id is not None else str(stage)


def _outcome(record: logging.LogRecord) -> str | None:
    kind = getattr(record, "kind", None)
    if kind is None:
        return None
    elapsed = getattr(record, "elapsed_ms", None)
    return f"<- {kind}" if elapsed is None else f"<- {kind} {elapsed:.0f}ms"


class DiagnosticFilter(logging.Filter):
    """Hides tagged DEBUG records unless their tag is enabled.

    Tag a record with ``extra={"diagnostic_tag": "monitor"}``. Records above
    DEBUG and untagged records always pass. ``"*"`` enables every tag.
    """

    def __init__(self, tags: Iterable[str] = ()) -> None:
        super().__init__()
        self.enabled_tags = frozenset(tags)

    @classmethod
    def from_config_string(cls, value: str) -> DiagnosticFilter:
        """Build a filter from a comma-separated tag list such as ``"monitor,probes"``."""
        return cls(tag.strip() for tag in value.split(",") if tag.strip())

    def filter(self, record: logging.LogRecord) -> bool:
        tag = getattr(record, "diagnostic_tag", None)
        if record.levelno != logging.DEBUG or tag is None:
            return True
        return "*" in self.enabled_tags or tag in self.enabled_tags


class StructuredFormatter(logging.Formatter):
    """Human-readable single-line formatter.

    Example:
        ``12:00:03.512 WARNING  monitor      failures=3 Connection unstable <- timeout 3001ms``
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        line = [
            created.strftime("%H:%M:%S.") + f"{created.microsecond // 1000:03d}",
            f"{record.levelname:<8}",
            f"{_component(record):<12}",
        ]
        scope = _scope(record)
        if scope:
            line.append(f"[{scope}]")
        line.extend(
            f"{key}={getattr(record, key)}" for key in CONTEXT_FIELDS if hasattr(record, key)
        )
        line.append(record.getMessage())
        outcome = _outcome(record)
        if outcome:
            line.append(outcome)

        text = " ".join(line)
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    Probe outcomes are grouped under ``probe`` and diagnostic scope under
    ``diagnostic`` so consumers can select them without knowing every field.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "component": _component(record),
            "message": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)})

        probe = {key: getattr(record, key) for key in ("kind", "elapsed_ms") if hasattr(record, key)}
        if probe:
            entry["probe"] = probe
        diagnostic = {
            key: getattr(record, key)
            for key in ("run_id", "stage", "status", "summary")
            if hasattr(record, key)
        }
        if diagnostic:
            entry["diagnostic"] = diagnostic

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


class ContextAdapter(logging.LoggerAdapter[logging.Logger]):
    """Adds fixed context to every record; per-call ``extra`` wins on conflict."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


class ConnwatchLogger(logging.Logger):
    """Logger that can bind probe or diagnostic context."""

    def with_context(self, **context: Any) -> ContextAdapter:
        """Return an adapter adding ``context`` (e.g. ``run_id=3``) to each record."""
        return ContextAdapter(self, context)


logging.setLoggerClass(ConnwatchLogger)


def get_logger(name: str) -> ConnwatchLogger:
    """Return the ``ConnwatchLogger`` for ``name`` (typically ``__name__``)."""
    return logging.getLogger(name)  # type: ignore[return-value]


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    replace_handlers: bool = True,
    diagnostic_tags: str = "",
) -> None:
    """Install the connwatch handler on the root logger.

    Args:
        level: Log level name; unknown names fall back to INFO.
        json_format: Emit JSON lines instead of the text format.
        replace_handlers: Remove existing root handlers first.
        diagnostic_tags: Comma-separated tags whose DEBUG records are shown.
    """
    numeric_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if json_format else StructuredFormatter())
    handler.addFilter(DiagnosticFilter.from_config_string(diagnostic_tags))

    root = logging.getLogger()
    if replace_handlers:
        root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    logging.getLogger("connwatch").setLevel(numeric_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


def log_report_summary(
    logger: logging.Logger,
    run_id: int,
    status: str,
    summary: str,
    duration_seconds: float,
) -> None:
    """Log the outcome of a diagnostic run at a level matching its status.

    ``error`` logs at ERROR, ``success`` at INFO, anything else at WARNING.
    """
    level = {"error": logging.ERROR, "success": logging.INFO}.get(status, logging.WARNING)
    logger.log(
        level,
        "Diagnostic run %d finished with status %s in %.1fs: %s",
        run_id,
        status,
        duration_seconds,
        summary,
        extra={"run_id": run_id, "status": status, "summary": summary},
    )
