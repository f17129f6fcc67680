"""Bootstrap and dependency wiring for connwatch.

This module is the composition root. It loads configuration (with CLI
overrides), configures logging and builds the shared components:
- ProbeExecutor shared by the monitor and the diagnostic pipeline
- BackendClient (absent when credentials are missing)
- ConnectionMonitor
- DiagnosticPipeline

Components are constructed explicitly and handed to their consumers; nothing
is stored in module-level state.
"""

from __future__ import annotations

import argparse
from dataclasses import replace

import httpx

from connwatch.backend_client import BackendClient, create_backend_client
from connwatch.config import Config, ConfigurationError, load_config
from connwatch.diagnostics import DiagnosticPipeline
from connwatch.logging import get_logger, setup_logging
from connwatch.monitor import ConnectionMonitor, backend_probe
from connwatch.probes import ProbeExecutor

logger = get_logger(__name__)


class BootstrapContext:
    """Container for all bootstrapped components."""

    def __init__(
        self,
        config: Config,
        executor: ProbeExecutor,
        monitor: ConnectionMonitor,
        pipeline: DiagnosticPipeline,
        backend_client: BackendClient | None = None,
    ) -> None:
        """Initialize the bootstrap context.

        Args:
            config: Application configuration.
            executor: Probe executor shared by the monitor and pipeline.
            monitor: Connection health monitor.
            pipeline: Diagnostic pipeline.
            backend_client: Backend client, or None when it could not be built.
        """
        self.config = config
        self.executor = executor
        self.monitor = monitor
        self.pipeline = pipeline
        self.backend_client = backend_client

    async def aclose(self) -> None:
        """Stop the monitor and release HTTP resources."""
        await self.monitor.stop()
        if self.backend_client is not None:
            await self.backend_client.aclose()
        await self.executor.aclose()


def apply_cli_overrides(config: Config, parsed: argparse.Namespace) -> Config:
    """Apply CLI argument overrides to the configuration.

    Args:
        config: Base configuration loaded from environment.
        parsed: Parsed command-line arguments.

    Returns:
        New Config instance with CLI overrides applied.
    """
    if getattr(parsed, "log_level", None):
        config = replace(config, logging_config=replace(config.logging_config, level=parsed.log_level))
    if getattr(parsed, "interval", None):
        config = replace(config, monitor=replace(config.monitor, base_interval=float(parsed.interval)))
    if getattr(parsed, "dashboard", False):
        config = replace(config, dashboard=replace(config.dashboard, enabled=True))
    if getattr(parsed, "port", None):
        config = replace(config, dashboard=replace(config.dashboard, port=parsed.port))
    return config


def build_context(
    config: Config,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BootstrapContext:
    """Build all components from a configuration.

    Args:
        config: Application configuration.
        transport: Optional httpx transport shared by every HTTP component.

    Returns:
        BootstrapContext holding the wired components.
    """
    executor = ProbeExecutor(
        max_body_length=config.diagnostics.max_error_length,
        transport=transport,
    )

    backend_client: BackendClient | None
    try:
        backend_client = create_backend_client(
            config.backend,
            timeout=config.diagnostics.client_timeout,
            transport=transport,
        )
    except ConfigurationError as e:
        logger.error("%s. Set CONNWATCH_PROJECT_ID and CONNWATCH_ANON_KEY.", e)
        backend_client = None

    monitor = ConnectionMonitor(
        backend_probe(executor, config.backend, config.monitor.probe_timeout),
        config.monitor,
    )
    pipeline = DiagnosticPipeline(
        config.backend,
        executor,
        backend_client,
        config.diagnostics,
    )
    return BootstrapContext(
        config=config,
        executor=executor,
        monitor=monitor,
        pipeline=pipeline,
        backend_client=backend_client,
    )


def bootstrap(parsed: argparse.Namespace) -> BootstrapContext:
    """Load configuration, set up logging and build all components.

    Args:
        parsed: Parsed command-line arguments.

    Returns:
        BootstrapContext ready to run.
    """
    config = apply_cli_overrides(load_config(parsed.env_file), parsed)

    setup_logging(
        config.logging_config.level,
        json_format=config.logging_config.json,
        diagnostic_tags=config.logging_config.diagnostic_tags,
    )

    if config.backend.configured:
        logger.info("Monitoring backend at %s", config.backend.base_url)

    return build_context(config)
