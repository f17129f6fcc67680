"""Configuration loading from environment variables."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Valid log levels
VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

# Port validation bounds
MIN_PORT = 1
MAX_PORT = 65535

# Backend project identifiers are 20 lowercase alphanumeric characters.
PROJECT_ID_PATTERN = re.compile(r"^[a-z0-9]{20}$")

DEFAULT_URL_TEMPLATE = "https://{project_id}.supabase.co"


class ConfigurationError(Exception):
    """Raised when required backend settings are missing or malformed."""

    pass


@dataclass(frozen=True)
class BackendConfig:
    """Backend connection settings.

    Attributes:
        project_id: Backend project identifier, used to derive the host.
        anon_key: Public API key sent as ``apikey`` and bearer token.
        url_template: Template for the base URL; ``{project_id}`` is substituted.
        primary_table: Table read by the REST, client and table-access probes.
        client_info: Value of the ``X-Client-Info`` header.
    """

    project_id: str = ""
    anon_key: str = ""
    url_template: str = DEFAULT_URL_TEMPLATE
    primary_table: str = "companies"
    client_info: str = "connwatch/1.0.0"

    @property
    def configured(self) -> bool:
        """Check if both credentials are present."""
        return bool(self.project_id and self.anon_key)

    @property
    def project_id_valid(self) -> bool:
        """Check if the project identifier has the expected shape."""
        return bool(PROJECT_ID_PATTERN.match(self.project_id))

    @property
    def base_url(self) -> str:
        """Base URL of the backend host (no trailing slash)."""
        return self.url_template.format(project_id=self.project_id).rstrip("/")

    @property
    def rest_url(self) -> str:
        """Base URL of the REST data API."""
        return f"{self.base_url}/rest/v1"


@dataclass(frozen=True)
class MonitorConfig:
    """Connection monitor scheduling settings.

    Attributes:
        base_interval: Seconds between probes while connected.
        max_interval: Ceiling for the backoff delay in seconds.
        backoff_factor: Multiplier applied per consecutive failure (>= 1.0).
        probe_timeout: Timeout for a single monitor probe in seconds.
        unstable_threshold: Consecutive failures before the link is unstable.
        offline_threshold: Consecutive failures before the link is offline.
        startup_delay: Seconds to wait before the first scheduled probe.
        history_size: Number of recent probe outcomes kept for the summary.
    """

    base_interval: float = 30.0
    max_interval: float = 300.0
    backoff_factor: float = 2.0
    probe_timeout: float = 3.0
    unstable_threshold: int = 3
    offline_threshold: int = 5
    startup_delay: float = 2.0
    history_size: int = 10


@dataclass(frozen=True)
class DiagnosticsConfig:
    """Diagnostic pipeline settings.

    Attributes:
        reachability_timeout: Bound for the basic reachability probe.
        rest_timeout: Bound for the REST API probe.
        client_timeout: Bound for each client-layer probe.
        max_error_length: Maximum characters of an error body kept in a report.
    """

    reachability_timeout: float = 8.0
    rest_timeout: float = 10.0
    client_timeout: float = 4.0
    max_error_length: int = 150


@dataclass(frozen=True)
class DashboardConfig:
    """HTTP status surface settings."""

    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass(frozen=True)
class LoggingConfig:
    """Logging settings."""

    level: str = "INFO"
    json: bool = False
    diagnostic_tags: str = ""


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment.

    This dataclass is frozen (immutable) to prevent accidental modification
    after creation.
    """

    backend: BackendConfig = field(default_factory=BackendConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    logging_config: LoggingConfig = field(default_factory=LoggingConfig)


def _parse_positive_int(value: str, name: str, default: int) -> int:
    """Parse a string as a positive integer with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed positive integer, or the default if invalid.
    """
    try:
        parsed = int(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %d is not positive, using default %d",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid integer, using default %d",
            name,
            value,
            default,
        )
        return default


def _parse_positive_float(value: str, name: str, default: float) -> float:
    """Parse a string as a strictly positive float with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed float, or the default if invalid.
    """
    try:
        parsed = float(value)
        if parsed <= 0:
            logging.warning(
                "Invalid %s: %f is not positive, using default %f",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %f",
            name,
            value,
            default,
        )
        return default


def _parse_non_negative_float(value: str, name: str, default: float) -> float:
    """Parse a string as a non-negative float with validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed non-negative float, or the default if invalid.
    """
    try:
        parsed = float(value)
        if parsed < 0:
            logging.warning(
                "Invalid %s: %f is negative, using default %f",
                name,
                parsed,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid number, using default %f",
            name,
            value,
            default,
        )
        return default


def _parse_port(value: str, name: str, default: int) -> int:
    """Parse a string as a valid TCP port number with range validation.

    Args:
        value: The string value to parse.
        name: The name of the setting (for error messages).
        default: The default value to use if parsing fails.

    Returns:
        The parsed port number (MIN_PORT-MAX_PORT), or the default if invalid.
    """
    try:
        parsed = int(value)
        if parsed < MIN_PORT or parsed > MAX_PORT:
            logging.warning(
                "Invalid %s: %d is not a valid port (must be %d-%d), using default %d",
                name,
                parsed,
                MIN_PORT,
                MAX_PORT,
                default,
            )
            return default
        return parsed
    except ValueError:
        logging.warning(
            "Invalid %s: '%s' is not a valid integer, using default %d",
            name,
            value,
            default,
        )
        return default


def _validate_log_level(value: str, default: str = "INFO") -> str:
    """Validate and normalize a log level string.

    Args:
        value: The log level string to validate.
        default: The default value to use if invalid.

    Returns:
        The validated log level (uppercase), or the default if invalid.
    """
    normalized = value.upper()
    if normalized not in VALID_LOG_LEVELS:
        logging.warning(
            "Invalid CONNWATCH_LOG_LEVEL: '%s' is not valid, using default '%s'. Valid values: %s",
            value,
            default,
            ", ".join(sorted(VALID_LOG_LEVELS)),
        )
        return default
    return normalized


def _parse_bool(value: str) -> bool:
    """Parse a string as a boolean.

    Args:
        value: The string value to parse.

    Returns:
        True if value is "true", "1", or "yes" (case-insensitive), False otherwise.
    """
    return value.lower() in ("true", "1", "yes")


def _validate_url_template(value: str) -> str:
    """Validate the backend URL template.

    Args:
        value: Template string containing ``{project_id}``, or a fixed URL.

    Returns:
        The template, or the default template if it is unusable.
    """
    if not value.startswith(("http://", "https://")):
        logging.warning(
            "Invalid CONNWATCH_BACKEND_URL_TEMPLATE: '%s' is not an http(s) URL, using default '%s'",
            value,
            DEFAULT_URL_TEMPLATE,
        )
        return DEFAULT_URL_TEMPLATE
    try:
        value.format(project_id="x")
    except (KeyError, IndexError, ValueError):
        logging.warning(
            "Invalid CONNWATCH_BACKEND_URL_TEMPLATE: '%s' has unknown placeholders, using default '%s'",
            value,
            DEFAULT_URL_TEMPLATE,
        )
        return DEFAULT_URL_TEMPLATE
    return value


def _load_backend_config() -> BackendConfig:
    return BackendConfig(
        project_id=os.getenv("CONNWATCH_PROJECT_ID", "").strip(),
        anon_key=os.getenv("CONNWATCH_ANON_KEY", "").strip(),
        url_template=_validate_url_template(
            os.getenv("CONNWATCH_BACKEND_URL_TEMPLATE", DEFAULT_URL_TEMPLATE)
        ),
        primary_table=os.getenv("CONNWATCH_PRIMARY_TABLE", "companies").strip() or "companies",
        client_info=os.getenv("CONNWATCH_CLIENT_INFO", "connwatch/1.0.0"),
    )


def _load_monitor_config() -> MonitorConfig:
    base_interval = _parse_positive_float(
        os.getenv("CONNWATCH_MONITOR_INTERVAL", "30"),
        "CONNWATCH_MONITOR_INTERVAL",
        30.0,
    )
    max_interval = _parse_positive_float(
        os.getenv("CONNWATCH_MONITOR_MAX_INTERVAL", "300"),
        "CONNWATCH_MONITOR_MAX_INTERVAL",
        300.0,
    )
    if max_interval < base_interval:
        logging.warning(
            "CONNWATCH_MONITOR_MAX_INTERVAL (%s) is below CONNWATCH_MONITOR_INTERVAL (%s), "
            "using the base interval as ceiling",
            max_interval,
            base_interval,
        )
        max_interval = base_interval

    backoff_factor = _parse_positive_float(
        os.getenv("CONNWATCH_MONITOR_BACKOFF_FACTOR", "2.0"),
        "CONNWATCH_MONITOR_BACKOFF_FACTOR",
        2.0,
    )
    unstable_threshold = _parse_positive_int(
        os.getenv("CONNWATCH_MONITOR_UNSTABLE_THRESHOLD", "3"),
        "CONNWATCH_MONITOR_UNSTABLE_THRESHOLD",
        3,
    )
    offline_threshold = _parse_positive_int(
        os.getenv("CONNWATCH_MONITOR_OFFLINE_THRESHOLD", "5"),
        "CONNWATCH_MONITOR_OFFLINE_THRESHOLD",
        5,
    )

    return MonitorConfig(
        base_interval=base_interval,
        max_interval=max_interval,
        backoff_factor=max(1.0, backoff_factor),
        probe_timeout=_parse_positive_float(
            os.getenv("CONNWATCH_MONITOR_PROBE_TIMEOUT", "3.0"),
            "CONNWATCH_MONITOR_PROBE_TIMEOUT",
            3.0,
        ),
        unstable_threshold=unstable_threshold,
        offline_threshold=max(offline_threshold, unstable_threshold),
        startup_delay=_parse_non_negative_float(
            os.getenv("CONNWATCH_MONITOR_STARTUP_DELAY", "2.0"),
            "CONNWATCH_MONITOR_STARTUP_DELAY",
            2.0,
        ),
        history_size=_parse_positive_int(
            os.getenv("CONNWATCH_MONITOR_HISTORY_SIZE", "10"),
            "CONNWATCH_MONITOR_HISTORY_SIZE",
            10,
        ),
    )


def _load_diagnostics_config() -> DiagnosticsConfig:
    return DiagnosticsConfig(
        reachability_timeout=_parse_positive_float(
            os.getenv("CONNWATCH_DIAG_REACHABILITY_TIMEOUT", "8"),
            "CONNWATCH_DIAG_REACHABILITY_TIMEOUT",
            8.0,
        ),
        rest_timeout=_parse_positive_float(
            os.getenv("CONNWATCH_DIAG_REST_TIMEOUT", "10"),
            "CONNWATCH_DIAG_REST_TIMEOUT",
            10.0,
        ),
        client_timeout=_parse_positive_float(
            os.getenv("CONNWATCH_DIAG_CLIENT_TIMEOUT", "4"),
            "CONNWATCH_DIAG_CLIENT_TIMEOUT",
            4.0,
        ),
        max_error_length=_parse_positive_int(
            os.getenv("CONNWATCH_DIAG_MAX_ERROR_LENGTH", "150"),
            "CONNWATCH_DIAG_MAX_ERROR_LENGTH",
            150,
        ),
    )


def load_config(env_file: Path | None = None) -> Config:
    """Load configuration from environment variables.

    Args:
        env_file: Optional path to .env file. If not provided,
                  looks for .env in current directory.

    Returns:
        Config object with loaded values.

    Values are validated and defaults are used for invalid inputs. Missing
    backend credentials are not an error here; they surface through the
    configuration probe and ``create_backend_client()``.
    """
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    dashboard = DashboardConfig(
        enabled=_parse_bool(os.getenv("CONNWATCH_DASHBOARD_ENABLED", "")),
        host=os.getenv("CONNWATCH_DASHBOARD_HOST", "127.0.0.1"),
        port=_parse_port(
            os.getenv("CONNWATCH_DASHBOARD_PORT", "8080"),
            "CONNWATCH_DASHBOARD_PORT",
            8080,
        ),
    )

    logging_config = LoggingConfig(
        level=_validate_log_level(os.getenv("CONNWATCH_LOG_LEVEL", "INFO")),
        json=_parse_bool(os.getenv("CONNWATCH_LOG_JSON", "")),
        diagnostic_tags=os.getenv("CONNWATCH_DIAGNOSTIC_TAGS", ""),
    )

    return Config(
        backend=_load_backend_config(),
        monitor=_load_monitor_config(),
        diagnostics=_load_diagnostics_config(),
        dashboard=dashboard,
        logging_config=logging_config,
    )
