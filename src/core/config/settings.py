"""
Typed orchestrator settings.

Builds dataclass views over the merged YAML config. Environment variables
take precedence over config files, config files over built-in defaults.

Usage:
    settings = load_settings()
    settings.execution.default_concurrency  # 5
"""

import os
from dataclasses import dataclass, field
from typing import Any, Callable

from src.core.config.loader import get_config


@dataclass
class ExecutionSettings:
    """Limits and defaults applied to executions."""

    default_concurrency: int = 5
    min_concurrency: int = 1
    max_concurrency: int = 20
    default_sample_size: int = 10
    stale_after_seconds: int = 90
    running_jobs_limit: int = 10


@dataclass
class RetrySettings:
    """
    Retry policy for agent calls.

    ``preset`` selects one of fast/standard/patient/aggressive; any value
    set explicitly in config overrides the preset's field.
    """

    preset: str = "standard"
    max_attempts: int | None = None
    base_delay_seconds: float | None = None
    max_delay_seconds: float | None = None
    multiplier: float | None = None
    rate_limit_min_delay_seconds: float = 5.0


@dataclass
class EventSettings:
    """Event log and push channel settings."""

    backend: str = "memory"
    heartbeat_seconds: float = 30.0
    subscriber_queue_size: int = 1000
    default_page_size: int = 100
    max_page_size: int = 1000
    retention_days: int = 30


@dataclass
class MockAgentSettings:
    """Behaviour of the in-process mock agent."""

    min_delay_seconds: float = 0.5
    max_delay_seconds: float = 2.0
    failure_rate: float = 0.1
    steps: int = 4


@dataclass
class AgentSettings:
    """Which agent backend runs jobs and how to reach it."""

    backend: str = "mock"
    base_url: str = "http://localhost:8080"
    api_key: str = ""
    request_timeout_seconds: float = 30.0
    run_timeout_seconds: float = 600.0
    mock: MockAgentSettings = field(default_factory=MockAgentSettings)


@dataclass
class ServerSettings:
    """HTTP server settings used by run.py."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    ssl_certfile: str = ""
    ssl_keyfile: str = ""


@dataclass
class OrchestratorSettings:
    """All orchestrator settings."""

    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    events: EventSettings = field(default_factory=EventSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    server: ServerSettings = field(default_factory=ServerSettings)


def _value(
    env_name: str,
    section: dict[str, Any],
    key: str,
    default: Any,
    cast: Callable[[Any], Any],
) -> Any:
    """Resolve a setting: environment, then config section, then default."""
    raw = os.environ.get(env_name)
    if raw is None:
        raw = section.get(key)
    if raw is None or raw == "":
        return default
    return cast(raw)


def _optional_float(section: dict[str, Any], key: str, env_name: str) -> float | None:
    return _value(env_name, section, key, None, float)


def load_settings(config: dict[str, Any] | None = None) -> OrchestratorSettings:
    """
    Build OrchestratorSettings from config files and environment.

    Args:
        config: Already merged config dict. Defaults to get_config().

    Returns:
        Fully populated settings.
    """
    if config is None:
        config = get_config()
    root = config.get("orchestrator", {}) or {}

    execution_cfg = root.get("execution", {}) or {}
    retry_cfg = root.get("retry", {}) or {}
    events_cfg = root.get("events", {}) or {}
    agent_cfg = root.get("agent", {}) or {}
    mock_cfg = agent_cfg.get("mock", {}) or {}
    server_cfg = root.get("server", {}) or {}

    execution = ExecutionSettings(
        default_concurrency=_value(
            "ORCHESTRATOR_DEFAULT_CONCURRENCY", execution_cfg, "default_concurrency", 5, int
        ),
        min_concurrency=_value(
            "ORCHESTRATOR_MIN_CONCURRENCY", execution_cfg, "min_concurrency", 1, int
        ),
        max_concurrency=_value(
            "ORCHESTRATOR_MAX_CONCURRENCY", execution_cfg, "max_concurrency", 20, int
        ),
        default_sample_size=_value(
            "ORCHESTRATOR_DEFAULT_SAMPLE_SIZE", execution_cfg, "default_sample_size", 10, int
        ),
        stale_after_seconds=_value(
            "ORCHESTRATOR_STALE_AFTER_SECONDS", execution_cfg, "stale_after_seconds", 90, int
        ),
        running_jobs_limit=_value(
            "ORCHESTRATOR_RUNNING_JOBS_LIMIT", execution_cfg, "running_jobs_limit", 10, int
        ),
    )

    max_attempts = _value("ORCHESTRATOR_RETRY_MAX_ATTEMPTS", retry_cfg, "max_attempts", None, int)
    retry = RetrySettings(
        preset=_value("ORCHESTRATOR_RETRY_PRESET", retry_cfg, "preset", "standard", str).lower(),
        max_attempts=max_attempts,
        base_delay_seconds=_optional_float(
            retry_cfg, "base_delay_seconds", "ORCHESTRATOR_RETRY_BASE_DELAY"
        ),
        max_delay_seconds=_optional_float(
            retry_cfg, "max_delay_seconds", "ORCHESTRATOR_RETRY_MAX_DELAY"
        ),
        multiplier=_optional_float(retry_cfg, "multiplier", "ORCHESTRATOR_RETRY_MULTIPLIER"),
        rate_limit_min_delay_seconds=_value(
            "ORCHESTRATOR_RETRY_RATE_LIMIT_MIN_DELAY",
            retry_cfg,
            "rate_limit_min_delay_seconds",
            5.0,
            float,
        ),
    )

    events = EventSettings(
        backend=_value("ORCHESTRATOR_EVENTS_BACKEND", events_cfg, "backend", "memory", str).lower(),
        heartbeat_seconds=_value(
            "ORCHESTRATOR_HEARTBEAT_SECONDS", events_cfg, "heartbeat_seconds", 30.0, float
        ),
        subscriber_queue_size=_value(
            "ORCHESTRATOR_SUBSCRIBER_QUEUE_SIZE", events_cfg, "subscriber_queue_size", 1000, int
        ),
        default_page_size=_value(
            "ORCHESTRATOR_EVENTS_PAGE_SIZE", events_cfg, "default_page_size", 100, int
        ),
        max_page_size=_value(
            "ORCHESTRATOR_EVENTS_MAX_PAGE_SIZE", events_cfg, "max_page_size", 1000, int
        ),
        retention_days=_value(
            "ORCHESTRATOR_EVENT_RETENTION_DAYS", events_cfg, "retention_days", 30, int
        ),
    )

    agent = AgentSettings(
        backend=_value("ORCHESTRATOR_AGENT_BACKEND", agent_cfg, "backend", "mock", str).lower(),
        base_url=_value(
            "ORCHESTRATOR_AGENT_URL", agent_cfg, "base_url", "http://localhost:8080", str
        ),
        api_key=_value("ORCHESTRATOR_AGENT_API_KEY", agent_cfg, "api_key", "", str),
        request_timeout_seconds=_value(
            "ORCHESTRATOR_AGENT_REQUEST_TIMEOUT", agent_cfg, "request_timeout_seconds", 30.0, float
        ),
        run_timeout_seconds=_value(
            "ORCHESTRATOR_AGENT_RUN_TIMEOUT", agent_cfg, "run_timeout_seconds", 600.0, float
        ),
        mock=MockAgentSettings(
            min_delay_seconds=float(mock_cfg.get("min_delay_seconds", 0.5)),
            max_delay_seconds=float(mock_cfg.get("max_delay_seconds", 2.0)),
            failure_rate=float(mock_cfg.get("failure_rate", 0.1)),
            steps=int(mock_cfg.get("steps", 4)),
        ),
    )

    server = ServerSettings(
        host=_value("ORCHESTRATOR_HOST", server_cfg, "host", "0.0.0.0", str),
        port=_value("ORCHESTRATOR_PORT", server_cfg, "port", 8000, int),
        log_level=_value("ORCHESTRATOR_LOG_LEVEL", server_cfg, "log_level", "info", str).lower(),
        ssl_certfile=_value("ORCHESTRATOR_SSL_CERT", server_cfg, "ssl_certfile", "", str),
        ssl_keyfile=_value("ORCHESTRATOR_SSL_KEY", server_cfg, "ssl_keyfile", "", str),
    )

    return OrchestratorSettings(
        execution=execution,
        retry=retry,
        events=events,
        agent=agent,
        server=server,
    )
