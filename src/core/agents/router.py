"""
Agent router: factory for getting agent instances.

Reads settings and returns the configured backend.

Usage:
    agent = get_agent()                 # backend from config
    agent = get_agent(backend="mock")   # override for this call
"""

import logging

from src.core.agents.base import BaseAgent
from src.core.agents.providers.http_agent import HttpAgent
from src.core.agents.providers.mock_agent import MockAgent
from src.core.config.settings import AgentSettings, load_settings

logger = logging.getLogger(__name__)

BACKENDS = ("http", "mock")


def get_agent(
    backend: str | None = None,
    settings: AgentSettings | None = None,
) -> BaseAgent:
    """
    Get an agent instance.

    Args:
        backend: "http" or "mock". Defaults to the configured backend.
        settings: Agent settings. Defaults to load_settings().agent.

    Returns:
        BaseAgent ready to run tasks.
    """
    if settings is None:
        settings = load_settings().agent
    backend = (backend or settings.backend).lower()

    if backend == "http":
        logger.info(f"Using HTTP agent at {settings.base_url}")
        return HttpAgent(
            base_url=settings.base_url,
            api_key=settings.api_key,
            request_timeout=settings.request_timeout_seconds,
            run_timeout=settings.run_timeout_seconds,
        )
    if backend == "mock":
        logger.info("Using mock agent")
        return MockAgent(
            min_delay=settings.mock.min_delay_seconds,
            max_delay=settings.mock.max_delay_seconds,
            failure_rate=settings.mock.failure_rate,
            steps=settings.mock.steps,
        )

    raise ValueError(f"Unknown agent backend '{backend}'. Available: {', '.join(BACKENDS)}")
