"""
Agents module: unified interface to browser-automation backends.

Usage:
    from src.core.agents import AgentRequest, get_agent

    agent = get_agent()
    result = await agent.run(AgentRequest(job_id=..., url=..., goal=...))
"""

from src.core.agents.base import (
    AgentError,
    AgentProgress,
    AgentRateLimited,
    AgentRejected,
    AgentRequest,
    AgentResult,
    AgentTimeout,
    AgentUnreachable,
    BaseAgent,
    CancelledByStop,
    ProgressCallback,
)
from src.core.agents.router import get_agent

__all__ = [
    "AgentError",
    "AgentProgress",
    "AgentRateLimited",
    "AgentRejected",
    "AgentRequest",
    "AgentResult",
    "AgentTimeout",
    "AgentUnreachable",
    "BaseAgent",
    "CancelledByStop",
    "ProgressCallback",
    "get_agent",
]
