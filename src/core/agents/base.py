"""
Base interface for browser-automation agents.

All agent backends must implement this interface.
This ensures the orchestrator can swap backends without changing runner code.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable


class AgentError(Exception):
    """Base exception for agent failures. ``transient`` failures may be retried."""

    transient = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AgentUnreachable(AgentError):
    """The agent service could not be reached (connection refused, 5xx)."""

    transient = True

    def __init__(self, message: str = "Agent service unreachable: connection failed"):
        super().__init__(message)


class AgentTimeout(AgentError):
    """The agent did not finish within its time budget."""

    transient = True

    def __init__(self, message: str = "Agent run timed out"):
        super().__init__(message)


class AgentRateLimited(AgentError):
    """The agent service refused the call because of rate limiting (HTTP 429)."""

    transient = True

    def __init__(self, message: str = "Agent rate limit exceeded (429 too many requests)"):
        super().__init__(message)


class AgentRejected(AgentError):
    """The agent refused the task permanently (blocked, malformed goal, 4xx)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class CancelledByStop(AgentError):
    """The run was cancelled because its execution was stopped."""

    def __init__(self, reason: str = "Cancelled: execution stopped"):
        super().__init__(reason)


@dataclass
class AgentRequest:
    """One extraction task handed to an agent."""

    job_id: str
    url: str
    goal: str
    column_schema: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AgentProgress:
    """Intermediate progress reported by an agent while it works."""

    step: str
    percentage: int | None = None


@dataclass
class AgentResult:
    """
    Terminal output of an agent run.

    ``error`` is set when the agent ran to completion but failed the task
    (e.g. "Navigation timeout of 30000ms exceeded").
    """

    extracted_fields: dict[str, Any] | None = None
    raw_log: str = ""
    error: str | None = None
    run_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


ProgressCallback = Callable[[AgentProgress], Awaitable[None]]


class BaseAgent(ABC):
    """
    Abstract base class for agent backends.

    Usage:
        agent = SomeAgent(config)
        result = await agent.run(
            AgentRequest(job_id="...", url="https://example.com", goal="Find the price"),
            on_progress=callback,
        )
        await agent.close()

    Backends that set ``supports_cancellation`` stop the remote run when
    the awaiting task is cancelled; others are always allowed to finish.
    """

    name = "base"
    supports_cancellation = False

    @abstractmethod
    async def run(
        self,
        request: AgentRequest,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResult:
        """Execute one task and return its terminal result."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None
