"""
Mock agent for local runs and demos.

Simulates a browser session: walks through a few steps with random delays,
fails a configurable share of runs with realistic error messages, and
otherwise returns a value for every data column.
"""

import asyncio
import random
from typing import Any
from urllib.parse import urlparse

from src.core.agents.base import (
    AgentProgress,
    AgentRequest,
    AgentResult,
    BaseAgent,
    ProgressCallback,
)

MOCK_STEPS = (
    "Opening browser",
    "Navigating to page",
    "Locating target elements",
    "Extracting fields",
    "Validating output",
)

MOCK_FAILURES = (
    "Could not find pricing element on page",
    "Page load timeout after 30 seconds",
    "Price format not recognized: invalid format",
    "Navigation failed - page load error 404",
    "Element selector changed",
    "Connection reset by peer",
)

MOCK_TEXT_VALUES = ("$99/mo", "Standard Plan", "Available", "Yes", "Contact Sales")


def _site_name(url: str) -> str:
    host = urlparse(url).hostname or "unknown"
    return host.removeprefix("www.").split(".")[0]


class MockAgent(BaseAgent):
    """
    In-process agent that fabricates results.

    Usage:
        agent = MockAgent(min_delay=0.1, max_delay=0.3, failure_rate=0.2, seed=7)
        result = await agent.run(request)
    """

    name = "mock"
    supports_cancellation = True

    def __init__(
        self,
        min_delay: float = 0.5,
        max_delay: float = 2.0,
        failure_rate: float = 0.1,
        steps: int = 4,
        seed: int | None = None,
    ):
        self.min_delay = min_delay
        self.max_delay = max(max_delay, min_delay)
        self.failure_rate = failure_rate
        self.steps = max(1, min(steps, len(MOCK_STEPS)))
        self._random = random.Random(seed)

    def _mock_value(self, column: dict[str, Any], url: str) -> Any:
        kind = column.get("type", "text")
        if kind == "number":
            return self._random.randint(10, 999)
        if kind == "url":
            return f"https://{_site_name(url)}.example.com/pricing"
        return self._random.choice(MOCK_TEXT_VALUES)

    async def run(
        self,
        request: AgentRequest,
        on_progress: ProgressCallback | None = None,
    ) -> AgentResult:
        log: list[str] = []
        per_step = self._random.uniform(self.min_delay, self.max_delay) / self.steps

        for index, step in enumerate(MOCK_STEPS[: self.steps], start=1):
            await asyncio.sleep(per_step)
            log.append(step)
            if on_progress is not None:
                await on_progress(
                    AgentProgress(step=step, percentage=int(index * 100 / (self.steps + 1)))
                )

        if self._random.random() < self.failure_rate:
            error = self._random.choice(MOCK_FAILURES)
            log.append(f"Error: {error}")
            return AgentResult(extracted_fields=None, raw_log="\n".join(log), error=error)

        extracted = {
            column["name"]: self._mock_value(column, request.url)
            for column in request.column_schema
            if not column.get("isUrl") and column.get("name") != "goal"
        }
        log.append(f"Extracted {len(extracted)} fields from {_site_name(request.url)}")
        return AgentResult(extracted_fields=extracted, raw_log="\n".join(log))
