"""
Shared test fixtures.

Database tests run against a throwaway sqlite file (via aiosqlite), so no
PostgreSQL instance is needed. Agents are replaced by ScriptedAgent.
"""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from src.core.agents.base import AgentProgress, AgentResult, BaseAgent
from src.core.storage.base import DatabaseConfig
from src.core.storage.postgres import Database

PRICE_SCHEMA = [
    {"name": "url", "type": "url", "isUrl": True},
    {"name": "price", "type": "text", "isGroundTruth": True},
]


@pytest.fixture
def database_config(tmp_path: Path) -> DatabaseConfig:
    """Database configuration pointing at a temporary sqlite file."""
    return DatabaseConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")


@pytest_asyncio.fixture
async def database(database_config: DatabaseConfig) -> Database:
    """Provide a connected database with all tables created."""
    db = Database(database_config)
    await db.connect()
    await db.create_tables()
    yield db
    await db.disconnect()


class ScriptedAgent(BaseAgent):
    """
    Agent double driven by a per-URL script.

    Each script entry is a list of outcomes consumed one call at a time:
    an AgentResult is returned, an exception is raised. URLs without a
    script (or with an exhausted one) succeed with ``default_fields``.
    While ``gate`` is set to an unset asyncio.Event, calls block on it.
    """

    name = "scripted"

    def __init__(
        self,
        script: dict[str, list] | None = None,
        default_fields: dict | None = None,
        gate: asyncio.Event | None = None,
        delay: float = 0.0,
        supports_cancellation: bool = True,
    ):
        self.script = {url: list(outcomes) for url, outcomes in (script or {}).items()}
        self.default_fields = default_fields if default_fields is not None else {"price": "$20"}
        self.gate = gate
        self.delay = delay
        self.supports_cancellation = supports_cancellation
        self.calls: list[str] = []
        self.cancelled: list[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def run(self, request, on_progress=None) -> AgentResult:
        self.calls.append(request.url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if on_progress is not None:
                await on_progress(AgentProgress(step="Navigating", percentage=40))
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)

            outcomes = self.script.get(request.url)
            outcome = outcomes.pop(0) if outcomes else None
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, AgentResult):
                return outcome
            return AgentResult(
                extracted_fields=dict(self.default_fields),
                raw_log=f"extracted {request.url}",
                run_id=f"run-{len(self.calls)}",
            )
        except asyncio.CancelledError:
            self.cancelled.append(request.url)
            raise
        finally:
            self.active -= 1

    async def close(self) -> None:
        self.closed = True


async def no_sleep(delay: float) -> None:
    """Backoff replacement that returns immediately."""
    await asyncio.sleep(0)


def price_rows(count: int, price: str = "$20") -> list[dict]:
    """Rows for PRICE_SCHEMA with one ground-truth price each."""
    return [{"url": f"https://shop{i}.example.com", "price": price} for i in range(count)]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll an (optionally async) predicate until it is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)
