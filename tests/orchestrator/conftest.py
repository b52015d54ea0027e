"""
Fixtures for orchestrator tests.

Managers built here use ``no_sleep`` so retry backoff does not slow tests
down, and are shut down after each test.
"""

import uuid

import pytest
import pytest_asyncio

from src.core.models.orchestration import Batch
from src.core.services.batches import BatchService
from src.core.services.events import EventFilter, EventPublisher
from src.core.storage.postgres import Database
from src.orchestrator.manager import ExecutionManager
from src.orchestrator.store import ExecutionStore
from tests.conftest import PRICE_SCHEMA, no_sleep, price_rows


@pytest_asyncio.fixture
async def publisher(database: Database) -> EventPublisher:
    """In-process event publisher over the test database."""
    publisher = EventPublisher(database)
    await publisher.start()
    yield publisher
    await publisher.stop()


@pytest.fixture
def store(database: Database) -> ExecutionStore:
    return ExecutionStore(database)


@pytest.fixture
def create_batch(database: Database):
    """Factory for a batch of PRICE_SCHEMA rows."""

    async def _create(count: int = 5, price: str = "$20") -> Batch:
        return await BatchService(database).create_batch(
            "Pricing", PRICE_SCHEMA, price_rows(count, price), goal="Find the monthly price"
        )

    return _create


@pytest_asyncio.fixture
async def make_manager(database: Database, publisher: EventPublisher):
    """Factory for managers wired to the test database and publisher."""
    managers: list[ExecutionManager] = []

    def _make(agent, **kwargs) -> ExecutionManager:
        kwargs.setdefault("sleep", no_sleep)
        manager = ExecutionManager(database, publisher, agent, **kwargs)
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        await manager.shutdown()


async def events_of(
    publisher: EventPublisher, execution_id: uuid.UUID, *types: str
) -> list[dict]:
    """Logged events for an execution, optionally narrowed to some types."""
    page = await publisher.query(
        EventFilter(execution_id=execution_id, types=tuple(types)), limit=1000
    )
    return page.events
