"""Tests for FailurePatternService."""

import uuid

import pytest
from sqlalchemy import select

from src.core.models.orchestration import Job, JobStatus
from src.core.primitives.failure_classifier import SELECTOR_NOT_FOUND, TIMEOUT
from src.core.services.batches import BatchService
from src.core.services.failure_patterns import FailurePatternService
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database
from tests.conftest import PRICE_SCHEMA, price_rows


@pytest.mark.asyncio
async def test_report_groups_failed_jobs(database: Database) -> None:
    """Failed jobs are grouped by category over all jobs of the batch."""
    batch = await BatchService(database).create_batch(
        "Pricing", PRICE_SCHEMA, price_rows(4), goal="g"
    )
    errors = ["Navigation timeout of 30000ms exceeded", "timed out", "Could not find element"]
    async with database.session() as session:
        result = await session.execute(
            select(Job).where(Job.batch_id == batch.id).order_by(Job.row_index)
        )
        for job, message in zip(result.scalars(), errors):
            job.status = JobStatus.ERROR.value
            job.error_message = message

    report = await FailurePatternService(database).report(batch.id)

    assert report.total_jobs == 4
    assert report.total_failures == 3
    assert [p.category for p in report.patterns] == [TIMEOUT, SELECTOR_NOT_FOUND]
    assert report.patterns[0].count == 2


@pytest.mark.asyncio
async def test_report_scoped_to_execution(database: Database) -> None:
    """With an execution id only that execution's jobs are considered."""
    batch = await BatchService(database).create_batch(
        "Pricing", PRICE_SCHEMA, price_rows(2), goal="g"
    )

    report = await FailurePatternService(database).report(batch.id, execution_id=uuid.uuid4())

    assert report.total_jobs == 0
    assert report.patterns == []


@pytest.mark.asyncio
async def test_report_unknown_batch(database: Database) -> None:
    """Unknown batches raise NotFoundError."""
    with pytest.raises(NotFoundError):
        await FailurePatternService(database).report(uuid.uuid4())
