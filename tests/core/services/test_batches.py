"""Tests for BatchService."""

import uuid

import pytest

from src.core.services.batches import (
    BatchService,
    BatchValidationError,
    normalize_column_schema,
)
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database
from tests.conftest import PRICE_SCHEMA, price_rows


class TestNormalizeColumnSchema:
    """Tests for column schema validation."""

    def test_fills_defaults(self):
        """Missing type and flags get defaults."""
        columns = normalize_column_schema([{"name": " title "}])
        assert columns == [
            {"name": "title", "type": "text", "isGroundTruth": False, "isUrl": False}
        ]

    def test_rejects_unknown_type(self):
        """Column types are limited to text, number and url."""
        with pytest.raises(BatchValidationError, match="unknown type"):
            normalize_column_schema([{"name": "when", "type": "date"}])

    def test_rejects_duplicates(self):
        """Column names must be unique."""
        with pytest.raises(BatchValidationError, match="Duplicate"):
            normalize_column_schema([{"name": "a"}, {"name": "a"}])


class TestCreateBatch:
    """Tests for create_batch()."""

    @pytest.mark.asyncio
    async def test_creates_one_queued_job_per_row(self, database: Database):
        """Each row becomes a queued job with its ground truth."""
        service = BatchService(database)

        batch = await service.create_batch(
            "Pricing", PRICE_SCHEMA, price_rows(3), goal="Find the monthly price"
        )

        assert batch.total_jobs == 3
        assert batch.ground_truth_columns == ["price"]
        jobs = await service.list_jobs(batch.id)
        assert [job.row_index for job in jobs] == [0, 1, 2]
        assert all(job.status == "queued" for job in jobs)
        assert jobs[0].site_url == "https://shop0.example.com"
        assert jobs[0].goal == "Find the monthly price"
        assert jobs[0].ground_truth == {"price": "$20"}

    @pytest.mark.asyncio
    async def test_row_goal_overrides_batch_goal(self, database: Database):
        """A 'goal' column value wins over the batch goal."""
        service = BatchService(database)
        schema = PRICE_SCHEMA + [{"name": "goal", "type": "text"}]
        rows = [{"url": "https://a.example.com", "goal": "Find the annual price"}]

        batch = await service.create_batch("Pricing", schema, rows, goal="Find the price")

        [job] = await service.list_jobs(batch.id)
        assert job.goal == "Find the annual price"
        assert job.ground_truth is None

    @pytest.mark.asyncio
    async def test_url_column_by_type(self, database: Database):
        """Without an isUrl flag the first url-typed column is used."""
        service = BatchService(database)
        schema = [{"name": "link", "type": "url"}, {"name": "price", "type": "text"}]

        batch = await service.create_batch(
            "Pricing", schema, [{"link": "https://b.example.com"}], goal="Find the price"
        )

        [job] = await service.list_jobs(batch.id)
        assert job.site_url == "https://b.example.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("schema", "rows", "goal", "message"),
        [
            ([{"name": "price"}], [{"price": "1"}], "g", "URL column"),
            (PRICE_SCHEMA, [], "g", "no rows"),
            (PRICE_SCHEMA, [{"url": ""}], "g", "no value"),
            (PRICE_SCHEMA, [{"url": "https://a.example.com"}], None, "no goal"),
        ],
    )
    async def test_validation_errors(self, database: Database, schema, rows, goal, message):
        """Unusable uploads are rejected without writing anything."""
        service = BatchService(database)

        with pytest.raises(BatchValidationError, match=message):
            await service.create_batch("Broken", schema, rows, goal=goal)

    @pytest.mark.asyncio
    async def test_unknown_ground_truth_column(self, database: Database):
        """Declared ground-truth columns must exist in the schema."""
        service = BatchService(database)

        with pytest.raises(BatchValidationError, match="Unknown ground truth"):
            await service.create_batch(
                "Pricing", PRICE_SCHEMA, price_rows(1), goal="g", ground_truth_columns=["sku"]
            )


class TestReads:
    """Tests for the read side."""

    @pytest.mark.asyncio
    async def test_count_jobs_by_status(self, database: Database):
        """Counts include every status, zero-filled."""
        service = BatchService(database)
        batch = await service.create_batch("Pricing", PRICE_SCHEMA, price_rows(2), goal="g")

        counts = await service.count_jobs(batch.id)

        assert counts == {"queued": 2, "running": 0, "completed": 0, "error": 0}

    @pytest.mark.asyncio
    async def test_list_jobs_paging_and_status(self, database: Database):
        """Status filters and limit/offset apply in row order."""
        service = BatchService(database)
        batch = await service.create_batch("Pricing", PRICE_SCHEMA, price_rows(5), goal="g")

        page = await service.list_jobs(batch.id, limit=2, offset=2)
        assert [job.row_index for job in page] == [2, 3]
        assert await service.list_jobs(batch.id, status="completed") == []

    @pytest.mark.asyncio
    async def test_missing_rows_raise_not_found(self, database: Database):
        """Unknown ids raise NotFoundError."""
        service = BatchService(database)

        with pytest.raises(NotFoundError):
            await service.get_batch(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await service.get_job(uuid.uuid4())
        assert await service.list_sessions(uuid.uuid4()) == []
