"""Tests for MetricsAggregator and column metrics."""

import uuid
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy import select

from src.core.models.orchestration import Batch, Job, JobStatus
from src.core.services.batches import BatchService
from src.core.services.metrics import (
    MetricsAggregator,
    classify_trend,
    compute_column_metrics,
)
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database
from tests.conftest import PRICE_SCHEMA, price_rows


async def _complete_jobs(database: Database, batch_id: uuid.UUID, extracted: list) -> None:
    """Mark the batch's jobs completed with the given extracted prices, in row order."""
    async with database.session() as session:
        result = await session.execute(
            select(Job).where(Job.batch_id == batch_id).order_by(Job.row_index)
        )
        for job, price in zip(result.scalars(), extracted):
            job.status = JobStatus.COMPLETED.value
            job.extracted_data = {"price": price}


def _job(status: str, ground_truth, extracted) -> Job:
    return Job(
        site_url="https://a.example.com",
        goal="g",
        status=status,
        ground_truth=ground_truth,
        extracted_data=extracted,
    )


class TestComputeColumnMetrics:
    """Tests for the pure metrics fold."""

    def test_counts_match_types(self):
        """Exact, partial, mismatch and missing are tallied per column."""
        jobs = [
            _job("completed", {"name": "Acme Corporation"}, {"name": "Acme Corporation"}),
            _job("completed", {"name": "Acme Corporation"}, {"name": "Acme Corporatio"}),
            _job("completed", {"name": "Acme Corporation"}, {"name": "Globex"}),
            _job("completed", {"name": "Acme Corporation"}, {}),
            _job("error", {"name": "Acme Corporation"}, None),
            _job("completed", None, {"name": "x"}),
        ]

        metrics = compute_column_metrics(uuid.uuid4(), ["name"], jobs)
        [column] = metrics.columns

        assert column.total_jobs == 6
        assert column.jobs_with_ground_truth == 4
        assert column.exact_matches == 1
        assert column.partial_matches == 1
        assert column.mismatches == 1
        assert column.missing_extractions == 1
        assert column.accuracy_percentage == pytest.approx(37.5)
        assert len(column.error_examples) == 2
        assert metrics.jobs_evaluated == 4
        assert metrics.overall_accuracy == pytest.approx(37.5)

    def test_no_ground_truth(self):
        """Columns without scored jobs have no accuracy."""
        metrics = compute_column_metrics(uuid.uuid4(), ["price"], [])

        assert metrics.columns[0].accuracy_percentage is None
        assert metrics.overall_accuracy is None

    @pytest.mark.parametrize(
        ("previous", "latest", "trend"),
        [
            (80.0, 85.0, "improving"),
            (85.0, 80.0, "declining"),
            (80.0, 81.5, "stable"),
            (None, 90.0, "stable"),
        ],
    )
    def test_classify_trend(self, previous, latest, trend):
        """Changes beyond two points are a trend."""
        assert classify_trend(previous, latest) == trend


class TestMetricsAggregator:
    """Tests against the database."""

    @pytest.mark.asyncio
    async def test_column_metrics_from_jobs(self, database: Database):
        """Metrics are recomputed from the job table."""
        batch = await BatchService(database).create_batch(
            "Pricing", PRICE_SCHEMA, price_rows(4), goal="g"
        )
        await _complete_jobs(database, batch.id, ["$20", "$20", "$25"])

        metrics = await MetricsAggregator(database).column_metrics(batch.id)

        assert metrics.total_jobs == 4
        assert metrics.jobs_evaluated == 3
        assert metrics.to_dict()["columns"][0]["exactMatches"] == 2

    @pytest.mark.asyncio
    async def test_snapshot_updates_batch_accuracy(self, database: Database):
        """A snapshot freezes the metrics and stores accuracy on the batch."""
        batch = await BatchService(database).create_batch(
            "Pricing", PRICE_SCHEMA, price_rows(2), goal="g"
        )
        await _complete_jobs(database, batch.id, ["$20", "$20"])
        aggregator = MetricsAggregator(database)

        snapshot = await aggregator.create_snapshot(batch.id, notes="baseline")

        assert snapshot.overall_accuracy == 100.0
        assert snapshot.jobs_evaluated == 2
        assert snapshot.column_metrics[0]["columnName"] == "price"
        async with database.session() as session:
            stored = await session.get(Batch, batch.id)
        assert stored.overall_accuracy == 100.0
        assert stored.accuracy_updated_at is not None

    @pytest.mark.asyncio
    async def test_trends(self, database: Database):
        """Trends compare the two most recent snapshots."""
        batch = await BatchService(database).create_batch(
            "Pricing", PRICE_SCHEMA, price_rows(2), goal="g"
        )
        aggregator = MetricsAggregator(database)

        empty = await aggregator.trends(batch.id)
        assert empty["dataPoints"] == []
        assert empty["summary"] is None

        await _complete_jobs(database, batch.id, ["$99", "$99"])
        await aggregator.create_snapshot(batch.id)
        await _complete_jobs(database, batch.id, ["$20", "$20"])
        await aggregator.create_snapshot(batch.id)

        trends = await aggregator.trends(batch.id)

        assert len(trends["dataPoints"]) == 2
        assert trends["trend"] == "improving"
        assert trends["columnTrends"] == {"price": "improving"}
        assert trends["summary"]["latestAccuracy"] == 100.0
        assert trends["summary"]["worstAccuracy"] == 0.0
        assert trends["summary"]["improvementRate"] == 100.0

    @pytest.mark.asyncio
    async def test_snapshot_before_evaluation_has_no_accuracy(self, database: Database):
        """A snapshot with nothing evaluated records no accuracy and no trend."""
        batch = await BatchService(database).create_batch(
            "Pricing", PRICE_SCHEMA, price_rows(2), goal="g"
        )
        aggregator = MetricsAggregator(database)

        empty = await aggregator.create_snapshot(batch.id)
        await _complete_jobs(database, batch.id, ["$20", "$20"])
        await aggregator.create_snapshot(batch.id)
        trends = await aggregator.trends(batch.id)

        assert empty.overall_accuracy is None
        assert empty.column_metrics[0]["accuracy"] is None
        assert trends["trend"] == "stable"
        assert trends["columnTrends"] == {"price": "stable"}
        assert trends["summary"]["improvementRate"] is None
        assert trends["summary"]["worstAccuracy"] == 100.0
        assert trends["summary"]["averageAccuracy"] == 100.0

    @pytest.mark.asyncio
    async def test_snapshots_keep_creation_order_on_equal_clock(self, database: Database):
        """Snapshots taken within one clock tick still list in creation order."""
        batch = await BatchService(database).create_batch(
            "Pricing", PRICE_SCHEMA, price_rows(2), goal="g"
        )
        aggregator = MetricsAggregator(database)
        frozen = datetime(2026, 1, 1, 12, 0, 0)

        with patch("src.core.services.metrics.utcnow_naive", return_value=frozen):
            created = [await aggregator.create_snapshot(batch.id, notes=str(i)) for i in range(3)]

        listed = await aggregator.list_snapshots(batch.id)
        assert [s.notes for s in listed] == ["0", "1", "2"]
        assert [s.id for s in listed] == [s.id for s in created]
        assert len({s.created_at for s in listed}) == 3

    @pytest.mark.asyncio
    async def test_unknown_batch(self, database: Database):
        """Unknown batches raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await MetricsAggregator(database).column_metrics(uuid.uuid4())
