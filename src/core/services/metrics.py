"""
Metrics aggregator: per-column ground-truth accuracy and versioned snapshots.

Column metrics are always recomputed from the job table; nothing is
maintained incrementally. Snapshots freeze a computation so accuracy can be
tracked across executions.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, update

from src.core.models.orchestration import Batch, Job, JobStatus, MetricsSnapshot
from src.core.primitives.accuracy import (
    PARTIAL_MATCH_WEIGHT,
    MatchType,
    compare_field,
    has_value,
)
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database, get_db
from src.core.utils.time import to_iso, utcnow_naive

logger = logging.getLogger(__name__)

# Accuracy change (percentage points) needed to call a trend improving/declining
TREND_THRESHOLD = 2.0

MAX_ERROR_EXAMPLES = 5


@dataclass
class ColumnMetric:
    """Accuracy of one ground-truth column across a batch."""

    column_name: str
    total_jobs: int = 0
    jobs_with_ground_truth: int = 0
    exact_matches: int = 0
    partial_matches: int = 0
    mismatches: int = 0
    missing_extractions: int = 0
    error_examples: list[dict[str, Any]] = field(default_factory=list)

    @property
    def accuracy_percentage(self) -> float | None:
        if not self.jobs_with_ground_truth:
            return None
        weighted = self.exact_matches + self.partial_matches * PARTIAL_MATCH_WEIGHT
        return weighted / self.jobs_with_ground_truth * 100

    def add(self, expected: Any, extracted: Any) -> None:
        self.jobs_with_ground_truth += 1
        match_type, _ = compare_field(expected, extracted)
        if match_type == MatchType.EXACT:
            self.exact_matches += 1
            return
        if match_type == MatchType.PARTIAL:
            self.partial_matches += 1
            return
        if match_type == MatchType.MISSING:
            self.missing_extractions += 1
        else:
            self.mismatches += 1
        if len(self.error_examples) < MAX_ERROR_EXAMPLES:
            self.error_examples.append({"expected": expected, "actual": extracted})

    def to_dict(self) -> dict[str, Any]:
        return {
            "columnName": self.column_name,
            "totalJobs": self.total_jobs,
            "jobsWithGroundTruth": self.jobs_with_ground_truth,
            "exactMatches": self.exact_matches,
            "partialMatches": self.partial_matches,
            "mismatches": self.mismatches,
            "missingExtractions": self.missing_extractions,
            "accuracyPercentage": self.accuracy_percentage,
            "errorExamples": self.error_examples,
        }


@dataclass
class BatchMetrics:
    """Column metrics for a batch plus the weighted overall accuracy."""

    batch_id: uuid.UUID
    columns: list[ColumnMetric]
    total_jobs: int
    jobs_evaluated: int

    @property
    def overall_accuracy(self) -> float | None:
        with_truth = sum(c.jobs_with_ground_truth for c in self.columns)
        if not with_truth:
            return None
        weighted = sum(
            c.exact_matches + c.partial_matches * PARTIAL_MATCH_WEIGHT for c in self.columns
        )
        return weighted / with_truth * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "batchId": str(self.batch_id),
            "columns": [column.to_dict() for column in self.columns],
            "overallAccuracy": self.overall_accuracy,
            "totalJobs": self.total_jobs,
            "jobsEvaluated": self.jobs_evaluated,
        }


def compute_column_metrics(
    batch_id: uuid.UUID, columns: list[str], jobs: list[Job]
) -> BatchMetrics:
    """
    Fold scored jobs into per-column metrics.

    Only completed jobs are scored; a column counts for a job when the
    job's ground truth has a non-empty value for it.
    """
    metrics = {name: ColumnMetric(column_name=name) for name in columns}
    evaluated = 0

    for job in jobs:
        for metric in metrics.values():
            metric.total_jobs += 1
        if job.status != JobStatus.COMPLETED.value or not job.ground_truth:
            continue

        scored = False
        extracted = job.extracted_data or {}
        for name, metric in metrics.items():
            expected = job.ground_truth.get(name)
            if not has_value(expected):
                continue
            metric.add(expected, extracted.get(name))
            scored = True
        evaluated += int(scored)

    return BatchMetrics(
        batch_id=batch_id,
        columns=list(metrics.values()),
        total_jobs=len(jobs),
        jobs_evaluated=evaluated,
    )


def classify_trend(previous: float | None, latest: float | None) -> str:
    """Compare two accuracy values: improving, declining or stable."""
    if previous is None or latest is None:
        return "stable"
    delta = latest - previous
    if delta > TREND_THRESHOLD:
        return "improving"
    if delta < -TREND_THRESHOLD:
        return "declining"
    return "stable"


def serialize_snapshot(snapshot: MetricsSnapshot) -> dict[str, Any]:
    return {
        "id": str(snapshot.id),
        "batchId": str(snapshot.batch_id),
        "executionId": str(snapshot.execution_id) if snapshot.execution_id else None,
        "overallAccuracy": snapshot.overall_accuracy,
        "totalJobs": snapshot.total_jobs,
        "jobsEvaluated": snapshot.jobs_evaluated,
        "exactMatches": snapshot.exact_matches,
        "partialMatches": snapshot.partial_matches,
        "columnMetrics": snapshot.column_metrics,
        "notes": snapshot.notes,
        "recordedAt": to_iso(snapshot.created_at),
    }


class MetricsAggregator:
    """
    Computes column metrics and records snapshots.

    Usage:
        aggregator = MetricsAggregator(db)
        metrics = await aggregator.column_metrics(batch_id)
        snapshot = await aggregator.create_snapshot(batch_id, notes="after selector fix")
        trends = await aggregator.trends(batch_id)
    """

    def __init__(self, db: Database | None = None) -> None:
        """Initialize with a database instance, or None to use get_db() lazily."""
        self._db = db

    async def _get_db(self) -> Database:
        """Get the database instance, resolving lazily if needed."""
        if self._db is None:
            self._db = await get_db()
        return self._db

    async def _load(self, batch_id: uuid.UUID) -> tuple[Batch, list[Job]]:
        db = await self._get_db()
        async with db.session() as session:
            batch = await session.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError("Batch", batch_id)
            result = await session.execute(
                select(Job).where(Job.batch_id == batch_id).order_by(Job.row_index)
            )
            return batch, list(result.scalars())

    async def column_metrics(self, batch_id: uuid.UUID) -> BatchMetrics:
        """Recompute column metrics for a batch from scratch."""
        batch, jobs = await self._load(batch_id)
        return compute_column_metrics(batch.id, batch.ground_truth_column_names(), jobs)

    async def create_snapshot(
        self,
        batch_id: uuid.UUID,
        execution_id: uuid.UUID | None = None,
        notes: str | None = None,
    ) -> MetricsSnapshot:
        """
        Record the current column metrics as an immutable snapshot.

        Also stores the overall accuracy on the batch.
        """
        metrics = await self.column_metrics(batch_id)
        # None when no job has been evaluated yet
        overall = metrics.overall_accuracy

        snapshot = MetricsSnapshot(
            batch_id=batch_id,
            execution_id=execution_id,
            overall_accuracy=overall,
            total_jobs=metrics.total_jobs,
            jobs_evaluated=metrics.jobs_evaluated,
            exact_matches=sum(c.exact_matches for c in metrics.columns),
            partial_matches=sum(c.partial_matches for c in metrics.columns),
            column_metrics=[
                {
                    "columnName": c.column_name,
                    "accuracy": c.accuracy_percentage,
                    "exactMatches": c.exact_matches,
                    "partialMatches": c.partial_matches,
                    "mismatches": c.mismatches,
                    "missingExtractions": c.missing_extractions,
                }
                for c in metrics.columns
            ],
            notes=notes,
        )

        db = await self._get_db()
        async with db.session() as session:
            latest = await session.scalar(
                select(func.max(MetricsSnapshot.created_at)).where(
                    MetricsSnapshot.batch_id == batch_id
                )
            )
            now = utcnow_naive()
            # Snapshot times strictly increase per batch, so history order is total
            if latest is not None and now <= latest:
                now = latest + timedelta(microseconds=1)
            snapshot.created_at = now
            session.add(snapshot)
            await session.execute(
                update(Batch)
                .where(Batch.id == batch_id)
                .values(overall_accuracy=overall, accuracy_updated_at=now)
            )

        shown = "n/a" if overall is None else f"{overall:.1f}%"
        logger.info(f"Metrics snapshot for batch {batch_id}: accuracy={shown}")
        return snapshot

    async def list_snapshots(self, batch_id: uuid.UUID, limit: int = 50) -> list[MetricsSnapshot]:
        """Snapshots for a batch, oldest first."""
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                select(MetricsSnapshot)
                .where(MetricsSnapshot.batch_id == batch_id)
                .order_by(MetricsSnapshot.created_at.desc())
                .limit(limit)
            )
            return list(reversed(list(result.scalars())))

    async def trends(self, batch_id: uuid.UUID, limit: int = 50) -> dict[str, Any]:
        """
        Accuracy history for a batch.

        The trend compares the two most recent snapshots, overall and per
        column.
        """
        batch, _ = await self._load(batch_id)
        snapshots = await self.list_snapshots(batch_id, limit=limit)
        data_points = [serialize_snapshot(s) for s in snapshots]

        if not snapshots:
            return {
                "batchId": str(batch.id),
                "dataPoints": [],
                "summary": None,
                "trend": "stable",
                "columnTrends": {},
            }

        # Snapshots taken before any evaluation carry no accuracy
        accuracies = [s.overall_accuracy for s in snapshots if s.overall_accuracy is not None]
        latest = snapshots[-1]
        previous = snapshots[-2] if len(snapshots) > 1 else None

        column_trends: dict[str, str] = {}
        if previous is not None:
            before = {c["columnName"]: c.get("accuracy") for c in previous.column_metrics}
            for column in latest.column_metrics:
                name = column["columnName"]
                column_trends[name] = classify_trend(before.get(name), column.get("accuracy"))

        trend = classify_trend(
            previous.overall_accuracy if previous else None, latest.overall_accuracy
        )
        improvement = 0.0
        if previous is not None:
            improvement = None
            if previous.overall_accuracy is not None and latest.overall_accuracy is not None:
                improvement = latest.overall_accuracy - previous.overall_accuracy
        return {
            "batchId": str(batch.id),
            "dataPoints": data_points,
            "summary": {
                "totalSnapshots": len(snapshots),
                "firstRecorded": to_iso(snapshots[0].created_at),
                "latestRecorded": to_iso(latest.created_at),
                "latestAccuracy": latest.overall_accuracy,
                "averageAccuracy": sum(accuracies) / len(accuracies) if accuracies else None,
                "bestAccuracy": max(accuracies, default=None),
                "worstAccuracy": min(accuracies, default=None),
                "improvementRate": improvement,
            },
            "trend": trend,
            "columnTrends": column_trends,
        }
