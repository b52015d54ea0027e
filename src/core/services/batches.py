"""
Service for batches and their jobs.

Turns an uploaded table into a Batch with one queued Job per row and
provides the read side used by the API.
"""

import logging
import uuid
from typing import Any

from sqlalchemy import func, select

from src.core.models.orchestration import Batch, Job, JobSession, JobStatus
from src.core.primitives.accuracy import ColumnKind
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database, get_db

logger = logging.getLogger(__name__)

GOAL_COLUMN = "goal"


class BatchValidationError(ValueError):
    """The uploaded schema or rows cannot be turned into jobs."""

    pass


def normalize_column_schema(columns: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Validate column definitions and fill in defaults."""
    normalized = []
    seen = set()
    for column in columns:
        name = str(column.get("name") or "").strip()
        if not name:
            raise BatchValidationError("Every column needs a name")
        if name in seen:
            raise BatchValidationError(f"Duplicate column name: {name}")
        seen.add(name)

        kind = str(column.get("type") or ColumnKind.TEXT.value).lower()
        try:
            kind = ColumnKind(kind).value
        except ValueError:
            raise BatchValidationError(
                f"Column '{name}' has unknown type '{kind}' "
                f"(expected one of {', '.join(k.value for k in ColumnKind)})"
            ) from None

        normalized.append(
            {
                "name": name,
                "type": kind,
                "isGroundTruth": bool(column.get("isGroundTruth", False)),
                "isUrl": bool(column.get("isUrl", False)),
            }
        )
    return normalized


def _url_column(columns: list[dict[str, Any]]) -> str:
    flagged = [c["name"] for c in columns if c["isUrl"]]
    if len(flagged) > 1:
        raise BatchValidationError("Only one column can be marked as the URL column")
    if flagged:
        return flagged[0]
    typed = [c["name"] for c in columns if c["type"] == ColumnKind.URL.value]
    if typed:
        return typed[0]
    raise BatchValidationError("Column schema needs a URL column")


class BatchService:
    """
    Service for creating batches and reading batch and job state.

    Usage:
        service = BatchService(db)
        batch = await service.create_batch("Pricing", columns, rows, goal="Find the price")
        jobs = await service.list_jobs(batch.id, status="queued")
    """

    def __init__(self, db: Database | None = None) -> None:
        """Initialize with a database instance, or None to use get_db() lazily."""
        self._db = db

    async def _get_db(self) -> Database:
        """Get the database instance, resolving lazily if needed."""
        if self._db is None:
            self._db = await get_db()
        return self._db

    async def create_batch(
        self,
        name: str,
        column_schema: list[dict[str, Any]],
        rows: list[dict[str, Any]],
        goal: str | None = None,
        ground_truth_columns: list[str] | None = None,
    ) -> Batch:
        """
        Create a batch and materialize one queued job per row.

        The URL comes from the URL column; the goal from a ``goal`` column
        when present, else the batch goal. Ground-truth values are taken
        from the ground-truth columns and stored on the job.

        Raises:
            BatchValidationError: If the schema or a row is unusable.
        """
        columns = normalize_column_schema(column_schema)
        url_column = _url_column(columns)
        names = {c["name"] for c in columns}

        gt_columns = list(ground_truth_columns or [])
        for column in columns:
            if column["isGroundTruth"] and column["name"] not in gt_columns:
                gt_columns.append(column["name"])
        unknown = [c for c in gt_columns if c not in names]
        if unknown:
            raise BatchValidationError(f"Unknown ground truth columns: {', '.join(unknown)}")

        if not rows:
            raise BatchValidationError("Batch has no rows")

        batch = Batch(
            id=uuid.uuid4(),
            name=name,
            goal=goal,
            column_schema=columns,
            ground_truth_columns=gt_columns,
            total_jobs=len(rows),
        )

        jobs = []
        for index, row in enumerate(rows):
            site_url = str(row.get(url_column) or "").strip()
            if not site_url:
                raise BatchValidationError(f"Row {index + 1} has no value in '{url_column}'")
            row_goal = str(row.get(GOAL_COLUMN) or goal or "").strip()
            if not row_goal:
                raise BatchValidationError(f"Row {index + 1} has no goal and the batch has none")

            ground_truth = {
                column: row[column]
                for column in gt_columns
                if row.get(column) is not None and str(row[column]).strip() != ""
            }
            jobs.append(
                Job(
                    batch_id=batch.id,
                    row_index=index,
                    site_url=site_url,
                    goal=row_goal,
                    status=JobStatus.QUEUED.value,
                    ground_truth=ground_truth or None,
                )
            )

        db = await self._get_db()
        async with db.session() as session:
            session.add(batch)
            await session.flush()
            session.add_all(jobs)

        logger.info(f"Batch created: {name} ({batch.id}) with {len(jobs)} jobs")
        return batch

    async def get_batch(self, batch_id: uuid.UUID) -> Batch:
        db = await self._get_db()
        async with db.session() as session:
            batch = await session.get(Batch, batch_id)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        return batch

    async def count_jobs(self, batch_id: uuid.UUID) -> dict[str, int]:
        """Job counts for a batch, keyed by status."""
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                select(Job.status, func.count())
                .where(Job.batch_id == batch_id)
                .group_by(Job.status)
            )
            counts = {status.value: 0 for status in JobStatus}
            for status, count in result.all():
                counts[status] = count
        return counts

    async def list_jobs(
        self,
        batch_id: uuid.UUID,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        db = await self._get_db()
        stmt = select(Job).where(Job.batch_id == batch_id)
        if status:
            stmt = stmt.where(Job.status == status)
        stmt = stmt.order_by(Job.row_index).offset(offset).limit(limit)
        async with db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars())

    async def get_job(self, job_id: uuid.UUID) -> Job:
        db = await self._get_db()
        async with db.session() as session:
            job = await session.get(Job, job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def list_sessions(self, job_id: uuid.UUID) -> list[JobSession]:
        """Agent sessions for a job, newest first."""
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                select(JobSession)
                .where(JobSession.job_id == job_id)
                .order_by(JobSession.started_at.desc())
            )
            return list(result.scalars())
