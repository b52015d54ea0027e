"""Service that groups a batch's failed jobs into failure patterns."""

import logging
import uuid

from sqlalchemy import func, select

from src.core.models.orchestration import Batch, Job, JobStatus
from src.core.primitives.failure_classifier import FailedJob, FailureReport, build_report
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database, get_db

logger = logging.getLogger(__name__)


class FailurePatternService:
    """Builds failure reports from the job table."""

    def __init__(self, db: Database | None = None) -> None:
        """Initialize with a database instance, or None to use get_db() lazily."""
        self._db = db

    async def _get_db(self) -> Database:
        """Get the database instance, resolving lazily if needed."""
        if self._db is None:
            self._db = await get_db()
        return self._db

    async def report(
        self, batch_id: uuid.UUID, execution_id: uuid.UUID | None = None
    ) -> FailureReport:
        """
        Failure report for a batch, optionally narrowed to one execution.

        Args:
            batch_id: Batch to report on.
            execution_id: Only consider jobs last run by this execution.
        """
        db = await self._get_db()
        async with db.session() as session:
            if await session.get(Batch, batch_id) is None:
                raise NotFoundError("Batch", batch_id)

            scope = [Job.batch_id == batch_id]
            if execution_id is not None:
                scope.append(Job.execution_id == execution_id)

            total_jobs = (
                await session.execute(select(func.count()).select_from(Job).where(*scope))
            ).scalar_one()
            result = await session.execute(
                select(Job)
                .where(*scope, Job.status == JobStatus.ERROR.value)
                .order_by(Job.completed_at.desc())
            )
            failures = [
                FailedJob(
                    job_id=str(job.id),
                    site_url=job.site_url,
                    error_message=job.error_message,
                    failure_category=job.failure_category,
                )
                for job in result.scalars()
            ]

        report = build_report(failures, total_jobs=total_jobs)
        logger.debug(f"Failure report for batch {batch_id}: {report.summary}")
        return report
