"""
Bulk job edits: delete and field updates.

Every operation validates all targets first and changes nothing if any
target is rejected; the error lists each rejected job with its reason.
Bulk rerun lives on ExecutionManager because it creates an execution.
"""

import logging
import uuid
from typing import Any

from sqlalchemy import delete, select, update

from src.core.models.orchestration import (
    ACTIVE_EXECUTION_STATUSES,
    Batch,
    Execution,
    Job,
    JobSession,
    JobStatus,
)
from src.core.primitives.accuracy import score_job
from src.core.storage.postgres import Database, get_db
from src.orchestrator.errors import BulkOperationError

logger = logging.getLogger(__name__)

# API field name -> Job column
UPDATABLE_FIELDS = {
    "goal": "goal",
    "siteUrl": "site_url",
    "groundTruth": "ground_truth",
}


class JobBulkService:
    """
    Usage:
        service = JobBulkService(db)
        deleted = await service.bulk_delete([job_id, ...])
        updated = await service.bulk_update([job_id, ...], {"goal": "Find the price"})
    """

    def __init__(self, db: Database | None = None) -> None:
        self._db = db

    async def _get_db(self) -> Database:
        if self._db is None:
            self._db = await get_db()
        return self._db

    @staticmethod
    async def _load(session, job_ids: list[uuid.UUID]) -> dict[uuid.UUID, Job]:
        result = await session.execute(select(Job).where(Job.id.in_(job_ids)))
        return {job.id: job for job in result.scalars()}

    @staticmethod
    def _reject_missing_or_running(
        job_ids: list[uuid.UUID], jobs: dict[uuid.UUID, Job]
    ) -> list[dict[str, Any]]:
        rejected = []
        for job_id in job_ids:
            job = jobs.get(job_id)
            if job is None:
                rejected.append({"jobId": str(job_id), "reason": "Job not found"})
            elif job.status == JobStatus.RUNNING.value:
                rejected.append({"jobId": str(job_id), "reason": "Job is running"})
        return rejected

    async def bulk_delete(self, job_ids: list[uuid.UUID]) -> int:
        """
        Delete jobs and their sessions.

        Rejected when any job is unknown, running, or still assigned to
        an active execution.
        """
        ids = list(dict.fromkeys(job_ids))
        db = await self._get_db()
        async with db.session() as session:
            jobs = await self._load(session, ids)
            rejected = self._reject_missing_or_running(ids, jobs)

            execution_ids = {job.execution_id for job in jobs.values() if job.execution_id}
            if execution_ids:
                result = await session.execute(
                    select(Execution.id).where(
                        Execution.id.in_(execution_ids),
                        Execution.status.in_(ACTIVE_EXECUTION_STATUSES),
                    )
                )
                active = set(result.scalars())
                already = {r["jobId"] for r in rejected}
                rejected.extend(
                    {"jobId": str(job.id), "reason": "Job belongs to an active execution"}
                    for job in jobs.values()
                    if job.execution_id in active and str(job.id) not in already
                )
            if rejected:
                raise BulkOperationError("delete", rejected)

            per_batch: dict[uuid.UUID, int] = {}
            for job in jobs.values():
                per_batch[job.batch_id] = per_batch.get(job.batch_id, 0) + 1

            await session.execute(delete(JobSession).where(JobSession.job_id.in_(ids)))
            await session.execute(delete(Job).where(Job.id.in_(ids)))
            for batch_id, count in per_batch.items():
                await session.execute(
                    update(Batch)
                    .where(Batch.id == batch_id)
                    .values(total_jobs=Batch.total_jobs - count)
                    .execution_options(synchronize_session=False)
                )

        logger.info(f"Bulk deleted {len(ids)} job(s)")
        return len(ids)

    async def bulk_update(self, job_ids: list[uuid.UUID], updates: dict[str, Any]) -> int:
        """
        Update goal, site URL or ground truth on several jobs.

        A completed job whose ground truth changes is re-evaluated against
        its stored extraction.
        """
        unknown = sorted(set(updates) - set(UPDATABLE_FIELDS))
        if unknown:
            raise BulkOperationError(
                "update",
                [{"jobId": None, "reason": f"Field cannot be updated: {name}"} for name in unknown],
            )
        values = {UPDATABLE_FIELDS[name]: value for name, value in updates.items()}
        if not values:
            return 0

        ids = list(dict.fromkeys(job_ids))
        db = await self._get_db()
        async with db.session() as session:
            jobs = await self._load(session, ids)
            rejected = self._reject_missing_or_running(ids, jobs)
            if rejected:
                raise BulkOperationError("update", rejected)

            batch_ids = {job.batch_id for job in jobs.values()}
            result = await session.execute(select(Batch).where(Batch.id.in_(batch_ids)))
            batches = {batch.id: batch for batch in result.scalars()}

            rescored = 0
            for job in jobs.values():
                job_values = dict(values)
                if (
                    "ground_truth" in values
                    and job.status == JobStatus.COMPLETED.value
                    and values["ground_truth"] != job.ground_truth
                ):
                    job_values.update(
                        self._rescore(job, values["ground_truth"], batches[job.batch_id])
                    )
                    rescored += 1
                await session.execute(
                    update(Job)
                    .where(Job.id == job.id, Job.status != JobStatus.RUNNING.value)
                    .values(**job_values)
                    .execution_options(synchronize_session=False)
                )

        logger.info(f"Bulk updated {len(ids)} job(s), re-evaluated {rescored}")
        return len(ids)

    @staticmethod
    def _rescore(job: Job, ground_truth: dict[str, Any] | None, batch: Batch) -> dict[str, Any]:
        if not ground_truth:
            return {"evaluation_result": None, "accuracy": None, "field_results": None}
        score = score_job(
            job.extracted_data or {},
            ground_truth,
            columns=batch.ground_truth_column_names() or None,
        )
        return {
            "evaluation_result": score.evaluation,
            "accuracy": score.accuracy,
            "field_results": [field.to_dict() for field in score.fields] or None,
        }
