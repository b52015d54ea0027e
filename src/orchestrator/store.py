"""
Persistence for executions and their jobs.

Every job status change is a compare-and-swap (``UPDATE ... WHERE status =
expected``) and the execution counters are adjusted in the same
transaction, so ``queued + running + completed + error == total_jobs``
holds after every commit.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from src.core.models.orchestration import (
    ACTIVE_EXECUTION_STATUSES,
    Batch,
    Execution,
    ExecutionStatus,
    Job,
    JobSession,
    JobStatus,
)
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database, get_db
from src.core.utils.time import utcnow_naive
from src.orchestrator.errors import ActiveExecutionExistsError, NothingToRunError

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = {
    JobStatus.QUEUED.value: "queued_jobs",
    JobStatus.RUNNING.value: "running_jobs",
    JobStatus.COMPLETED.value: "completed_jobs",
    JobStatus.ERROR.value: "error_jobs",
}

# Fields cleared when a job goes back to the queue
_RESET_VALUES: dict[str, Any] = {
    "status": JobStatus.QUEUED.value,
    "execution_id": None,
    "started_at": None,
    "last_activity_at": None,
    "completed_at": None,
    "duration_ms": None,
    "progress_percentage": 0,
    "current_step": None,
    "retry_count": 0,
    "retry_reason": None,
    "extracted_data": None,
    "error_message": None,
    "failure_category": None,
    "evaluation_result": None,
    "accuracy": None,
    "field_results": None,
    "latest_session_id": None,
}


@dataclass
class JobOutcome:
    """Everything recorded when a job reaches a terminal status."""

    status: JobStatus
    extracted_data: dict[str, Any] | None = None
    raw_log: str | None = None
    error_message: str | None = None
    failure_category: str | None = None
    retry_count: int = 0
    duration_ms: int | None = None
    evaluation: str | None = None
    accuracy: float | None = None
    field_results: list[dict[str, Any]] | None = None
    agent_run_id: str | None = None


class ExecutionStore:
    """
    Atomic reads and writes of execution and job state.

    Usage:
        store = ExecutionStore(db)
        execution = await store.create_execution(batch_id, "test", concurrency=5)
        job = await store.claim_next_job(execution.id)
        await store.finish_job(job.id, execution.id, job.latest_session_id, outcome)
    """

    def __init__(self, db: Database | None = None) -> None:
        """Initialize with a database instance, or None to use get_db() lazily."""
        self._db = db

    async def _get_db(self) -> Database:
        """Get the database instance, resolving lazily if needed."""
        if self._db is None:
            self._db = await get_db()
        return self._db

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_execution(self, execution_id: uuid.UUID) -> Execution:
        db = await self._get_db()
        async with db.session() as session:
            execution = await session.get(Execution, execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    async def get_batch(self, batch_id: uuid.UUID) -> Batch:
        db = await self._get_db()
        async with db.session() as session:
            batch = await session.get(Batch, batch_id)
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        return batch

    @staticmethod
    async def _active_for_batch(session, batch_id: uuid.UUID) -> Execution | None:
        result = await session.execute(
            select(Execution)
            .where(
                Execution.batch_id == batch_id,
                Execution.status.in_(ACTIVE_EXECUTION_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_active(self, batch_id: uuid.UUID) -> Execution | None:
        """The batch's running or paused execution, if any."""
        db = await self._get_db()
        async with db.session() as session:
            return await self._active_for_batch(session, batch_id)

    async def list_active(self) -> list[Execution]:
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                select(Execution)
                .where(Execution.status.in_(ACTIVE_EXECUTION_STATUSES))
                .order_by(Execution.started_at)
            )
            return list(result.scalars())

    async def running_jobs(self, execution_id: uuid.UUID, limit: int = 10) -> list[Job]:
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                select(Job)
                .where(Job.execution_id == execution_id, Job.status == JobStatus.RUNNING.value)
                .order_by(Job.started_at)
                .limit(limit)
            )
            return list(result.scalars())

    async def evaluation_counts(self, execution_id: uuid.UUID) -> dict[str, int]:
        """Counts of pass/fail evaluations among the execution's jobs."""
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                select(Job.evaluation_result, func.count())
                .where(Job.execution_id == execution_id, Job.evaluation_result.is_not(None))
                .group_by(Job.evaluation_result)
            )
            return {evaluation: count for evaluation, count in result.all()}

    async def get_jobs(self, job_ids: Iterable[uuid.UUID]) -> list[Job]:
        ids = list(job_ids)
        if not ids:
            return []
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(select(Job).where(Job.id.in_(ids)))
            return list(result.scalars())

    # -------------------------------------------------------------------------
    # Execution lifecycle
    # -------------------------------------------------------------------------

    async def create_execution(
        self,
        batch_id: uuid.UUID,
        execution_type: str,
        concurrency: int,
        sample_size: int | None = None,
        job_ids: Iterable[uuid.UUID] | None = None,
        reset_jobs: bool = False,
    ) -> Execution:
        """
        Create a running execution over the batch's queued jobs.

        Args:
            batch_id: Batch to run.
            execution_type: "test" or "production".
            concurrency: Initial concurrency limit.
            sample_size: Take at most this many queued jobs (by row order).
            job_ids: Restrict to these jobs.
            reset_jobs: First put the non-running ``job_ids`` back in the
                queue with derived fields cleared. The reset commits only
                if the execution is created.

        Raises:
            NotFoundError: Unknown batch.
            ActiveExecutionExistsError: The batch already has an active execution.
            NothingToRunError: No queued jobs matched.
        """
        db = await self._get_db()
        try:
            async with db.session() as session:
                if await session.get(Batch, batch_id) is None:
                    raise NotFoundError("Batch", batch_id)

                active = await self._active_for_batch(session, batch_id)
                if active is not None:
                    raise ActiveExecutionExistsError(batch_id, active)

                if job_ids is not None:
                    job_ids = list(job_ids)
                if reset_jobs and job_ids:
                    reset = await session.execute(
                        update(Job)
                        .where(
                            Job.id.in_(job_ids),
                            Job.batch_id == batch_id,
                            Job.status != JobStatus.RUNNING.value,
                        )
                        .values(**_RESET_VALUES)
                        .execution_options(synchronize_session=False)
                    )
                    logger.info(f"Reset {reset.rowcount or 0} job(s) in batch {batch_id} for rerun")

                stmt = (
                    select(Job.id)
                    .where(Job.batch_id == batch_id, Job.status == JobStatus.QUEUED.value)
                    .order_by(Job.row_index)
                )
                if job_ids is not None:
                    stmt = stmt.where(Job.id.in_(job_ids))
                if sample_size:
                    stmt = stmt.limit(sample_size)
                ids = list((await session.execute(stmt)).scalars())
                if not ids:
                    raise NothingToRunError(batch_id)

                now = utcnow_naive()
                execution = Execution(
                    id=uuid.uuid4(),
                    batch_id=batch_id,
                    execution_type=execution_type,
                    status=ExecutionStatus.RUNNING.value,
                    concurrency=concurrency,
                    total_jobs=len(ids),
                    queued_jobs=len(ids),
                    started_at=now,
                    last_activity_at=now,
                )
                session.add(execution)
                await session.flush()
                await session.execute(
                    update(Job)
                    .where(Job.id.in_(ids))
                    .values(execution_id=execution.id)
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            # Lost a race against a concurrent create for the same batch
            raise ActiveExecutionExistsError(batch_id, await self.find_active(batch_id)) from None

        logger.info(
            f"Execution {execution.id} created for batch {batch_id}: "
            f"type={execution_type}, jobs={len(ids)}, concurrency={concurrency}"
        )
        return execution

    async def transition(
        self,
        execution_id: uuid.UUID,
        from_statuses: Iterable[str],
        **values: Any,
    ) -> Execution | None:
        """
        Compare-and-swap update of an execution.

        Returns the updated execution, or None if its status was not one
        of ``from_statuses``.
        """
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                update(Execution)
                .where(Execution.id == execution_id, Execution.status.in_(list(from_statuses)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return await session.get(Execution, execution_id, populate_existing=True)

    async def try_complete(self, execution_id: uuid.UUID) -> Execution | None:
        """Mark a running execution completed if it has nothing queued or running."""
        now = utcnow_naive()
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                update(Execution)
                .where(
                    Execution.id == execution_id,
                    Execution.status == ExecutionStatus.RUNNING.value,
                    Execution.queued_jobs == 0,
                    Execution.running_jobs == 0,
                )
                .values(
                    status=ExecutionStatus.COMPLETED.value,
                    completed_at=now,
                    last_activity_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return await session.get(Execution, execution_id, populate_existing=True)

    async def refresh_counters(self, execution_id: uuid.UUID) -> Execution:
        """Recompute an execution's counters from its jobs."""
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                select(Job.status, func.count())
                .where(Job.execution_id == execution_id)
                .group_by(Job.status)
            )
            counts = {column: 0 for column in _COUNTER_COLUMNS.values()}
            for status, count in result.all():
                counts[_COUNTER_COLUMNS[status]] = count
            await session.execute(
                update(Execution)
                .where(Execution.id == execution_id)
                .values(total_jobs=sum(counts.values()), **counts)
                .execution_options(synchronize_session=False)
            )
            execution = await session.get(Execution, execution_id, populate_existing=True)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    # -------------------------------------------------------------------------
    # Job lifecycle
    # -------------------------------------------------------------------------

    async def claim_next_job(self, execution_id: uuid.UUID) -> Job | None:
        """
        Move the next queued job of an execution to running.

        Opens a JobSession for the dispatch; the returned job's
        ``latest_session_id`` points at it. Returns None when nothing is
        queued.
        """
        db = await self._get_db()
        async with db.session() as session:
            for _ in range(3):
                job_id = (
                    await session.execute(
                        select(Job.id)
                        .where(
                            Job.execution_id == execution_id,
                            Job.status == JobStatus.QUEUED.value,
                        )
                        .order_by(Job.row_index)
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if job_id is None:
                    return None

                now = utcnow_naive()
                result = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.QUEUED.value)
                    .values(
                        status=JobStatus.RUNNING.value,
                        started_at=now,
                        last_activity_at=now,
                        completed_at=None,
                        progress_percentage=0,
                        current_step="Starting",
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue

                await session.execute(
                    update(Execution)
                    .where(Execution.id == execution_id)
                    .values(
                        queued_jobs=Execution.queued_jobs - 1,
                        running_jobs=Execution.running_jobs + 1,
                        last_activity_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                job_session = JobSession(
                    id=uuid.uuid4(),
                    job_id=job_id,
                    execution_id=execution_id,
                    status=JobStatus.RUNNING.value,
                    started_at=now,
                )
                session.add(job_session)
                await session.flush()
                await session.execute(
                    update(Job)
                    .where(Job.id == job_id)
                    .values(latest_session_id=job_session.id)
                    .execution_options(synchronize_session=False)
                )
                return await session.get(Job, job_id, populate_existing=True)
        return None

    async def record_progress(
        self, job_id: uuid.UUID, step: str, percentage: int | None = None
    ) -> bool:
        """Advisory progress write; ignored unless the job is still running."""
        values: dict[str, Any] = {"current_step": step[:500], "last_activity_at": utcnow_naive()}
        if percentage is not None:
            values["progress_percentage"] = max(0, min(99, int(percentage)))
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def record_retry(
        self, job_id: uuid.UUID, session_id: uuid.UUID | None, reason: str
    ) -> None:
        """Count a retry. Only the first retry's reason is kept."""
        db = await self._get_db()
        async with db.session() as session:
            await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.RUNNING.value)
                .values(
                    retry_count=Job.retry_count + 1,
                    retry_reason=func.coalesce(Job.retry_reason, reason),
                    last_activity_at=utcnow_naive(),
                )
                .execution_options(synchronize_session=False)
            )
            if session_id is not None:
                await session.execute(
                    update(JobSession)
                    .where(JobSession.id == session_id)
                    .values(retry_count=JobSession.retry_count + 1)
                    .execution_options(synchronize_session=False)
                )

    async def finish_job(
        self,
        job_id: uuid.UUID,
        execution_id: uuid.UUID,
        session_id: uuid.UUID | None,
        outcome: JobOutcome,
    ) -> bool:
        """
        Record a job's terminal result and move the execution counters.

        Returns False (and changes nothing) if the job is no longer running
        under this execution.
        """
        now = utcnow_naive()
        status = outcome.status.value
        job_values: dict[str, Any] = {
            "status": status,
            "completed_at": now,
            "last_activity_at": now,
            "duration_ms": outcome.duration_ms,
            "retry_count": outcome.retry_count,
            "extracted_data": outcome.extracted_data,
            "error_message": outcome.error_message,
            "failure_category": outcome.failure_category,
            "evaluation_result": outcome.evaluation,
            "accuracy": outcome.accuracy,
            "field_results": outcome.field_results,
        }
        if outcome.status == JobStatus.COMPLETED:
            job_values["progress_percentage"] = 100
            job_values["current_step"] = "Completed"
        else:
            job_values["current_step"] = "Failed"

        counter = _COUNTER_COLUMNS[status]
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.execution_id == execution_id,
                    Job.status == JobStatus.RUNNING.value,
                )
                .values(**job_values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            await session.execute(
                update(Execution)
                .where(Execution.id == execution_id)
                .values(
                    {
                        "running_jobs": Execution.running_jobs - 1,
                        counter: getattr(Execution, counter) + 1,
                        "last_activity_at": now,
                    }
                )
                .execution_options(synchronize_session=False)
            )
            if session_id is not None:
                await session.execute(
                    update(JobSession)
                    .where(JobSession.id == session_id)
                    .values(
                        status=status,
                        completed_at=now,
                        duration_ms=outcome.duration_ms,
                        retry_count=outcome.retry_count,
                        extracted_data=outcome.extracted_data,
                        raw_log=outcome.raw_log,
                        error_message=outcome.error_message,
                        failure_category=outcome.failure_category,
                        agent_run_id=outcome.agent_run_id,
                    )
                    .execution_options(synchronize_session=False)
                )
        return True

    async def fail_orphaned_jobs(
        self, execution_id: uuid.UUID, message: str, category: str
    ) -> int:
        """
        Fail jobs left running by a process that no longer exists.

        Counters are not touched here; call refresh_counters() afterwards.
        """
        now = utcnow_naive()
        db = await self._get_db()
        async with db.session() as session:
            result = await session.execute(
                update(Job)
                .where(Job.execution_id == execution_id, Job.status == JobStatus.RUNNING.value)
                .values(
                    status=JobStatus.ERROR.value,
                    error_message=message,
                    failure_category=category,
                    current_step="Failed",
                    completed_at=now,
                    last_activity_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(JobSession)
                .where(
                    JobSession.execution_id == execution_id,
                    JobSession.status == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.ERROR.value,
                    error_message=message,
                    failure_category=category,
                    completed_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

