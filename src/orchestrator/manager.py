"""
Execution manager: owns the live controllers of this process.

API routes and the startup recovery go through the manager; it creates
executions, routes commands to the controller that drives them and builds
the stats view.
"""

import asyncio
import logging
import uuid
from typing import Any, Iterable

from src.core.agents.base import BaseAgent
from src.core.config.settings import OrchestratorSettings
from src.core.models.orchestration import (
    Batch,
    EventType,
    Execution,
    ExecutionType,
    JobStatus,
)
from src.core.primitives.failure_classifier import classify
from src.core.services.events import EventPublisher
from src.core.services.metrics import MetricsAggregator
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database
from src.core.utils.time import seconds_since, to_iso, utcnow_naive
from src.orchestrator.controller import ExecutionCommands, ExecutionController
from src.orchestrator.errors import ActiveExecutionExistsError, BulkOperationError
from src.orchestrator.runner import JobRunner, RetryPolicy
from src.orchestrator.store import ExecutionStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Job interrupted by service restart"


def _progress(execution: Execution) -> float:
    if not execution.total_jobs:
        return 0.0
    finished = execution.completed_jobs + execution.error_jobs
    return round(finished / execution.total_jobs * 100, 1)


def _estimated_seconds_remaining(execution: Execution) -> float | None:
    """``elapsed / finished * remaining``; None until something has finished."""
    finished = execution.completed_jobs + execution.error_jobs
    remaining = execution.queued_jobs + execution.running_jobs
    if not finished or execution.started_at is None:
        return None
    if not remaining:
        return 0.0
    end = execution.completed_at or execution.stopped_at
    elapsed = seconds_since(execution.started_at, now=end)
    return round(elapsed / finished * remaining, 1)


class ExecutionManager:
    """
    Creates executions and routes commands to their controllers.

    Usage:
        manager = ExecutionManager(db, publisher, agent, settings)
        await manager.recover()

        execution = await manager.create_execution(batch_id, "test")
        await manager.pause(execution.id)
        stats = await manager.get_stats(execution.id)

        await manager.shutdown()
    """

    def __init__(
        self,
        db: Database,
        publisher: EventPublisher,
        agent: BaseAgent,
        settings: OrchestratorSettings | None = None,
        policy: RetryPolicy | None = None,
        sleep=None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.store = ExecutionStore(db)
        self.publisher = publisher
        self.metrics = MetricsAggregator(db)
        self.agent = agent
        self.policy = policy or RetryPolicy.from_settings(self.settings.retry)
        self.commands = ExecutionCommands(self.store, publisher)
        self._sleep = sleep
        self._controllers: dict[uuid.UUID, ExecutionController] = {}

    # -------------------------------------------------------------------------
    # Controllers
    # -------------------------------------------------------------------------

    def get_controller(self, execution_id: uuid.UUID) -> ExecutionController | None:
        return self._controllers.get(execution_id)

    @property
    def active_controllers(self) -> int:
        return len(self._controllers)

    def _on_closed(self, controller: ExecutionController) -> None:
        self._controllers.pop(controller.execution_id, None)

    def _start_controller(self, execution: Execution, batch: Batch) -> ExecutionController:
        runner = JobRunner(self.agent, self.policy, self.store, self.publisher, sleep=self._sleep)
        controller = ExecutionController(
            execution,
            batch,
            self.store,
            self.publisher,
            runner,
            self.metrics,
            on_closed=self._on_closed,
        )
        self._controllers[execution.id] = controller
        controller.start()
        return controller

    async def wait_for(self, execution_id: uuid.UUID, timeout: float | None = None) -> None:
        """Wait until the execution's controller has closed."""
        controller = self._controllers.get(execution_id)
        if controller is not None:
            await asyncio.wait_for(controller.wait_closed(), timeout=timeout)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _clamp_concurrency(self, concurrency: int | None) -> int:
        limits = self.settings.execution
        if concurrency is None:
            return limits.default_concurrency
        return max(limits.min_concurrency, min(limits.max_concurrency, concurrency))

    async def create_execution(
        self,
        batch_id: uuid.UUID,
        execution_type: str = ExecutionType.TEST.value,
        concurrency: int | None = None,
        sample_size: int | None = None,
        job_ids: Iterable[uuid.UUID] | None = None,
        reset_jobs: bool = False,
    ) -> Execution:
        """
        Create an execution and start dispatching it.

        A test execution runs a sample of the batch's queued jobs
        (``sample_size``, default from settings); a production execution
        runs all of them.

        Raises:
            NotFoundError: Unknown batch.
            ActiveExecutionExistsError: The batch already has an active execution.
            NothingToRunError: No queued jobs to run.
        """
        execution_type = ExecutionType(execution_type).value
        if execution_type == ExecutionType.TEST.value and job_ids is None:
            sample_size = sample_size or self.settings.execution.default_sample_size
        else:
            sample_size = None

        batch = await self.store.get_batch(batch_id)
        execution = await self.store.create_execution(
            batch_id,
            execution_type,
            self._clamp_concurrency(concurrency),
            sample_size=sample_size,
            job_ids=job_ids,
            reset_jobs=reset_jobs,
        )
        await self.commands.emit(
            EventType.EXECUTION_STARTED,
            execution.id,
            batch_id,
            executionType=execution_type,
            totalJobs=execution.total_jobs,
            concurrency=execution.concurrency,
        )
        self._start_controller(execution, batch)
        return execution

    async def pause(self, execution_id: uuid.UUID) -> Execution:
        controller = self._controllers.get(execution_id)
        if controller is not None:
            return await controller.pause()
        execution, _ = await self.commands.pause(execution_id)
        return execution

    async def resume(self, execution_id: uuid.UUID) -> Execution:
        controller = self._controllers.get(execution_id)
        if controller is not None:
            return await controller.resume()
        execution, _ = await self.commands.resume(execution_id)
        return execution

    async def stop(self, execution_id: uuid.UUID, reason: str | None = None) -> Execution:
        controller = self._controllers.get(execution_id)
        if controller is not None:
            return await controller.stop(reason)
        execution, _ = await self.commands.stop(execution_id, reason)
        return execution

    async def set_concurrency(self, execution_id: uuid.UUID, concurrency: int) -> Execution:
        concurrency = self._clamp_concurrency(concurrency)
        controller = self._controllers.get(execution_id)
        if controller is not None:
            return await controller.set_concurrency(concurrency)
        execution, _ = await self.commands.set_concurrency(execution_id, concurrency)
        return execution

    async def bulk_rerun(self, job_ids: list[uuid.UUID]) -> Execution:
        """
        Reset finished jobs to queued and run them in a new production execution.

        Raises:
            BulkOperationError: Unknown jobs, running jobs, or jobs from
                more than one batch.
            ActiveExecutionExistsError: The batch already has an active execution.
        """
        ids = list(dict.fromkeys(job_ids))
        if not ids:
            raise BulkOperationError("rerun", [{"jobId": None, "reason": "No jobs given"}])
        jobs = {job.id: job for job in await self.store.get_jobs(ids)}

        rejected: list[dict[str, Any]] = []
        for job_id in ids:
            job = jobs.get(job_id)
            if job is None:
                rejected.append({"jobId": str(job_id), "reason": "Job not found"})
            elif job.status == JobStatus.RUNNING.value:
                rejected.append({"jobId": str(job_id), "reason": "Job is running"})
        batch_ids = {job.batch_id for job in jobs.values()}
        if len(batch_ids) > 1:
            rejected.extend(
                {"jobId": str(job.id), "reason": "Jobs belong to different batches"}
                for job in jobs.values()
            )
        if rejected:
            raise BulkOperationError("rerun", rejected)

        batch_id = batch_ids.pop()
        active = await self.store.find_active(batch_id)
        if active is not None:
            raise ActiveExecutionExistsError(batch_id, active)

        logger.info(f"Rerun of {len(ids)} job(s) in batch {batch_id}")
        # Reset and creation share one transaction, so a lost race keeps old results
        return await self.create_execution(
            batch_id, ExecutionType.PRODUCTION.value, job_ids=ids, reset_jobs=True
        )

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    async def get_execution(self, execution_id: uuid.UUID) -> Execution:
        return await self.store.get_execution(execution_id)

    async def get_stats(self, execution_id: uuid.UUID) -> dict[str, Any]:
        """Counters, progress, ETA, live running jobs and pass rate."""
        execution = await self.store.get_execution(execution_id)
        limits = self.settings.execution
        running = await self.store.running_jobs(execution_id, limit=limits.running_jobs_limit)
        evaluations = await self.evaluation_summary(execution_id)
        now = utcnow_naive()

        return {
            "executionId": str(execution.id),
            "batchId": str(execution.batch_id),
            "status": execution.status,
            "concurrency": execution.concurrency,
            "totalJobs": execution.total_jobs,
            "queuedJobs": execution.queued_jobs,
            "runningJobs": execution.running_jobs,
            "completedJobs": execution.completed_jobs,
            "errorJobs": execution.error_jobs,
            "progressPercentage": _progress(execution),
            "estimatedTimeRemaining": _estimated_seconds_remaining(execution),
            "startedAt": to_iso(execution.started_at),
            "lastActivityAt": to_iso(execution.last_activity_at),
            "runningJobsList": [
                {
                    "jobId": str(job.id),
                    "siteUrl": job.site_url,
                    "currentStep": job.current_step,
                    "progressPercentage": job.progress_percentage,
                    "retryCount": job.retry_count,
                    "startedAt": to_iso(job.started_at),
                    "lastActivityAt": to_iso(job.last_activity_at),
                    "stalled": (
                        job.last_activity_at is not None
                        and seconds_since(job.last_activity_at, now=now)
                        > limits.stale_after_seconds
                    ),
                }
                for job in running
            ],
            **evaluations,
        }

    async def evaluation_summary(self, execution_id: uuid.UUID) -> dict[str, Any]:
        counts = await self.store.evaluation_counts(execution_id)
        passed = counts.get("pass", 0)
        failed = counts.get("fail", 0)
        evaluated = passed + failed
        return {
            "evaluatedJobs": evaluated,
            "passedJobs": passed,
            "failedJobs": failed,
            "passRate": round(passed / evaluated * 100, 1) if evaluated else None,
        }

    # -------------------------------------------------------------------------
    # Startup / shutdown
    # -------------------------------------------------------------------------

    async def recover(self) -> int:
        """
        Reattach controllers to executions left active by a previous process.

        Jobs that process left running cannot be resumed: they are failed
        as interrupted and the counters are recomputed from the job table.
        Paused executions stay paused. Returns the number recovered.
        """
        recovered = 0
        category = classify(INTERRUPTED_MESSAGE).category
        for execution in await self.store.list_active():
            if execution.id in self._controllers:
                continue
            try:
                orphaned = await self.store.fail_orphaned_jobs(
                    execution.id, INTERRUPTED_MESSAGE, category
                )
                execution = await self.store.refresh_counters(execution.id)
                batch = await self.store.get_batch(execution.batch_id)
            except NotFoundError as e:
                logger.error(f"Cannot recover execution {execution.id}: {e}")
                continue

            if orphaned:
                logger.warning(
                    f"Execution {execution.id}: failed {orphaned} job(s) interrupted by restart"
                )
            self._start_controller(execution, batch)
            recovered += 1

        if recovered:
            logger.info(f"Recovered {recovered} active execution(s)")
        return recovered

    async def shutdown(self) -> None:
        """Detach every controller; persisted state is left for recover()."""
        controllers = list(self._controllers.values())
        for controller in controllers:
            await controller.detach()
        self._controllers.clear()
        if controllers:
            logger.info(f"Detached {len(controllers)} execution controller(s)")
