"""
Execution controller: the per-execution state machine and dispatch loop.

States: running (initial), paused, stopped, completed. Stopped and
completed are terminal. While running, the controller keeps
``min(concurrency, queued)`` jobs in flight; a limit change applies at the
next dispatch decision. Dispatch (queued -> running) happens only in this
controller's loop, so there is a single writer per execution.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable

from src.core.models.orchestration import (
    ACTIVE_EXECUTION_STATUSES,
    Batch,
    EventType,
    Execution,
    ExecutionStatus,
    Job,
    JobStatus,
)
from src.core.primitives.accuracy import score_job
from src.core.primitives.failure_classifier import classify
from src.core.services.events import EventPublisher
from src.core.services.metrics import MetricsAggregator
from src.core.utils.time import utcnow_naive
from src.orchestrator.errors import InvalidTransitionError
from src.orchestrator.runner import JobRunner, TerminalResult
from src.orchestrator.store import ExecutionStore, JobOutcome

logger = logging.getLogger(__name__)

DEFAULT_STOP_REASON = "User stopped execution"

# Pause before retrying after the store itself failed
STORE_FAILURE_BACKOFF_SECONDS = 1.0


class ExecutionCommands:
    """
    Persisted state transitions, shared by live controllers and by the
    manager for executions that have no controller in this process.

    Every method returns ``(execution, changed)``; commands that are
    already satisfied are no-ops, commands the state forbids raise
    InvalidTransitionError carrying the current execution.
    """

    def __init__(self, store: ExecutionStore, publisher: EventPublisher) -> None:
        self.store = store
        self.publisher = publisher

    async def emit(
        self,
        event_type: EventType,
        execution_id: uuid.UUID,
        batch_id: uuid.UUID,
        job_id: uuid.UUID | None = None,
        **payload: Any,
    ) -> None:
        """Publish an event; a failed publish is logged, never raised."""
        try:
            await self.publisher.publish(
                event_type,
                execution_id=execution_id,
                batch_id=batch_id,
                job_id=job_id,
                payload=payload,
            )
        except Exception as e:
            logger.warning(f"Failed to publish {event_type.value} for {execution_id}: {e}")

    async def _emit(self, event_type: EventType, execution: Execution, **payload: Any) -> None:
        await self.emit(event_type, execution.id, execution.batch_id, **payload)

    async def pause(self, execution_id: uuid.UUID) -> tuple[Execution, bool]:
        now = utcnow_naive()
        execution = await self.store.transition(
            execution_id,
            [ExecutionStatus.RUNNING.value],
            status=ExecutionStatus.PAUSED.value,
            paused_at=now,
            last_activity_at=now,
        )
        if execution is None:
            current = await self.store.get_execution(execution_id)
            if current.status == ExecutionStatus.PAUSED.value:
                return current, False
            raise InvalidTransitionError("pause", current)

        logger.info(f"Execution {execution_id} paused")
        await self._emit(EventType.EXECUTION_PAUSED, execution, pausedAt=now.isoformat())
        return execution, True

    async def resume(self, execution_id: uuid.UUID) -> tuple[Execution, bool]:
        now = utcnow_naive()
        execution = await self.store.transition(
            execution_id,
            [ExecutionStatus.PAUSED.value],
            status=ExecutionStatus.RUNNING.value,
            resumed_at=now,
            last_activity_at=now,
        )
        if execution is None:
            current = await self.store.get_execution(execution_id)
            if current.status == ExecutionStatus.RUNNING.value:
                return current, False
            raise InvalidTransitionError("resume", current)

        logger.info(f"Execution {execution_id} resumed")
        await self._emit(EventType.EXECUTION_RESUMED, execution, resumedAt=now.isoformat())
        return execution, True

    async def stop(
        self, execution_id: uuid.UUID, reason: str | None = None
    ) -> tuple[Execution, bool]:
        reason = reason or DEFAULT_STOP_REASON
        now = utcnow_naive()
        execution = await self.store.transition(
            execution_id,
            ACTIVE_EXECUTION_STATUSES,
            status=ExecutionStatus.STOPPED.value,
            stopped_at=now,
            stop_reason=reason,
            last_activity_at=now,
        )
        if execution is None:
            raise InvalidTransitionError("stop", await self.store.get_execution(execution_id))

        logger.info(f"Execution {execution_id} stopped: {reason}")
        await self._emit(
            EventType.EXECUTION_STOPPED,
            execution,
            reason=reason,
            notRun=execution.queued_jobs,
            inFlight=execution.running_jobs,
        )
        return execution, True

    async def set_concurrency(
        self, execution_id: uuid.UUID, concurrency: int
    ) -> tuple[Execution, bool]:
        current = await self.store.get_execution(execution_id)
        if current.status not in ACTIVE_EXECUTION_STATUSES:
            raise InvalidTransitionError("change concurrency of", current)
        old = current.concurrency
        if old == concurrency:
            return current, False

        execution = await self.store.transition(
            execution_id, ACTIVE_EXECUTION_STATUSES, concurrency=concurrency
        )
        if execution is None:
            raise InvalidTransitionError(
                "change concurrency of", await self.store.get_execution(execution_id)
            )

        logger.info(f"Execution {execution_id} concurrency {old} -> {concurrency}")
        await self._emit(
            EventType.CONCURRENCY_CHANGED,
            execution,
            oldConcurrency=old,
            newConcurrency=concurrency,
        )
        return execution, True


class ExecutionController:
    """
    Drives one execution: dispatches queued jobs through the runner under
    an adjustable concurrency limit and records every terminal result.

    Usage:
        controller = ExecutionController(execution, batch, store, publisher, runner, metrics)
        controller.start()
        await controller.pause()
        await controller.set_concurrency(10)
        await controller.resume()
        await controller.wait_closed()
    """

    def __init__(
        self,
        execution: Execution,
        batch: Batch,
        store: ExecutionStore,
        publisher: EventPublisher,
        runner: JobRunner,
        metrics: MetricsAggregator,
        on_closed: Callable[["ExecutionController"], None] | None = None,
    ) -> None:
        self.execution_id = execution.id
        self.batch_id = execution.batch_id
        self.batch = batch
        self.store = store
        self.publisher = publisher
        self.runner = runner
        self.metrics = metrics
        self.commands = ExecutionCommands(store, publisher)
        self._on_closed = on_closed

        self._concurrency = execution.concurrency
        self._paused = execution.status == ExecutionStatus.PAUSED.value
        self._stop_requested = execution.status not in ACTIVE_EXECUTION_STATUSES
        self._exhausted = False
        self._in_flight: set[asyncio.Task] = set()
        self._condition = asyncio.Condition()
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()
        self._task: asyncio.Task | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_closed(self) -> bool:
        return self._task is not None and self._task.done()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._dispatch_loop(), name=f"execution-{self.execution_id}"
            )

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)

    async def detach(self) -> None:
        """
        Abandon the execution without changing its persisted state.

        Used on process shutdown; jobs left running are recovered on the
        next start.
        """
        tasks = list(self._in_flight)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Commands
    #
    # Commands hold the dispatch lock while they persist, so every claim
    # lands strictly before or after an acknowledged command.
    # -------------------------------------------------------------------------

    async def pause(self) -> Execution:
        async with self._condition:
            execution, _ = await self.commands.pause(self.execution_id)
            self._paused = True
            self._condition.notify_all()
        return execution

    async def resume(self) -> Execution:
        async with self._condition:
            execution, _ = await self.commands.resume(self.execution_id)
            self._paused = False
            self._condition.notify_all()
        return execution

    async def stop(self, reason: str | None = None) -> Execution:
        async with self._condition:
            execution, _ = await self.commands.stop(self.execution_id, reason)
            self._stop_requested = True
            self._stop_event.set()
            self._condition.notify_all()
        return execution

    async def set_concurrency(self, concurrency: int) -> Execution:
        async with self._condition:
            execution, _ = await self.commands.set_concurrency(self.execution_id, concurrency)
            self._concurrency = execution.concurrency
            self._condition.notify_all()
        return execution

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _can_act(self) -> bool:
        if self._stop_requested:
            return True
        if self._paused:
            return False
        if self._exhausted:
            return not self._in_flight
        return len(self._in_flight) < self._concurrency

    async def _dispatch_loop(self) -> None:
        logger.info(
            f"Dispatching execution {self.execution_id} (concurrency={self._concurrency})"
        )
        try:
            while True:
                claim_failed = False
                async with self._condition:
                    await self._condition.wait_for(self._can_act)
                    if self._stop_requested or self._exhausted:
                        break
                    try:
                        job = await self.store.claim_next_job(self.execution_id)
                    except Exception as e:
                        logger.error(
                            f"Failed to claim a job for execution {self.execution_id}: {e}",
                            exc_info=True,
                        )
                        claim_failed = True
                    else:
                        if job is None:
                            self._exhausted = True
                        else:
                            self._spawn(job)

                if claim_failed:
                    await asyncio.sleep(STORE_FAILURE_BACKOFF_SECONDS)

            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)

            if not self._stop_requested:
                await self._complete()
        finally:
            self.publisher.release(self.execution_id)
            if self._on_closed is not None:
                self._on_closed(self)
            logger.info(f"Controller for execution {self.execution_id} closed")

    def _spawn(self, job: Job) -> None:
        task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
        self._in_flight.add(task)

    async def _run_job(self, job: Job) -> None:
        try:
            await self.commands.emit(
                EventType.JOB_STARTED,
                self.execution_id,
                self.batch_id,
                job.id,
                siteUrl=job.site_url,
                rowIndex=job.row_index,
            )
            result = await self.runner.run(
                job, self.execution_id, self.batch.column_schema or [], self._stop_event
            )
            await self._record(job, result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Job {job.id} crashed: {e}", exc_info=True)
            await self._record_crash(job, e)
        finally:
            async with self._condition:
                self._in_flight.discard(asyncio.current_task())
                self._condition.notify_all()

    def _score(self, job: Job, result: TerminalResult) -> dict[str, Any]:
        if not result.succeeded or not job.ground_truth:
            return {}
        score = score_job(
            result.extracted_fields,
            job.ground_truth,
            columns=self.batch.ground_truth_column_names() or None,
        )
        if score.accuracy is None:
            return {}
        return {
            "evaluation": score.evaluation,
            "accuracy": score.accuracy,
            "field_results": [field.to_dict() for field in score.fields],
        }

    async def _record(self, job: Job, result: TerminalResult) -> None:
        scored = self._score(job, result)
        outcome = JobOutcome(
            status=result.status,
            extracted_data=result.extracted_fields,
            raw_log=result.raw_log,
            error_message=result.error_message,
            failure_category=result.failure_category,
            retry_count=result.retry_count,
            duration_ms=result.duration_ms,
            agent_run_id=result.run_id,
            **scored,
        )
        recorded = await self.store.finish_job(
            job.id, self.execution_id, job.latest_session_id, outcome
        )
        if not recorded:
            logger.warning(f"Result for job {job.id} discarded: job is no longer running")
            return

        if result.succeeded:
            await self.commands.emit(
                EventType.JOB_COMPLETED,
                self.execution_id,
                self.batch_id,
                job.id,
                durationMs=result.duration_ms,
                retryCount=result.retry_count,
                evaluation=scored.get("evaluation"),
                accuracy=scored.get("accuracy"),
            )
        else:
            await self.commands.emit(
                EventType.JOB_FAILED,
                self.execution_id,
                self.batch_id,
                job.id,
                error=result.error_message,
                failureCategory=result.failure_category,
                suggestedFix=result.suggested_fix,
                retryCount=result.retry_count,
                cancelled=result.cancelled,
            )

    async def _record_crash(self, job: Job, error: Exception) -> None:
        message = f"Internal error: {error}"
        try:
            await self.store.finish_job(
                job.id,
                self.execution_id,
                job.latest_session_id,
                JobOutcome(
                    status=JobStatus.ERROR,
                    error_message=message,
                    failure_category=classify(message).category,
                ),
            )
        except Exception as e:
            logger.error(f"Could not record crash of job {job.id}: {e}", exc_info=True)

    async def _complete(self) -> None:
        execution = await self.store.try_complete(self.execution_id)
        if execution is None:
            return

        logger.info(
            f"Execution {self.execution_id} completed: "
            f"{execution.completed_jobs} completed, {execution.error_jobs} failed"
        )
        snapshot_id = None
        if self.batch.has_ground_truth:
            try:
                snapshot = await self.metrics.create_snapshot(
                    self.batch_id,
                    execution_id=self.execution_id,
                    notes="Automatic snapshot on execution completion",
                )
                snapshot_id = str(snapshot.id)
            except Exception as e:
                logger.error(
                    f"Metrics snapshot failed for execution {self.execution_id}: {e}",
                    exc_info=True,
                )

        await self.commands._emit(
            EventType.EXECUTION_COMPLETED,
            execution,
            totalJobs=execution.total_jobs,
            completedJobs=execution.completed_jobs,
            errorJobs=execution.error_jobs,
            snapshotId=snapshot_id,
        )
