"""
Job runner: executes one job against the agent with a retry policy.

Transient failures (timeout, network, rate limited) are retried with
jittered exponential backoff; everything else fails on the first attempt.
Every terminal failure is classified before it is returned.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from src.core.agents.base import (
    AgentError,
    AgentProgress,
    AgentRateLimited,
    AgentRequest,
    AgentResult,
    BaseAgent,
    CancelledByStop,
)
from src.core.config.settings import RetrySettings
from src.core.models.orchestration import EventType, Job, JobStatus
from src.core.primitives.failure_classifier import RATE_LIMITED, classify
from src.core.services.events import EventPublisher
from src.orchestrator.store import ExecutionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: ``base_delay * multiplier ** (attempt - 1)``,
    capped at ``max_delay``, plus up to ``jitter`` (fraction) random extra.

    ``max_attempts`` counts every agent call, the first one included.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    jitter: float = 0.25
    rate_limit_min_delay: float = 5.0

    def delay_for(
        self, attempt: int, rate_limited: bool = False, rng: random.Random | None = None
    ) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * self.multiplier ** max(0, attempt - 1), self.max_delay)
        delay += delay * self.jitter * (rng or random).random()
        if rate_limited:
            delay = max(delay, self.rate_limit_min_delay)
        return delay

    @classmethod
    def preset(cls, name: str) -> "RetryPolicy":
        try:
            return RETRY_PRESETS[name.lower()]
        except KeyError:
            raise ValueError(
                f"Unknown retry preset '{name}'. Available: {', '.join(RETRY_PRESETS)}"
            ) from None

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        """Start from the named preset and apply explicit overrides."""
        base = cls.preset(settings.preset)
        return cls(
            max_attempts=settings.max_attempts or base.max_attempts,
            base_delay=(
                settings.base_delay_seconds
                if settings.base_delay_seconds is not None
                else base.base_delay
            ),
            max_delay=(
                settings.max_delay_seconds
                if settings.max_delay_seconds is not None
                else base.max_delay
            ),
            multiplier=settings.multiplier if settings.multiplier is not None else base.multiplier,
            jitter=base.jitter,
            rate_limit_min_delay=settings.rate_limit_min_delay_seconds,
        )


RETRY_PRESETS: dict[str, RetryPolicy] = {
    "fast": RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=5.0, multiplier=2.0),
    "standard": RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, multiplier=2.0),
    "patient": RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=30.0, multiplier=2.0),
    "aggressive": RetryPolicy(max_attempts=10, base_delay=0.5, max_delay=60.0, multiplier=1.5),
}


@dataclass
class TerminalResult:
    """How a job ended, as reported by the runner."""

    status: JobStatus
    extracted_fields: dict[str, Any] | None = None
    raw_log: str = ""
    error_message: str | None = None
    failure_category: str | None = None
    suggested_fix: str | None = None
    attempts: int = 1
    retry_count: int = 0
    duration_ms: int = 0
    cancelled: bool = False
    run_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


class JobRunner:
    """
    Runs a single job to a terminal result.

    Usage:
        runner = JobRunner(agent, RetryPolicy.preset("standard"), store, publisher)
        result = await runner.run(job, execution_id, column_schema, stop_event)
    """

    def __init__(
        self,
        agent: BaseAgent,
        policy: RetryPolicy,
        store: ExecutionStore,
        publisher: EventPublisher,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.agent = agent
        self.policy = policy
        self.store = store
        self.publisher = publisher
        self._sleep = sleep

    async def _publish(self, event_type: EventType, job: Job, execution_id, **payload) -> None:
        try:
            await self.publisher.publish(
                event_type,
                execution_id=execution_id,
                batch_id=job.batch_id,
                job_id=job.id,
                payload=payload,
            )
        except Exception as e:
            logger.warning(f"Failed to publish {event_type.value} for job {job.id}: {e}")

    def _progress_callback(self, job: Job, execution_id):
        async def on_progress(progress: AgentProgress) -> None:
            # Advisory: a failed write must never fail the job
            try:
                await self.store.record_progress(job.id, progress.step, progress.percentage)
            except Exception as e:
                logger.warning(f"Failed to record progress for job {job.id}: {e}")
            await self._publish(
                EventType.JOB_PROGRESS,
                job,
                execution_id,
                currentStep=progress.step,
                progressPercentage=progress.percentage,
            )

        return on_progress

    async def _call_agent(
        self,
        request: AgentRequest,
        on_progress,
        stop_event: asyncio.Event,
    ) -> AgentResult:
        """Call the agent; a stop cancels the call when the agent supports it."""
        if not self.agent.supports_cancellation:
            return await self.agent.run(request, on_progress)
        if stop_event.is_set():
            raise CancelledByStop()

        agent_task = asyncio.create_task(self.agent.run(request, on_progress))
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {agent_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if agent_task in done:
                return agent_task.result()
            agent_task.cancel()
            await asyncio.wait({agent_task})
            raise CancelledByStop()
        finally:
            stop_task.cancel()
            if not agent_task.done():
                agent_task.cancel()

    async def _backoff(self, delay: float, stop_event: asyncio.Event) -> bool:
        """Wait ``delay`` seconds. Returns True if a stop arrived first."""
        if self._sleep is not None:
            await self._sleep(delay)
            return stop_event.is_set()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
            return True
        except TimeoutError:
            return False

    async def run(
        self,
        job: Job,
        execution_id,
        column_schema: list[dict[str, Any]],
        stop_event: asyncio.Event,
    ) -> TerminalResult:
        """
        Execute ``job`` until it succeeds, fails permanently or runs out of attempts.

        Args:
            job: The claimed (running) job.
            execution_id: Execution the job runs under.
            column_schema: Batch column schema passed to the agent.
            stop_event: Set when the execution is stopped.

        Returns:
            TerminalResult with status COMPLETED or ERROR.
        """
        request = AgentRequest(
            job_id=str(job.id),
            url=job.site_url,
            goal=job.goal,
            column_schema=column_schema,
        )
        on_progress = self._progress_callback(job, execution_id)
        started = time.monotonic()
        attempt = 0
        retry_count = 0

        while True:
            attempt += 1
            cancelled = False
            rate_limited = False
            run_id = None
            raw_log = ""
            try:
                result = await self._call_agent(request, on_progress, stop_event)
            except AgentError as e:
                error = e.message
                transient = e.transient
                cancelled = isinstance(e, CancelledByStop)
                rate_limited = isinstance(e, AgentRateLimited)
            else:
                run_id = result.run_id
                raw_log = result.raw_log
                if result.succeeded:
                    return TerminalResult(
                        status=JobStatus.COMPLETED,
                        extracted_fields=result.extracted_fields or {},
                        raw_log=raw_log,
                        attempts=attempt,
                        retry_count=retry_count,
                        duration_ms=int((time.monotonic() - started) * 1000),
                        run_id=run_id,
                    )
                error = result.error
                transient = classify(error).transient

            classification = classify(error)
            rate_limited = rate_limited or classification.category == RATE_LIMITED
            exhausted = attempt >= self.policy.max_attempts

            if cancelled or not transient or exhausted or stop_event.is_set():
                if transient and exhausted:
                    logger.warning(
                        f"Job {job.id} failed after {attempt} attempts: {error}"
                    )
                return TerminalResult(
                    status=JobStatus.ERROR,
                    raw_log=raw_log,
                    error_message=error,
                    failure_category=classification.category,
                    suggested_fix=classification.suggested_fix,
                    attempts=attempt,
                    retry_count=retry_count,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    cancelled=cancelled,
                    run_id=run_id,
                )

            retry_count += 1
            delay = self.policy.delay_for(attempt, rate_limited=rate_limited)
            logger.info(
                f"Retrying job {job.id} in {delay:.1f}s "
                f"(attempt {attempt}/{self.policy.max_attempts}): {error}"
            )
            try:
                await self.store.record_retry(job.id, job.latest_session_id, error)
            except Exception as e:
                logger.warning(f"Failed to record retry for job {job.id}: {e}")
            await self._publish(
                EventType.JOB_RETRY,
                job,
                execution_id,
                attempt=attempt,
                retryCount=retry_count,
                delaySeconds=round(delay, 2),
                reason=error,
                failureCategory=classification.category,
            )

            if await self._backoff(delay, stop_event):
                stopped = CancelledByStop()
                classification = classify(stopped.message)
                return TerminalResult(
                    status=JobStatus.ERROR,
                    error_message=stopped.message,
                    failure_category=classification.category,
                    suggested_fix=classification.suggested_fix,
                    attempts=attempt,
                    retry_count=retry_count,
                    duration_ms=int((time.monotonic() - started) * 1000),
                    cancelled=True,
                )
