"""
SQLAlchemy models for batch extraction orchestration.

A Batch is an uploaded table of rows; each row becomes a Job. An Execution
is one run over a batch's queued jobs, and every agent call made for a job
is recorded as a JobSession. State changes are appended to the
ExecutionEvent log; MetricsSnapshot rows version the batch's accuracy.
"""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.core.storage.postgres import Base
from src.core.utils.time import utcnow_naive

# JSONB on PostgreSQL, plain JSON elsewhere
JsonType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

# Integer on sqlite so the primary key is a rowid alias and autoincrements
EventId = BigInteger().with_variant(Integer(), "sqlite")


class JobStatus(str, enum.Enum):
    """Lifecycle of a single job. Only a rerun moves a job backwards."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ExecutionStatus(str, enum.Enum):
    """Lifecycle of an execution. STOPPED and COMPLETED are terminal."""

    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"


ACTIVE_EXECUTION_STATUSES = (ExecutionStatus.RUNNING.value, ExecutionStatus.PAUSED.value)
TERMINAL_EXECUTION_STATUSES = (ExecutionStatus.STOPPED.value, ExecutionStatus.COMPLETED.value)


class ExecutionType(str, enum.Enum):
    """A test execution runs a sample of the queued jobs, production runs all."""

    TEST = "test"
    PRODUCTION = "production"


class Evaluation(str, enum.Enum):
    """Ground-truth verdict for a completed job."""

    PASS = "pass"
    FAIL = "fail"


class EventType(str, enum.Enum):
    """Types recorded in the execution event log."""

    EXECUTION_STARTED = "execution.started"
    EXECUTION_PAUSED = "execution.paused"
    EXECUTION_RESUMED = "execution.resumed"
    EXECUTION_STOPPED = "execution.stopped"
    EXECUTION_COMPLETED = "execution.completed"
    CONCURRENCY_CHANGED = "execution.concurrency_changed"
    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    JOB_RETRY = "job.retry"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"


class Batch(Base):
    """
    Uploaded table of extraction targets.

    ``column_schema`` is a list of ``{name, type, isGroundTruth, isUrl}``
    dicts. Only the accuracy fields change once jobs exist.
    """

    __tablename__ = "batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    goal: Mapped[str | None] = mapped_column(Text, nullable=True)
    column_schema: Mapped[list[dict[str, Any]]] = mapped_column(
        JsonType, nullable=False, default=list
    )
    ground_truth_columns: Mapped[list[str]] = mapped_column(
        JsonType, nullable=False, default=list
    )
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    overall_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy_updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow_naive
    )

    @property
    def has_ground_truth(self) -> bool:
        return bool(self.ground_truth_column_names())

    def ground_truth_column_names(self) -> list[str]:
        """Union of declared ground-truth columns and schema columns flagged as such."""
        names = list(self.ground_truth_columns or [])
        for column in self.column_schema or []:
            if column.get("isGroundTruth") and column.get("name") not in names:
                names.append(column["name"])
        return names

    def __repr__(self) -> str:
        return f"<Batch(name='{self.name}', jobs={self.total_jobs})>"


class Job(Base):
    """One row of a batch, executed through the agent."""

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False
    )
    execution_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("executions.id", ondelete="SET NULL"), nullable=True
    )
    row_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    site_url: Mapped[str] = mapped_column(Text, nullable=False)
    goal: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value
    )
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_step: Mapped[str | None] = mapped_column(String(500), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ground_truth: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    evaluation_result: Mapped[str | None] = mapped_column(String(10), nullable=True)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    field_results: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JsonType, nullable=True
    )
    latest_session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow_naive
    )

    __table_args__ = (
        Index("ix_jobs_batch_id_status", "batch_id", "status"),
        Index("ix_jobs_execution_id_status", "execution_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Job(url='{self.site_url}', status='{self.status}')>"


class JobSession(Base):
    """Record of one dispatch of a job to the agent, retries included."""

    __tablename__ = "job_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    execution_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.RUNNING.value
    )
    agent_run_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    raw_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow_naive
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (Index("ix_job_sessions_job_id", "job_id"),)

    def __repr__(self) -> str:
        return f"<JobSession(job_id='{self.job_id}', status='{self.status}')>"


class Execution(Base):
    """
    One orchestrated run over a batch's queued jobs.

    Counters are maintained in the same transaction as the job status
    change they reflect, so ``queued + running + completed + error``
    always equals ``total_jobs``.
    """

    __tablename__ = "executions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False
    )
    execution_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExecutionType.TEST.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ExecutionStatus.RUNNING.value
    )
    concurrency: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    queued_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    running_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow_naive
    )
    paused_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    stopped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    stop_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # At most one running or paused execution per batch
        Index(
            "uq_executions_active_batch",
            "batch_id",
            unique=True,
            postgresql_where=text("status IN ('running', 'paused')"),
            sqlite_where=text("status IN ('running', 'paused')"),
        ),
        Index("ix_executions_batch_id", "batch_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def __repr__(self) -> str:
        return f"<Execution(batch_id='{self.batch_id}', status='{self.status}')>"


class ExecutionEvent(Base):
    """
    Append-only log entry. The integer id doubles as the stream cursor.

    No foreign keys: the log outlives deleted jobs and is pruned only by
    retention cleanup.
    """

    __tablename__ = "execution_events"

    id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    execution_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow_naive
    )

    __table_args__ = (
        Index("ix_execution_events_execution_id", "execution_id", "id"),
        Index("ix_execution_events_batch_id", "batch_id", "id"),
        Index("ix_execution_events_job_id", "job_id"),
        Index("ix_execution_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ExecutionEvent(id={self.id}, type='{self.event_type}')>"


class MetricsSnapshot(Base):
    """Immutable point-in-time accuracy record for a batch."""

    __tablename__ = "metrics_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("batches.id", ondelete="CASCADE"), nullable=False
    )
    execution_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    overall_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    jobs_evaluated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    exact_matches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    partial_matches: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    column_metrics: Mapped[list[dict[str, Any]]] = mapped_column(
        JsonType, nullable=False, default=list
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow_naive
    )

    __table_args__ = (Index("ix_metrics_snapshots_batch_id", "batch_id", "created_at"),)

    def __repr__(self) -> str:
        return (
            f"<MetricsSnapshot(batch_id='{self.batch_id}', "
            f"accuracy={self.overall_accuracy})>"
        )
