"""Create orchestration tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create batches, executions, jobs, job_sessions, execution_events and metrics_snapshots."""
    op.create_table(
        "batches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("goal", sa.Text(), nullable=True),
        sa.Column("column_schema", JSONB, nullable=False, server_default="[]"),
        sa.Column("ground_truth_columns", JSONB, nullable=False, server_default="[]"),
        sa.Column("total_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("overall_accuracy", sa.Float(), nullable=True),
        sa.Column("accuracy_updated_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "executions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "batch_id",
            UUID(as_uuid=True),
            sa.ForeignKey("batches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("execution_type", sa.String(20), nullable=False, server_default="test"),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("concurrency", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("total_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("queued_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("running_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("paused_at", sa.DateTime(), nullable=True),
        sa.Column("resumed_at", sa.DateTime(), nullable=True),
        sa.Column("stopped_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("stop_reason", sa.Text(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_executions_batch_id", "executions", ["batch_id"])
    op.create_index(
        "uq_executions_active_batch",
        "executions",
        ["batch_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('running', 'paused')"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "batch_id",
            UUID(as_uuid=True),
            sa.ForeignKey("batches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "execution_id",
            UUID(as_uuid=True),
            sa.ForeignKey("executions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("row_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("site_url", sa.Text(), nullable=False),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("progress_percentage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_step", sa.String(500), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_reason", sa.Text(), nullable=True),
        sa.Column("ground_truth", JSONB, nullable=True),
        sa.Column("extracted_data", JSONB, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failure_category", sa.String(50), nullable=True),
        sa.Column("evaluation_result", sa.String(10), nullable=True),
        sa.Column("accuracy", sa.Float(), nullable=True),
        sa.Column("field_results", JSONB, nullable=True),
        sa.Column("latest_session_id", UUID(as_uuid=True), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_batch_id_status", "jobs", ["batch_id", "status"])
    op.create_index("ix_jobs_execution_id_status", "jobs", ["execution_id", "status"])

    op.create_table(
        "job_sessions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            UUID(as_uuid=True),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("execution_id", UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("agent_run_id", sa.String(100), nullable=True),
        sa.Column("extracted_data", JSONB, nullable=True),
        sa.Column("raw_log", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failure_category", sa.String(50), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
    )
    op.create_index("ix_job_sessions_job_id", "job_sessions", ["job_id"])

    op.create_table(
        "execution_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("execution_id", UUID(as_uuid=True), nullable=True),
        sa.Column("batch_id", UUID(as_uuid=True), nullable=True),
        sa.Column("job_id", UUID(as_uuid=True), nullable=True),
        sa.Column("payload", JSONB, nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_execution_events_execution_id", "execution_events", ["execution_id", "id"]
    )
    op.create_index("ix_execution_events_batch_id", "execution_events", ["batch_id", "id"])
    op.create_index("ix_execution_events_job_id", "execution_events", ["job_id"])
    op.create_index("ix_execution_events_created_at", "execution_events", ["created_at"])

    op.create_table(
        "metrics_snapshots",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "batch_id",
            UUID(as_uuid=True),
            sa.ForeignKey("batches.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("execution_id", UUID(as_uuid=True), nullable=True),
        sa.Column("overall_accuracy", sa.Float(), nullable=True),
        sa.Column("total_jobs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_evaluated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("exact_matches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("partial_matches", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("column_metrics", JSONB, nullable=False, server_default="[]"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_metrics_snapshots_batch_id", "metrics_snapshots", ["batch_id", "created_at"]
    )


def downgrade() -> None:
    """Drop all orchestration tables."""
    op.drop_index("ix_metrics_snapshots_batch_id", table_name="metrics_snapshots")
    op.drop_table("metrics_snapshots")
    op.drop_index("ix_execution_events_created_at", table_name="execution_events")
    op.drop_index("ix_execution_events_job_id", table_name="execution_events")
    op.drop_index("ix_execution_events_batch_id", table_name="execution_events")
    op.drop_index("ix_execution_events_execution_id", table_name="execution_events")
    op.drop_table("execution_events")
    op.drop_index("ix_job_sessions_job_id", table_name="job_sessions")
    op.drop_table("job_sessions")
    op.drop_index("ix_jobs_execution_id_status", table_name="jobs")
    op.drop_index("ix_jobs_batch_id_status", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("uq_executions_active_batch", table_name="executions")
    op.drop_index("ix_executions_batch_id", table_name="executions")
    op.drop_table("executions")
    op.drop_table("batches")
