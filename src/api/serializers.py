"""JSON views of ORM rows for the REST API (camelCase keys, ISO timestamps)."""

from typing import Any

from src.core.models.orchestration import Batch, Execution, Job, JobSession
from src.core.primitives.failure_classifier import suggested_fix_for
from src.core.utils.time import to_iso


def _id(value) -> str | None:
    return str(value) if value is not None else None


def execution_to_dict(execution: Execution) -> dict[str, Any]:
    return {
        "id": str(execution.id),
        "batchId": str(execution.batch_id),
        "executionType": execution.execution_type,
        "status": execution.status,
        "concurrency": execution.concurrency,
        "totalJobs": execution.total_jobs,
        "queuedJobs": execution.queued_jobs,
        "runningJobs": execution.running_jobs,
        "completedJobs": execution.completed_jobs,
        "errorJobs": execution.error_jobs,
        "startedAt": to_iso(execution.started_at),
        "pausedAt": to_iso(execution.paused_at),
        "resumedAt": to_iso(execution.resumed_at),
        "stoppedAt": to_iso(execution.stopped_at),
        "completedAt": to_iso(execution.completed_at),
        "stopReason": execution.stop_reason,
        "lastActivityAt": to_iso(execution.last_activity_at),
    }


def batch_to_dict(batch: Batch, job_counts: dict[str, int] | None = None) -> dict[str, Any]:
    data = {
        "id": str(batch.id),
        "name": batch.name,
        "goal": batch.goal,
        "columnSchema": batch.column_schema,
        "groundTruthColumns": batch.ground_truth_column_names(),
        "totalJobs": batch.total_jobs,
        "hasGroundTruth": batch.has_ground_truth,
        "overallAccuracy": batch.overall_accuracy,
        "accuracyUpdatedAt": to_iso(batch.accuracy_updated_at),
        "createdAt": to_iso(batch.created_at),
    }
    if job_counts is not None:
        data["jobCounts"] = job_counts
    return data


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": str(job.id),
        "batchId": str(job.batch_id),
        "executionId": _id(job.execution_id),
        "rowIndex": job.row_index,
        "siteUrl": job.site_url,
        "goal": job.goal,
        "status": job.status,
        "progressPercentage": job.progress_percentage,
        "currentStep": job.current_step,
        "retryCount": job.retry_count,
        "retryReason": job.retry_reason,
        "groundTruth": job.ground_truth,
        "extractedData": job.extracted_data,
        "errorMessage": job.error_message,
        "failureCategory": job.failure_category,
        "suggestedFix": suggested_fix_for(job.failure_category) if job.failure_category else None,
        "evaluationResult": job.evaluation_result,
        "accuracy": job.accuracy,
        "fieldResults": job.field_results,
        "durationMs": job.duration_ms,
        "latestSessionId": _id(job.latest_session_id),
        "startedAt": to_iso(job.started_at),
        "lastActivityAt": to_iso(job.last_activity_at),
        "completedAt": to_iso(job.completed_at),
        "createdAt": to_iso(job.created_at),
    }


def session_to_dict(session: JobSession) -> dict[str, Any]:
    return {
        "id": str(session.id),
        "jobId": str(session.job_id),
        "executionId": _id(session.execution_id),
        "status": session.status,
        "agentRunId": session.agent_run_id,
        "extractedData": session.extracted_data,
        "rawLog": session.raw_log,
        "errorMessage": session.error_message,
        "failureCategory": session.failure_category,
        "retryCount": session.retry_count,
        "durationMs": session.duration_ms,
        "startedAt": to_iso(session.started_at),
        "completedAt": to_iso(session.completed_at),
    }
