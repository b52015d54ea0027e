"""Batch routes: upload, inspection, ground-truth metrics and failure patterns."""

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from src.api.dependencies import (
    get_batch_service,
    get_failure_patterns,
    get_manager,
    get_metrics,
)
from src.api.schemas import CreateBatchRequest, SnapshotRequest
from src.api.serializers import batch_to_dict, execution_to_dict, job_to_dict
from src.core.models.orchestration import JobStatus
from src.core.services import BatchService, FailurePatternService, MetricsAggregator
from src.core.services.metrics import serialize_snapshot
from src.orchestrator import ExecutionManager

router = APIRouter(prefix="/batches", tags=["batches"])


@router.post("", status_code=201)
async def create_batch(
    body: CreateBatchRequest,
    service: BatchService = Depends(get_batch_service),
) -> dict[str, Any]:
    """Create a batch with one queued job per row."""
    batch = await service.create_batch(
        name=body.name,
        column_schema=[column.model_dump(by_alias=True) for column in body.column_schema],
        rows=body.rows,
        goal=body.goal,
    )
    return batch_to_dict(batch)


@router.get("/{batch_id}")
async def get_batch(
    batch_id: uuid.UUID,
    service: BatchService = Depends(get_batch_service),
) -> dict[str, Any]:
    batch = await service.get_batch(batch_id)
    return batch_to_dict(batch, job_counts=await service.count_jobs(batch_id))


@router.get("/{batch_id}/jobs")
async def list_batch_jobs(
    batch_id: uuid.UUID,
    status: JobStatus | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    service: BatchService = Depends(get_batch_service),
) -> dict[str, Any]:
    await service.get_batch(batch_id)
    jobs = await service.list_jobs(
        batch_id, status=status.value if status else None, limit=limit, offset=offset
    )
    return {"jobs": [job_to_dict(job) for job in jobs], "limit": limit, "offset": offset}


@router.get("/{batch_id}/active-execution")
async def get_active_execution(
    batch_id: uuid.UUID,
    service: BatchService = Depends(get_batch_service),
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    """The batch's running or paused execution, or null."""
    await service.get_batch(batch_id)
    execution = await manager.store.find_active(batch_id)
    return {"execution": execution_to_dict(execution) if execution else None}


@router.get("/{batch_id}/ground-truth/column-metrics")
async def get_column_metrics(
    batch_id: uuid.UUID,
    metrics: MetricsAggregator = Depends(get_metrics),
) -> dict[str, Any]:
    """Per-column accuracy, recomputed from the job table."""
    result = await metrics.column_metrics(batch_id)
    return result.to_dict()


@router.post("/{batch_id}/ground-truth/snapshot", status_code=201)
async def create_snapshot(
    batch_id: uuid.UUID,
    body: SnapshotRequest | None = Body(default=None),
    metrics: MetricsAggregator = Depends(get_metrics),
) -> dict[str, Any]:
    snapshot = await metrics.create_snapshot(
        batch_id,
        execution_id=body.execution_id if body else None,
        notes=body.notes if body else None,
    )
    return serialize_snapshot(snapshot)


@router.get("/{batch_id}/ground-truth/trends")
async def get_trends(
    batch_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    metrics: MetricsAggregator = Depends(get_metrics),
) -> dict[str, Any]:
    return await metrics.trends(batch_id, limit=limit)


@router.get("/{batch_id}/failure-patterns")
async def get_failure_patterns_report(
    batch_id: uuid.UUID,
    execution_id: uuid.UUID | None = Query(default=None, alias="executionId"),
    service: FailurePatternService = Depends(get_failure_patterns),
) -> dict[str, Any]:
    """Failed jobs grouped by category, most frequent first."""
    report = await service.report(batch_id, execution_id=execution_id)
    return report.to_dict()
