"""Job routes: single-job views and bulk rerun/delete/update."""

import uuid
from typing import Any

from fastapi import APIRouter, Depends

from src.api.dependencies import get_batch_service, get_bulk_service, get_manager
from src.api.schemas import BulkJobsRequest, BulkUpdateRequest
from src.api.serializers import execution_to_dict, job_to_dict, session_to_dict
from src.core.services import BatchService
from src.orchestrator import ExecutionManager, JobBulkService

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/bulk", status_code=201)
async def bulk_rerun(
    body: BulkJobsRequest,
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    """Reset the jobs to queued and run them in a new production execution."""
    execution = await manager.bulk_rerun(body.job_ids)
    return {"rerun": len(set(body.job_ids)), "execution": execution_to_dict(execution)}


@router.delete("/bulk")
async def bulk_delete(
    body: BulkJobsRequest,
    service: JobBulkService = Depends(get_bulk_service),
) -> dict[str, Any]:
    """Delete jobs. Rejected as a whole if any target is running."""
    deleted = await service.bulk_delete(body.job_ids)
    return {"deleted": deleted}


@router.patch("/bulk")
async def bulk_update(
    body: BulkUpdateRequest,
    service: JobBulkService = Depends(get_bulk_service),
) -> dict[str, Any]:
    """Update goal, siteUrl or groundTruth on several jobs."""
    updated = await service.bulk_update(body.job_ids, body.updates)
    return {"updated": updated}


@router.get("/{job_id}")
async def get_job(
    job_id: uuid.UUID,
    service: BatchService = Depends(get_batch_service),
) -> dict[str, Any]:
    job = await service.get_job(job_id)
    return job_to_dict(job)


@router.get("/{job_id}/sessions")
async def list_job_sessions(
    job_id: uuid.UUID,
    service: BatchService = Depends(get_batch_service),
) -> dict[str, Any]:
    await service.get_job(job_id)
    sessions = await service.list_sessions(job_id)
    return {"sessions": [session_to_dict(s) for s in sessions]}
