"""Execution routes: create, inspect and control executions."""

import uuid
from typing import Any

from fastapi import APIRouter, Body, Depends

from src.api.dependencies import get_manager
from src.api.schemas import (
    CreateExecutionRequest,
    StopExecutionRequest,
    UpdateExecutionRequest,
)
from src.api.serializers import execution_to_dict
from src.orchestrator import ExecutionManager

router = APIRouter(prefix="/executions", tags=["executions"])


@router.post("", status_code=201)
async def create_execution(
    body: CreateExecutionRequest,
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    """
    Create an execution for a batch and start dispatching it.

    A test execution runs a sample of the queued jobs, a production
    execution runs all of them. 409 if the batch already has an active
    execution.
    """
    execution = await manager.create_execution(
        body.batch_id,
        execution_type=body.execution_type,
        concurrency=body.concurrency,
        sample_size=body.sample_size,
    )
    return execution_to_dict(execution)


@router.get("/{execution_id}")
async def get_execution(
    execution_id: uuid.UUID,
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    execution = await manager.get_execution(execution_id)
    return execution_to_dict(execution)


@router.get("/{execution_id}/stats")
async def get_execution_stats(
    execution_id: uuid.UUID,
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    """Counters, progress, estimated time remaining and running jobs."""
    return await manager.get_stats(execution_id)


@router.post("/{execution_id}/pause")
async def pause_execution(
    execution_id: uuid.UUID,
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    execution = await manager.pause(execution_id)
    return execution_to_dict(execution)


@router.post("/{execution_id}/resume")
async def resume_execution(
    execution_id: uuid.UUID,
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    execution = await manager.resume(execution_id)
    return execution_to_dict(execution)


@router.post("/{execution_id}/stop")
async def stop_execution(
    execution_id: uuid.UUID,
    body: StopExecutionRequest | None = Body(default=None),
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    """Stop an execution. Jobs still queued are left unrun."""
    reason = body.reason if body is not None else None
    execution = await manager.stop(execution_id, reason)
    return execution_to_dict(execution)


@router.patch("/{execution_id}")
async def update_execution(
    execution_id: uuid.UUID,
    body: UpdateExecutionRequest,
    manager: ExecutionManager = Depends(get_manager),
) -> dict[str, Any]:
    """Change the concurrency limit; applies at the next dispatch decision."""
    execution = await manager.set_concurrency(execution_id, body.concurrency)
    return execution_to_dict(execution)
