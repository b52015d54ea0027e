"""Liveness and readiness probes."""

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from src.api.dependencies import get_database, get_manager, get_publisher
from src.core.services import EventPublisher
from src.core.storage.postgres import Database
from src.orchestrator import ExecutionManager

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def live() -> dict[str, Any]:
    """The process is up."""
    return {"status": "ok", "service": "extraction-orchestrator"}


@router.get("/ready")
async def ready(
    db: Database = Depends(get_database),
    manager: ExecutionManager = Depends(get_manager),
    publisher: EventPublisher = Depends(get_publisher),
) -> JSONResponse:
    """The database answers; 503 otherwise."""
    database_ok = await db.health_check()
    body = {
        "status": "ok" if database_ok else "unavailable",
        "checks": {"database": database_ok},
        "activeExecutions": manager.active_controllers,
        "eventSubscribers": publisher.subscriber_count,
    }
    return JSONResponse(status_code=200 if database_ok else 503, content=body)
