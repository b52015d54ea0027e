"""API routes package."""

from src.api.routes.batches import router as batches_router
from src.api.routes.events import router as events_router
from src.api.routes.executions import router as executions_router
from src.api.routes.health import router as health_router
from src.api.routes.jobs import router as jobs_router

__all__ = [
    "batches_router",
    "events_router",
    "executions_router",
    "health_router",
    "jobs_router",
]
