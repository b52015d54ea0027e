"""
FastAPI application: main entry point.

Provides the REST API and the live event stream of the extraction
orchestrator. Startup connects the database, starts the event publisher
and reattaches controllers to executions a previous process left active.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.routes import (
    batches_router,
    events_router,
    executions_router,
    health_router,
    jobs_router,
)
from src.api.serializers import execution_to_dict
from src.core.agents import BaseAgent, get_agent
from src.core.config import OrchestratorSettings, load_settings
from src.core.services import BatchValidationError, EventPublisher
from src.core.storage.exceptions import NotFoundError
from src.core.storage.postgres import Database, close_db, get_db
from src.core.storage.redis_pubsub import close_pubsub, get_pubsub
from src.orchestrator import (
    ActiveExecutionExistsError,
    BulkOperationError,
    ExecutionManager,
    InvalidTransitionError,
    NothingToRunError,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id, echoed back in ``X-Request-ID``."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _error(
    request: Request, status_code: int, error: str, message: str, **detail: Any
) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": _request_id(request)}
    if detail:
        content["detail"] = detail
    return JSONResponse(status_code=status_code, content=content)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(request, 404, "not_found", str(exc), entity=exc.entity)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return _error(
            request, 409, "invalid_transition", str(exc),
            current=execution_to_dict(exc.execution),
        )

    @app.exception_handler(ActiveExecutionExistsError)
    async def active_execution_handler(request: Request, exc: ActiveExecutionExistsError):
        active = execution_to_dict(exc.active) if exc.active is not None else None
        return _error(request, 409, "active_execution_exists", str(exc), activeExecution=active)

    @app.exception_handler(NothingToRunError)
    async def nothing_to_run_handler(request: Request, exc: NothingToRunError):
        return _error(request, 409, "nothing_to_run", str(exc))

    @app.exception_handler(BulkOperationError)
    async def bulk_operation_handler(request: Request, exc: BulkOperationError):
        return _error(request, 409, "bulk_rejected", str(exc), rejected=exc.rejected)

    @app.exception_handler(BatchValidationError)
    async def batch_validation_handler(request: Request, exc: BatchValidationError):
        return _error(request, 422, "invalid_batch", str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error(
            request, 422, "validation_error", "Request validation failed",
            errors=jsonable_errors(exc),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error(request, exc.status_code, "http_error", str(exc.detail))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception (request {_request_id(request)})")
        return _error(request, 500, "internal_error", "An unexpected error occurred")


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


def create_app(
    settings: OrchestratorSettings | None = None,
    db: Database | None = None,
    agent: BaseAgent | None = None,
    create_tables: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Orchestrator settings. Defaults to load_settings().
        db: Database to use instead of the global one.
        agent: Agent to use instead of the configured backend.
        create_tables: Create missing tables on startup (tests, local runs).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: startup and shutdown."""
        logger.info("Starting extraction orchestrator...")
        app_settings = settings or load_settings()

        database = db
        if database is None:
            database = await get_db()
        else:
            await database.connect()
        if create_tables:
            await database.create_tables()

        broker = None
        if app_settings.events.backend == "redis":
            broker = await get_pubsub()
        publisher = EventPublisher(database, app_settings.events, broker)
        await publisher.start()

        app_agent = agent or get_agent(settings=app_settings.agent)
        manager = ExecutionManager(database, publisher, app_agent, app_settings)
        await manager.recover()

        app.state.settings = app_settings
        app.state.db = database
        app.state.publisher = publisher
        app.state.manager = manager

        yield

        logger.info("Shutting down...")
        await manager.shutdown()
        await publisher.stop()
        await app_agent.close()
        if broker is not None:
            await close_pubsub()
        if db is None:
            await close_db()

    app = FastAPI(
        title="Extraction Orchestrator",
        description="Runs batches of web extraction jobs against an agent service",
        version="0.1.0",
        lifespan=lifespan
    )
    app.add_middleware(RequestIdMiddleware)
    _register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(batches_router)
    app.include_router(executions_router)
    app.include_router(events_router)
    app.include_router(jobs_router)

    return app


app = create_app()
