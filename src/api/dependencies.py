"""FastAPI dependencies resolving the services created in the app lifespan."""

from fastapi import Request

from src.core.config.settings import OrchestratorSettings
from src.core.services import (
    BatchService,
    EventPublisher,
    FailurePatternService,
    MetricsAggregator,
)
from src.core.storage.postgres import Database
from src.orchestrator import ExecutionManager, JobBulkService


def get_settings(request: Request) -> OrchestratorSettings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.db


def get_manager(request: Request) -> ExecutionManager:
    return request.app.state.manager


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_batch_service(request: Request) -> BatchService:
    return BatchService(request.app.state.db)


def get_metrics(request: Request) -> MetricsAggregator:
    return MetricsAggregator(request.app.state.db)


def get_failure_patterns(request: Request) -> FailurePatternService:
    return FailurePatternService(request.app.state.db)


def get_bulk_service(request: Request) -> JobBulkService:
    return JobBulkService(request.app.state.db)
