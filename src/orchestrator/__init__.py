"""Execution orchestration: controllers, job runner and persistence."""

from src.orchestrator.bulk import JobBulkService
from src.orchestrator.controller import ExecutionCommands, ExecutionController
from src.orchestrator.errors import (
    ActiveExecutionExistsError,
    BulkOperationError,
    InvalidTransitionError,
    NothingToRunError,
    OrchestratorError,
)
from src.orchestrator.manager import ExecutionManager
from src.orchestrator.runner import RETRY_PRESETS, JobRunner, RetryPolicy, TerminalResult
from src.orchestrator.store import ExecutionStore, JobOutcome

__all__ = [
    "ActiveExecutionExistsError",
    "BulkOperationError",
    "ExecutionCommands",
    "ExecutionController",
    "ExecutionManager",
    "ExecutionStore",
    "InvalidTransitionError",
    "JobBulkService",
    "JobOutcome",
    "JobRunner",
    "NothingToRunError",
    "OrchestratorError",
    "RETRY_PRESETS",
    "RetryPolicy",
    "TerminalResult",
]
