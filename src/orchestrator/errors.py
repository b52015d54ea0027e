"""
Orchestration exceptions.

Each rejected command carries the authoritative state it was checked
against, so callers can show the operator what actually is.
"""

import uuid
from typing import Any

from src.core.models.orchestration import Execution


class OrchestratorError(Exception):
    """Base exception for rejected orchestration commands."""

    pass


class InvalidTransitionError(OrchestratorError):
    """The execution's current state does not allow the requested command."""

    def __init__(self, action: str, execution: Execution):
        super().__init__(f"Cannot {action} execution in state '{execution.status}'")
        self.action = action
        self.execution = execution


class ActiveExecutionExistsError(OrchestratorError):
    """The batch already has a running or paused execution."""

    def __init__(self, batch_id: uuid.UUID, active: Execution | None):
        super().__init__(f"Batch {batch_id} already has an active execution")
        self.batch_id = batch_id
        self.active = active


class NothingToRunError(OrchestratorError):
    """There are no queued jobs to put into a new execution."""

    def __init__(self, batch_id: uuid.UUID):
        super().__init__(f"Batch {batch_id} has no queued jobs")
        self.batch_id = batch_id


class BulkOperationError(OrchestratorError):
    """A bulk operation failed validation; nothing was changed."""

    def __init__(self, operation: str, rejected: list[dict[str, Any]]):
        super().__init__(f"Bulk {operation} rejected for {len(rejected)} job(s)")
        self.operation = operation
        self.rejected = rejected
