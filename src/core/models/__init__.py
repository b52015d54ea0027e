"""
SQLAlchemy models for the extraction orchestrator.

This module exports all database models used by the application.
"""

from src.core.models.orchestration import (
    ACTIVE_EXECUTION_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    Batch,
    Evaluation,
    EventType,
    Execution,
    ExecutionEvent,
    ExecutionStatus,
    ExecutionType,
    Job,
    JobSession,
    JobStatus,
    MetricsSnapshot,
)

__all__ = [
    "ACTIVE_EXECUTION_STATUSES",
    "TERMINAL_EXECUTION_STATUSES",
    "Batch",
    "Evaluation",
    "EventType",
    "Execution",
    "ExecutionEvent",
    "ExecutionStatus",
    "ExecutionType",
    "Job",
    "JobSession",
    "JobStatus",
    "MetricsSnapshot",
]
