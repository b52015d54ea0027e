"""
Service layer for the extraction orchestrator.

This module exports the services that sit between the API and the database.
"""

from src.core.services.batches import BatchService, BatchValidationError
from src.core.services.events import EventFilter, EventPublisher, stream_events
from src.core.services.failure_patterns import FailurePatternService
from src.core.services.metrics import MetricsAggregator

__all__ = [
    "BatchService",
    "BatchValidationError",
    "EventFilter",
    "EventPublisher",
    "stream_events",
    "FailurePatternService",
    "MetricsAggregator",
]
