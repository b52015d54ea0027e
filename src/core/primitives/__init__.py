"""
Primitives: pure building blocks for the orchestrator.

Each primitive does ONE thing well and has no side effects:
scoring extractions against ground truth and classifying failures.
"""

from src.core.primitives.accuracy import (
    PARTIAL_MATCH_THRESHOLD,
    PARTIAL_MATCH_WEIGHT,
    PASS_THRESHOLD,
    ColumnKind,
    FieldResult,
    JobScore,
    MatchType,
    score_job,
)
from src.core.primitives.failure_classifier import (
    TRANSIENT_CATEGORIES,
    FailedJob,
    FailureClassification,
    FailureReport,
    build_report,
    classify,
)

__all__ = [
    "PARTIAL_MATCH_THRESHOLD",
    "PARTIAL_MATCH_WEIGHT",
    "PASS_THRESHOLD",
    "ColumnKind",
    "FieldResult",
    "JobScore",
    "MatchType",
    "score_job",
    "TRANSIENT_CATEGORIES",
    "FailedJob",
    "FailureClassification",
    "FailureReport",
    "build_report",
    "classify",
]
