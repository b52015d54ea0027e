"""Deterministic classification of agent error messages into failure categories."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

TIMEOUT = "Timeout"
SELECTOR_NOT_FOUND = "Selector Not Found"
NETWORK_ERROR = "Network Error"
RATE_LIMITED = "Rate Limited"
AUTHORIZATION_ERROR = "Authorization Error"
PAGE_LOAD_FAILURE = "Page Load Failure"
JAVASCRIPT_ERROR = "JavaScript Error"
BOT_DETECTION = "CAPTCHA / Bot Detection"
DATA_FORMAT_ERROR = "Data Format Error"
UNKNOWN_ERROR = "Unknown Error"

# Categories worth retrying with backoff; everything else fails immediately
TRANSIENT_CATEGORIES = frozenset({TIMEOUT, NETWORK_ERROR, RATE_LIMITED})

MAX_EXAMPLES_PER_CATEGORY = 3
EXAMPLE_MESSAGE_LENGTH = 200


@dataclass(frozen=True)
class _Rule:
    category: str
    suggested_fix: str
    any_of: tuple[str, ...]
    # Every group must also contribute at least one match
    all_of: tuple[tuple[str, ...], ...] = ()

    def matches(self, message: str) -> bool:
        if not any(pattern in message for pattern in self.any_of):
            return False
        return all(any(pattern in message for pattern in group) for group in self.all_of)


# Ordered: the first matching rule wins
_RULES: tuple[_Rule, ...] = (
    _Rule(
        TIMEOUT,
        "Increase timeout duration or optimize selectors for faster execution",
        ("timeout", "timed out"),
    ),
    _Rule(
        SELECTOR_NOT_FOUND,
        "Verify selectors are correct and elements exist on the page",
        ("selector", "element not found", "could not find"),
    ),
    _Rule(
        NETWORK_ERROR,
        "Check URL accessibility and network connectivity",
        ("network", "connection", "econnrefused"),
    ),
    _Rule(
        RATE_LIMITED,
        "Reduce concurrency or add delays between requests",
        ("rate limit", "429", "too many requests"),
    ),
    _Rule(
        AUTHORIZATION_ERROR,
        "Check authentication credentials and permissions",
        ("unauthorized", "403", "401", "forbidden"),
    ),
    _Rule(
        PAGE_LOAD_FAILURE,
        "Verify URL is correct and page loads successfully in browser",
        ("page",),
        all_of=(("load", "navigation"),),
    ),
    _Rule(
        JAVASCRIPT_ERROR,
        "Check browser console for errors; may need to wait for page to fully load",
        ("javascript", "js error", "script error"),
    ),
    _Rule(
        BOT_DETECTION,
        "Site has bot protection; may need different approach or API access",
        ("captcha", "bot", "verification"),
    ),
    _Rule(
        DATA_FORMAT_ERROR,
        "Check data extraction logic and expected format",
        ("parse", "invalid", "format"),
    ),
)

_UNKNOWN_FIX = "Review error details and check browser console logs"


@dataclass(frozen=True)
class FailureClassification:
    """Category and remediation hint for one error message."""

    category: str
    suggested_fix: str

    @property
    def transient(self) -> bool:
        return self.category in TRANSIENT_CATEGORIES


def classify(error_message: str | None) -> FailureClassification:
    """
    Map an error message to a failure category.

    Matching is case-insensitive substring search over an ordered rule
    list; messages that match nothing are "Unknown Error".
    """
    message = (error_message or "").lower()
    for rule in _RULES:
        if rule.matches(message):
            return FailureClassification(rule.category, rule.suggested_fix)
    return FailureClassification(UNKNOWN_ERROR, _UNKNOWN_FIX)


def suggested_fix_for(category: str) -> str:
    for rule in _RULES:
        if rule.category == category:
            return rule.suggested_fix
    return _UNKNOWN_FIX


@dataclass(frozen=True)
class FailedJob:
    """A failed job as seen by the report builder."""

    job_id: str
    site_url: str
    error_message: str | None
    failure_category: str | None = None


@dataclass
class FailurePattern:
    category: str
    count: int
    percentage: int
    suggested_fix: str
    examples: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "count": self.count,
            "percentage": self.percentage,
            "suggestedFix": self.suggested_fix,
            "examples": self.examples,
        }


@dataclass
class FailureReport:
    patterns: list[FailurePattern]
    total_failures: int
    affected_jobs: int
    total_jobs: int
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "patterns": [pattern.to_dict() for pattern in self.patterns],
            "totalFailures": self.total_failures,
            "affectedJobs": self.affected_jobs,
            "totalJobs": self.total_jobs,
            "summary": self.summary,
        }


def _percentage(count: int, total: int) -> int:
    return int(count * 100 / total + 0.5) if total else 0


def build_report(failures: Iterable[FailedJob], total_jobs: int) -> FailureReport:
    """
    Group failed jobs by category.

    A stored ``failure_category`` is trusted; otherwise the message is
    classified. Patterns are sorted by count, most frequent first, and keep
    at most three examples each.
    """
    failures = list(failures)
    grouped: dict[str, FailurePattern] = {}

    for failure in failures:
        category = failure.failure_category or classify(failure.error_message).category
        pattern = grouped.get(category)
        if pattern is None:
            pattern = FailurePattern(
                category=category,
                count=0,
                percentage=0,
                suggested_fix=suggested_fix_for(category),
            )
            grouped[category] = pattern
        pattern.count += 1
        if len(pattern.examples) < MAX_EXAMPLES_PER_CATEGORY:
            pattern.examples.append(
                {
                    "jobId": failure.job_id,
                    "siteUrl": failure.site_url,
                    "errorMessage": (failure.error_message or "")[:EXAMPLE_MESSAGE_LENGTH],
                }
            )

    total = len(failures)
    patterns = sorted(grouped.values(), key=lambda p: p.count, reverse=True)
    for pattern in patterns:
        pattern.percentage = _percentage(pattern.count, total)

    if not patterns:
        summary = "No failure patterns found"
    elif len(patterns) == 1:
        summary = f"All failures are due to: {patterns[0].category}"
    else:
        top = patterns[0]
        summary = f"Most common: {top.category} ({top.percentage}%)"

    return FailureReport(
        patterns=patterns,
        total_failures=total,
        affected_jobs=len({failure.job_id for failure in failures}),
        total_jobs=total_jobs,
        summary=summary,
    )
