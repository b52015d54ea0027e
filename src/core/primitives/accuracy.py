"""
Accuracy scoring of extracted fields against ground truth.

Pure functions only: the same inputs always produce the same score.

Usage:
    score = score_job(
        extracted={"price": "$20", "title": "Widget"},
        expected={"price": "$20.00", "title": "widget"},
    )
    score.accuracy      # 50.0
    score.evaluation    # "fail"
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable

# Similarity strictly above this counts as a partial match
PARTIAL_MATCH_THRESHOLD = 0.8

# Contribution of a partial match to accuracy, relative to an exact match
PARTIAL_MATCH_WEIGHT = 0.5

# Minimum accuracy percentage for a job to pass
PASS_THRESHOLD = 90.0


class ColumnKind(str, enum.Enum):
    """Declared kind of a batch column."""

    TEXT = "text"
    NUMBER = "number"
    URL = "url"


class MatchType(str, enum.Enum):
    """Outcome of comparing one extracted field to its expected value."""

    EXACT = "exact"
    PARTIAL = "partial"
    MISMATCH = "mismatch"
    MISSING = "missing"


@dataclass
class FieldResult:
    """Comparison result for a single field."""

    column: str
    expected: Any
    extracted: Any
    match_type: MatchType
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "column": self.column,
            "expected": self.expected,
            "extracted": self.extracted,
            "matchType": self.match_type.value,
            "similarity": round(self.similarity, 4),
        }


@dataclass
class JobScore:
    """Aggregate score of one job across all fields with ground truth."""

    fields: list[FieldResult] = field(default_factory=list)

    def _count(self, match_type: MatchType) -> int:
        return sum(1 for result in self.fields if result.match_type == match_type)

    @property
    def exact_matches(self) -> int:
        return self._count(MatchType.EXACT)

    @property
    def partial_matches(self) -> int:
        return self._count(MatchType.PARTIAL)

    @property
    def mismatches(self) -> int:
        return self._count(MatchType.MISMATCH)

    @property
    def missing_extractions(self) -> int:
        return self._count(MatchType.MISSING)

    @property
    def accuracy(self) -> float | None:
        """Weighted accuracy percentage, or None when nothing had ground truth."""
        if not self.fields:
            return None
        weighted = self.exact_matches + self.partial_matches * PARTIAL_MATCH_WEIGHT
        return weighted / len(self.fields) * 100

    @property
    def passed(self) -> bool:
        accuracy = self.accuracy
        return accuracy is not None and accuracy >= PASS_THRESHOLD

    @property
    def evaluation(self) -> str | None:
        """Return "pass" or "fail", or None when the job has no ground truth."""
        if self.accuracy is None:
            return None
        return "pass" if self.passed else "fail"


def normalize(value: Any) -> str:
    """Trim, lowercase and collapse whitespace. None becomes an empty string."""
    if value is None:
        return ""
    return " ".join(str(value).strip().lower().split())


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Levenshtein similarity relative to the longer string, in [0, 1]."""
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein(a, b)) / longest


def has_value(value: Any) -> bool:
    return normalize(value) != ""


def compare_field(expected: Any, extracted: Any) -> tuple[MatchType, float]:
    """Classify one extracted value against its expected value."""
    if not has_value(extracted):
        return MatchType.MISSING, 0.0

    expected_text = normalize(expected)
    extracted_text = normalize(extracted)
    if expected_text == extracted_text:
        return MatchType.EXACT, 1.0

    score = similarity(expected_text, extracted_text)
    if score >= 1.0:
        return MatchType.EXACT, score
    if score > PARTIAL_MATCH_THRESHOLD:
        return MatchType.PARTIAL, score
    return MatchType.MISMATCH, score


def score_job(
    extracted: dict[str, Any] | None,
    expected: dict[str, Any] | None,
    columns: Iterable[str] | None = None,
) -> JobScore:
    """
    Score a job's extracted fields against its ground truth.

    Args:
        extracted: Fields returned by the agent (None if nothing was extracted).
        expected: Ground-truth values keyed by column name.
        columns: Restrict scoring to these columns; defaults to every key
            of ``expected``.

    Returns:
        JobScore over every field that has a non-empty expected value.
    """
    extracted = extracted or {}
    expected = expected or {}
    names = list(columns) if columns is not None else list(expected.keys())

    results = []
    for name in names:
        expected_value = expected.get(name)
        if not has_value(expected_value):
            continue
        extracted_value = extracted.get(name)
        match_type, score = compare_field(expected_value, extracted_value)
        results.append(
            FieldResult(
                column=name,
                expected=expected_value,
                extracted=extracted_value,
                match_type=match_type,
                similarity=score,
            )
        )
    return JobScore(fields=results)
