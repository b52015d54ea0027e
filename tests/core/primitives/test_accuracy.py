"""Tests for the accuracy scorer."""

import pytest

from src.core.primitives.accuracy import (
    PARTIAL_MATCH_THRESHOLD,
    MatchType,
    compare_field,
    levenshtein,
    normalize,
    score_job,
    similarity,
)


class TestNormalize:
    """Tests for value normalization."""

    def test_trims_lowercases_and_collapses_whitespace(self):
        """Whitespace runs collapse to one space and case is folded."""
        assert normalize("  Blue   Widget\tXL ") == "blue widget xl"

    def test_none_is_empty(self):
        """None normalizes to the empty string."""
        assert normalize(None) == ""

    def test_numbers_are_stringified(self):
        """Non-string values are compared through their text form."""
        assert normalize(20) == "20"


class TestSimilarity:
    """Tests for Levenshtein similarity."""

    def test_levenshtein_distance(self):
        """Classic kitten/sitting distance."""
        assert levenshtein("kitten", "sitting") == 3

    def test_identical_strings(self):
        """Equal strings are fully similar."""
        assert similarity("abc", "abc") == 1.0

    def test_both_empty(self):
        """Two empty strings are fully similar."""
        assert similarity("", "") == 1.0

    def test_relative_to_longer_string(self):
        """Similarity is (maxLen - distance) / maxLen."""
        assert similarity("$20.00", "$20") == pytest.approx(0.5)


class TestCompareField:
    """Tests for single-field comparison."""

    def test_exact_after_normalization(self):
        """Case and whitespace differences still match exactly."""
        assert compare_field("Blue Widget", "  blue   widget ") == (MatchType.EXACT, 1.0)

    def test_partial_match(self):
        """Similarity above the threshold is a partial match."""
        match_type, score = compare_field("Acme Corporation", "Acme Corporatio")
        assert match_type == MatchType.PARTIAL
        assert PARTIAL_MATCH_THRESHOLD < score < 1.0

    def test_threshold_itself_is_mismatch(self):
        """A similarity of exactly 0.8 does not count as partial."""
        match_type, score = compare_field("abcde", "abcdx")
        assert score == pytest.approx(0.8)
        assert match_type == MatchType.MISMATCH

    def test_currency_formatting_is_mismatch(self):
        """'$20.00' vs '$20' scores 0.5 and is a mismatch."""
        match_type, score = compare_field("$20.00", "$20")
        assert score == pytest.approx(0.5)
        assert match_type == MatchType.MISMATCH

    @pytest.mark.parametrize("extracted", [None, "", "   "])
    def test_missing_extraction(self, extracted):
        """Absent or blank extracted values are missing extractions."""
        assert compare_field("$20", extracted) == (MatchType.MISSING, 0.0)


class TestScoreJob:
    """Tests for job-level scoring."""

    def test_weighted_accuracy(self):
        """Exact counts 1, partial 0.5, over fields with ground truth."""
        score = score_job(
            extracted={"title": "Acme Corporatio", "price": "$20", "sku": "A1"},
            expected={"title": "Acme Corporation", "price": "$20", "sku": "B2"},
        )

        assert score.exact_matches == 1
        assert score.partial_matches == 1
        assert score.mismatches == 1
        assert score.accuracy == pytest.approx(50.0)
        assert score.evaluation == "fail"

    def test_pass_at_ninety_percent(self):
        """Nine exact fields and one mismatch pass."""
        expected = {f"c{i}": f"value {i}" for i in range(10)}
        extracted = dict(expected, c9="something else entirely")

        score = score_job(extracted, expected)

        assert score.accuracy == pytest.approx(90.0)
        assert score.passed
        assert score.evaluation == "pass"

    def test_blank_expected_values_are_skipped(self):
        """Fields without a ground-truth value are not scored."""
        score = score_job({"price": "$20"}, {"price": "$20", "title": ""})

        assert len(score.fields) == 1
        assert score.accuracy == 100.0

    def test_no_ground_truth(self):
        """Nothing to compare yields no accuracy and no evaluation."""
        score = score_job({"price": "$20"}, {})

        assert score.accuracy is None
        assert score.evaluation is None
        assert not score.passed

    def test_columns_restrict_scoring(self):
        """Only the requested columns are compared."""
        score = score_job(
            {"price": "$20", "title": "x"},
            {"price": "$20", "title": "Widget"},
            columns=["price"],
        )

        assert [field.column for field in score.fields] == ["price"]

    def test_missing_extraction_counts_against_accuracy(self):
        """A field the agent did not return is a missing extraction."""
        score = score_job(None, {"price": "$20"})

        assert score.missing_extractions == 1
        assert score.accuracy == 0.0

    def test_scoring_is_idempotent(self):
        """Scoring the same inputs twice gives identical results."""
        extracted = {"title": "Acme Corporatio", "price": "$20"}
        expected = {"title": "Acme Corporation", "price": "$20.00"}

        first = score_job(extracted, expected)
        second = score_job(extracted, expected)

        assert [f.to_dict() for f in first.fields] == [f.to_dict() for f in second.fields]
        assert first.accuracy == second.accuracy
