"""Tests for candidate and query-parameter validation."""

import pytest

from narrative_memory.errors import ValidationError
from narrative_memory.validation import (
    normalize_fact_type,
    parse_chapter,
    parse_csv,
    parse_fact_types,
    parse_status,
    validate_candidate,
    validate_character_name,
)


class TestFactType:
    @pytest.mark.parametrize("value,expected", [
        ("inter-character", "inter-character"),
        ("IC", "inter-character"),
        ("c2u", "character-to-user"),
        (" WM ", "world"),
    ])
    def test_names_and_codes(self, value, expected):
        assert normalize_fact_type(value) == expected

    @pytest.mark.parametrize("value", ["", None, "rumor", 3])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            normalize_fact_type(value)


class TestCandidate:
    def test_valid(self, candidate):
        c = validate_candidate(candidate())
        assert c.type == "inter-character"
        assert c.objects == ["Bob"]
        assert c.confidence == 0.9

    def test_confidence_bounds_inclusive(self, candidate):
        assert validate_candidate(candidate(confidence=0.1)).confidence == 0.1
        assert validate_candidate(candidate(confidence=1)).confidence == 1.0

    def test_bool_confidence_rejected(self, candidate):
        with pytest.raises(ValidationError):
            validate_candidate(candidate(confidence=True))

    def test_raw_content_at_limit(self, candidate):
        assert len(validate_candidate(candidate(raw_content="x" * 1000)).raw_content) == 1000

    def test_default_valid_from(self, candidate):
        data = candidate()
        del data["valid_from"]
        assert validate_candidate(data, default_valid_from=6).valid_from == 6
        with pytest.raises(ValidationError):
            validate_candidate(data)

    def test_blank_subject_name(self, candidate):
        with pytest.raises(ValidationError) as exc_info:
            validate_candidate(candidate(subjects=["Alice", " "]))
        assert exc_info.value.details["field"] == "subjects"

    def test_not_a_mapping(self):
        with pytest.raises(ValidationError):
            validate_candidate(["not", "a", "dict"])

    def test_error_payload(self, candidate):
        with pytest.raises(ValidationError) as exc_info:
            validate_candidate(candidate(type="character-to-user"))
        payload = exc_info.value.to_dict()
        assert payload["category"] == "validation"
        assert payload["retryable"] is False
        assert payload["details"] == {"field": "objects"}


class TestChapter:
    def test_single(self):
        assert parse_chapter("3") == (3, None)

    def test_range(self):
        assert parse_chapter(" 1 - 5 ") == (None, (1, 5))

    @pytest.mark.parametrize("value", ["0", "abc", "5-2", "0-3", "10001", "1-1002", "", "-3"])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            parse_chapter(value)

    def test_max_span_allowed(self):
        assert parse_chapter("1-1001") == (None, (1, 1001))


class TestCharacterName:
    @pytest.mark.parametrize("name", ["Alice", "Mary-Jane", "O'Brien", "Anne of Green"])
    def test_accepted(self, name):
        assert validate_character_name(f" {name} ") == name

    @pytest.mark.parametrize("name", ["", "   ", "Robert'); DROP TABLE facts;--", "R2D2", "A" * 101])
    def test_rejected(self, name):
        with pytest.raises(ValidationError):
            validate_character_name(name)


class TestQueryParams:
    def test_csv(self):
        assert parse_csv("a, b,,c ") == ["a", "b", "c"]
        assert parse_csv(" , ") is None
        assert parse_csv(None) is None

    def test_fact_types(self):
        assert parse_fact_types("IC,world") == ["inter-character", "world"]
        with pytest.raises(ValidationError):
            parse_fact_types("IC,gossip")

    def test_status(self):
        assert parse_status(None) == "active"
        assert parse_status("ALL") is None
        assert parse_status("superseded") == "superseded"
        with pytest.raises(ValidationError):
            parse_status("archived")
