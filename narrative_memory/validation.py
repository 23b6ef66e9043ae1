"""Validation of candidate facts and retrieval parameters.

Candidate facts arrive from the extraction step as loosely-typed dicts.
Anything malformed is rejected with a ``ValidationError``; nothing is
coerced into a guess (e.g. objects on a world fact are an error, not
silently dropped).
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import (
    FACT_STATUSES,
    FACT_TYPE_CODES,
    FACT_TYPES,
    INTER_CHARACTER,
    MAX_CONFIDENCE,
    MAX_RAW_CONTENT_LENGTH,
    MIN_CONFIDENCE,
    CandidateFact,
)

MAX_CHAPTER = 10000
MAX_CHAPTER_SPAN = 1000
MAX_CHARACTER_NAME_LENGTH = 100

_CHARACTER_NAME_RE = re.compile(r"^[A-Za-z\s'-]+$")
_CHAPTER_RANGE_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")

# camelCase keys produced by extraction prompts
_KEY_ALIASES = {
    "canonicalFact": "canonical_fact",
    "rawContent": "raw_content",
    "validFrom": "valid_from",
}


def normalize_fact_type(value: Any) -> str:
    """Accept the full type name or its short code (IC, C2U, WM)."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("type is required", {"field": "type"})
    raw = value.strip()
    if raw in FACT_TYPES:
        return raw
    code = FACT_TYPE_CODES.get(raw.upper())
    if code:
        return code
    raise ValidationError(
        f"type must be one of {', '.join(FACT_TYPES)}",
        {"field": "type", "value": raw},
    )


def _name_list(data: Mapping[str, Any], field: str) -> Optional[List[str]]:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, list) or not value:
        raise ValidationError(f"{field} must be a non-empty list of names", {"field": field})
    names: List[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(f"{field} entries must be non-empty strings", {"field": field})
        names.append(item)
    return names


def _required_text(data: Mapping[str, Any], field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", {"field": field})
    return value


def validate_candidate(data: Mapping[str, Any], default_valid_from: Optional[int] = None) -> CandidateFact:
    """Turn a raw candidate dict into a ``CandidateFact`` or raise ``ValidationError``.

    *default_valid_from* fills ``valid_from`` when the candidate omits it.
    """
    if not isinstance(data, Mapping):
        raise ValidationError("candidate fact must be an object")

    normalized: Dict[str, Any] = dict(data)
    for camel, snake in _KEY_ALIASES.items():
        if camel in normalized and snake not in normalized:
            normalized[snake] = normalized.pop(camel)

    fact_type = normalize_fact_type(normalized.get("type"))
    predicate = _required_text(normalized, "predicate").strip()

    subjects = _name_list(normalized, "subjects")
    if subjects is None:
        raise ValidationError("subjects must be a non-empty list of names", {"field": "subjects"})

    objects = _name_list(normalized, "objects")
    if fact_type == INTER_CHARACTER and objects is None:
        raise ValidationError(
            "objects are required for inter-character facts", {"field": "objects"}
        )
    if fact_type != INTER_CHARACTER and objects is not None:
        raise ValidationError(
            f"objects are not allowed for {fact_type} facts", {"field": "objects"}
        )

    canonical_fact = _required_text(normalized, "canonical_fact").strip()
    raw_content = _required_text(normalized, "raw_content")
    if len(raw_content) > MAX_RAW_CONTENT_LENGTH:
        raise ValidationError(
            f"raw_content must be at most {MAX_RAW_CONTENT_LENGTH} characters",
            {"field": "raw_content", "length": len(raw_content)},
        )

    confidence = normalized.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValidationError("confidence must be a number", {"field": "confidence"})
    confidence = float(confidence)
    if math.isnan(confidence) or not MIN_CONFIDENCE <= confidence <= MAX_CONFIDENCE:
        raise ValidationError(
            f"confidence must be between {MIN_CONFIDENCE} and {MAX_CONFIDENCE}",
            {"field": "confidence", "value": confidence},
        )

    valid_from = normalized.get("valid_from", default_valid_from)
    if valid_from is None:
        valid_from = default_valid_from
    if isinstance(valid_from, bool) or not isinstance(valid_from, int) or valid_from < 1:
        raise ValidationError("valid_from must be an integer chapter >= 1", {"field": "valid_from"})

    return CandidateFact(
        type=fact_type,
        predicate=predicate,
        subjects=subjects,
        objects=objects,
        canonical_fact=canonical_fact,
        raw_content=raw_content,
        confidence=confidence,
        valid_from=valid_from,
    )


# ---------------------------------------------------------------------------
# Retrieval parameters
# ---------------------------------------------------------------------------

def parse_chapter(value: str) -> Tuple[Optional[int], Optional[Tuple[int, int]]]:
    """Parse ``"3"`` into a chapter number or ``"1-5"`` into an inclusive range.

    Returns ``(chapter, None)`` or ``(None, (start, end))``.
    """
    text = (value or "").strip()
    match = _CHAPTER_RANGE_RE.match(text)
    if match:
        start, end = int(match.group(1)), int(match.group(2))
        if start < 1:
            raise ValidationError("chapter range must start at 1 or later", {"field": "chapter"})
        if start > end:
            raise ValidationError("chapter range start must not exceed its end", {"field": "chapter"})
        if end > MAX_CHAPTER:
            raise ValidationError(f"chapter must be at most {MAX_CHAPTER}", {"field": "chapter"})
        if end - start > MAX_CHAPTER_SPAN:
            raise ValidationError(
                f"chapter range may span at most {MAX_CHAPTER_SPAN} chapters", {"field": "chapter"}
            )
        return None, (start, end)

    if not text.isdigit():
        raise ValidationError("chapter must be a number or a range like 1-5", {"field": "chapter"})
    chapter = int(text)
    if not 1 <= chapter <= MAX_CHAPTER:
        raise ValidationError(f"chapter must be between 1 and {MAX_CHAPTER}", {"field": "chapter"})
    return chapter, None


def validate_character_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("character name must not be empty", {"field": "character"})
    if len(cleaned) > MAX_CHARACTER_NAME_LENGTH:
        raise ValidationError(
            f"character name must be at most {MAX_CHARACTER_NAME_LENGTH} characters",
            {"field": "character"},
        )
    if not _CHARACTER_NAME_RE.match(cleaned):
        raise ValidationError(
            "character name may only contain letters, spaces, apostrophes and hyphens",
            {"field": "character"},
        )
    return cleaned


def parse_csv(value: Optional[str]) -> Optional[List[str]]:
    """Split a comma-separated query parameter, dropping blanks."""
    if value is None:
        return None
    items = [v.strip() for v in value.split(",") if v.strip()]
    return items or None


def parse_fact_types(value: Optional[str]) -> Optional[List[str]]:
    items = parse_csv(value)
    if items is None:
        return None
    return [normalize_fact_type(v) for v in items]


def parse_status(value: Optional[str]) -> Optional[str]:
    """``None``/``"active"`` → active, ``"all"`` → no status filter."""
    if value is None:
        return "active"
    status = value.strip().lower()
    if status == "all":
        return None
    if status not in FACT_STATUSES:
        raise ValidationError(
            f"status must be one of {', '.join(FACT_STATUSES)} or all", {"field": "status"}
        )
    return status
