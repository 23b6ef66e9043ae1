"""Core data types: entities, facts, candidate facts, filters and results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

INTER_CHARACTER = "inter-character"
CHARACTER_TO_USER = "character-to-user"
WORLD = "world"

FACT_TYPES = (INTER_CHARACTER, CHARACTER_TO_USER, WORLD)

# Short codes used by extraction prompts and older payloads
FACT_TYPE_CODES = {
    "IC": INTER_CHARACTER,
    "C2U": CHARACTER_TO_USER,
    "WM": WORLD,
}

STATUS_ACTIVE = "active"
STATUS_SUPERSEDED = "superseded"
STATUS_DUPLICATE = "duplicate"

FACT_STATUSES = (STATUS_ACTIVE, STATUS_SUPERSEDED, STATUS_DUPLICATE)

KIND_CHARACTER = "character"
KIND_USER = "user"
KIND_WORLD = "world"

ENTITY_KINDS = (KIND_CHARACTER, KIND_USER, KIND_WORLD)

DEFAULT_USER_ID = "user-default"
DEFAULT_WORLD_ID = "world-default"

OUTCOME_CREATED = "created"
OUTCOME_SUPERSEDED = "superseded"
OUTCOME_DUPLICATE = "duplicate"

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0
MAX_RAW_CONTENT_LENGTH = 1000


# ---------------------------------------------------------------------------
# Persistent records
# ---------------------------------------------------------------------------

@dataclass
class Entity:
    """A named participant: a character, the user, or the world."""
    id: str
    name: str
    kind: str = KIND_CHARACTER
    aliases: List[str] = field(default_factory=list)
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "aliases": list(self.aliases),
            "created_at": self.created_at,
        }


def conflict_key(
    fact_type: str,
    predicate: str,
    subject_ids: List[str],
    object_ids: Optional[List[str]],
) -> str:
    """Order-insensitive identity of "the same claim", JSON encoded for indexing."""
    return json.dumps(
        [
            fact_type,
            predicate,
            sorted(subject_ids),
            sorted(object_ids) if object_ids is not None else None,
        ],
        separators=(",", ":"),
    )


@dataclass
class Fact:
    """A typed assertion valid over a chapter window."""
    id: str
    type: str
    predicate: str
    subject_ids: List[str]
    canonical_fact: str
    raw_content: str
    confidence: float
    valid_from: int
    object_ids: Optional[List[str]] = None
    valid_to: Optional[int] = None
    embedding: Optional[List[float]] = None
    status: str = STATUS_ACTIVE
    supersedes_id: Optional[str] = None
    created_at: float = 0.0
    updated_at: float = 0.0
    # Display names, attached on read
    subject_names: List[str] = field(default_factory=list)
    object_names: List[str] = field(default_factory=list)

    @property
    def conflict_key(self) -> str:
        return conflict_key(self.type, self.predicate, self.subject_ids, self.object_ids)

    @property
    def embedding_text(self) -> str:
        return f"{self.canonical_fact} {self.raw_content}"

    def is_valid_at(self, chapter: int) -> bool:
        return self.valid_from <= chapter and (self.valid_to is None or self.valid_to >= chapter)

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "predicate": self.predicate,
            "subject_ids": list(self.subject_ids),
            "object_ids": list(self.object_ids) if self.object_ids is not None else None,
            "subjects": list(self.subject_names),
            "objects": list(self.object_names) if self.object_ids is not None else None,
            "canonical_fact": self.canonical_fact,
            "raw_content": self.raw_content,
            "confidence": self.confidence,
            "valid_from": self.valid_from,
            "valid_to": self.valid_to,
            "status": self.status,
            "supersedes_id": self.supersedes_id,
            "has_embedding": self.embedding is not None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if include_embedding:
            d["embedding"] = self.embedding
        return d


# ---------------------------------------------------------------------------
# Ingestion input / output
# ---------------------------------------------------------------------------

@dataclass
class CandidateFact:
    """A validated fact from the extraction step, with names not yet resolved."""
    type: str
    predicate: str
    subjects: List[str]
    canonical_fact: str
    raw_content: str
    confidence: float
    valid_from: int
    objects: Optional[List[str]] = None


@dataclass
class IngestResult:
    fact_id: str
    outcome: str
    superseded_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fact_id": self.fact_id,
            "outcome": self.outcome,
            "superseded_id": self.superseded_id,
        }


@dataclass
class IngestIssue:
    """One rejected candidate inside a batch."""
    index: int
    category: str
    message: str
    retryable: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "category": self.category,
            "message": self.message,
            "retryable": self.retryable,
        }


@dataclass
class IngestReport:
    facts_created: int = 0
    facts_superseded: int = 0
    facts_duplicated: int = 0
    entities_created: int = 0
    processing_time: float = 0.0
    results: List[IngestResult] = field(default_factory=list)
    errors: List[IngestIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facts_created": self.facts_created,
            "facts_superseded": self.facts_superseded,
            "facts_duplicated": self.facts_duplicated,
            "entities_created": self.entities_created,
            "processing_time": round(self.processing_time, 4),
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
        }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

@dataclass
class FactFilter:
    """Conjunctive filter over stored facts.

    ``status=None`` matches every status. The three time predicates all use
    the validity-window test and may be combined.
    """
    types: Optional[List[str]] = None
    entity_id: Optional[str] = None
    predicates: Optional[List[str]] = None
    status: Optional[str] = STATUS_ACTIVE
    chapter_number: Optional[int] = None
    chapter_range: Optional[Tuple[int, int]] = None
    valid_at: Optional[int] = None
    limit: Optional[int] = None


@dataclass
class SupersessionChain:
    fact: Optional[Fact] = None
    older: List[Fact] = field(default_factory=list)
    newer: List[Fact] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fact": self.fact.to_dict() if self.fact else None,
            "older": [f.to_dict() for f in self.older],
            "newer": [f.to_dict() for f in self.newer],
        }
