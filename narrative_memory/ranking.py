"""Relevance scoring for candidate facts.

Five components, each in [0, 1], combined with configurable weights:

1. **Semantic**: cosine similarity of embeddings, remapped via ``(cos + 1) / 2``
2. **Recency**: ``exp(-decay * chapters_since_valid_from)``, 0.5 without a reference chapter
3. **Confidence**: the fact's stored confidence
4. **Entity overlap**: share of mentioned names found among the fact's participants
5. **Type match**: 1 when the fact's type is among the preferred types

The weighted sum is clamped to [0, 1].
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .models import Fact

logger = logging.getLogger(__name__)

NEUTRAL_RECENCY = 0.5


@dataclass
class RankingWeights:
    """Configurable weights for each scoring component."""
    semantic: float = 0.40
    recency: float = 0.25
    confidence: float = 0.10
    entity: float = 0.15
    type_match: float = 0.10

    @classmethod
    def from_config(cls, cfg) -> "RankingWeights":
        return cls(
            semantic=cfg.weight_semantic,
            recency=cfg.weight_recency,
            confidence=cfg.weight_confidence,
            entity=cfg.weight_entity,
            type_match=cfg.weight_type,
        )


@dataclass
class QueryBundle:
    """Everything the ranker needs to know about a query."""
    embedding: Optional[List[float]] = None
    reference_chapter: Optional[int] = None
    mentioned_entity_names: List[str] = field(default_factory=list)
    preferred_types: List[str] = field(default_factory=list)


@dataclass
class ScoreBreakdown:
    score: float = 0.0
    semantic: float = 0.0
    recency: float = 0.0
    confidence: float = 0.0
    entity: float = 0.0
    type_match: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": round(self.score, 4),
            "semantic": round(self.semantic, 4),
            "recency": round(self.recency, 4),
            "confidence": round(self.confidence, 4),
            "entity": round(self.entity, 4),
            "type_match": round(self.type_match, 4),
        }


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 when either vector has zero length.

    Raises:
        ValueError: the vectors have different dimensions.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


def _recency_score(valid_from: int, reference_chapter: Optional[int], decay: float = 0.08) -> float:
    """Exponential decay: ``exp(-decay * chapters_elapsed)``."""
    if reference_chapter is None:
        return NEUTRAL_RECENCY
    elapsed = max(0, reference_chapter - valid_from)
    return math.exp(-decay * elapsed)


def _entity_overlap(mentioned: Sequence[str], fact: Fact) -> float:
    if not mentioned:
        return 0.0
    participants = [n.lower() for n in (*fact.subject_names, *fact.object_names) if n]
    if not participants:
        return 0.0
    hits = 0
    for name in mentioned:
        needle = name.lower()
        if any(needle in p or p in needle for p in participants):
            hits += 1
    return hits / len(mentioned)


class RelevanceRanker:
    """Score facts against a ``QueryBundle``."""

    def __init__(self, weights: Optional[RankingWeights] = None, recency_decay: float = 0.08) -> None:
        self.weights = weights or RankingWeights()
        self.recency_decay = recency_decay

    def _semantic(self, fact: Fact, query: QueryBundle) -> float:
        if fact.embedding is None or query.embedding is None:
            return 0.0
        if len(fact.embedding) != len(query.embedding):
            logger.debug(
                "Skipping semantic score for %s: dimension %d vs %d",
                fact.id, len(fact.embedding), len(query.embedding),
            )
            return 0.0
        return (cosine_similarity(fact.embedding, query.embedding) + 1.0) / 2.0

    def score_breakdown(self, fact: Fact, query: QueryBundle) -> ScoreBreakdown:
        w = self.weights
        semantic = self._semantic(fact, query)
        recency = _recency_score(fact.valid_from, query.reference_chapter, self.recency_decay)
        confidence = min(1.0, max(0.0, fact.confidence))
        entity = _entity_overlap(query.mentioned_entity_names, fact)
        type_match = 1.0 if query.preferred_types and fact.type in query.preferred_types else 0.0

        total = (
            w.semantic * semantic
            + w.recency * recency
            + w.confidence * confidence
            + w.entity * entity
            + w.type_match * type_match
        )
        return ScoreBreakdown(
            score=min(1.0, max(0.0, total)),
            semantic=semantic,
            recency=recency,
            confidence=confidence,
            entity=entity,
            type_match=type_match,
        )

    def score(self, fact: Fact, query: QueryBundle) -> float:
        return self.score_breakdown(fact, query).score
