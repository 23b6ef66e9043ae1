"""Retrieval: filter, time-gate, merge world facts, rank and truncate.

Without query text, candidates are ordered by chapter (newest first) and
confidence. With query text, every candidate is scored by the
``RelevanceRanker``; facts below the threshold are dropped.

``total`` in the returned pack always counts candidates before truncation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .embeddings import EmbeddingError
from .entities import EntityRegistry, extract_query_entities
from .metrics import collector
from .models import STATUS_ACTIVE, WORLD, Fact, FactFilter
from .ranking import QueryBundle, RelevanceRanker
from .storage import FactStorage

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
DEFAULT_THRESHOLD = 0.7


@dataclass
class RetrievalContext:
    """A retrieval request."""
    query: Optional[str] = None
    filters: FactFilter = field(default_factory=FactFilter)
    character_name: Optional[str] = None
    include_world_facts: bool = False
    limit: int = DEFAULT_LIMIT
    threshold: float = DEFAULT_THRESHOLD

    @property
    def reference_chapter(self) -> Optional[int]:
        f = self.filters
        if f.chapter_number is not None:
            return f.chapter_number
        if f.valid_at is not None:
            return f.valid_at
        if f.chapter_range is not None:
            return f.chapter_range[1]
        return None


@dataclass
class MemoryPack:
    """Ordered retrieval result."""
    facts: List[Fact] = field(default_factory=list)
    total: int = 0
    scores: Optional[Dict[str, float]] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        facts = []
        for fact in self.facts:
            d = fact.to_dict()
            if self.scores is not None:
                d["score"] = round(self.scores.get(fact.id, 0.0), 4)
            facts.append(d)
        return {
            "facts": facts,
            "count": len(self.facts),
            "total": self.total,
            "scores": (
                {k: round(v, 4) for k, v in self.scores.items()}
                if self.scores is not None else None
            ),
            "degraded": self.degraded,
        }


class FactRetriever:
    """Retrieval orchestrator over a ``FactStorage``."""

    def __init__(
        self,
        storage: FactStorage,
        registry: EntityRegistry,
        embedder=None,
        ranker: Optional[RelevanceRanker] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.embedder = embedder
        self.ranker = ranker or RelevanceRanker()

    # ------------------------------------------------------------------
    # Candidate collection
    # ------------------------------------------------------------------

    def _collect(self, ctx: RetrievalContext) -> Optional[List[Fact]]:
        """Filtered candidates, or None when the named character is unknown."""
        flt = replace(ctx.filters, limit=None)

        if ctx.character_name:
            entity = self.registry.lookup(ctx.character_name)
            if entity is None:
                logger.info("Unknown character %r, nothing to retrieve", ctx.character_name)
                return None
            flt = replace(flt, entity_id=entity.id)

        facts = self.storage.query_facts(flt)

        chapter = ctx.filters.chapter_number if ctx.filters.chapter_number is not None else ctx.filters.valid_at
        if ctx.include_world_facts and chapter is not None:
            seen = {f.id for f in facts}
            world = self.storage.query_facts(
                FactFilter(types=[WORLD], status=STATUS_ACTIVE, valid_at=chapter)
            )
            facts.extend(f for f in world if f.id not in seen)

        return facts

    async def _embed_missing(self, facts: List[Fact]) -> None:
        missing = [f for f in facts if f.embedding is None]
        if not missing or self.embedder is None:
            return
        vectors = await self.embedder.embed_batch([f.embedding_text for f in missing])
        for fact, vector in zip(missing, vectors):
            fact.embedding = vector

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def retrieve(self, ctx: RetrievalContext) -> MemoryPack:
        facts = self._collect(ctx)
        if not facts:
            collector.inc_retrieval("ranked" if ctx.query else "filtered")
            return MemoryPack(facts=[], total=0, scores={} if ctx.query else None)

        total = len(facts)
        limit = max(0, ctx.limit)

        if not ctx.query or not ctx.query.strip():
            facts.sort(key=lambda f: (f.valid_from, f.confidence), reverse=True)
            collector.inc_retrieval("filtered")
            return MemoryPack(facts=facts[:limit], total=total)

        degraded = False
        query_embedding: Optional[List[float]] = None
        if self.embedder is not None:
            try:
                query_embedding = await self.embedder.embed(ctx.query)
                await self._embed_missing(facts)
            except (EmbeddingError, OSError) as exc:
                logger.warning("Query embedding failed, ranking without semantics: %s", exc)
                degraded = True
        else:
            degraded = True

        bundle = QueryBundle(
            embedding=query_embedding,
            reference_chapter=ctx.reference_chapter,
            mentioned_entity_names=extract_query_entities(ctx.query),
            preferred_types=list(ctx.filters.types or []),
        )

        scored = [(self.ranker.score(f, bundle), f) for f in facts]
        scored = [(s, f) for s, f in scored if s >= ctx.threshold]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        top = scored[:limit]

        collector.inc_retrieval("ranked", degraded=degraded)
        logger.debug(
            "Ranked %d candidates for %r: %d above threshold %.2f, returning %d",
            total, ctx.query, len(scored), ctx.threshold, len(top),
        )
        return MemoryPack(
            facts=[f for _, f in top],
            total=total,
            scores={f.id: s for s, f in top},
            degraded=degraded,
        )

    async def find_similar(self, fact_id: str, limit: int = 10, threshold: float = 0.3) -> MemoryPack:
        """Active facts ranked against *fact_id*'s own embedding; the fact itself is excluded."""
        target = self.storage.get_fact(fact_id)
        if target is None:
            return MemoryPack(facts=[], total=0, scores={})

        candidates = [f for f in self.storage.query_facts(FactFilter()) if f.id != target.id]
        total = len(candidates)

        degraded = False
        if self.embedder is not None:
            try:
                if target.embedding is None:
                    target.embedding = await self.embedder.embed(target.embedding_text)
                await self._embed_missing(candidates)
            except (EmbeddingError, OSError) as exc:
                logger.warning("Embedding failed for similar-fact lookup of %s: %s", fact_id, exc)
                degraded = True

        bundle = QueryBundle(
            embedding=target.embedding,
            reference_chapter=target.valid_from,
            mentioned_entity_names=[*target.subject_names, *target.object_names],
            preferred_types=[target.type],
        )
        scored = [(self.ranker.score(f, bundle), f) for f in candidates]
        scored = [(s, f) for s, f in scored if s >= threshold]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        top = scored[:max(0, limit)]
        return MemoryPack(
            facts=[f for _, f in top],
            total=total,
            scores={f.id: s for s, f in top},
            degraded=degraded,
        )
