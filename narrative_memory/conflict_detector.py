"""Conflict detection for incoming facts.

Decides, per candidate, between three outcomes:

* ``created``: no active fact shares the conflict key
* ``duplicate``: an active fact with the same key states the same thing
* ``superseded``: the most recent active fact with the key is closed and
  replaced by the candidate, keeping history via ``supersedes_id``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .entities import EntityRegistry
from .models import (
    OUTCOME_CREATED,
    OUTCOME_DUPLICATE,
    OUTCOME_SUPERSEDED,
    CandidateFact,
    Fact,
    IngestResult,
    conflict_key,
)
from .storage import FactStorage

logger = logging.getLogger(__name__)


@dataclass
class Conflict:
    """The active fact a candidate collides with, and how it was settled."""
    existing: Fact
    valid_to: int
    out_of_order: bool = False
    clamped: bool = False


def closing_chapter(existing: Fact, new_valid_from: int) -> tuple[int, bool]:
    """Last chapter the superseded fact stays valid for.

    Normally ``max(1, new_valid_from - 1)``. When that would end the window
    before it starts (same-chapter or out-of-order supersession) the window
    is closed at ``existing.valid_from`` instead. Returns ``(valid_to, clamped)``.
    """
    valid_to = max(1, new_valid_from - 1)
    if valid_to < existing.valid_from:
        return existing.valid_from, True
    return valid_to, False


class ConflictDetector:
    def __init__(self, storage: FactStorage, registry: EntityRegistry):
        self.storage = storage
        self.registry = registry

    def _build_fact(self, candidate: CandidateFact) -> Fact:
        subject_ids = self.registry.resolve_many(candidate.subjects)
        object_ids: Optional[List[str]] = None
        if candidate.objects is not None:
            object_ids = self.registry.resolve_many(candidate.objects)
        return Fact(
            id="",
            type=candidate.type,
            predicate=candidate.predicate,
            subject_ids=subject_ids,
            object_ids=object_ids,
            canonical_fact=candidate.canonical_fact,
            raw_content=candidate.raw_content,
            confidence=candidate.confidence,
            valid_from=candidate.valid_from,
        )

    def find_conflict(self, fact: Fact) -> tuple[Optional[Fact], Optional[Conflict]]:
        """Return ``(duplicate, conflict)``; at most one of them is set."""
        active = self.storage.find_active_conflicts(
            conflict_key(fact.type, fact.predicate, fact.subject_ids, fact.object_ids)
        )
        if not active:
            return None, None

        for existing in active:
            if existing.canonical_fact == fact.canonical_fact:
                return existing, None

        if len(active) > 1:
            logger.warning(
                "%d active facts share conflict key %s; superseding the most recent (%s)",
                len(active), fact.conflict_key, active[0].id,
            )

        latest = active[0]
        valid_to, clamped = closing_chapter(latest, fact.valid_from)
        return None, Conflict(
            existing=latest,
            valid_to=valid_to,
            out_of_order=fact.valid_from < latest.valid_from,
            clamped=clamped,
        )

    def check_and_store(self, candidate: CandidateFact) -> tuple[IngestResult, Optional[Conflict]]:
        """Resolve entities, settle conflicts and persist. Returns the result and any conflict."""
        fact = self._build_fact(candidate)
        duplicate, conflict = self.find_conflict(fact)

        if duplicate is not None:
            logger.debug("Duplicate of %s: %s", duplicate.id, fact.canonical_fact)
            return IngestResult(fact_id=duplicate.id, outcome=OUTCOME_DUPLICATE), None

        if conflict is None:
            fact_id = self.storage.insert_fact(fact)
            return IngestResult(fact_id=fact_id, outcome=OUTCOME_CREATED), None

        old = conflict.existing
        if conflict.out_of_order:
            logger.warning(
                "Out-of-order ingestion for %s: chapter %d supersedes fact %s from chapter %d",
                fact.predicate, fact.valid_from, old.id, old.valid_from,
            )
        if conflict.clamped:
            logger.warning(
                "Closing fact %s at chapter %d instead of %d to keep its window non-empty",
                old.id, conflict.valid_to, max(1, fact.valid_from - 1),
            )

        fact_id = self.storage.supersede_fact(old.id, conflict.valid_to, fact)
        logger.info(
            "Fact %s supersedes %s (%r -> %r, valid_to=%d)",
            fact_id, old.id, old.canonical_fact, fact.canonical_fact, conflict.valid_to,
        )
        return IngestResult(fact_id=fact_id, outcome=OUTCOME_SUPERSEDED, superseded_id=old.id), conflict
