"""Ingestion pipeline: candidate dict → validated fact → stored fact with embedding.

Single candidates raise on failure. Batches record each failure in the
report and keep going, so one malformed candidate never blocks a chapter.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict
from typing import Any, Mapping, Optional, Sequence, Union

from .conflict_detector import ConflictDetector
from .embeddings import EmbeddingError
from .entities import EntityRegistry
from .errors import NarrativeMemoryError, StorageError
from .metrics import collector
from .models import (
    OUTCOME_CREATED,
    OUTCOME_DUPLICATE,
    OUTCOME_SUPERSEDED,
    CandidateFact,
    IngestIssue,
    IngestReport,
    IngestResult,
)
from .storage import FactStorage
from .validation import validate_candidate

logger = logging.getLogger(__name__)

Candidate = Union[CandidateFact, Mapping[str, Any]]


class FactIngestor:
    """Wires validation, conflict detection and embedding attachment together."""

    def __init__(self, storage: FactStorage, registry: EntityRegistry, embedder=None) -> None:
        self.storage = storage
        self.registry = registry
        self.embedder = embedder
        self.detector = ConflictDetector(storage, registry)

    async def _attach_embedding(self, result: IngestResult, candidate: CandidateFact) -> None:
        if self.embedder is None:
            return
        text = f"{candidate.canonical_fact} {candidate.raw_content}"
        try:
            vector = await self.embedder.embed(text)
        except (EmbeddingError, OSError) as exc:
            logger.warning("Embedding failed for fact %s, stored without one: %s", result.fact_id, exc)
            return
        try:
            self.storage.update_embedding(result.fact_id, vector)
        except StorageError as exc:
            # The fact itself is committed; the backfill script fills the gap
            logger.warning("Could not save embedding for fact %s: %s", result.fact_id, exc)

    async def ingest(self, candidate: Candidate, chapter: Optional[int] = None) -> IngestResult:
        """Validate and store one candidate.

        Raises:
            ValidationError: the candidate is malformed; nothing was stored.
            StorageError: the database failed; any supersession was rolled back.
        """
        if isinstance(candidate, CandidateFact):
            candidate = asdict(candidate)
        candidate = validate_candidate(candidate, default_valid_from=chapter)

        result, conflict = self.detector.check_and_store(candidate)
        collector.inc_ingest(result.outcome)
        if conflict is not None and conflict.out_of_order:
            collector.inc_out_of_order()

        if result.outcome != OUTCOME_DUPLICATE:
            await self._attach_embedding(result, candidate)
        return result

    async def ingest_many(
        self,
        candidates: Sequence[Candidate],
        chapter: Optional[int] = None,
    ) -> IngestReport:
        """Ingest a batch in order. *chapter* is the default ``valid_from``."""
        start = time.time()
        report = IngestReport()
        entities_before = self.storage.count_entities()

        for index, candidate in enumerate(candidates):
            try:
                result = await self.ingest(candidate, chapter=chapter)
            except NarrativeMemoryError as exc:
                logger.warning("Candidate %d rejected (%s): %s", index, exc.category, exc.message)
                report.errors.append(
                    IngestIssue(
                        index=index,
                        category=exc.category,
                        message=exc.message,
                        retryable=exc.retryable,
                    )
                )
                continue

            report.results.append(result)
            if result.outcome == OUTCOME_CREATED:
                report.facts_created += 1
            elif result.outcome == OUTCOME_SUPERSEDED:
                report.facts_superseded += 1
            else:
                report.facts_duplicated += 1

        report.entities_created = self.storage.count_entities() - entities_before
        report.processing_time = time.time() - start
        logger.info(
            "Ingested %d candidates: %d created, %d superseded, %d duplicate, %d rejected",
            len(candidates), report.facts_created, report.facts_superseded,
            report.facts_duplicated, len(report.errors),
        )
        return report
