"""Shared fixtures for Narrative Memory tests."""

from __future__ import annotations

from typing import Any, Dict, List

import pytest

from narrative_memory.embeddings import HashEmbeddings
from narrative_memory.entities import EntityRegistry
from narrative_memory.ingest import FactIngestor
from narrative_memory.metrics import reset_metrics
from narrative_memory.search import FactRetriever
from narrative_memory.storage import FactStorage


# ---------------------------------------------------------------------------
# Keep tests away from real config, databases and endpoints
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Point the default DB at a temp dir and force the hash embedder."""
    monkeypatch.setenv("NARRATIVE_MEMORY_DB", str(tmp_path / "default.sqlite"))
    monkeypatch.setenv("NARRATIVE_MEMORY_EMBEDDING_PROVIDER", "hash")
    monkeypatch.delenv("NARRATIVE_MEMORY_CONFIG", raising=False)
    monkeypatch.delenv("EMBEDDING_API_KEY", raising=False)
    reset_metrics()


# ---------------------------------------------------------------------------
# Storage fixture (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_storage(tmp_path):
    """Create a fresh FactStorage backed by a temp SQLite file."""
    s = FactStorage(db_path=str(tmp_path / "test.sqlite"))
    yield s
    s.close()


@pytest.fixture
def registry(tmp_storage):
    return EntityRegistry(tmp_storage)


# ---------------------------------------------------------------------------
# Embedders
# ---------------------------------------------------------------------------

@pytest.fixture
def embedder():
    """Small-dimension deterministic embedder."""
    return HashEmbeddings(dimensions=32)


class FailingEmbedder:
    """Embedder whose endpoint is always down."""

    dimensions = 32

    def __init__(self):
        self.call_count = 0

    async def embed(self, text: str) -> List[float]:
        from narrative_memory.embeddings import EmbeddingError

        self.call_count += 1
        raise EmbeddingError("HTTP 503: unavailable")

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        from narrative_memory.embeddings import EmbeddingError

        self.call_count += 1
        raise EmbeddingError("HTTP 503: unavailable")


@pytest.fixture
def failing_embedder():
    return FailingEmbedder()


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def ingestor(tmp_storage, registry, embedder):
    return FactIngestor(tmp_storage, registry, embedder=embedder)


@pytest.fixture
def retriever(tmp_storage, registry, embedder):
    return FactRetriever(tmp_storage, registry, embedder=embedder)


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

def make_candidate(**overrides: Any) -> Dict[str, Any]:
    """An inter-character candidate fact; override any field."""
    candidate: Dict[str, Any] = {
        "type": "inter-character",
        "predicate": "trusts",
        "subjects": ["Alice"],
        "objects": ["Bob"],
        "canonical_fact": "Alice trusts Bob",
        "raw_content": "Alice handed Bob the key without a second thought.",
        "confidence": 0.9,
        "valid_from": 1,
    }
    candidate.update(overrides)
    return candidate


SAMPLE_CHAPTER = [
    make_candidate(),
    make_candidate(
        type="character-to-user",
        predicate="feels_about_user",
        subjects=["Alice"],
        objects=None,
        canonical_fact="Alice is wary of the player",
        raw_content="Alice kept glancing at you, hand on her dagger.",
        confidence=0.7,
    ),
    make_candidate(
        type="world",
        predicate="weather",
        subjects=["World"],
        objects=None,
        canonical_fact="A storm is raging over the harbor",
        raw_content="Rain lashed the docks all night.",
        confidence=1.0,
    ),
]


@pytest.fixture
def sample_chapter():
    return [dict(c) for c in SAMPLE_CHAPTER]


@pytest.fixture
def candidate():
    """Factory fixture: ``candidate(valid_from=5, ...)`` builds a candidate dict."""
    return make_candidate
