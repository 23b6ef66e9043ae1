"""Embedding providers.

Two implementations share the same async interface (``embed``,
``embed_batch``, ``dimensions``) so the ranker and the store never care
which one is in use:

* ``HashEmbeddings``: deterministic, content-addressed placeholder. Same
  text gives the same vector on every run and platform. Not a semantic model.
* ``RemoteEmbeddings``: OpenAI-compatible ``/embeddings`` endpoint called with
  raw ``requests``, with retry/back-off and an in-memory LRU cache.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from collections import OrderedDict
from typing import List, Optional, Protocol

import numpy as np
import requests

from .config import Config, load_config

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when the embedding API returns an error."""


class Embedder(Protocol):
    dimensions: int

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]: ...


# ---------------------------------------------------------------------------
# Placeholder hash embedding
# ---------------------------------------------------------------------------

def hash_embedding(text: str, dimensions: int = 256) -> List[float]:
    """Content-addressed pseudo-embedding of *text*.

    Each block of 8 components comes from ``sha256(f"{text}_salt_{i}")``,
    with bytes mapped to [-1, 1]. The vector is then L2-normalized.
    """
    if dimensions < 1:
        raise ValueError("dimensions must be >= 1")
    normalized = (text or "").lower().strip()
    raw: List[float] = []
    for i in range(math.ceil(dimensions / 8)):
        digest = hashlib.sha256(f"{normalized}_salt_{i}".encode("utf-8")).digest()
        raw.extend(b / 127.5 - 1.0 for b in digest[:8])

    vec = np.asarray(raw[:dimensions], dtype=np.float64)
    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec = vec / norm
    return vec.tolist()


class HashEmbeddings:
    """Deterministic placeholder embedder."""

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = dimensions

    def embed_sync(self, text: str) -> List[float]:
        return hash_embedding(text, self.dimensions)

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_sync(t) for t in texts]


# ---------------------------------------------------------------------------
# Remote embedding endpoint
# ---------------------------------------------------------------------------

class RemoteEmbeddings:
    """Async wrapper around an OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        cache_size: int = 1024,
        timeout: float = 30.0,
    ) -> None:
        cfg = load_config()
        self.api_key: str = api_key or cfg.embedding_api_key
        self.model: str = model or cfg.embedding_model
        self.dimensions: int = dimensions or cfg.embedding_dimensions
        self.base_url: str = (base_url or cfg.embedding_base_url).rstrip("/")
        self.max_retries: int = max(1, max_retries)
        self.timeout = timeout

        self._url = f"{self.base_url}/embeddings"
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        self._cache_size = cache_size
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def _cache_get(self, text: str) -> Optional[List[float]]:
        key = self._cache_key(text)
        vec = self._cache.get(key)
        if vec is not None:
            self._cache.move_to_end(key)
        return vec

    def _cache_put(self, text: str, vector: List[float]) -> None:
        key = self._cache_key(text)
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    # ------------------------------------------------------------------
    # Low-level HTTP call with retries
    # ------------------------------------------------------------------

    def _call_api(self, texts: List[str]) -> List[List[float]]:
        """Blocking HTTP POST with exponential back-off on 429/5xx and network errors."""
        payload = {"model": self.model, "input": texts, "dimensions": self.dimensions}

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = requests.post(self._url, headers=self._headers, json=payload, timeout=self.timeout)
            except requests.RequestException as exc:
                last_exc = exc
                wait = 2 ** attempt
                logger.warning(
                    "Embedding request error (attempt %d/%d): %s, retrying in %ds",
                    attempt + 1, self.max_retries, exc, wait,
                )
                time.sleep(wait)
                continue

            if resp.status_code == 200:
                items = sorted(resp.json()["data"], key=lambda d: d["index"])
                return [item["embedding"] for item in items]

            if resp.status_code in (429, 500, 502, 503, 504):
                last_exc = EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:200]}")
                wait = 2 ** attempt
                logger.warning(
                    "Embedding endpoint returned %s (attempt %d/%d), retrying in %ds",
                    resp.status_code, attempt + 1, self.max_retries, wait,
                )
                time.sleep(wait)
                continue

            raise EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:500]}")

        raise EmbeddingError(f"Failed after {self.max_retries} retries: {last_exc}")

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> List[float]:
        cached = self._cache_get(text)
        if cached is not None:
            return cached
        vectors = await asyncio.to_thread(self._call_api, [text])
        self._cache_put(text, vectors[0])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        results: List[Optional[List[float]]] = [self._cache_get(t) for t in texts]
        missing = [i for i, vec in enumerate(results) if vec is None]
        if missing:
            vectors = await asyncio.to_thread(self._call_api, [texts[i] for i in missing])
            for idx, vec in zip(missing, vectors):
                results[idx] = vec
                self._cache_put(texts[idx], vec)
        return results  # type: ignore[return-value]


def build_embedder(cfg: Optional[Config] = None):
    """Create the embedder selected by ``cfg.embedding_provider``."""
    cfg = cfg or load_config()
    if cfg.embedding_provider == "remote":
        return RemoteEmbeddings(
            api_key=cfg.embedding_api_key,
            model=cfg.embedding_model,
            dimensions=cfg.embedding_dimensions,
            base_url=cfg.embedding_base_url,
            max_retries=cfg.embed_max_retries,
            cache_size=cfg.embed_cache_size,
        )
    return HashEmbeddings(dimensions=cfg.embedding_dimensions)
