"""FastAPI HTTP API for the Narrative Memory system.

Endpoints:
    POST   /v1/facts                     -- Ingest one candidate fact
    POST   /v1/ingest                    -- Ingest a batch of candidate facts
    GET    /v1/memories                  -- Filtered / ranked retrieval
    GET    /v1/memories/{id}             -- One fact
    GET    /v1/memories/{id}/chain       -- Supersession chain
    GET    /v1/memories/{id}/similar     -- Facts similar to one fact
    GET    /v1/entities                  -- List or fuzzy-search entities
    GET    /v1/stats                     -- Statistics
    GET    /v1/metrics                   -- Prometheus metrics
    GET    /v1/health                    -- Health check (no auth)

Run: ``python -m narrative_memory.api``
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse, PlainTextResponse

from .config import Config, load_config
from .embeddings import EmbeddingError, build_embedder
from .entities import EntityRegistry
from .errors import NarrativeMemoryError, ValidationError
from .ingest import FactIngestor
from .metrics import collector, render_prometheus_metrics
from .middleware import APIKeyMiddleware, AuditLogMiddleware, RateLimitMiddleware
from .models import ENTITY_KINDS, FactFilter
from .ranking import RankingWeights, RelevanceRanker
from .search import FactRetriever, RetrievalContext
from .storage import FactStorage
from .validation import (
    MAX_CHAPTER,
    parse_chapter,
    parse_csv,
    parse_fact_types,
    parse_status,
    validate_character_name,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_storage: Optional[FactStorage] = None
_registry: Optional[EntityRegistry] = None
_embedder = None
_ingestor: Optional[FactIngestor] = None
_retriever: Optional[FactRetriever] = None
_config: Optional[Config] = None
_start_time: float = 0.0

# Audit log file (optional)
_audit_log_path = os.environ.get("NARRATIVE_MEMORY_AUDIT_LOG")
if _audit_log_path:
    try:
        _audit_handler = logging.FileHandler(_audit_log_path)
        _audit_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        logging.getLogger("audit").addHandler(_audit_handler)
    except OSError as exc:
        logger.warning("Audit log %s unavailable: %s", _audit_log_path, exc)
logging.getLogger("audit").setLevel(logging.INFO)


def _require_services() -> tuple[FactIngestor, FactRetriever]:
    if _ingestor is None or _retriever is None:
        raise HTTPException(503, "Memory store not initialised")
    return _ingestor, _retriever


def _require_storage() -> FactStorage:
    if _storage is None:
        raise HTTPException(503, "Memory store not initialised")
    return _storage


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    global _storage, _registry, _embedder, _ingestor, _retriever, _config, _start_time

    _config = load_config()
    errors = _config.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    _storage = FactStorage(db_path=_config.db_path, busy_timeout_ms=_config.busy_timeout_ms)
    _registry = EntityRegistry(_storage, max_retries=_config.entity_resolve_retries)
    _embedder = build_embedder(_config)
    _ingestor = FactIngestor(_storage, _registry, embedder=_embedder)
    _retriever = FactRetriever(
        _storage,
        _registry,
        embedder=_embedder,
        ranker=RelevanceRanker(RankingWeights.from_config(_config), recency_decay=_config.recency_decay),
    )
    _start_time = time.time()
    logger.info(
        "Narrative memory ready (db=%s, embeddings=%s/%d)",
        _config.db_path, _config.embedding_provider, _config.embedding_dimensions,
    )

    yield

    if _storage is not None:
        _storage.close()
    _storage = _registry = _embedder = _ingestor = _retriever = None
    logger.info("Narrative memory shut down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Narrative Memory API",
    version="0.1.0",
    lifespan=lifespan,
)

_boot_config = load_config()

app.add_middleware(AuditLogMiddleware)
app.add_middleware(
    RateLimitMiddleware,
    max_requests=_boot_config.rate_limit_requests,
    window_seconds=_boot_config.rate_limit_window,
)
if _boot_config.api_key:
    app.add_middleware(APIKeyMiddleware, api_key=_boot_config.api_key)
    logger.info("API key authentication enabled")
else:
    logger.warning("No NARRATIVE_MEMORY_API_KEY set -- API is UNAUTHENTICATED")


@app.exception_handler(NarrativeMemoryError)
async def memory_error_handler(request, exc: NarrativeMemoryError):
    status_code = 400 if isinstance(exc, ValidationError) else 503
    logger.warning("%s error: %s (path=%s)", exc.category, exc.message, request.url.path)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": exc.errors()},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class IngestRequest(BaseModel):
    facts: List[Dict[str, Any]] = Field(default_factory=list, max_length=1000)
    chapter: Optional[int] = Field(default=None, ge=1, le=MAX_CHAPTER)


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

@app.post("/v1/facts")
async def ingest_fact(candidate: Dict[str, Any]) -> Dict[str, Any]:
    """Ingest a single candidate fact. Returns its id and outcome."""
    ingestor, _ = _require_services()
    result = await ingestor.ingest(candidate)
    return result.to_dict()


@app.post("/v1/ingest")
async def ingest_batch(req: IngestRequest) -> Dict[str, Any]:
    """Ingest a batch of candidate facts, typically one chapter's extraction output."""
    ingestor, _ = _require_services()
    report = await ingestor.ingest_many(req.facts, chapter=req.chapter)
    return report.to_dict()


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

@app.get("/v1/memories")
async def list_memories(
    q: Optional[str] = Query(default=None, max_length=2000),
    fact_type: Optional[str] = Query(default=None, alias="type"),
    character: Optional[str] = Query(default=None),
    chapter: Optional[str] = Query(default=None),
    valid_at: Optional[int] = Query(default=None, ge=1, le=MAX_CHAPTER),
    predicate: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    include_world: bool = Query(default=False),
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    threshold: Optional[float] = Query(default=None, ge=0.0, le=1.0),
) -> Dict[str, Any]:
    """Retrieve facts. Ranked by relevance when ``q`` is given, by chapter otherwise."""
    _, retriever = _require_services()
    cfg = _config or Config()

    chapter_number, chapter_range = parse_chapter(chapter) if chapter else (None, None)
    filters = FactFilter(
        types=parse_fact_types(fact_type),
        predicates=parse_csv(predicate),
        status=parse_status(status),
        chapter_number=chapter_number,
        chapter_range=chapter_range,
        valid_at=valid_at,
    )
    ctx = RetrievalContext(
        query=q,
        filters=filters,
        character_name=validate_character_name(character) if character else None,
        include_world_facts=include_world,
        limit=limit or cfg.default_limit,
        threshold=threshold if threshold is not None else cfg.default_threshold,
    )
    pack = await retriever.retrieve(ctx)
    return {**pack.to_dict(), "query": q}


@app.get("/v1/memories/{fact_id}")
async def get_memory(fact_id: str) -> Dict[str, Any]:
    fact = _require_storage().get_fact(fact_id)
    if fact is None:
        raise HTTPException(404, f"Fact {fact_id} not found")
    return fact.to_dict()


@app.get("/v1/memories/{fact_id}/chain")
async def get_chain(fact_id: str) -> Dict[str, Any]:
    """Supersession history of a fact. Unknown ids give an empty chain."""
    return _require_storage().get_supersession_chain(fact_id).to_dict()


@app.get("/v1/memories/{fact_id}/similar")
async def similar_memories(
    fact_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    threshold: float = Query(default=0.3, ge=0.0, le=1.0),
) -> Dict[str, Any]:
    _, retriever = _require_services()
    pack = await retriever.find_similar(fact_id, limit=limit, threshold=threshold)
    return pack.to_dict()


# ---------------------------------------------------------------------------
# Entities / stats / ops
# ---------------------------------------------------------------------------

@app.get("/v1/entities")
async def list_entities(
    q: Optional[str] = Query(default=None, max_length=100),
    kind: Optional[str] = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
) -> Dict[str, Any]:
    """List entities, or fuzzy-search them by name and alias when ``q`` is given."""
    if _registry is None:
        raise HTTPException(503, "Memory store not initialised")
    if kind is not None and kind not in ENTITY_KINDS:
        raise ValidationError(f"kind must be one of {', '.join(ENTITY_KINDS)}", {"field": "kind"})

    if q:
        matches = _registry.search(q, limit=limit)
        if kind:
            matches = [m for m in matches if m["kind"] == kind]
        return {"entities": matches, "count": len(matches)}

    entities = [e.to_dict() for e in _registry.list_entities(kind)]
    return {"entities": entities, "count": len(entities)}


@app.get("/v1/stats")
async def stats() -> Dict[str, Any]:
    """Counts by status and type, entity totals and the consistency score."""
    return _require_storage().stats()


@app.get("/v1/metrics")
async def metrics() -> PlainTextResponse:
    """Prometheus text exposition."""
    s = _require_storage().stats()
    collector.set_store_gauges(facts_by_status=s["by_status"], entities_total=s["entities"])
    return PlainTextResponse(render_prometheus_metrics(), media_type="text/plain; version=0.0.4")


@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    """Returns status "ok"|"degraded"|"down" with storage and embedding probes."""
    checks: Dict[str, bool] = {"storage": False, "embedding": False}

    if _storage is not None:
        try:
            _storage.count_entities()
            checks["storage"] = True
        except NarrativeMemoryError as exc:
            logger.warning("Health: storage probe failed: %s", exc)

    if _embedder is not None:
        try:
            await asyncio.wait_for(_embedder.embed("health_probe"), timeout=5.0)
            checks["embedding"] = True
        except (EmbeddingError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Health: embedding probe failed: %s", exc)

    overall = "ok" if all(checks.values()) else ("degraded" if checks["storage"] else "down")
    return {
        "status": overall,
        "checks": checks,
        "uptime_seconds": round(time.time() - _start_time, 1),
    }


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Narrative Memory API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "narrative_memory.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level=cfg.log_level.lower(),
    )


if __name__ == "__main__":
    main()
