"""Configuration for the Narrative Memory system.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``NARRATIVE_MEMORY_*`` prefix.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

EMBEDDING_PROVIDERS = ("hash", "remote")


@dataclass
class Config:
    """Central configuration for all memory sub-systems."""

    # Storage
    db_path: str = ""  # resolved in load_config()
    busy_timeout_ms: int = 5000

    # Embeddings: "hash" is the deterministic placeholder, "remote" an
    # OpenAI-compatible /embeddings endpoint
    embedding_provider: str = "hash"
    embedding_dimensions: int = 256
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = "https://api.openai.com/v1"
    embedding_api_key: str = ""
    embed_max_retries: int = 3
    embed_cache_size: int = 1024

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8788
    api_key: str = ""
    rate_limit_requests: int = 120
    rate_limit_window: int = 60
    log_level: str = "INFO"

    # Relevance weights
    weight_semantic: float = 0.40
    weight_recency: float = 0.25
    weight_confidence: float = 0.10
    weight_entity: float = 0.15
    weight_type: float = 0.10
    recency_decay: float = 0.08

    # Retrieval
    default_limit: int = 50
    max_limit: int = 1000
    default_threshold: float = 0.0

    # Entity registry
    entity_resolve_retries: int = 3

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            errors.append(
                f"NARRATIVE_MEMORY_EMBEDDING_PROVIDER must be one of {', '.join(EMBEDDING_PROVIDERS)}"
            )
        if self.embedding_provider == "remote" and not self.embedding_api_key:
            errors.append("EMBEDDING_API_KEY is required for the remote embedding provider")
        if self.embedding_dimensions < 1:
            errors.append("NARRATIVE_MEMORY_DIMENSIONS must be >= 1")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("NARRATIVE_MEMORY_PORT must be 1-65535")
        weights = (
            self.weight_semantic,
            self.weight_recency,
            self.weight_confidence,
            self.weight_entity,
            self.weight_type,
        )
        if any(w < 0 for w in weights):
            errors.append("relevance weights must be non-negative")
        if self.recency_decay <= 0:
            errors.append("recency_decay must be > 0")
        if not 1 <= self.default_limit <= self.max_limit:
            errors.append("default_limit must be between 1 and max_limit")
        if not 0.0 <= self.default_threshold <= 1.0:
            errors.append("default_threshold must be within [0, 1]")
        if self.entity_resolve_retries < 1:
            errors.append("entity_resolve_retries must be >= 1")
        return errors


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        NARRATIVE_MEMORY_CONFIG
        NARRATIVE_MEMORY_DB
        NARRATIVE_MEMORY_EMBEDDING_PROVIDER
        NARRATIVE_MEMORY_DIMENSIONS
        NARRATIVE_MEMORY_EMBEDDING_MODEL
        NARRATIVE_MEMORY_EMBEDDING_URL
        EMBEDDING_API_KEY
        NARRATIVE_MEMORY_HOST
        NARRATIVE_MEMORY_PORT
        NARRATIVE_MEMORY_API_KEY
        NARRATIVE_MEMORY_LOG_LEVEL
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("NARRATIVE_MEMORY_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if hasattr(cfg, key):
                expected_type = type(getattr(cfg, key))
                try:
                    setattr(cfg, key, expected_type(val))
                except (ValueError, TypeError):
                    logger.warning("Ignoring bad config value %s=%r in %s", key, val, json_path)

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "NARRATIVE_MEMORY_DB": ("db_path", str),
        "NARRATIVE_MEMORY_EMBEDDING_PROVIDER": ("embedding_provider", str),
        "NARRATIVE_MEMORY_DIMENSIONS": ("embedding_dimensions", int),
        "NARRATIVE_MEMORY_EMBEDDING_MODEL": ("embedding_model", str),
        "NARRATIVE_MEMORY_EMBEDDING_URL": ("embedding_base_url", str),
        "EMBEDDING_API_KEY": ("embedding_api_key", str),
        "NARRATIVE_MEMORY_HOST": ("api_host", str),
        "NARRATIVE_MEMORY_PORT": ("api_port", int),
        "NARRATIVE_MEMORY_API_KEY": ("api_key", str),
        "NARRATIVE_MEMORY_LOG_LEVEL": ("log_level", str),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                logger.warning("Ignoring bad environment value %s=%r", env_key, val)

    cfg.embedding_provider = cfg.embedding_provider.strip().lower()
    cfg.log_level = cfg.log_level.strip().upper()

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".narrative-memory" / "memories.sqlite")

    return cfg
