"""Entity registry: free-text names to stable entity ids.

* Name normalization (trim, collapse whitespace, per-word title case)
* Built-in singletons for the player and the world
* Alias tracking (the original spelling is recorded on creation)
* Race-tolerant creation: a lost uniqueness race re-reads the winner
* Fuzzy entity search via rapidfuzz
* Capitalized-word heuristic for entity names mentioned in a query
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz, process as rfprocess

from .errors import DuplicateEntityError, EntityResolutionError, ValidationError
from .models import DEFAULT_USER_ID, DEFAULT_WORLD_ID, KIND_CHARACTER, Entity
from .storage import FactStorage, new_id

logger = logging.getLogger(__name__)

# Case-insensitive names that always map to a seeded singleton
SPECIAL_ENTITY_NAMES: Dict[str, str] = {
    "user": DEFAULT_USER_ID,
    "player": DEFAULT_USER_ID,
    "world": DEFAULT_WORLD_ID,
    "environment": DEFAULT_WORLD_ID,
}

# Pronoun-like references that count as entity mentions in a query
QUERY_ENTITY_VOCABULARY = ("user", "player", "world", "environment")

# Sentence-initial words that match the capitalized-word heuristic but
# never name a character
_QUERY_STOPWORDS = {
    "A", "An", "And", "Are", "Did", "Do", "Does", "How", "In", "Is", "It",
    "Of", "On", "Or", "The", "Was", "Were", "What", "When", "Where", "Which",
    "Who", "Whom", "Whose", "Why",
}

_CAPITALIZED_WORD_RE = re.compile(r"^[A-Z][a-z]+$")
_EDGE_PUNCT = ".,;:!?\"'()[]{}"


def normalize_name(name: str) -> str:
    """``"  alice   SMITH "`` → ``"Alice Smith"``."""
    words = (name or "").split()
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def special_entity_id(name: str) -> Optional[str]:
    return SPECIAL_ENTITY_NAMES.get((name or "").strip().lower())


def extract_query_entities(text: str) -> List[str]:
    """Entity names mentioned in *text*, in order of first appearance."""
    found: List[str] = []
    for token in (text or "").split():
        word = token.strip(_EDGE_PUNCT)
        if word.endswith("'s"):
            word = word[:-2]
        if _CAPITALIZED_WORD_RE.match(word) and word not in _QUERY_STOPWORDS:
            if word not in found:
                found.append(word)

    lowered = (text or "").lower()
    for term in QUERY_ENTITY_VOCABULARY:
        if re.search(rf"\b{term}\b", lowered) and not any(f.lower() == term for f in found):
            found.append(term)
    return found


class EntityRegistry:
    """Resolve names to entity ids against a ``FactStorage``."""

    def __init__(self, storage: FactStorage, max_retries: int = 3) -> None:
        self.storage = storage
        self.max_retries = max(1, max_retries)

    def lookup(self, name: str) -> Optional[Entity]:
        """Read-only resolution: special names, canonical name, then aliases."""
        special = special_entity_id(name)
        if special:
            return self.storage.get_entity(special)
        normalized = normalize_name(name)
        if not normalized:
            return None
        return self.storage.find_entity(normalized, alias=name.strip())

    def resolve(self, name: str) -> str:
        """Return the entity id for *name*, creating a character entity if unknown."""
        if not name or not name.strip():
            raise ValidationError("entity name must not be empty", {"field": "name"})

        special = special_entity_id(name)
        if special:
            return special

        normalized = normalize_name(name)
        original = name.strip()

        for attempt in range(self.max_retries):
            existing = self.storage.find_entity(normalized, alias=original)
            if existing is not None:
                return existing.id

            entity = Entity(
                id=new_id(),
                name=normalized,
                kind=KIND_CHARACTER,
                aliases=[original],
            )
            try:
                self.storage.insert_entity(entity)
            except DuplicateEntityError:
                logger.info(
                    "Entity %r created concurrently, re-reading (attempt %d/%d)",
                    normalized, attempt + 1, self.max_retries,
                )
                continue
            logger.info("Created entity %s (%s)", entity.id, normalized)
            return entity.id

        raise EntityResolutionError(
            f"could not resolve entity {normalized!r} after {self.max_retries} attempts",
            {"name": normalized},
        )

    def resolve_many(self, names: List[str]) -> List[str]:
        return [self.resolve(n) for n in names]

    def add_alias(self, entity_id: str, alias: str) -> bool:
        alias = (alias or "").strip()
        if not alias:
            raise ValidationError("alias must not be empty", {"field": "alias"})
        return self.storage.add_entity_alias(entity_id, alias)

    def list_entities(self, kind: Optional[str] = None) -> List[Entity]:
        return self.storage.list_entities(kind)

    def search(self, query: str, limit: int = 10, threshold: int = 60) -> List[Dict[str, Any]]:
        """Fuzzy-rank entities whose name or an alias resembles *query*."""
        query = (query or "").strip()
        if not query:
            return []

        entities = self.storage.list_entities()
        choices: List[str] = []
        owners: List[Entity] = []
        for entity in entities:
            for label in [entity.name, *entity.aliases]:
                choices.append(label)
                owners.append(entity)

        matches = rfprocess.extract(
            query, choices, scorer=fuzz.WRatio, processor=str.lower,
            score_cutoff=threshold, limit=None,
        )

        best: Dict[str, Dict[str, Any]] = {}
        for label, score, idx in matches:
            entity = owners[idx]
            current = best.get(entity.id)
            if current is None or score > current["score"]:
                best[entity.id] = {**entity.to_dict(), "matched": label, "score": round(score, 1)}

        ranked = sorted(best.values(), key=lambda d: (-d["score"], d["name"]))
        return ranked[:limit]
