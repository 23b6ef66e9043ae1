"""SQLite storage layer for entities and temporal facts.

Single-file database with:
* ``entities`` table with JSON alias lists and two seeded singletons
* ``facts`` table holding every version of every claim (append-only)
* Indexes for time-gating ``(valid_from, valid_to)`` and filtering ``(status, type)``
* Auto-create schema on first use

List-valued columns (subject/object ids, aliases, embeddings) are stored as
JSON arrays in TEXT columns and decoded on read.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import DuplicateEntityError, StorageError, ValidationError
from .models import (
    DEFAULT_USER_ID,
    DEFAULT_WORLD_ID,
    ENTITY_KINDS,
    FACT_STATUSES,
    FACT_TYPES,
    KIND_USER,
    KIND_WORLD,
    STATUS_ACTIVE,
    STATUS_SUPERSEDED,
    Entity,
    Fact,
    FactFilter,
    SupersessionChain,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
-- Named participants
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    kind TEXT NOT NULL DEFAULT 'character'
        CHECK (kind IN ('character', 'user', 'world')),
    aliases TEXT NOT NULL DEFAULT '[]',
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entities_kind ON entities(kind);

-- Temporal facts (every version of every claim)
CREATE TABLE IF NOT EXISTS facts (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL
        CHECK (type IN ('inter-character', 'character-to-user', 'world')),
    predicate TEXT NOT NULL,
    subject_ids TEXT NOT NULL,
    object_ids TEXT,
    conflict_key TEXT NOT NULL,
    canonical_fact TEXT NOT NULL,
    raw_content TEXT NOT NULL,
    confidence REAL NOT NULL CHECK (confidence >= 0.1 AND confidence <= 1.0),
    valid_from INTEGER NOT NULL CHECK (valid_from >= 1),
    valid_to INTEGER CHECK (valid_to IS NULL OR valid_to >= valid_from),
    embedding TEXT,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'superseded', 'duplicate')),
    supersedes_id TEXT REFERENCES facts(id),
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_facts_window ON facts(valid_from, valid_to);
CREATE INDEX IF NOT EXISTS idx_facts_status_type ON facts(status, type);
CREATE INDEX IF NOT EXISTS idx_facts_conflict ON facts(conflict_key, status);
CREATE INDEX IF NOT EXISTS idx_facts_predicate ON facts(predicate);
CREATE INDEX IF NOT EXISTS idx_facts_supersedes ON facts(supersedes_id);
CREATE INDEX IF NOT EXISTS idx_facts_created ON facts(created_at)
"""

_SEED_ENTITIES = (
    (DEFAULT_USER_ID, "User", KIND_USER, ["Player", "Human"]),
    (DEFAULT_WORLD_ID, "World", KIND_WORLD, ["Environment", "Setting"]),
)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    """Translate sqlite3 failures into retryable StorageError."""
    try:
        yield
    except sqlite3.Error as exc:
        logger.error("Storage failure during %s: %s", action, exc)
        raise StorageError(f"{action} failed: {exc}") from exc


class FactStorage:
    """SQLite-backed store for entities and facts.

    One connection is shared between threads and guarded by a re-entrant
    lock. Writes that touch more than one row run inside ``_transaction``.
    """

    def __init__(self, db_path: Optional[str] = None, busy_timeout_ms: Optional[int] = None) -> None:
        from .config import load_config

        cfg = load_config()
        self.db_path = db_path or cfg.db_path
        self.busy_timeout_ms = busy_timeout_ms if busy_timeout_ms is not None else cfg.busy_timeout_ms

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            # Autocommit mode; transactions are opened explicitly
            self._conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of writes atomically; any exception rolls all of them back."""
        with self._lock:
            conn = self._get_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_exc:
                    # SQLite may already have rolled back (e.g. SQLITE_FULL)
                    logger.warning("Rollback failed: %s", rollback_exc)
                raise
            else:
                conn.execute("COMMIT")

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock, _storage_errors("query"):
            return self._get_conn().execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock, _storage_errors("query"):
            return self._get_conn().execute(sql, params).fetchone()

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        with _storage_errors("schema bootstrap"), self._transaction() as conn:
            for stmt in _SCHEMA_SQL.split(";"):
                stmt = stmt.strip()
                if stmt:
                    conn.execute(stmt)

            now = time.time()
            for entity_id, name, kind, aliases in _SEED_ENTITIES:
                conn.execute(
                    """INSERT OR IGNORE INTO entities (id, name, kind, aliases, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (entity_id, name, kind, json.dumps(aliases), now),
                )

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        d = dict(row)
        return Entity(
            id=d["id"],
            name=d["name"],
            kind=d["kind"],
            aliases=json.loads(d.get("aliases") or "[]"),
            created_at=d["created_at"],
        )

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        row = self._fetchone("SELECT * FROM entities WHERE id = ?", (entity_id,))
        return self._row_to_entity(row) if row else None

    def find_entity(self, name: str, alias: Optional[str] = None) -> Optional[Entity]:
        """Find by exact canonical *name*, or by *alias* (case-insensitive) in the alias list.

        An exact name match wins over an alias match.
        """
        alias = alias if alias is not None else name
        row = self._fetchone(
            """SELECT * FROM entities
               WHERE name = ?
                  OR EXISTS (
                      SELECT 1 FROM json_each(entities.aliases)
                      WHERE lower(json_each.value) = lower(?)
                  )
               ORDER BY (name = ?) DESC, created_at ASC
               LIMIT 1""",
            (name, alias, name),
        )
        return self._row_to_entity(row) if row else None

    def insert_entity(self, entity: Entity) -> Entity:
        """Insert a new entity.

        Raises:
            DuplicateEntityError: another writer already created this name.
            StorageError: any other database failure.
        """
        if entity.kind not in ENTITY_KINDS:
            raise StorageError(f"unknown entity kind {entity.kind!r}")
        entity.created_at = entity.created_at or time.time()
        try:
            with self._transaction() as conn:
                conn.execute(
                    """INSERT INTO entities (id, name, kind, aliases, created_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (entity.id, entity.name, entity.kind, json.dumps(entity.aliases), entity.created_at),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEntityError(f"entity {entity.name!r} already exists") from exc
        except sqlite3.Error as exc:
            logger.error("Storage failure during entity insert: %s", exc)
            raise StorageError(f"entity insert failed: {exc}") from exc
        return entity

    def add_entity_alias(self, entity_id: str, alias: str) -> bool:
        """Append *alias* unless already present (case-insensitive). Returns True if added."""
        with _storage_errors("alias update"), self._transaction() as conn:
            row = conn.execute("SELECT aliases FROM entities WHERE id = ?", (entity_id,)).fetchone()
            if row is None:
                return False
            aliases = json.loads(row["aliases"] or "[]")
            if any(a.lower() == alias.lower() for a in aliases):
                return False
            aliases.append(alias)
            conn.execute(
                "UPDATE entities SET aliases = ? WHERE id = ?",
                (json.dumps(aliases), entity_id),
            )
            return True

    def list_entities(self, kind: Optional[str] = None) -> List[Entity]:
        if kind:
            rows = self._fetchall(
                "SELECT * FROM entities WHERE kind = ? ORDER BY created_at, rowid", (kind,)
            )
        else:
            rows = self._fetchall("SELECT * FROM entities ORDER BY created_at, rowid")
        return [self._row_to_entity(r) for r in rows]

    def count_entities(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS c FROM entities")
        return int(row["c"]) if row else 0

    def entity_names(self, entity_ids: List[str]) -> Dict[str, str]:
        """Map entity ids to canonical names (unknown ids are omitted)."""
        unique = sorted(set(entity_ids))
        if not unique:
            return {}
        placeholders = ",".join("?" for _ in unique)
        rows = self._fetchall(
            f"SELECT id, name FROM entities WHERE id IN ({placeholders})", tuple(unique)
        )
        return {r["id"]: r["name"] for r in rows}

    # ------------------------------------------------------------------
    # Fact helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_fact(row: sqlite3.Row) -> Fact:
        d = dict(row)
        object_ids = d.get("object_ids")
        embedding = d.get("embedding")
        return Fact(
            id=d["id"],
            type=d["type"],
            predicate=d["predicate"],
            subject_ids=json.loads(d["subject_ids"] or "[]"),
            object_ids=json.loads(object_ids) if object_ids is not None else None,
            canonical_fact=d["canonical_fact"],
            raw_content=d["raw_content"],
            confidence=d["confidence"],
            valid_from=d["valid_from"],
            valid_to=d["valid_to"],
            embedding=json.loads(embedding) if embedding is not None else None,
            status=d["status"],
            supersedes_id=d["supersedes_id"],
            created_at=d["created_at"],
            updated_at=d["updated_at"],
        )

    def _facts_from_rows(self, rows: List[sqlite3.Row]) -> List[Fact]:
        facts = [self._row_to_fact(r) for r in rows]
        self._attach_names(facts)
        return facts

    def _attach_names(self, facts: List[Fact]) -> None:
        ids: List[str] = []
        for fact in facts:
            ids.extend(fact.subject_ids)
            ids.extend(fact.object_ids or [])
        names = self.entity_names(ids)
        for fact in facts:
            fact.subject_names = [names.get(i, i) for i in fact.subject_ids]
            fact.object_names = [names.get(i, i) for i in (fact.object_ids or [])]

    @staticmethod
    def _insert_fact_row(conn: sqlite3.Connection, fact: Fact) -> None:
        conn.execute(
            """INSERT INTO facts
               (id, type, predicate, subject_ids, object_ids, conflict_key,
                canonical_fact, raw_content, confidence, valid_from, valid_to,
                embedding, status, supersedes_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                fact.id,
                fact.type,
                fact.predicate,
                json.dumps(fact.subject_ids),
                json.dumps(fact.object_ids) if fact.object_ids is not None else None,
                fact.conflict_key,
                fact.canonical_fact,
                fact.raw_content,
                fact.confidence,
                fact.valid_from,
                fact.valid_to,
                json.dumps(fact.embedding) if fact.embedding is not None else None,
                fact.status,
                fact.supersedes_id,
                fact.created_at,
                fact.updated_at,
            ),
        )

    @staticmethod
    def _stamp(fact: Fact) -> None:
        now = time.time()
        fact.id = fact.id or new_id()
        fact.created_at = fact.created_at or now
        fact.updated_at = fact.updated_at or fact.created_at

    # ------------------------------------------------------------------
    # Fact writes
    # ------------------------------------------------------------------

    def insert_fact(self, fact: Fact) -> str:
        """Insert a new fact row. Returns the fact ID."""
        self._stamp(fact)
        with _storage_errors("fact insert"), self._transaction() as conn:
            self._insert_fact_row(conn, fact)
        return fact.id

    def supersede_fact(self, old_fact_id: str, valid_to: int, new_fact: Fact) -> str:
        """Close *old_fact_id* at *valid_to* and insert *new_fact* as its successor.

        Both writes share one transaction: if the insert fails the old fact
        keeps its active status and open window.
        """
        self._stamp(new_fact)
        new_fact.supersedes_id = old_fact_id
        new_fact.status = STATUS_ACTIVE
        with _storage_errors("supersession"), self._transaction() as conn:
            cur = conn.execute(
                """UPDATE facts
                   SET status = ?, valid_to = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (STATUS_SUPERSEDED, valid_to, time.time(), old_fact_id, STATUS_ACTIVE),
            )
            if cur.rowcount != 1:
                raise StorageError(
                    f"fact {old_fact_id} is no longer active; retry the ingestion",
                    details={"fact_id": old_fact_id},
                )
            self._insert_fact_row(conn, new_fact)
        return new_fact.id

    def update_embedding(self, fact_id: str, vector: List[float]) -> bool:
        """Attach an embedding to an existing fact. Returns True if found."""
        with _storage_errors("embedding update"), self._transaction() as conn:
            cur = conn.execute(
                "UPDATE facts SET embedding = ?, updated_at = ? WHERE id = ?",
                (json.dumps([float(v) for v in vector]), time.time(), fact_id),
            )
            return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Fact reads
    # ------------------------------------------------------------------

    def get_fact(self, fact_id: str) -> Optional[Fact]:
        """Return a single fact or None."""
        row = self._fetchone("SELECT * FROM facts WHERE id = ?", (fact_id,))
        if row is None:
            return None
        return self._facts_from_rows([row])[0]

    def find_active_conflicts(self, key: str) -> List[Fact]:
        """Active facts sharing *key*, most recent first (insertion order breaks ties)."""
        rows = self._fetchall(
            """SELECT * FROM facts
               WHERE conflict_key = ? AND status = ?
               ORDER BY created_at DESC, rowid DESC""",
            (key, STATUS_ACTIVE),
        )
        return self._facts_from_rows(rows)

    def query_facts(self, flt: Optional[FactFilter] = None) -> List[Fact]:
        """Return facts matching every criterion in *flt*, newest first."""
        flt = flt or FactFilter()
        clauses: List[str] = []
        params: List[Any] = []

        if flt.status is not None:
            if flt.status not in FACT_STATUSES:
                raise ValidationError(f"unknown status {flt.status!r}")
            clauses.append("status = ?")
            params.append(flt.status)

        if flt.types:
            unknown = [t for t in flt.types if t not in FACT_TYPES]
            if unknown:
                raise ValidationError(f"unknown fact types {unknown}")
            clauses.append(f"type IN ({','.join('?' for _ in flt.types)})")
            params.extend(flt.types)

        if flt.entity_id:
            clauses.append(
                """(EXISTS (SELECT 1 FROM json_each(facts.subject_ids) WHERE json_each.value = ?)
                    OR EXISTS (SELECT 1 FROM json_each(facts.object_ids) WHERE json_each.value = ?))"""
            )
            params.extend([flt.entity_id, flt.entity_id])

        if flt.predicates:
            clauses.append(f"predicate IN ({','.join('?' for _ in flt.predicates)})")
            params.extend(flt.predicates)

        for chapter in (flt.chapter_number, flt.valid_at):
            if chapter is not None:
                clauses.append("valid_from <= ? AND (valid_to IS NULL OR valid_to >= ?)")
                params.extend([chapter, chapter])

        if flt.chapter_range is not None:
            low, high = flt.chapter_range
            clauses.append("valid_from <= ? AND (valid_to IS NULL OR valid_to >= ?)")
            params.extend([high, low])

        sql = "SELECT * FROM facts"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if flt.limit is not None:
            sql += " LIMIT ?"
            params.append(int(flt.limit))

        return self._facts_from_rows(self._fetchall(sql, tuple(params)))

    def get_supersession_chain(self, fact_id: str) -> SupersessionChain:
        """Ancestors (oldest first) and direct successors (creation order) of a fact.

        An unknown id yields an empty chain.
        """
        fact = self.get_fact(fact_id)
        if fact is None:
            return SupersessionChain()

        older: List[Fact] = []
        seen = {fact.id}
        cursor = fact.supersedes_id
        while cursor and cursor not in seen:
            previous = self.get_fact(cursor)
            if previous is None:
                logger.warning("Dangling supersedes_id %s on chain of %s", cursor, fact_id)
                break
            older.append(previous)
            seen.add(cursor)
            cursor = previous.supersedes_id
        older.reverse()

        rows = self._fetchall(
            "SELECT * FROM facts WHERE supersedes_id = ? ORDER BY created_at ASC, rowid ASC",
            (fact_id,),
        )
        return SupersessionChain(fact=fact, older=older, newer=self._facts_from_rows(rows))

    def facts_missing_embeddings(self, limit: int = 100) -> List[Fact]:
        rows = self._fetchall(
            "SELECT * FROM facts WHERE embedding IS NULL ORDER BY created_at, rowid LIMIT ?",
            (int(limit),),
        )
        return self._facts_from_rows(rows)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return counts by status and type, entity totals and a consistency score."""
        by_status = {s: 0 for s in FACT_STATUSES}
        for row in self._fetchall("SELECT status, COUNT(*) AS c FROM facts GROUP BY status"):
            by_status[row["status"]] = int(row["c"])

        by_type = {t: 0 for t in FACT_TYPES}
        for row in self._fetchall("SELECT type, COUNT(*) AS c FROM facts GROUP BY type"):
            by_type[row["type"]] = int(row["c"])

        entities_by_kind = {k: 0 for k in ENTITY_KINDS}
        for row in self._fetchall("SELECT kind, COUNT(*) AS c FROM entities GROUP BY kind"):
            entities_by_kind[row["kind"]] = int(row["c"])

        embedded = self._fetchone("SELECT COUNT(*) AS c FROM facts WHERE embedding IS NOT NULL")

        total = sum(by_status.values())
        superseded = by_status[STATUS_SUPERSEDED]
        return {
            "total_facts": total,
            "active": by_status[STATUS_ACTIVE],
            "superseded": superseded,
            "duplicate": by_status["duplicate"],
            "by_status": by_status,
            "by_type": by_type,
            "entities": sum(entities_by_kind.values()),
            "entities_by_kind": entities_by_kind,
            "facts_with_embeddings": int(embedded["c"]) if embedded else 0,
            "consistency_score": round(1.0 - superseded / total, 4) if total else 1.0,
        }
