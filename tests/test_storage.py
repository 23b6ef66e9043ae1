"""Tests for the SQLite storage layer."""

import sqlite3

import pytest

from narrative_memory.errors import StorageError, ValidationError
from narrative_memory.models import (
    CHARACTER_TO_USER,
    DEFAULT_USER_ID,
    DEFAULT_WORLD_ID,
    INTER_CHARACTER,
    WORLD,
    Fact,
    FactFilter,
)
from narrative_memory.storage import FactStorage


def _fact(subjects, objects=None, fact_type=INTER_CHARACTER, predicate="trusts",
          text="Alice trusts Bob", valid_from=1, valid_to=None, confidence=0.8, **kw):
    return Fact(
        id=kw.pop("id", ""),
        type=fact_type,
        predicate=predicate,
        subject_ids=list(subjects),
        object_ids=list(objects) if objects is not None else None,
        canonical_fact=text,
        raw_content=f"raw: {text}",
        confidence=confidence,
        valid_from=valid_from,
        valid_to=valid_to,
        **kw,
    )


class TestSchema:
    def test_default_entities_seeded(self, tmp_storage):
        user = tmp_storage.get_entity(DEFAULT_USER_ID)
        world = tmp_storage.get_entity(DEFAULT_WORLD_ID)
        assert user.name == "User" and user.kind == "user"
        assert world.name == "World" and world.kind == "world"
        assert "Player" in user.aliases
        assert "Environment" in world.aliases

    def test_reopen_keeps_single_seed(self, tmp_path):
        path = str(tmp_path / "reopen.sqlite")
        FactStorage(db_path=path).close()
        s = FactStorage(db_path=path)
        assert s.count_entities() == 2
        s.close()

    def test_required_indexes_exist(self, tmp_storage):
        rows = tmp_storage._fetchall("PRAGMA index_list(facts)")
        names = {r["name"] for r in rows}
        assert "idx_facts_window" in names
        assert "idx_facts_status_type" in names


class TestEntities:
    def test_find_by_alias_case_insensitive(self, tmp_storage):
        found = tmp_storage.find_entity("Somebody", alias="player")
        assert found is not None
        assert found.id == DEFAULT_USER_ID

    def test_add_alias_is_idempotent(self, tmp_storage):
        assert tmp_storage.add_entity_alias(DEFAULT_WORLD_ID, "Realm") is True
        assert tmp_storage.add_entity_alias(DEFAULT_WORLD_ID, "realm") is False
        assert tmp_storage.get_entity(DEFAULT_WORLD_ID).aliases.count("Realm") == 1

    def test_add_alias_unknown_entity(self, tmp_storage):
        assert tmp_storage.add_entity_alias("missing", "x") is False

    def test_entity_names(self, tmp_storage):
        names = tmp_storage.entity_names([DEFAULT_USER_ID, "nope"])
        assert names == {DEFAULT_USER_ID: "User"}


class TestFactCRUD:
    def test_insert_and_get(self, tmp_storage):
        fid = tmp_storage.insert_fact(_fact([DEFAULT_USER_ID], fact_type=CHARACTER_TO_USER))
        fact = tmp_storage.get_fact(fid)
        assert fact is not None
        assert fact.status == "active"
        assert fact.object_ids is None
        assert fact.subject_names == ["User"]
        assert fact.created_at > 0

    def test_get_missing(self, tmp_storage):
        assert tmp_storage.get_fact("nonexistent") is None

    def test_embedding_roundtrip(self, tmp_storage):
        fid = tmp_storage.insert_fact(_fact(["a"], ["b"]))
        assert tmp_storage.get_fact(fid).embedding is None
        assert tmp_storage.update_embedding(fid, [0.5, -0.5]) is True
        assert tmp_storage.get_fact(fid).embedding == [0.5, -0.5]
        assert tmp_storage.update_embedding("missing", [1.0]) is False

    def test_facts_missing_embeddings(self, tmp_storage):
        a = tmp_storage.insert_fact(_fact(["a"], ["b"], text="one"))
        b = tmp_storage.insert_fact(_fact(["a"], ["c"], text="two"))
        tmp_storage.update_embedding(a, [1.0])
        assert [f.id for f in tmp_storage.facts_missing_embeddings()] == [b]

    def test_window_check_constraint(self, tmp_storage):
        with pytest.raises(StorageError):
            tmp_storage.insert_fact(_fact(["a"], ["b"], valid_from=5, valid_to=2))


class TestQuery:
    def test_default_status_is_active(self, tmp_storage):
        old = tmp_storage.insert_fact(_fact(["a"], ["b"], text="v1"))
        tmp_storage.supersede_fact(old, 1, _fact(["a"], ["b"], text="v2", valid_from=2))
        active = tmp_storage.query_facts(FactFilter())
        assert [f.canonical_fact for f in active] == ["v2"]
        everything = tmp_storage.query_facts(FactFilter(status=None))
        assert len(everything) == 2

    def test_filter_by_type_and_predicate(self, tmp_storage):
        tmp_storage.insert_fact(_fact(["a"], ["b"], predicate="trusts"))
        tmp_storage.insert_fact(_fact(["a"], ["b"], predicate="fears", text="Alice fears Bob"))
        tmp_storage.insert_fact(_fact([DEFAULT_WORLD_ID], fact_type=WORLD, predicate="weather", text="rain"))

        worlds = tmp_storage.query_facts(FactFilter(types=[WORLD]))
        assert [f.predicate for f in worlds] == ["weather"]
        fears = tmp_storage.query_facts(FactFilter(predicates=["fears"]))
        assert [f.canonical_fact for f in fears] == ["Alice fears Bob"]

    def test_entity_matches_subject_or_object(self, tmp_storage):
        tmp_storage.insert_fact(_fact(["alice"], ["bob"], text="A->B"))
        tmp_storage.insert_fact(_fact(["bob"], ["carol"], text="B->C"))
        tmp_storage.insert_fact(_fact(["carol"], ["dave"], text="C->D"))
        texts = {f.canonical_fact for f in tmp_storage.query_facts(FactFilter(entity_id="bob"))}
        assert texts == {"A->B", "B->C"}

    def test_entity_filter_ignores_null_objects(self, tmp_storage):
        tmp_storage.insert_fact(_fact(["bob"], fact_type=CHARACTER_TO_USER, predicate="likes"))
        assert len(tmp_storage.query_facts(FactFilter(entity_id="bob"))) == 1

    def test_chapter_range_overlap(self, tmp_storage):
        tmp_storage.insert_fact(_fact(["a"], ["b"], text="early", valid_from=1, valid_to=2))
        tmp_storage.insert_fact(_fact(["a"], ["c"], text="middle", valid_from=4, valid_to=6))
        tmp_storage.insert_fact(_fact(["a"], ["d"], text="late", valid_from=9))
        texts = {f.canonical_fact for f in tmp_storage.query_facts(FactFilter(chapter_range=(3, 5)))}
        assert texts == {"middle"}
        texts = {f.canonical_fact for f in tmp_storage.query_facts(FactFilter(chapter_range=(2, 10)))}
        assert texts == {"early", "middle", "late"}

    def test_no_time_filter_returns_all_windows(self, tmp_storage):
        tmp_storage.insert_fact(_fact(["a"], ["b"], valid_from=1, valid_to=1))
        tmp_storage.insert_fact(_fact(["a"], ["c"], valid_from=50))
        assert len(tmp_storage.query_facts(FactFilter())) == 2

    def test_time_gating_invariant(self, tmp_storage):
        windows = [(1, None), (2, 4), (3, 3), (5, 9), (7, None)]
        ids = {}
        for i, (start, end) in enumerate(windows):
            ids[tmp_storage.insert_fact(_fact(["a"], [f"o{i}"], valid_from=start, valid_to=end))] = (start, end)

        for chapter in range(1, 12):
            got = {f.id for f in tmp_storage.query_facts(FactFilter(valid_at=chapter))}
            expected = {
                fid for fid, (start, end) in ids.items()
                if start <= chapter and (end is None or chapter <= end)
            }
            assert got == expected, f"chapter {chapter}"

    def test_newest_first_and_limit(self, tmp_storage):
        for i in range(5):
            tmp_storage.insert_fact(_fact(["a"], [f"o{i}"], text=f"fact {i}"))
        facts = tmp_storage.query_facts(FactFilter(limit=2))
        assert [f.canonical_fact for f in facts] == ["fact 4", "fact 3"]

    def test_unknown_status_rejected(self, tmp_storage):
        with pytest.raises(ValidationError):
            tmp_storage.query_facts(FactFilter(status="deleted"))


class TestSupersession:
    def test_supersede_closes_old_and_links_new(self, tmp_storage):
        old = tmp_storage.insert_fact(_fact(["a"], ["b"], text="v1", valid_from=3))
        new = tmp_storage.supersede_fact(old, 6, _fact(["a"], ["b"], text="v2", valid_from=7))

        old_fact = tmp_storage.get_fact(old)
        new_fact = tmp_storage.get_fact(new)
        assert old_fact.status == "superseded"
        assert old_fact.valid_to == 6
        assert new_fact.status == "active"
        assert new_fact.supersedes_id == old

    def test_failed_insert_rolls_back_old_fact(self, tmp_storage):
        old = tmp_storage.insert_fact(_fact(["a"], ["b"], text="v1"))
        other = tmp_storage.insert_fact(_fact(["x"], ["y"], text="unrelated"))

        # Reusing an existing primary key makes the second write fail
        clash = _fact(["a"], ["b"], text="v2", valid_from=4, id=other)
        with pytest.raises(StorageError) as exc_info:
            tmp_storage.supersede_fact(old, 3, clash)
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, sqlite3.IntegrityError)

        restored = tmp_storage.get_fact(old)
        assert restored.status == "active"
        assert restored.valid_to is None

    def test_failed_rollback_keeps_original_error(self, tmp_storage, monkeypatch):
        old = tmp_storage.insert_fact(_fact(["a"], ["b"], text="v1"))

        class _RollbackFails:
            """Connection whose ROLLBACK errors after rolling back, like SQLite after SQLITE_FULL."""

            def __init__(self, conn):
                self._conn = conn

            def execute(self, sql, *args):
                if sql == "ROLLBACK":
                    self._conn.execute(sql)
                    raise sqlite3.OperationalError("cannot rollback - no transaction is active")
                return self._conn.execute(sql, *args)

            def close(self):
                self._conn.close()

        def full_disk(conn, fact):
            raise sqlite3.OperationalError("database or disk is full")

        tmp_storage._conn = _RollbackFails(tmp_storage._get_conn())
        monkeypatch.setattr(tmp_storage, "_insert_fact_row", full_disk)
        with pytest.raises(StorageError, match="disk is full"):
            tmp_storage.supersede_fact(old, 1, _fact(["a"], ["b"], text="v2", valid_from=2))
        assert tmp_storage.get_fact(old).status == "active"

    def test_supersede_requires_active_fact(self, tmp_storage):
        old = tmp_storage.insert_fact(_fact(["a"], ["b"], text="v1"))
        tmp_storage.supersede_fact(old, 1, _fact(["a"], ["b"], text="v2", valid_from=2))
        with pytest.raises(StorageError):
            tmp_storage.supersede_fact(old, 2, _fact(["a"], ["b"], text="v3", valid_from=3))
        assert len(tmp_storage.query_facts(FactFilter(status=None))) == 2

    def test_find_active_conflicts_most_recent_first(self, tmp_storage):
        first = _fact(["b", "a"], ["c"], text="first")
        second = _fact(["a", "b"], ["c"], text="second")
        tmp_storage.insert_fact(first)
        tmp_storage.insert_fact(second)
        conflicts = tmp_storage.find_active_conflicts(second.conflict_key)
        assert [f.canonical_fact for f in conflicts] == ["second", "first"]


class TestChain:
    def _chain_of_three(self, storage):
        a = storage.insert_fact(_fact(["x"], ["y"], text="v1", valid_from=1))
        b = storage.supersede_fact(a, 2, _fact(["x"], ["y"], text="v2", valid_from=3))
        c = storage.supersede_fact(b, 4, _fact(["x"], ["y"], text="v3", valid_from=5))
        return a, b, c

    def test_chain_from_middle(self, tmp_storage):
        a, b, c = self._chain_of_three(tmp_storage)
        chain = tmp_storage.get_supersession_chain(b)
        assert chain.fact.id == b
        assert [f.id for f in chain.older] == [a]
        assert [f.id for f in chain.newer] == [c]

    def test_chain_from_head_is_oldest_first(self, tmp_storage):
        a, b, c = self._chain_of_three(tmp_storage)
        chain = tmp_storage.get_supersession_chain(c)
        assert [f.id for f in chain.older] == [a, b]
        assert chain.newer == []

    def test_root_has_no_ancestors(self, tmp_storage):
        a, _, _ = self._chain_of_three(tmp_storage)
        assert tmp_storage.get_supersession_chain(a).older == []

    def test_unknown_id_gives_empty_chain(self, tmp_storage):
        chain = tmp_storage.get_supersession_chain("missing")
        assert chain.fact is None
        assert chain.older == [] and chain.newer == []


class TestStats:
    def test_empty_store(self, tmp_storage):
        s = tmp_storage.stats()
        assert s["total_facts"] == 0
        assert s["entities"] == 2
        assert s["consistency_score"] == 1.0

    def test_counts(self, tmp_storage):
        old = tmp_storage.insert_fact(_fact(["a"], ["b"], text="v1"))
        tmp_storage.supersede_fact(old, 1, _fact(["a"], ["b"], text="v2", valid_from=2))
        tmp_storage.insert_fact(_fact([DEFAULT_WORLD_ID], fact_type=WORLD, predicate="weather", text="rain"))

        s = tmp_storage.stats()
        assert s["total_facts"] == 3
        assert s["active"] == 2
        assert s["superseded"] == 1
        assert s["by_type"][INTER_CHARACTER] == 2
        assert s["by_type"][WORLD] == 1
        assert s["by_status"]["duplicate"] == 0
        assert s["consistency_score"] == pytest.approx(1 - 1 / 3, abs=1e-4)
