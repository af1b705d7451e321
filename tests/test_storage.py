"""Tests for the document query language and the in-memory store."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tally.errors import DuplicateKeyError
from tally.storage import INDEXES, ensure_indexes, index_name
from tally.storage.memory import MemoryStore
from tally.storage.query import apply_update, equality_fields, matches, project, run_pipeline

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


class TestMatches:
    def test_equality_and_none(self) -> None:
        doc = {"a": 1, "b": None}
        assert matches(doc, {"a": 1})
        assert not matches(doc, {"a": 2})
        assert matches(doc, {"b": None})
        assert matches(doc, {"missing": None})

    def test_dotted_paths(self) -> None:
        assert matches({"meta": {"kind": "x"}}, {"meta.kind": "x"})

    def test_comparisons_with_datetimes(self) -> None:
        doc = {"at": NOW}
        assert matches(doc, {"at": {"$lte": NOW}})
        assert matches(doc, {"at": {"$gt": NOW - timedelta(seconds=1)}})
        assert not matches(doc, {"at": {"$lt": NOW}})
        assert not matches({}, {"at": {"$lt": NOW}})

    def test_in_nin_ne(self) -> None:
        doc = {"status": "ACTIVE"}
        assert matches(doc, {"status": {"$in": ["VERIFIED", "ACTIVE"]}})
        assert not matches(doc, {"status": {"$nin": ["ACTIVE"]}})
        assert matches({}, {"flag": {"$ne": True}})

    def test_exists(self) -> None:
        assert matches({"a": None}, {"a": {"$exists": True}})
        assert matches({}, {"a": {"$exists": False}})

    def test_regex_case_insensitive(self) -> None:
        assert matches({"uid": "V100"}, {"uid": {"$regex": "^v100$", "$options": "i"}})
        assert not matches({"uid": "V100"}, {"uid": {"$regex": "^v100$"}})

    def test_logical_operators(self) -> None:
        doc = {"a": 1, "b": 2}
        assert matches(doc, {"$or": [{"a": 5}, {"b": 2}]})
        assert not matches(doc, {"$and": [{"a": 1}, {"b": 3}]})
        assert not matches(doc, {"$nor": [{"a": 1}]})

    def test_unknown_operator_rejected(self) -> None:
        with pytest.raises(ValueError):
            matches({"a": 1}, {"a": {"$near": 1}})


class TestUpdates:
    def test_set_unset_inc(self) -> None:
        doc = {"a": 1, "b": 2}
        updated = apply_update(doc, {"$set": {"c.d": 3}, "$unset": {"b": ""}, "$inc": {"a": 2, "n": 1}})
        assert updated == {"a": 3, "c": {"d": 3}, "n": 1}
        assert doc == {"a": 1, "b": 2}

    def test_set_on_insert_only_when_inserting(self) -> None:
        assert apply_update({}, {"$setOnInsert": {"x": 1}}) == {}
        assert apply_update({}, {"$setOnInsert": {"x": 1}}, inserting=True) == {"x": 1}

    def test_equality_fields_seed_upserts(self) -> None:
        assert equality_fields({"a": 1, "b": {"$gt": 2}, "c": {"$eq": 3}}) == {"a": 1, "c": 3}


class TestProjectionAndPipeline:
    def test_inclusion_projection_keeps_id(self) -> None:
        assert project({"_id": "x", "a": 1, "b": 2}, {"a": 1}) == {"_id": "x", "a": 1}

    def test_exclusion_projection(self) -> None:
        assert project({"_id": "x", "a": 1, "b": 2}, {"b": 0}) == {"_id": "x", "a": 1}

    def test_group_and_sort(self) -> None:
        docs = [{"s": "A"}, {"s": "B"}, {"s": "A"}]
        result = run_pipeline(docs, [
            {"$group": {"_id": "$s", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ])
        assert result == [{"_id": "A", "count": 2}, {"_id": "B", "count": 1}]


class TestMemoryStore:
    async def test_insert_assigns_id(self) -> None:
        store = MemoryStore()
        doc_id = await store.insert_one("things", {"a": 1})
        assert (await store.find_one("things", {"_id": doc_id}))["a"] == 1

    async def test_unique_index_rejects_duplicates(self) -> None:
        store = MemoryStore()
        await store.create_index("voters", [("election_id", 1), ("email", 1)], unique=True)
        await store.insert_one("voters", {"election_id": "e1", "email": "a@x.io"})
        await store.insert_one("voters", {"election_id": "e2", "email": "a@x.io"})
        with pytest.raises(DuplicateKeyError) as exc:
            await store.insert_one("voters", {"election_id": "e1", "email": "a@x.io"})
        assert exc.value.index == "voters_election_id_asc_email_asc"

    async def test_insert_many_is_ordered(self) -> None:
        store = MemoryStore()
        await store.create_index("t", [("k", 1)], unique=True)
        with pytest.raises(DuplicateKeyError):
            await store.insert_many("t", [{"k": 1}, {"k": 2}, {"k": 1}, {"k": 3}])
        assert await store.count("t", {}) == 2

    async def test_update_one_reports_matches_and_upserts(self) -> None:
        store = MemoryStore()
        assert await store.update_one("t", {"k": "a"}, {"$set": {"v": 1}}) == 0
        assert await store.count("t", {}) == 0

        await store.update_one("t", {"k": "a"}, {"$set": {"v": 1}}, upsert=True)
        assert (await store.find_one("t", {"k": "a"}))["v"] == 1
        assert await store.update_one("t", {"k": "a"}, {"$inc": {"v": 1}}) == 1
        assert (await store.find_one("t", {"k": "a"}))["v"] == 2

    async def test_compare_and_set(self) -> None:
        store = MemoryStore()
        doc_id = await store.insert_one("e", {"status": "SCHEDULED"})
        flip = {"$set": {"status": "ACTIVE"}}
        assert await store.update_one("e", {"_id": doc_id, "status": "SCHEDULED"}, flip) == 1
        assert await store.update_one("e", {"_id": doc_id, "status": "SCHEDULED"}, flip) == 0

    async def test_find_sort_skip_limit(self) -> None:
        store = MemoryStore()
        for i in range(5):
            await store.insert_one("t", {"n": i})
        found = await store.find("t", {}, sort=[("n", -1)], skip=1, limit=2)
        assert [d["n"] for d in found] == [3, 2]

    async def test_find_returns_copies(self) -> None:
        store = MemoryStore()
        await store.insert_one("t", {"n": 1, "meta": {"x": 1}})
        doc = await store.find_one("t", {})
        doc["meta"]["x"] = 99
        assert (await store.find_one("t", {}))["meta"]["x"] == 1

    async def test_delete(self) -> None:
        store = MemoryStore()
        await store.insert_many("t", [{"n": 1}, {"n": 1}, {"n": 2}])
        assert await store.delete_one("t", {"n": 1}) == 1
        assert await store.delete_many("t", {"n": {"$lte": 2}}) == 2
        assert await store.count("t", {}) == 0

    async def test_aggregate(self) -> None:
        store = MemoryStore()
        await store.insert_many("t", [{"r": "a", "s": "X"}, {"r": "a", "s": "Y"}, {"r": "b", "s": "X"}])
        groups = await store.aggregate("t", [
            {"$match": {"r": "a"}},
            {"$group": {"_id": "$s", "count": {"$sum": 1}}},
        ])
        assert sorted((g["_id"], g["count"]) for g in groups) == [("X", 1), ("Y", 1)]

    async def test_ensure_indexes_is_idempotent(self) -> None:
        store = MemoryStore()
        await ensure_indexes(store)
        await ensure_indexes(store)
        unique = [index_name(c, k) for c, k, u in INDEXES if u]
        assert sorted(n for n, _ in store._unique["voters"]) == sorted(unique)
