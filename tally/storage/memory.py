"""
In-process DocumentStore.

Every operation completes without awaiting anything, so on a single event
loop each call is atomic with respect to other coroutines. Unique indexes
are enforced on insert and update the way the database would enforce them.
"""
import copy
from collections import defaultdict
from typing import Any

from tally.errors import DuplicateKeyError
from tally.storage import index_name, new_id
from tally.storage.query import (
    MISSING,
    Sort,
    apply_update,
    equality_fields,
    get_path,
    matches,
    normalise_document,
    project,
    run_pipeline,
    sort_documents,
)


class MemoryStore:
    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict]] = defaultdict(dict)
        self._unique: dict[str, list[tuple[str, list[str]]]] = defaultdict(list)

    # ── Indexes ─────────────────────────────────────────────────────────────

    async def create_index(self, collection: str, keys: list[tuple[str, int]], *, unique: bool = False) -> str:
        name = index_name(collection, keys)
        if unique and name not in [n for n, _ in self._unique[collection]]:
            fields = [field for field, _ in keys]
            self._check_existing(collection, name, fields)
            self._unique[collection].append((name, fields))
        return name

    def _index_key(self, doc: dict, fields: list[str]) -> tuple:
        values = []
        for field in fields:
            value = get_path(doc, field)
            values.append(None if value is MISSING else value)
        return tuple(values)

    def _check_existing(self, collection: str, name: str, fields: list[str]) -> None:
        seen = set()
        for doc in self._collections[collection].values():
            key = self._index_key(doc, fields)
            if key in seen:
                raise DuplicateKeyError(f"Duplicate key for index {name}", index=name)
            seen.add(key)

    def _check_unique(self, collection: str, doc: dict, ignore_id: str | None = None) -> None:
        for name, fields in self._unique[collection]:
            key = self._index_key(doc, fields)
            for other_id, other in self._collections[collection].items():
                if other_id != ignore_id and self._index_key(other, fields) == key:
                    raise DuplicateKeyError(f"Duplicate key for index {name}: {key}", index=name)

    # ── Writes ──────────────────────────────────────────────────────────────

    async def insert_one(self, collection: str, doc: dict[str, Any]) -> str:
        stored = normalise_document(doc)
        stored.setdefault("_id", new_id())
        if stored["_id"] in self._collections[collection]:
            raise DuplicateKeyError(f"Duplicate _id {stored['_id']}", index="_id")
        self._check_unique(collection, stored)
        self._collections[collection][stored["_id"]] = stored
        return stored["_id"]

    async def insert_many(self, collection: str, docs: list[dict[str, Any]]) -> list[str]:
        # Ordered: documents before the failing one stay inserted.
        return [await self.insert_one(collection, doc) for doc in docs]

    async def update_one(
        self, collection: str, query: dict[str, Any], update: dict[str, Any], *, upsert: bool = False
    ) -> int:
        for doc_id, doc in self._collections[collection].items():
            if matches(doc, query):
                self._replace(collection, doc_id, apply_update(doc, update))
                return 1
        if upsert:
            seed = equality_fields(query)
            await self.insert_one(collection, apply_update(seed, update, inserting=True))
        return 0

    async def update_many(self, collection: str, query: dict[str, Any], update: dict[str, Any]) -> int:
        targets = [
            (doc_id, doc) for doc_id, doc in self._collections[collection].items() if matches(doc, query)
        ]
        updated = [(doc_id, apply_update(doc, update)) for doc_id, doc in targets]
        for doc_id, new_doc in updated:
            self._replace(collection, doc_id, new_doc)
        return len(updated)

    def _replace(self, collection: str, doc_id: str, new_doc: dict) -> None:
        new_doc["_id"] = doc_id
        self._check_unique(collection, new_doc, ignore_id=doc_id)
        self._collections[collection][doc_id] = new_doc

    async def delete_one(self, collection: str, query: dict[str, Any]) -> int:
        for doc_id, doc in list(self._collections[collection].items()):
            if matches(doc, query):
                del self._collections[collection][doc_id]
                return 1
        return 0

    async def delete_many(self, collection: str, query: dict[str, Any]) -> int:
        doomed = [doc_id for doc_id, doc in self._collections[collection].items() if matches(doc, query)]
        for doc_id in doomed:
            del self._collections[collection][doc_id]
        return len(doomed)

    # ── Reads ───────────────────────────────────────────────────────────────

    async def find(
        self,
        collection: str,
        query: dict[str, Any],
        *,
        sort: Sort | None = None,
        skip: int = 0,
        limit: int = 0,
        projection: dict[str, int] | None = None,
    ) -> list[dict[str, Any]]:
        found = [doc for doc in self._collections[collection].values() if matches(doc, query)]
        found = sort_documents(found, sort)
        if skip:
            found = found[skip:]
        if limit:
            found = found[:limit]
        return [project(copy.deepcopy(doc), projection) for doc in found]

    async def find_one(
        self,
        collection: str,
        query: dict[str, Any],
        *,
        sort: Sort | None = None,
        projection: dict[str, int] | None = None,
    ) -> dict[str, Any] | None:
        found = await self.find(collection, query, sort=sort, limit=1, projection=projection)
        return found[0] if found else None

    async def count(self, collection: str, query: dict[str, Any]) -> int:
        return sum(1 for doc in self._collections[collection].values() if matches(doc, query))

    async def aggregate(self, collection: str, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        docs = [copy.deepcopy(doc) for doc in self._collections[collection].values()]
        return run_pipeline(docs, pipeline)
