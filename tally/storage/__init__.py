"""
Document persistence used by the voter, election and notification stores.

The core only talks to the DocumentStore protocol below; which backend sits
behind it is decided by the process that wires things together (the HTTP
service uses PostgresStore, tests use MemoryStore).
"""
import uuid
from typing import Any, Protocol

from tally.storage.query import Sort

VOTERS = "voters"
ELECTIONS = "elections"
NOTIFICATIONS = "notifications"
USERS = "users"


def new_id() -> str:
    """Generate a document id."""
    return uuid.uuid4().hex


class DocumentStore(Protocol):
    async def insert_one(self, collection: str, doc: dict[str, Any]) -> str: ...

    async def insert_many(self, collection: str, docs: list[dict[str, Any]]) -> list[str]: ...

    async def find_one(
        self,
        collection: str,
        query: dict[str, Any],
        *,
        sort: Sort | None = None,
        projection: dict[str, int] | None = None,
    ) -> dict[str, Any] | None: ...

    async def find(
        self,
        collection: str,
        query: dict[str, Any],
        *,
        sort: Sort | None = None,
        skip: int = 0,
        limit: int = 0,
        projection: dict[str, int] | None = None,
    ) -> list[dict[str, Any]]: ...

    async def update_one(
        self, collection: str, query: dict[str, Any], update: dict[str, Any], *, upsert: bool = False
    ) -> int: ...

    async def update_many(self, collection: str, query: dict[str, Any], update: dict[str, Any]) -> int: ...

    async def delete_one(self, collection: str, query: dict[str, Any]) -> int: ...

    async def delete_many(self, collection: str, query: dict[str, Any]) -> int: ...

    async def count(self, collection: str, query: dict[str, Any]) -> int: ...

    async def aggregate(self, collection: str, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]: ...

    async def create_index(
        self, collection: str, keys: list[tuple[str, int]], *, unique: bool = False
    ) -> str: ...


# (collection, keys, unique)
INDEXES: list[tuple[str, list[tuple[str, int]], bool]] = [
    (VOTERS, [("election_id", 1), ("email", 1)], True),
    (VOTERS, [("election_id", 1), ("unique_id", 1)], True),
    (VOTERS, [("election_id", 1), ("status", 1)], False),
    (VOTERS, [("key_hash", 1)], False),
    (VOTERS, [("verification_token", 1)], False),
    (NOTIFICATIONS, [("recipient", 1), ("read", 1), ("created_at", -1)], False),
    (NOTIFICATIONS, [("recipient", 1), ("type", 1), ("created_at", -1)], False),
    (NOTIFICATIONS, [("scheduled_for", 1), ("delivered", 1)], False),
    (NOTIFICATIONS, [("expires_at", 1)], False),
    (ELECTIONS, [("status", 1), ("start_time", 1)], False),
    (ELECTIONS, [("status", 1), ("end_time", 1)], False),
]


async def ensure_indexes(store: DocumentStore) -> None:
    """Create every index the core relies on (idempotent)."""
    for collection, keys, unique in INDEXES:
        await store.create_index(collection, keys, unique=unique)


def index_name(collection: str, keys: list[tuple[str, int]]) -> str:
    parts = [f"{field.replace('.', '_')}_{'desc' if direction < 0 else 'asc'}" for field, direction in keys]
    return "_".join([collection] + parts)


__all__ = [
    "DocumentStore",
    "ELECTIONS",
    "INDEXES",
    "NOTIFICATIONS",
    "USERS",
    "VOTERS",
    "ensure_indexes",
    "index_name",
    "new_id",
]
