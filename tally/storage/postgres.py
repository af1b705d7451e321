"""
PostgreSQL-backed DocumentStore.

Each collection is a table ``(id TEXT PRIMARY KEY, doc JSONB NOT NULL)``.
Filters compile to SQL over the JSONB document; unique indexes are
expression indexes, so concurrent duplicate inserts are rejected by the
database rather than by a check-then-insert in Python.

Timestamps are stored as UTC ISO-8601 strings with microsecond precision;
every stored timestamp has the same shape, so comparing them as text under
the "C" collation orders them chronologically.
"""
import logging
import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

import asyncpg

from tally.database import Database
from tally.errors import DuplicateKeyError
from tally.storage import index_name, new_id
from tally.storage.query import (
    FIELD_OPERATORS,
    LOGICAL_OPERATORS,
    Sort,
    apply_update,
    equality_fields,
    normalise_sort,
    project,
    run_pipeline,
)

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ---------------------------------------------------------------------------
# Value encoding
# ---------------------------------------------------------------------------

def encode_value(value: Any) -> Any:
    """Make a value JSON-safe the way it is stored."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _path(field: str) -> str:
    parts = [_identifier(p) for p in field.split(".")]
    return "'{" + ",".join(parts) + "}'"


def _json_expr(field: str) -> str:
    return f"(doc #> {_path(field)})"


def _text_expr(field: str) -> str:
    return f"(doc #>> {_path(field)})"


# ---------------------------------------------------------------------------
# Filter compilation
# ---------------------------------------------------------------------------

class SQLBuilder:
    """Accumulates positional parameters while a filter is compiled."""

    def __init__(self, params: list | None = None):
        self.params: list = list(params or [])

    def param(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def where(self, query: dict | None) -> str:
        clauses = [self._clause(key, condition) for key, condition in (query or {}).items()]
        return " AND ".join(clauses) if clauses else "TRUE"

    def _clause(self, key: str, condition: Any) -> str:
        if key in LOGICAL_OPERATORS:
            parts = [f"({self.where(sub)})" for sub in condition]
            if key == "$and":
                return "(" + " AND ".join(parts) + ")" if parts else "TRUE"
            joined = "(" + " OR ".join(parts) + ")" if parts else "FALSE"
            return joined if key == "$or" else f"(NOT {joined})"
        if key.startswith("$"):
            raise ValueError(f"Unsupported query operator: {key}")

        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            return self._operators(key, condition)
        return self._equals(key, condition)

    def _equals(self, field: str, value: Any) -> str:
        expr = _json_expr(field)
        value = encode_value(value)
        if value is None:
            return f"({expr} IS NULL OR {expr} = 'null'::jsonb)"
        return f"COALESCE({expr} = {self.param(value)}::jsonb, FALSE)"

    def _compare(self, field: str, op: str, value: Any) -> str:
        sql_op = {"$lt": "<", "$lte": "<=", "$gt": ">", "$gte": ">="}[op]
        value = encode_value(value)
        if isinstance(value, bool) or value is None:
            raise ValueError(f"Cannot order-compare {field} against {value!r}")
        if isinstance(value, (int, float)):
            return f"COALESCE(({_text_expr(field)})::numeric {sql_op} {self.param(value)}, FALSE)"
        return f'COALESCE({_text_expr(field)} COLLATE "C" {sql_op} {self.param(str(value))}, FALSE)'

    def _operators(self, field: str, spec: dict) -> str:
        clauses = []
        for op, value in spec.items():
            if op not in FIELD_OPERATORS:
                raise ValueError(f"Unsupported query operator: {op}")
            if op == "$eq":
                clauses.append(self._equals(field, value))
            elif op == "$ne":
                clauses.append(f"(NOT {self._equals(field, value)})")
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                clauses.append(self._compare(field, op, value))
            elif op in ("$in", "$nin"):
                options = [self._equals(field, v) for v in value]
                any_of = "(" + " OR ".join(options) + ")" if options else "FALSE"
                clauses.append(any_of if op == "$in" else f"(NOT {any_of})")
            elif op == "$exists":
                clauses.append(f"({_json_expr(field)} IS {'NOT ' if value else ''}NULL)")
            elif op == "$regex":
                sql_op = "~*" if "i" in spec.get("$options", "") else "~"
                clauses.append(f"COALESCE({_text_expr(field)} {sql_op} {self.param(value)}, FALSE)")
        return "(" + " AND ".join(clauses) + ")" if clauses else "TRUE"


def order_by(sort: Sort | dict | None) -> str:
    parts = []
    for field, direction in normalise_sort(sort):
        if direction < 0:
            parts.append(f"{_json_expr(field)} DESC NULLS LAST")
        else:
            parts.append(f"{_json_expr(field)} ASC NULLS FIRST")
    return " ORDER BY " + ", ".join(parts) if parts else ""


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class PostgresStore:
    def __init__(self, database=Database):
        self.db = database
        self._tables: set[str] = set()

    async def _ensure_table(self, conn, collection: str) -> str:
        table = _identifier(collection)
        if table not in self._tables:
            await conn.execute(
                f"CREATE TABLE IF NOT EXISTS {table} (id TEXT PRIMARY KEY, doc JSONB NOT NULL)"
            )
            self._tables.add(table)
        return table

    async def create_index(self, collection: str, keys: list[tuple[str, int]], *, unique: bool = False) -> str:
        name = index_name(collection, keys)
        columns = ", ".join(f"({_text_expr(field)})" for field, _ in keys)
        async with self.db.connection() as conn:
            table = await self._ensure_table(conn, collection)
            await conn.execute(
                f"CREATE {'UNIQUE ' if unique else ''}INDEX IF NOT EXISTS {_identifier(name)} "
                f"ON {table} ({columns})"
            )
        return name

    # ── Writes ──────────────────────────────────────────────────────────────

    async def insert_one(self, collection: str, doc: dict[str, Any]) -> str:
        ids = await self.insert_many(collection, [doc])
        return ids[0]

    async def insert_many(self, collection: str, docs: list[dict[str, Any]]) -> list[str]:
        rows = []
        for doc in docs:
            stored = encode_value(doc)
            stored.setdefault("_id", new_id())
            rows.append((stored["_id"], stored))
        if not rows:
            return []

        try:
            async with self.db.transaction() as conn:
                table = await self._ensure_table(conn, collection)
                await conn.executemany(f"INSERT INTO {table} (id, doc) VALUES ($1, $2::jsonb)", rows)
        except asyncpg.UniqueViolationError as e:
            raise DuplicateKeyError(str(e), index=getattr(e, "constraint_name", None)) from e
        return [doc_id for doc_id, _ in rows]

    async def _locked(self, conn, table: str, query: dict, limit: int = 0) -> list[asyncpg.Record]:
        builder = SQLBuilder()
        sql = f"SELECT id, doc FROM {table} WHERE {builder.where(query)}"
        if limit:
            sql += f" LIMIT {int(limit)}"
        return await conn.fetch(sql + " FOR UPDATE", *builder.params)

    async def _rewrite(self, collection: str, query: dict, update: dict, limit: int, upsert: bool) -> int:
        try:
            async with self.db.transaction() as conn:
                table = await self._ensure_table(conn, collection)
                rows = await self._locked(conn, table, query, limit)
                if rows:
                    changed = [
                        (encode_value(apply_update(row["doc"], update)), row["id"]) for row in rows
                    ]
                    await conn.executemany(f"UPDATE {table} SET doc = $1::jsonb WHERE id = $2", changed)
                elif upsert:
                    seed = encode_value(apply_update(equality_fields(query), update, inserting=True))
                    seed.setdefault("_id", new_id())
                    await conn.execute(
                        f"INSERT INTO {table} (id, doc) VALUES ($1, $2::jsonb)", seed["_id"], seed
                    )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateKeyError(str(e), index=getattr(e, "constraint_name", None)) from e
        return len(rows)

    async def update_one(
        self, collection: str, query: dict[str, Any], update: dict[str, Any], *, upsert: bool = False
    ) -> int:
        return await self._rewrite(collection, query, update, limit=1, upsert=upsert)

    async def update_many(self, collection: str, query: dict[str, Any], update: dict[str, Any]) -> int:
        return await self._rewrite(collection, query, update, limit=0, upsert=False)

    async def _delete(self, collection: str, query: dict, limit: int) -> int:
        builder = SQLBuilder()
        where = builder.where(query)
        async with self.db.connection() as conn:
            table = await self._ensure_table(conn, collection)
            if limit:
                sql = f"DELETE FROM {table} WHERE id IN (SELECT id FROM {table} WHERE {where} LIMIT {int(limit)})"
            else:
                sql = f"DELETE FROM {table} WHERE {where}"
            status = await conn.execute(sql, *builder.params)
        return _affected(status)

    async def delete_one(self, collection: str, query: dict[str, Any]) -> int:
        return await self._delete(collection, query, limit=1)

    async def delete_many(self, collection: str, query: dict[str, Any]) -> int:
        return await self._delete(collection, query, limit=0)

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
        builder = SQLBuilder()
        tail = f" WHERE {builder.where(query)}{order_by(sort)}"
        if limit:
            tail += f" LIMIT {int(limit)}"
        if skip:
            tail += f" OFFSET {int(skip)}"
        async with self.db.connection() as conn:
            table = await self._ensure_table(conn, collection)
            rows = await conn.fetch(f"SELECT doc FROM {table}" + tail, *builder.params)
        return [project(row["doc"], projection) for row in rows]

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
        builder = SQLBuilder()
        where = builder.where(query)
        async with self.db.connection() as conn:
            table = await self._ensure_table(conn, collection)
            return await conn.fetchval(f"SELECT count(*) FROM {table} WHERE {where}", *builder.params)

    async def aggregate(self, collection: str, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # A leading $match runs in SQL; the remaining stages run on the fetched rows.
        query: dict = {}
        stages = list(pipeline)
        if stages and "$match" in stages[0]:
            query = stages.pop(0)["$match"]
        docs = await self.find(collection, query)
        return run_pipeline(docs, stages)
