"""
Async PostgreSQL connection pool shared by the document store.
Uses asyncpg for non-blocking access with connection pooling; JSONB columns
are decoded to Python dicts on every pooled connection.
"""
import json
from contextlib import asynccontextmanager

import asyncpg

from tally import config


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


class Database:
    """Async database connection pool manager."""

    _pool: asyncpg.Pool | None = None

    @classmethod
    async def get_pool(cls) -> asyncpg.Pool:
        """Return the existing pool or create one lazily."""
        if cls._pool is None:
            cls._pool = await asyncpg.create_pool(
                host=config.DB_HOST,
                port=config.DB_PORT,
                database=config.DB_NAME,
                user=config.DB_USER,
                password=config.DB_PASSWORD,
                min_size=2,
                max_size=20,
                init=_init_connection,
            )
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        """Gracefully close the pool (called on app shutdown)."""
        if cls._pool is not None:
            await cls._pool.close()
            cls._pool = None

    @classmethod
    @asynccontextmanager
    async def connection(cls):
        """Acquire a connection from the pool (auto-released on exit)."""
        pool = await cls.get_pool()
        async with pool.acquire() as conn:
            yield conn

    @classmethod
    @asynccontextmanager
    async def transaction(cls):
        """Acquire a connection and open a transaction (auto-committed/rolled-back)."""
        pool = await cls.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn
