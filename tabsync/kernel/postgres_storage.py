"""
PostgresDurableStore adapter for the tabsync kernel.

Implements the DurableStore protocol using Postgres as the backend.
Every key is one row of the sync_kv table; values are stored as jsonb.

    CREATE TABLE sync_kv (
        key        text PRIMARY KEY,
        value      jsonb NOT NULL,
        updated_at timestamptz NOT NULL DEFAULT now()
    );
"""

from __future__ import annotations

import json
from typing import Any

import asyncpg

from tabsync.kernel.storage import DurableStore
from tabsync.kernel.types import StorageError

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS sync_kv (
    key        text PRIMARY KEY,
    value      jsonb NOT NULL,
    updated_at timestamptz NOT NULL DEFAULT now()
)
"""


class PostgresDurableStore(DurableStore):
    """Postgres-based durable storage for the sync queue, persisted state and read snapshots."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def ensure_schema(self) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(CREATE_TABLE_SQL)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to create sync_kv: {e}") from e

    async def get(self, key: str) -> Any | None:
        """Fetch the value stored under key. Returns None if not found."""
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow("SELECT value FROM sync_kv WHERE key = $1", key)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to read {key}: {e}") from e
        return json.loads(row["value"]) if row else None

    async def put(self, key: str, value: Any) -> None:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"value for {key} is not JSON-serializable: {e}") from e

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO sync_kv (key, value, updated_at)
                    VALUES ($1, $2::jsonb, now())
                    ON CONFLICT (key)
                    DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                    """,
                    key,
                    payload,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to write {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("DELETE FROM sync_kv WHERE key = $1", key)
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to delete {key}: {e}") from e

    async def keys(self, prefix: str = "") -> list[str]:
        # starts_with avoids escaping LIKE wildcards in the prefix
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT key FROM sync_kv WHERE starts_with(key, $1) ORDER BY key",
                    prefix,
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise StorageError(f"failed to list keys: {e}") from e
        return [row["key"] for row in rows]

    async def close(self) -> None:
        """Close the connection pool."""
        await self.pool.close()
