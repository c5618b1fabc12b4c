"""Key-value state backed by PostgreSQL JSONB, and the run-history stores built on it.

The ``state`` table holds one JSONB document per key. The calendar sync run
history is a single document under ``calendar::sync::last_run``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

SYNC_LAST_RUN_KEY = "calendar::sync::last_run"

CREATE_STATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    version INTEGER NOT NULL DEFAULT 1
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered. If the stored JSONB was double-encoded (a JSON string
    containing JSON text), a second pass is needed.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


async def ensure_state_table(pool: asyncpg.Pool) -> None:
    """Create the ``state`` table when it does not exist yet."""
    await pool.execute(CREATE_STATE_TABLE_SQL)


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    """Return the JSONB value for *key*, or ``None`` if the key does not exist."""
    row = await pool.fetchval(
        "SELECT value FROM state WHERE key = $1",
        key,
    )
    if row is None:
        return None
    return decode_jsonb(row)


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Upsert *key* with *value* (any JSON-serialisable type).

    Returns:
        The new version number for the row after the upsert.
    """
    json_value = json.dumps(value)
    new_version: int = await pool.fetchval(
        """
        INSERT INTO state (key, value, updated_at, version)
        VALUES ($1, $2::jsonb, now(), 1)
        ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value,
                updated_at = now(),
                version = state.version + 1
        RETURNING version
        """,
        key,
        json_value,
    )
    return new_version


class RunHistoryStore(ABC):
    """Persists the outcome of the most recent sync run as a JSON document."""

    @abstractmethod
    async def load(self) -> dict[str, Any] | None: ...

    @abstractmethod
    async def save(self, value: dict[str, Any]) -> None: ...

    async def close(self) -> None:
        return None


class MemoryRunHistoryStore(RunHistoryStore):
    """Process-local run history, lost on restart."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._value = copy.deepcopy(initial) if initial is not None else None

    async def load(self) -> dict[str, Any] | None:
        return copy.deepcopy(self._value)

    async def save(self, value: dict[str, Any]) -> None:
        self._value = copy.deepcopy(value)


class PostgresRunHistoryStore(RunHistoryStore):
    """Run history in the PostgreSQL ``state`` table.

    The pool is created lazily on first use from *dsn*, or injected directly.
    """

    def __init__(
        self,
        *,
        dsn: str | None = None,
        pool: asyncpg.Pool | None = None,
        key: str = SYNC_LAST_RUN_KEY,
    ) -> None:
        if dsn is None and pool is None:
            raise ValueError("PostgresRunHistoryStore requires a dsn or a pool")
        self._dsn = dsn
        self._pool = pool
        self._owns_pool = pool is None
        self._key = key
        self._init_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        async with self._init_lock:
            if self._pool is None:
                pool = await asyncpg.create_pool(dsn=self._dsn, min_size=1, max_size=2)
                await ensure_state_table(pool)
                self._pool = pool
                logger.info("Run-history store connected")
        return self._pool

    async def load(self) -> dict[str, Any] | None:
        value = await state_get(await self._get_pool(), self._key)
        return value if isinstance(value, dict) else None

    async def save(self, value: dict[str, Any]) -> None:
        await state_set(await self._get_pool(), self._key, value)

    async def close(self) -> None:
        if self._owns_pool and self._pool is not None:
            await self._pool.close()
            self._pool = None
