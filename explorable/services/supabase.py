"""Supabase remote store backed by asyncpg.

Every query runs on a connection where ``app.current_user_id`` is set via
``SET LOCAL``, so Postgres Row-Level Security policies see the user whose
records are being synced or inspected.

Uses ``asyncpg`` for direct database access with RLS context; the Supabase
Python client doesn't support SET LOCAL session variables.
"""

from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from explorable.config import Settings, get_settings
from explorable.memories.base import QueryFilter, RemoteKind, RemoteStore, RemoteStoreError

logger = logging.getLogger("explorable.db")

# Module-level connection pool, initialized once at startup
_pool: asyncpg.Pool | None = None

_COLUMN_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

# Table → column holding the owner id
_OWNER_COLUMN: dict[RemoteKind, str] = {
    RemoteKind.ACTIVITIES: "user_id",
    RemoteKind.LOCATIONS: "user_id",
    RemoteKind.ACHIEVEMENTS: "user_id",
    RemoteKind.TRIPS: "user_id",
    RemoteKind.NOTIFICATIONS: "user_id",
    RemoteKind.PROFILES: "id",
}


async def _init_connection(conn: asyncpg.Connection) -> None:
    for json_type in ("json", "jsonb"):
        await conn.set_type_codec(
            json_type, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.supabase_db_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=s.db_command_timeout,
        init=_init_connection,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)", s.db_pool_min_size, s.db_pool_max_size
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    user_id: str | None = None,
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection with the RLS user variable set.

    Usage::

        async with get_connection(user_id=owner_id) as conn:
            rows = await conn.fetch("SELECT * FROM activities WHERE user_id = $1", owner_id)

    The ``SET LOCAL`` is scoped to the current transaction so it disappears
    automatically when the connection is returned to the pool.
    """
    pool = pool or get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if user_id:
                await conn.execute(
                    "SELECT set_config('app.current_user_id', $1, true)", str(user_id)
                )
            yield conn


def _column(name: str) -> str:
    if not _COLUMN_RE.match(name):
        raise ValueError(f"invalid column name: {name!r}")
    return name


def build_select(kind: RemoteKind, flt: QueryFilter) -> tuple[str, list[Any]]:
    """Translate a QueryFilter into parameterized SQL.

    Column names are validated against a strict identifier pattern and table
    names come from the RemoteKind enum, so only values are parameters.
    """
    columns = ", ".join(_column(c) for c in flt.columns) if flt.columns else "*"
    args: list[Any] = [flt.owner_id]
    clauses = [f"{_OWNER_COLUMN[kind]} = $1"]

    for op, conditions in (("=", flt.equals), (">=", flt.gte), ("<=", flt.lte)):
        for col, value in conditions.items():
            args.append(value)
            clauses.append(f"{_column(col)} {op} ${len(args)}")
    for col in flt.not_null:
        clauses.append(f"{_column(col)} IS NOT NULL")

    return f"SELECT {columns} FROM {kind.value} WHERE {' AND '.join(clauses)}", args


def _row_to_dict(row: asyncpg.Record) -> dict:
    out = dict(row)
    if "id" in out and out["id"] is not None:
        out["id"] = str(out["id"])
    return out


class SupabaseRemoteStore(RemoteStore):
    """RemoteStore over the module pool (or an explicit one for tests/scripts)."""

    def __init__(self, pool: asyncpg.Pool | None = None) -> None:
        self._pool = pool

    async def query(self, kind: RemoteKind, flt: QueryFilter) -> list[dict]:
        sql, args = build_select(kind, flt)
        try:
            async with get_connection(flt.owner_id, self._pool) as conn:
                rows = await conn.fetch(sql, *args)
        except (asyncpg.PostgresError, OSError) as exc:
            raise RemoteStoreError(f"query on {kind.value} failed: {exc}") from exc
        return [_row_to_dict(r) for r in rows]

    async def insert(self, kind: RemoteKind, record: dict) -> str | None:
        cols = [_column(c) for c in record]
        placeholders = ", ".join(f"${i}" for i in range(1, len(cols) + 1))
        sql = (
            f"INSERT INTO {kind.value} ({', '.join(cols)}) "
            f"VALUES ({placeholders}) RETURNING id"
        )
        owner = record.get("user_id") or record.get("id")
        try:
            async with get_connection(owner, self._pool) as conn:
                new_id = await conn.fetchval(sql, *record.values())
        except (asyncpg.PostgresError, OSError) as exc:
            raise RemoteStoreError(f"insert into {kind.value} failed: {exc}") from exc
        return str(new_id) if new_id is not None else None

    async def update(self, kind: RemoteKind, row_id: str, patch: dict) -> None:
        if not patch:
            return
        assignments = ", ".join(f"{_column(c)} = ${i}" for i, c in enumerate(patch, start=2))
        sql = f"UPDATE {kind.value} SET {assignments} WHERE id = $1"
        owner = row_id if kind is RemoteKind.PROFILES else None
        try:
            async with get_connection(owner, self._pool) as conn:
                await conn.execute(sql, row_id, *patch.values())
        except (asyncpg.PostgresError, OSError) as exc:
            raise RemoteStoreError(f"update of {kind.value} {row_id} failed: {exc}") from exc
