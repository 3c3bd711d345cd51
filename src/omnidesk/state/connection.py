"""The shared aiosqlite connection plus read and write helpers.

One connection per process, opened by init_database(); table definitions
live in :mod:`schema`.

sqlite3 errors are re-raised as :class:`~omnidesk.errors.PersistenceError`,
which pollers and the executor treat as retryable.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from omnidesk.config import get_settings
from omnidesk.errors import PersistenceError
from omnidesk.logger import logger
from omnidesk.state.schema import create_schema

_db: aiosqlite.Connection | None = None

# Pollers, executor runs and the scheduler all write through the one
# connection. sqlite3 keeps the implicit transaction on the connection, so two
# coroutines interleaving DML at an await share it and a rollback in one
# discards the other's work. All writes go through atomic_write().
_write_lock: asyncio.Lock | None = None


def _get_write_lock() -> asyncio.Lock:
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()
    return _write_lock


@asynccontextmanager
async def atomic_write() -> AsyncIterator[aiosqlite.Connection]:
    """Serialize a write block: commit when it exits cleanly, roll back otherwise."""
    db = _get_db()
    async with _get_write_lock():
        try:
            yield db
            await db.commit()
        except sqlite3.Error as exc:
            await _safe_rollback(db)
            raise PersistenceError(str(exc)) from exc
        except BaseException:
            await _safe_rollback(db)
            raise


async def _safe_rollback(db: aiosqlite.Connection) -> None:
    try:
        await db.rollback()
    except sqlite3.Error as exc:
        logger.warning("Rollback failed", err=str(exc))


async def fetch_one(sql: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
    db = _get_db()
    try:
        cursor = await db.execute(sql, tuple(params))
        return await cursor.fetchone()
    except sqlite3.Error as exc:
        raise PersistenceError(str(exc)) from exc


async def fetch_all(sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
    db = _get_db()
    try:
        cursor = await db.execute(sql, tuple(params))
        return list(await cursor.fetchall())
    except sqlite3.Error as exc:
        raise PersistenceError(str(exc)) from exc


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def load_json(raw: str | None, default: Any = None) -> Any:
    if not raw:
        return {} if default is None else default
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Corrupt JSON column, using default", raw=raw[:100])
        return {} if default is None else default


def _get_db() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _db


async def init_database() -> None:
    """Open the configured database file and apply the schema."""
    global _db
    db_path = get_settings().database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)

    _db = await aiosqlite.connect(str(db_path))
    _db.row_factory = aiosqlite.Row
    await _db.execute("PRAGMA journal_mode = WAL")
    await create_schema(_db)


async def close_database() -> None:
    global _db, _write_lock
    if _db is not None:
        await _db.close()
        _db = None
    _write_lock = None


async def _init_test_database() -> None:
    """Swap in a fresh in-memory database.

    Every pytest-asyncio test runs on its own loop, and the old connection's
    worker thread still posts results to the previous one, so awaiting
    close() would never finish. stop() plus a thread join avoids the loop.
    """
    global _db, _write_lock
    if _db is not None:
        _db.stop()
        if _db._thread is not None and _db._thread.is_alive():
            _db._thread.join(timeout=2)
    _write_lock = None
    _db = await aiosqlite.connect(":memory:")
    _db.row_factory = aiosqlite.Row
    await create_schema(_db)
