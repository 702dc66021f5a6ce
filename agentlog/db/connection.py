"""Database connection factory.

Provides a singleton async SQLite connection with WAL mode and the write
transaction helper every ingestion path goes through.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from agentlog import config

logger = logging.getLogger("agentlog.db")

_connection: aiosqlite.Connection | None = None
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


async def open_connection(db_path: Path | str) -> aiosqlite.Connection:
    """Open and configure a connection without touching the singleton."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    # WAL keeps readers unblocked while a batch is being applied
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection
    _connection = await open_connection(config.DB_PATH)
    logger.info(f"Database connection established: {config.DB_PATH}")
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")


def _write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _write_locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _write_locks[db] = lock
    return lock


@asynccontextmanager
async def transaction(db: aiosqlite.Connection) -> AsyncIterator[aiosqlite.Connection]:
    """Serialized write transaction: commit on success, roll back on error.

    Not re-entrant. Repositories never commit on their own; callers wrap a
    whole batch (records plus ledger advance) in a single ``transaction``.
    """
    async with _write_lock(db):
        if not db.in_transaction:
            await db.execute("BEGIN")
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        else:
            await db.commit()
