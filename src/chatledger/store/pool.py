"""
Shared connection pool for LedgerStore.

A single ``StorePool`` holds one ``aiosqlite.Connection`` per database path.
Every ``LedgerStore`` pointing at the same path borrows that connection, so
the request path (appends, history reads) and background reindex jobs never
fight over SQLite's single-writer lock.

Usage::

    pool = StorePool()

    store_a = LedgerStore(config, pool=pool)
    store_b = LedgerStore(config, pool=pool)   # same DB path → same connection

    await store_a.initialize()   # opens the connection
    await store_b.initialize()   # reuses it

    await pool.close_all()       # close all managed connections at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("chatledger.store.pool")


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """
    Open and configure a new SQLite connection.

    Creates the parent directory, sets the row factory and applies the
    journal/synchronous pragmas. The connection is closed again if any
    pragma fails.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


class StorePool:
    """
    Process-scoped registry of open ``aiosqlite.Connection`` objects.

    Only safe to use from a single asyncio event loop.

    For each resolved database path the pool holds exactly one connection and
    one write lock. ``LedgerStore`` takes the lock around every write
    transaction so interleaved commits from concurrent coroutines cannot
    split each other's transactions on the shared connection.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Return the shared connection for *db_path*, opening it if needed.

        Args:
            db_path: Path to the database file (``~`` is expanded).
            wal_mode: Enable WAL journal mode on first open.
            connection_timeout: SQLite busy timeout in seconds.

        Returns:
            The shared ``aiosqlite.Connection`` for this path.
        """
        resolved = str(Path(db_path).expanduser().resolve())  # noqa: ASYNC240

        if resolved in self._connections:
            return self._connections[resolved]

        lock = self._open_locks.setdefault(resolved, asyncio.Lock())
        async with lock:
            if resolved in self._connections:
                return self._connections[resolved]

            conn = await open_connection(
                resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
            )
            self._connections[resolved] = conn
            self._write_locks[resolved] = asyncio.Lock()
            _logger.debug("pool_connection_opened", db_path=resolved)
            return conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Return the write-serialisation lock for *db_path*.

        Raises ``KeyError`` if called before ``acquire()`` for this path.
        """
        resolved = str(Path(db_path).expanduser().resolve())
        return self._write_locks[resolved]

    async def close_path(self, db_path: str) -> None:
        """Close and forget the connection for a single path."""
        resolved = str(Path(db_path).expanduser().resolve())  # noqa: ASYNC240
        conn = self._connections.pop(resolved, None)
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        for path in list(self._connections):
            await self.close_path(path)

