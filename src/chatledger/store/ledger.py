"""SQLite-backed store for sessions, the message log, checkpoints and deletions."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog
from pydantic import TypeAdapter, ValidationError

from chatledger.models.checkpoint import CheckpointSnapshot, TurnEntry
from chatledger.models.config import StoreConfig
from chatledger.models.message import (
    DeletionFingerprint,
    MessagePart,
    RawLogEvent,
    ToolCall,
    ToolResult,
    now_ms,
)

if TYPE_CHECKING:
    from chatledger.store.pool import StorePool

_PART_ADAPTER: TypeAdapter[MessagePart] = TypeAdapter(MessagePart)

# ── Exceptions ─────────────────────────────────────────────────────────────────


class LedgerStoreError(Exception):
    """Base class for store errors."""


class DuplicateIDError(LedgerStoreError):
    """Raised when attempting to insert a log event with a duplicate ID."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


# ── Session rows ───────────────────────────────────────────────────────────────


class SessionRecord:
    """Thin data class for session rows (not Pydantic, no validation on reads)."""

    __slots__ = ("created_at", "id", "keywords", "title", "updated_at")

    def __init__(
        self,
        id: str,
        title: str | None,
        keywords: list[str],
        created_at: int,
        updated_at: int,
    ) -> None:
        self.id = id
        self.title = title
        self.keywords = keywords
        self.created_at = created_at
        self.updated_at = updated_at

    def __repr__(self) -> str:
        return f"SessionRecord(id={self.id!r}, title={self.title!r})"


# ── LedgerStore ────────────────────────────────────────────────────────────────


class LedgerStore:
    """
    Persistence for one conversation ledger database.

    Implements the ``CheckpointReader``, ``MessageLog`` and ``SessionStore``
    protocols plus the soft-deletion fingerprint set. The message log is
    append-only: the only mutation of a log row is filling in its derived
    ``keywords`` field. Session ``title``/``keywords`` and deletion
    fingerprints are upserts, so duplicate concurrent writes converge.

    When a ``StorePool`` is supplied the store borrows the pool's shared
    connection and write lock; ``close()`` then leaves the connection open.

    Usage::

        store = LedgerStore(StoreConfig(db_path="/tmp/ledger.db"))
        await store.initialize()
        try:
            await store.append(event)
            events = await store.query_ordered(event.session_id)
        finally:
            await store.close()
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._local_lock = asyncio.Lock()
        self._logger = structlog.get_logger("chatledger.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        from chatledger.store.pool import open_connection

        if self._pool is not None:
            conn = await self._pool.acquire(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
        else:
            conn = await open_connection(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )

        schema = (Path(__file__).parent / "schema.sql").read_text()
        await conn.executescript(schema)
        await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the connection. A no-op for pool-owned connections."""
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise LedgerStoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialise a write transaction and commit it on success."""
        conn = self._conn_or_raise()
        lock = self._pool.write_lock(self._db_path) if self._pool else self._local_lock
        async with lock:
            try:
                yield conn
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(self, session_id: str) -> SessionRecord:
        """
        Create the session row if it does not exist yet.

        Idempotent: an existing session is returned unchanged.
        """
        now = now_ms()
        async with self._writing() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO sessions (id, title, keywords, created_at, updated_at)"
                " VALUES (?, NULL, '[]', ?, ?)",
                (session_id, now, now),
            )
        record = await self.get_session(session_id)
        if record is None:  # pragma: no cover - row was just written
            raise LedgerStoreError(f"Session vanished after create: {session_id!r}")
        return record

    async def get_session(self, session_id: str) -> SessionRecord | None:
        """Fetch a session by ID, or ``None`` when it does not exist."""
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_session(row)

    async def list_sessions(self, *, limit: int = 100, offset: int = 0) -> list[SessionRecord]:
        """List sessions, most recently updated first."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM sessions ORDER BY updated_at DESC, id ASC LIMIT ? OFFSET ?",
            (limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(r) for r in rows]

    async def set_title(self, session_id: str, title: str) -> None:
        """Upsert the session title."""
        await self._upsert_session_field(session_id, "title", title)

    async def set_keywords(self, session_id: str, keywords: list[str]) -> None:
        """Upsert the session-level aggregate keywords."""
        await self._upsert_session_field(session_id, "keywords", json.dumps(keywords))

    async def touch(self, session_id: str) -> None:
        """Bump ``updated_at``, creating the session row when missing."""
        now = now_ms()
        async with self._writing() as conn:
            await self._touch(conn, session_id, now)

    async def delete_session(self, session_id: str) -> None:
        """
        Remove a session and everything recorded for it.

        This is the only operation that deletes log rows (explicit session clear).
        """
        async with self._writing() as conn:
            for table, column in (
                ("log_events", "session_id"),
                ("checkpoints", "session_id"),
                ("deleted_fingerprints", "session_id"),
                ("sessions", "id"),
            ):
                await conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (session_id,))
        self._logger.info("session_deleted", session_id=session_id)

    async def _upsert_session_field(self, session_id: str, column: str, value: Any) -> None:
        now = now_ms()
        async with self._writing() as conn:
            await self._touch(conn, session_id, now)
            await conn.execute(
                f"UPDATE sessions SET {column} = ?, updated_at = ? WHERE id = ?",
                (value, now, session_id),
            )

    @staticmethod
    async def _touch(conn: aiosqlite.Connection, session_id: str, now: int) -> None:
        await conn.execute(
            """
            INSERT INTO sessions (id, title, keywords, created_at, updated_at)
            VALUES (?, NULL, '[]', ?, ?)
            ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
            """,
            (session_id, now, now),
        )

    # ── Message Log Methods ────────────────────────────────────────────────────

    async def append(self, event: RawLogEvent) -> RawLogEvent:
        """
        Append one event to the log and bump the session's ``updated_at``.

        Raises:
            DuplicateIDError: If an event with this ID already exists.
        """
        try:
            async with self._writing() as conn:
                await conn.execute(
                    """
                    INSERT INTO log_events (
                        id, session_id, role, content, name,
                        tool_calls, tool_results, parts, keywords, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.id,
                        event.session_id,
                        event.role,
                        event.content,
                        event.name,
                        _dump_models(event.tool_calls),
                        _dump_models(event.tool_results),
                        _dump_models(event.parts),
                        json.dumps(event.keywords),
                        event.timestamp,
                    ),
                )
                await self._touch(conn, event.session_id, now_ms())
        except aiosqlite.IntegrityError as exc:
            raise DuplicateIDError(event.id) from exc
        return event

    async def query_ordered(self, session_id: str) -> list[RawLogEvent]:
        """All events for a session, oldest first (write order breaks ties)."""
        return await self._select_events(
            "SELECT * FROM log_events WHERE session_id = ? ORDER BY timestamp ASC, seq ASC",
            (session_id,),
        )

    async def recent_events(self, session_id: str, limit: int) -> list[RawLogEvent]:
        """The ``limit`` most recent events, newest first."""
        return await self._select_events(
            "SELECT * FROM log_events WHERE session_id = ?"
            " ORDER BY timestamp DESC, seq DESC LIMIT ?",
            (session_id, limit),
        )

    async def events_missing_keywords(self, session_id: str) -> list[RawLogEvent]:
        """Events whose derived keywords have not been computed yet."""
        return await self._select_events(
            "SELECT * FROM log_events WHERE session_id = ?"
            " AND (keywords IS NULL OR keywords = '' OR keywords = '[]')"
            " ORDER BY timestamp ASC, seq ASC",
            (session_id,),
        )

    async def set_event_keywords(self, event_id: str, keywords: list[str]) -> None:
        """Fill in the derived keywords of one log event."""
        async with self._writing() as conn:
            await conn.execute(
                "UPDATE log_events SET keywords = ? WHERE id = ?",
                (json.dumps(keywords), event_id),
            )

    async def _select_events(self, sql: str, params: tuple[Any, ...]) -> list[RawLogEvent]:
        conn = self._conn_or_raise()
        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_event(r) for r in rows]

    # ── Checkpoint Methods ─────────────────────────────────────────────────────

    async def put_checkpoint(self, session_id: str, snapshot: CheckpointSnapshot) -> None:
        """Replace the session's latest snapshot."""
        entries = json.dumps([e.model_dump() for e in snapshot.entries], default=str)
        now = now_ms()
        async with self._writing() as conn:
            await conn.execute(
                """
                INSERT INTO checkpoints (session_id, ts, entries, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    ts = excluded.ts, entries = excluded.entries, updated_at = excluded.updated_at
                """,
                (session_id, snapshot.ts, entries, now),
            )

    async def get_latest(self, session_id: str) -> CheckpointSnapshot | None:
        """Return the latest snapshot, or ``None`` when the session has none."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT ts, entries FROM checkpoints WHERE session_id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        raw_entries = _load_json_list(row["entries"])
        entries = [TurnEntry.model_validate(e) if isinstance(e, dict) else TurnEntry()
                   for e in raw_entries]
        return CheckpointSnapshot(ts=row["ts"], entries=entries)

    # ── Deletion Fingerprint Methods ───────────────────────────────────────────

    async def mark_deleted_fingerprints(self, session_id: str, fingerprints: list[str]) -> int:
        """
        Add fingerprints to the session's deleted set.

        Returns:
            Number of fingerprints that were not already present.
        """
        if not fingerprints:
            return 0
        now = now_ms()
        added = 0
        async with self._writing() as conn:
            for fp in dict.fromkeys(fingerprints):
                cursor = await conn.execute(
                    "INSERT OR IGNORE INTO deleted_fingerprints (session_id, fingerprint, timestamp)"
                    " VALUES (?, ?, ?)",
                    (session_id, fp, now),
                )
                added += cursor.rowcount
        return added

    async def get_deleted_fingerprints(self, session_id: str) -> set[str]:
        """The session's deleted-fingerprint set (empty when none)."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT fingerprint FROM deleted_fingerprints WHERE session_id = ?", (session_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return {row["fingerprint"] for row in rows}

    async def list_deletions(self, session_id: str) -> list[DeletionFingerprint]:
        """The session's deletion records, oldest first."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT session_id, fingerprint, timestamp FROM deleted_fingerprints"
            " WHERE session_id = ? ORDER BY timestamp ASC, fingerprint ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            DeletionFingerprint(
                session_id=row["session_id"],
                fingerprint=row["fingerprint"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _row_to_session(self, row: aiosqlite.Row) -> SessionRecord:
        keywords = [k for k in _load_json_list(row["keywords"]) if isinstance(k, str)]
        return SessionRecord(
            id=row["id"],
            title=row["title"],
            keywords=keywords,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_event(self, row: aiosqlite.Row) -> RawLogEvent:
        return RawLogEvent(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            content=row["content"] or "",
            name=row["name"],
            tool_calls=self._load_models(row, "tool_calls", ToolCall),
            tool_results=self._load_models(row, "tool_results", ToolResult),
            parts=self._load_parts(row),
            keywords=[k for k in _load_json_list(row["keywords"]) if isinstance(k, str)],
            timestamp=row["timestamp"],
        )

    def _load_models(self, row: aiosqlite.Row, column: str, model: Any) -> list[Any]:
        loaded = []
        for item in _load_json_list(row[column]):
            try:
                loaded.append(model.model_validate(item))
            except ValidationError as exc:
                self._logger.warning(
                    "log_field_deserialize_failed", event_id=row["id"], field=column, error=str(exc)
                )
        return loaded

    def _load_parts(self, row: aiosqlite.Row) -> list[MessagePart]:
        parts: list[MessagePart] = []
        for item in _load_json_list(row["parts"]):
            try:
                parts.append(_PART_ADAPTER.validate_python(item))
            except ValidationError as exc:
                self._logger.warning(
                    "part_deserialize_failed", event_id=row["id"], error=str(exc)
                )
        return parts


def _dump_models(items: list[Any]) -> str:
    return json.dumps([item.model_dump() for item in items], default=str)


def _load_json_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []
