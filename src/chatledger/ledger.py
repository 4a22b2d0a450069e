"""ConversationLedger, the primary public API entry point."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Collection, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any

import structlog
from ulid import ULID

from chatledger.context.builder import BuiltContext, ModelContextBuilder
from chatledger.events.bus import EventBus, LedgerEvent
from chatledger.models.checkpoint import CheckpointSnapshot
from chatledger.models.config import LedgerConfig, StoreConfig
from chatledger.models.message import (
    ContextMessage,
    ConversationMemory,
    DeletionFingerprint,
    FingerprintedMessage,
    MessagePart,
    RawLogEvent,
    ReconciledMessage,
    RetrievalOptions,
    Role,
    ToolCall,
    ToolResult,
    now_ms,
)
from chatledger.reconcile.fingerprint import fingerprint, hidden_log_events
from chatledger.reconcile.reconciler import reconcile
from chatledger.retrieval.keywords import KeywordIndexer, ReindexScheduler
from chatledger.retrieval.window import SlidingWindowRetriever
from chatledger.store.ledger import LedgerStore, SessionRecord
from chatledger.store.pool import StorePool
from chatledger.store.protocols import CheckpointReader, KeywordExtractor

DEFAULT_TITLE = "新会话"
_TITLE_LENGTH = 24
_TITLE_TRAILING_PUNCTUATION = ".,!;:。！，；："


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"sess"``, ``"evt"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


def provisional_title(text: str) -> str:
    """First 24 characters of ``text`` without trailing space or punctuation."""
    title = (text or "").strip()[:_TITLE_LENGTH].rstrip()
    title = title.rstrip(_TITLE_TRAILING_PUNCTUATION)
    return title or DEFAULT_TITLE


class ConversationLedger:
    """
    Reconciled conversation history over a checkpoint and a message log.

    One ledger serves every session in its database. History reads are
    computed on demand: the latest checkpoint and the ordered log are fetched
    and passed through :func:`~chatledger.reconcile.reconcile`. Keyword
    enrichment runs in the background via :meth:`schedule_reindex`.

    Usage::

        async with ConversationLedger.open(db_path="/tmp/chat.db") as ledger:
            session = await ledger.create_session()
            await ledger.append_message(session.id, "user", "Deploy the API")
            await ledger.ensure_title(session.id, "Deploy the API")
            await ledger.save_checkpoint(session.id, runtime_checkpoint)
            ledger.schedule_reindex(session.id)

            history = await ledger.get_history(session.id)
            context = await ledger.build_model_context(session.id, query="deploy")

    Soft deletion never rewrites the log: :meth:`delete_messages` records
    fingerprints, and :meth:`get_visible_history` filters them out.
    """

    def __init__(
        self,
        config: LedgerConfig,
        store: LedgerStore,
        checkpoint_reader: CheckpointReader,
        indexer: KeywordIndexer,
        scheduler: ReindexScheduler,
        retriever: SlidingWindowRetriever,
        context_builder: ModelContextBuilder,
        event_bus: EventBus,
    ) -> None:
        self._config = config
        self._store = store
        self._checkpoints = checkpoint_reader
        self._indexer = indexer
        self._scheduler = scheduler
        self._retriever = retriever
        self._context_builder = context_builder
        self._event_bus = event_bus
        self._logger = structlog.get_logger("chatledger.ledger")

    @classmethod
    async def create(
        cls,
        *,
        config: LedgerConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        extractor: KeywordExtractor | None = None,
        checkpoint_reader: CheckpointReader | None = None,
        event_bus: EventBus | None = None,
    ) -> ConversationLedger:
        """
        Open the store and wire every component.

        Args:
            config: Ledger configuration. Defaults to ``LedgerConfig()``.
            db_path: Override database path (useful for testing). Raises
                ``ValueError`` if ``config.store.db_path`` is also customised.
            pool: Optional shared connection pool. The caller closes it.
            extractor: Keyword extractor. Defaults to the litellm extractor.
            checkpoint_reader: Source of runtime checkpoints. Defaults to the
                store's own copy written by :meth:`save_checkpoint`.
            event_bus: Bus to publish on. A private one is created if omitted.

        Raises:
            ValueError: If both ``db_path`` and ``config.store.db_path`` are supplied.
            aiosqlite.Error: If the database cannot be initialized.
        """
        cfg = config or LedgerConfig()
        if db_path is not None:
            if config is not None and cfg.store.db_path != StoreConfig().db_path:
                raise ValueError(
                    "Specify db_path either via db_path= or config.store.db_path, not both."
                )
            cfg = cfg.model_copy(
                update={"store": cfg.store.model_copy(update={"db_path": db_path})}
            )

        store = LedgerStore(cfg.store, pool=pool)
        await store.initialize()

        bus = event_bus or EventBus()
        indexer = KeywordIndexer(store, extractor, cfg.keywords, bus)
        retriever = SlidingWindowRetriever(store, cfg.retrieval)
        return cls(
            config=cfg,
            store=store,
            checkpoint_reader=checkpoint_reader or store,
            indexer=indexer,
            scheduler=ReindexScheduler(indexer, bus),
            retriever=retriever,
            context_builder=ModelContextBuilder(retriever, cfg.context),
            event_bus=bus,
        )

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        *,
        config: LedgerConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        extractor: KeywordExtractor | None = None,
        checkpoint_reader: CheckpointReader | None = None,
        event_bus: EventBus | None = None,
    ) -> AsyncGenerator[ConversationLedger, None]:
        """
        Create a ledger and use it as an async context manager.

        Parameters are identical to :meth:`create`. On exit pending reindex
        jobs are awaited and the connection is released.
        """
        ledger = await cls.create(
            config=config,
            db_path=db_path,
            pool=pool,
            extractor=extractor,
            checkpoint_reader=checkpoint_reader,
            event_bus=event_bus,
        )
        try:
            yield ledger
        finally:
            await ledger.close()

    # ── Sessions ───────────────────────────────────────────────────────────────

    async def create_session(self, session_id: str | None = None) -> SessionRecord:
        """
        Create a session, or return it unchanged if it already exists.

        Args:
            session_id: Explicit ID. A new ``sess_`` ID is generated if omitted.
        """
        sid = session_id or make_id("sess")
        existing = await self._store.get_session(sid)
        if existing is not None:
            return existing

        record = await self._store.create_session(sid)
        self._event_bus.publish(LedgerEvent.SESSION_CREATED, {"session_id": sid})
        self._logger.info("session_created", session_id=sid)
        return record

    async def get_session(self, session_id: str) -> SessionRecord | None:
        return await self._store.get_session(session_id)

    async def list_sessions(self, *, limit: int = 100, offset: int = 0) -> list[SessionRecord]:
        """Sessions ordered by most recent update."""
        return await self._store.list_sessions(limit=limit, offset=offset)

    async def clear_session(self, session_id: str) -> None:
        """Remove a session with its log, checkpoint and deletion fingerprints."""
        await self._store.delete_session(session_id)
        self._event_bus.publish(LedgerEvent.SESSION_CLEARED, {"session_id": session_id})
        self._logger.info("session_cleared", session_id=session_id)

    async def ensure_title(self, session_id: str, text: str) -> str:
        """
        Give an untitled session a provisional title derived from ``text``.

        Returns:
            The session's title after the call.
        """
        session = await self._store.get_session(session_id)
        if session is not None and session.title:
            return session.title

        title = provisional_title(text)
        await self._store.set_title(session_id, title)
        self._event_bus.publish(
            LedgerEvent.TITLE_SET, {"session_id": session_id, "title": title}
        )
        return title

    # ── Writes ─────────────────────────────────────────────────────────────────

    async def append_message(
        self,
        session_id: str,
        role: Role,
        content: str = "",
        *,
        name: str | None = None,
        tool_calls: Sequence[ToolCall] = (),
        tool_results: Sequence[ToolResult] = (),
        parts: Sequence[MessagePart] = (),
        timestamp: int | None = None,
    ) -> RawLogEvent:
        """
        Append one event to the session's message log.

        The session row is created if it does not exist yet.

        Raises:
            DuplicateIDError: If the event ID is already stored.
        """
        event = RawLogEvent(
            id=make_id("evt"),
            session_id=session_id,
            role=role,
            content=content,
            name=name,
            tool_calls=list(tool_calls),
            tool_results=list(tool_results),
            parts=list(parts),
            timestamp=timestamp if timestamp is not None else now_ms(),
        )
        await self._store.append(event)
        self._event_bus.publish(
            LedgerEvent.MESSAGE_APPENDED,
            {"session_id": session_id, "event_id": event.id, "role": role},
        )
        return event

    async def save_checkpoint(
        self, session_id: str, snapshot: CheckpointSnapshot | dict[str, Any]
    ) -> CheckpointSnapshot:
        """
        Store the latest runtime checkpoint for a session, replacing any previous one.

        Args:
            session_id: The session the checkpoint belongs to.
            snapshot: A snapshot, or a raw runtime payload accepted by
                :meth:`CheckpointSnapshot.from_raw`.

        Raises:
            ValueError: If a raw payload is not a mapping.
        """
        parsed = (
            snapshot
            if isinstance(snapshot, CheckpointSnapshot)
            else CheckpointSnapshot.from_raw(snapshot)
        )
        if parsed is None:
            raise ValueError("Checkpoint payload must be a mapping.")

        await self._store.put_checkpoint(session_id, parsed)
        self._event_bus.publish(
            LedgerEvent.CHECKPOINT_SAVED,
            {"session_id": session_id, "ts": parsed.ts, "entry_count": len(parsed.entries)},
        )
        return parsed

    # ── History ────────────────────────────────────────────────────────────────

    async def get_history(
        self,
        session_id: str,
        *,
        limit: int | None = None,
        exclude_roles: Iterable[str] | None = None,
    ) -> list[ReconciledMessage]:
        """
        Reconciled history of a session, oldest first.

        Empty when the session has no checkpoint. Soft-deleted messages are
        included; use :meth:`get_visible_history` to hide them.
        """
        snapshot = await self._checkpoints.get_latest(session_id)
        if snapshot is None:
            return []
        events = await self._store.query_ordered(session_id)
        return reconcile(snapshot, events, exclude_roles=exclude_roles, limit=limit)

    async def get_visible_history(
        self,
        session_id: str,
        *,
        limit: int | None = None,
        exclude_roles: Iterable[str] | None = None,
    ) -> list[FingerprintedMessage]:
        """
        Reconciled history without soft-deleted messages.

        Fingerprints use each message's position in the full history, so they
        do not depend on ``limit`` or ``exclude_roles``.
        """
        visible, _ = await self._visible_view(session_id)
        excluded = set(exclude_roles or ())
        if excluded:
            visible = [v for v in visible if v.message.role not in excluded]

        if limit is not None and limit > 0:
            visible = visible[-limit:]
        return visible

    async def delete_messages(
        self,
        session_id: str,
        *,
        fingerprints: Sequence[str] | None = None,
        indexes: Sequence[int] | None = None,
    ) -> int:
        """
        Hide messages from every view without touching the log.

        Args:
            session_id: The session to delete from.
            fingerprints: Fingerprints as returned by :meth:`get_visible_history`.
            indexes: Positions in the current visible history. Out-of-range
                positions are ignored.

        Returns:
            Number of unique fingerprints recorded.
        """
        requested = list(fingerprints or ())
        if indexes:
            visible = await self.get_visible_history(session_id)
            for position in indexes:
                if 0 <= position < len(visible):
                    requested.append(visible[position].fingerprint)
                else:
                    self._logger.warning(
                        "delete_index_out_of_range",
                        session_id=session_id,
                        index=position,
                        visible=len(visible),
                    )

        unique = list(dict.fromkeys(fp for fp in requested if fp))
        if not unique:
            return 0

        added = await self._store.mark_deleted_fingerprints(session_id, unique)
        self._event_bus.publish(
            LedgerEvent.MESSAGES_DELETED,
            {"session_id": session_id, "fingerprints": unique, "newly_deleted": added},
        )
        self._logger.info(
            "messages_deleted", session_id=session_id, requested=len(unique), added=added
        )
        return len(unique)

    async def _visible_view(
        self, session_id: str
    ) -> tuple[list[FingerprintedMessage], set[str]]:
        """Visible history plus the IDs of the log events it hides."""
        snapshot = await self._checkpoints.get_latest(session_id)
        if snapshot is None:
            return [], set()
        events = await self._store.query_ordered(session_id)
        history = reconcile(snapshot, events)
        deleted = await self._store.get_deleted_fingerprints(session_id)

        visible: list[FingerprintedMessage] = []
        for index, message in enumerate(history):
            fp = fingerprint(session_id, message, index)
            if fp not in deleted:
                visible.append(FingerprintedMessage(message=message, fingerprint=fp, index=index))
        return visible, hidden_log_events(session_id, history, events, deleted)

    async def get_deleted_fingerprints(self, session_id: str) -> set[str]:
        return await self._store.get_deleted_fingerprints(session_id)

    async def list_deletions(self, session_id: str) -> list[DeletionFingerprint]:
        """Deletion records of a session, oldest first."""
        return await self._store.list_deletions(session_id)

    @staticmethod
    def fingerprint(session_id: str, message: Any, position: int | None = None) -> str:
        """See :func:`chatledger.reconcile.fingerprint`."""
        return fingerprint(session_id, message, position)

    async def build_memory(
        self, session_id: str, system: Sequence[str] | None = None
    ) -> ConversationMemory:
        """System prompts plus visible history, for seeding an agent run."""
        visible = await self.get_visible_history(session_id)
        return ConversationMemory(
            session_id=session_id,
            system=list(system or ()),
            messages=[v.message for v in visible],
        )

    # ── Retrieval ──────────────────────────────────────────────────────────────

    async def get_window(
        self, session_id: str, options: RetrievalOptions | None = None
    ) -> list[ContextMessage]:
        """Keyword sliding window over the session log, soft-deleted messages excluded."""
        _, hidden = await self._visible_view(session_id)
        return await self._retriever.get_window(session_id, options, exclude_ids=hidden)

    async def search(
        self,
        session_id: str,
        keywords: Sequence[str],
        *,
        match_all: bool = False,
        limit: int | None = None,
    ) -> list[RawLogEvent]:
        """Log events matching ``keywords``, oldest first. Soft-deleted messages are excluded."""
        _, hidden = await self._visible_view(session_id)
        return await self._retriever.search(
            session_id, keywords, match_all=match_all, limit=limit, exclude_ids=hidden
        )

    async def build_model_context(
        self,
        session_id: str,
        *,
        query: str | None = None,
        allowed_tools: Collection[str] | None = None,
    ) -> BuiltContext:
        """
        Model input for the next turn.

        Soft-deleted messages are left out of both the replayed history and
        the keyword-retrieved part of a composed context.

        Args:
            session_id: The session to build for.
            query: The incoming user text. Its keywords steer retrieval on long
                sessions; the session keywords are used when omitted.
            allowed_tools: Tool names whose calls may be replayed.
        """
        visible, hidden = await self._visible_view(session_id)
        keywords = await self._indexer.extract(query) if query else None
        return await self._context_builder.build(
            session_id,
            [v.message for v in visible],
            keywords=keywords,
            allowed_tools=allowed_tools,
            exclude_ids=hidden,
        )

    # ── Keyword indexing ───────────────────────────────────────────────────────

    async def reindex_session(self, session_id: str) -> int:
        """Reindex in the foreground. Returns the number of events indexed."""
        return await self._indexer.reindex_session(session_id)

    def schedule_reindex(self, session_id: str) -> bool:
        """Queue a background reindex. See :class:`ReindexScheduler`."""
        return self._scheduler.schedule(session_id)

    async def wait_for_pending(self) -> None:
        """Await all background reindex jobs."""
        await self._scheduler.wait_for_pending()

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Drain background jobs, then release the database connection."""
        await self._scheduler.wait_for_pending()
        await self._store.close()
        self._logger.info("ledger_closed")

    async def __aenter__(self) -> ConversationLedger:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def event_bus(self) -> EventBus:
        """The ledger's event bus. Subscribe to monitor events."""
        return self._event_bus

    def subscribe(self, event: LedgerEvent, handler: Any) -> None:
        """Convenience wrapper for ``ledger.event_bus.subscribe()``."""
        self._event_bus.subscribe(event, handler)
