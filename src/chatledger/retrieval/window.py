"""Keyword sliding-window retrieval and long-conversation context composition."""

from __future__ import annotations

from collections.abc import Collection, Sequence
from typing import TYPE_CHECKING

import structlog

from chatledger.models.config import ContextConfig, RetrievalConfig
from chatledger.models.message import (
    ContextMessage,
    RawLogEvent,
    ReconciledMessage,
    RetrievalOptions,
)

if TYPE_CHECKING:
    from chatledger.store.ledger import LedgerStore


def _normalize(keywords: Sequence[str] | None) -> set[str]:
    return {k.strip().lower() for k in keywords or () if isinstance(k, str) and k.strip()}


def _is_hit(event_keywords: Sequence[str], query: set[str], match_all: bool) -> bool:
    overlap = _normalize(event_keywords) & query
    if match_all:
        return bool(query) and len(overlap) == len(query)
    return bool(overlap)


def _without(events: list[RawLogEvent], exclude_ids: Collection[str]) -> list[RawLogEvent]:
    if not exclude_ids:
        return events
    return [e for e in events if e.id not in exclude_ids]


def to_context_message(message: RawLogEvent | ReconciledMessage) -> ContextMessage:
    """Project a log event or reconciled message onto the model-context view."""
    return ContextMessage(
        role=message.role,
        content=message.content,
        name=message.name,
        timestamp=message.timestamp,
    )


class SlidingWindowRetriever:
    """
    Builds bounded context from keyword hits and their neighbours.

    The message list is the session's ordered log. Short sessions (at most
    ``short_session_threshold`` messages) skip keyword matching entirely and
    return their most recent messages.

    Example::

        retriever = SlidingWindowRetriever(store, RetrievalConfig())
        window = await retriever.get_window(
            session_id, RetrievalOptions(keywords=["deploy"], window_size=2)
        )
    """

    def __init__(self, store: LedgerStore, config: RetrievalConfig | None = None) -> None:
        self._store = store
        self._config = config or RetrievalConfig()
        self._logger = structlog.get_logger("chatledger.retrieval")

    @property
    def short_session_threshold(self) -> int:
        return self._config.short_session_threshold

    async def get_window(
        self,
        session_id: str,
        options: RetrievalOptions | None = None,
        *,
        exclude_ids: Collection[str] = (),
    ) -> list[ContextMessage]:
        """
        Return the keyword window for a session.

        Every hit contributes ``[i - window_size, i + window_size]`` (clamped);
        hits stop being added once ``max_messages`` indices are picked. When
        ``options.keywords`` is empty the session's aggregate keywords are used.
        Log events listed in ``exclude_ids`` (soft-deleted messages) are removed
        before the short-session check and the keyword scan.

        Returns:
            At most ``max_messages`` messages in log order.
        """
        options = options or RetrievalOptions()
        window_size = (
            options.window_size if options.window_size is not None else self._config.window_size
        )
        max_messages = (
            options.max_messages
            if options.max_messages is not None
            else self._config.max_messages
        )

        events = _without(await self._store.query_ordered(session_id), exclude_ids)
        if len(events) <= self._config.short_session_threshold:
            recent = min(self._config.short_session_recent, max_messages)
            return [to_context_message(e) for e in events[-recent:]]

        query = _normalize(options.keywords)
        if not query:
            session = await self._store.get_session(session_id)
            query = _normalize(session.keywords if session is not None else None)

        picked: set[int] = set()
        last = len(events) - 1
        for i, event in enumerate(events):
            if not _is_hit(event.keywords, query, options.match_all):
                continue
            picked.update(range(max(0, i - window_size), min(last, i + window_size) + 1))
            if len(picked) >= max_messages:
                break

        indices = sorted(picked)[:max_messages]
        self._logger.debug(
            "window_built",
            session_id=session_id,
            messages=len(events),
            keywords=len(query),
            picked=len(indices),
        )
        return [to_context_message(events[i]) for i in indices]

    async def search(
        self,
        session_id: str,
        keywords: Sequence[str],
        *,
        match_all: bool = False,
        limit: int | None = None,
        exclude_ids: Collection[str] = (),
    ) -> list[RawLogEvent]:
        """
        Return log events whose keywords match, in timestamp order.

        With ``match_all`` every query keyword must be present; otherwise any
        one is enough. ``limit > 0`` keeps the earliest ``limit`` matches.
        """
        query = _normalize(keywords)
        if not query:
            return []
        matches = [
            e
            for e in _without(await self._store.query_ordered(session_id), exclude_ids)
            if _is_hit(e.keywords, query, match_all)
        ]
        if limit is not None and limit > 0:
            matches = matches[:limit]
        return matches

    async def compose_context(
        self,
        session_id: str,
        history: Sequence[ReconciledMessage],
        keywords: Sequence[str] | None = None,
        config: ContextConfig | None = None,
        *,
        exclude_ids: Collection[str] = (),
    ) -> list[ContextMessage]:
        """
        Cap model input on long conversations.

        Histories no longer than ``short_session_threshold`` are returned
        whole. Otherwise the last ``recent_messages`` reconciled messages are
        combined with a keyword window over the log, with ``exclude_ids``
        removed from the log first. A retrieved message is dropped when a
        recent one has the same timestamp or the same role and content.

        Reconciled messages carry synthetic checkpoint timestamps
        (``snapshot.ts + position``) while log events carry their write time,
        so the timestamp key rarely matches in practice. Role and content is
        the key that actually removes duplicates.
        """
        config = config or ContextConfig()
        if len(history) <= self._config.short_session_threshold:
            return [to_context_message(m) for m in history]

        recent = [to_context_message(m) for m in history[-config.recent_messages :]]
        retrieved = await self.get_window(
            session_id,
            RetrievalOptions(
                keywords=list(keywords) if keywords else None,
                window_size=config.retrieved_window_size,
                max_messages=config.retrieved_max_messages,
            ),
            exclude_ids=exclude_ids,
        )

        recent_timestamps = {m.timestamp for m in recent if m.timestamp is not None}
        recent_bodies = {(m.role, m.content) for m in recent}
        unique = [
            m
            for m in retrieved
            if (m.role, m.content) not in recent_bodies
            and (m.timestamp is None or m.timestamp not in recent_timestamps)
        ]

        combined = [*unique, *recent]
        combined.sort(key=lambda m: m.timestamp or 0)
        self._logger.debug(
            "context_composed",
            session_id=session_id,
            recent=len(recent),
            retrieved=len(unique),
        )
        return combined
