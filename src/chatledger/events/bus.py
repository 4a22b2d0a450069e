"""In-process pub/sub for ledger lifecycle events."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["LedgerEvent", dict[str, Any]], None | Awaitable[None]]


class LedgerEvent(StrEnum):
    """Events published by :class:`~chatledger.ledger.ConversationLedger`.

    Payload ``TypedDict`` definitions live in :mod:`chatledger.events.payloads`:

    ``SESSION_CREATED`` / ``SESSION_CLEARED``
        ``session_id``
    ``MESSAGE_APPENDED``
        ``session_id``, ``event_id``, ``role``
    ``CHECKPOINT_SAVED``
        ``session_id``, ``ts``, ``entry_count``
    ``MESSAGES_DELETED``
        ``session_id``, ``fingerprints``, ``newly_deleted``
    ``TITLE_SET``
        ``session_id``, ``title``
    ``REINDEX_COMPLETED``
        ``session_id``, ``events_indexed``, ``session_keywords``
    ``REINDEX_FAILED``
        ``session_id``, ``error``
    """

    SESSION_CREATED = "session.created"
    SESSION_CLEARED = "session.cleared"
    TITLE_SET = "session.title_set"

    MESSAGE_APPENDED = "message.appended"
    MESSAGES_DELETED = "message.deleted"

    CHECKPOINT_SAVED = "checkpoint.saved"

    REINDEX_COMPLETED = "reindex.completed"
    REINDEX_FAILED = "reindex.failed"


class EventBus:
    """
    Simple in-process event bus.

    Sync handlers run inline in ``publish()``; coroutine handlers are
    scheduled on the running loop. Handler errors are logged and never reach
    the publisher. Each ``ConversationLedger`` owns a bus unless one is
    injected.

    Example::

        bus = EventBus()
        bus.subscribe(LedgerEvent.REINDEX_FAILED, lambda e, p: alert(p["error"]))
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[LedgerEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("chatledger.events")

    def subscribe(self, event: LedgerEvent, handler: Handler) -> None:
        """Register ``handler(event, payload)`` for one event type."""
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register ``handler(event, payload)`` for every event type."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: LedgerEvent, handler: Handler) -> None:
        """Remove a handler. No-op if it was never registered."""
        with contextlib.suppress(ValueError):
            self._handlers.get(event, []).remove(handler)

    def publish(self, event: LedgerEvent, payload: dict[str, Any]) -> None:
        """
        Deliver ``payload`` to every handler of ``event`` and to global handlers.

        Args:
            event: The event type to publish.
            payload: Event-specific data (see :mod:`chatledger.events.payloads`).
        """
        for handler in [*self._handlers.get(event, []), *self._global_handlers]:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    self._schedule(result)
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )

    def _schedule(self, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            self._logger.warning("event_handler_skipped_no_loop")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
