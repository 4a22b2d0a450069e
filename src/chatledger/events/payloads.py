"""Typed payloads for each :class:`~chatledger.events.bus.LedgerEvent`.

Usage::

    from chatledger.events.bus import LedgerEvent
    from chatledger.events.payloads import ReindexFailedPayload

    def on_failure(event: LedgerEvent, payload: ReindexFailedPayload) -> None:
        alerts.push(payload["session_id"], payload["error"])

    ledger.event_bus.subscribe(LedgerEvent.REINDEX_FAILED, on_failure)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.SESSION_CREATED`."""

    session_id: str


class SessionClearedPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.SESSION_CLEARED`."""

    session_id: str


class TitleSetPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.TITLE_SET`."""

    session_id: str
    title: str


# ── Messages and checkpoints ──────────────────────────────────────────────────


class MessageAppendedPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.MESSAGE_APPENDED`."""

    session_id: str
    event_id: str
    role: str
    """``"system"``, ``"user"`` or ``"assistant"``."""


class MessagesDeletedPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.MESSAGES_DELETED`."""

    session_id: str
    fingerprints: list[str]
    """Every fingerprint requested, in request order."""
    newly_deleted: int
    """How many were not already in the deleted set."""


class CheckpointSavedPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.CHECKPOINT_SAVED`."""

    session_id: str
    ts: int
    entry_count: int


# ── Keyword reindexing ────────────────────────────────────────────────────────


class ReindexCompletedPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.REINDEX_COMPLETED`."""

    session_id: str
    events_indexed: int
    session_keywords: list[str]


class ReindexFailedPayload(TypedDict):
    """Payload for :attr:`LedgerEvent.REINDEX_FAILED`."""

    session_id: str
    error: str
