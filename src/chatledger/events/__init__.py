"""chatledger event bus."""

from chatledger.events.bus import EventBus, Handler, LedgerEvent
from chatledger.events.payloads import (
    CheckpointSavedPayload,
    MessageAppendedPayload,
    MessagesDeletedPayload,
    ReindexCompletedPayload,
    ReindexFailedPayload,
    SessionClearedPayload,
    SessionCreatedPayload,
    TitleSetPayload,
)

__all__ = [
    "CheckpointSavedPayload",
    "EventBus",
    "Handler",
    "LedgerEvent",
    "MessageAppendedPayload",
    "MessagesDeletedPayload",
    "ReindexCompletedPayload",
    "ReindexFailedPayload",
    "SessionClearedPayload",
    "SessionCreatedPayload",
    "TitleSetPayload",
]
