"""
chatledger: reconciled conversation history for agent chat services.

Primary entry point::

    from chatledger import ConversationLedger

    async with ConversationLedger.open(db_path="/tmp/chat.db") as ledger:
        session = await ledger.create_session()
        await ledger.append_message(session.id, "user", "Hello!")
        history = await ledger.get_history(session.id)
"""

from chatledger.context.builder import BuiltContext, ModelContextBuilder
from chatledger.events.bus import EventBus, LedgerEvent
from chatledger.ledger import ConversationLedger, make_id, provisional_title
from chatledger.models import (
    CheckpointSnapshot,
    ContextConfig,
    ContextMessage,
    ConversationMemory,
    DeletionFingerprint,
    FingerprintedMessage,
    KeywordConfig,
    LedgerConfig,
    MessagePart,
    RawLogEvent,
    ReconciledMessage,
    RetrievalConfig,
    RetrievalOptions,
    StoreConfig,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolResult,
    ToolResultPart,
    TurnEntry,
)
from chatledger.reconcile import fingerprint, hidden_log_events, reconcile
from chatledger.retrieval import (
    KeywordIndexer,
    LiteLLMKeywordExtractor,
    ReindexScheduler,
    SlidingWindowRetriever,
    fallback_keywords,
)
from chatledger.store import (
    CheckpointReader,
    DuplicateIDError,
    KeywordExtractor,
    LedgerStore,
    LedgerStoreError,
    MessageLog,
    SessionRecord,
    SessionStore,
    StorePool,
)

__version__ = "0.1.0"

__all__ = [
    # Primary API
    "ConversationLedger",
    "make_id",
    "provisional_title",
    # Core
    "reconcile",
    "fingerprint",
    "hidden_log_events",
    "fallback_keywords",
    "KeywordIndexer",
    "LiteLLMKeywordExtractor",
    "ReindexScheduler",
    "SlidingWindowRetriever",
    "ModelContextBuilder",
    "BuiltContext",
    # Store
    "LedgerStore",
    "LedgerStoreError",
    "DuplicateIDError",
    "SessionRecord",
    "StorePool",
    "CheckpointReader",
    "MessageLog",
    "SessionStore",
    "KeywordExtractor",
    # Config
    "LedgerConfig",
    "StoreConfig",
    "RetrievalConfig",
    "ContextConfig",
    "KeywordConfig",
    # Models
    "CheckpointSnapshot",
    "TurnEntry",
    "RawLogEvent",
    "ReconciledMessage",
    "ContextMessage",
    "FingerprintedMessage",
    "DeletionFingerprint",
    "ConversationMemory",
    "RetrievalOptions",
    "MessagePart",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "ToolCall",
    "ToolResult",
    # Events
    "EventBus",
    "LedgerEvent",
]
