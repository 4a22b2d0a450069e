"""chatledger data models."""

from chatledger.models.checkpoint import CheckpointSnapshot, TurnEntry
from chatledger.models.config import (
    ContextConfig,
    KeywordConfig,
    LedgerConfig,
    RetrievalConfig,
    StoreConfig,
)
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
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolResult,
    ToolResultPart,
    now_ms,
)

__all__ = [
    # Config
    "ContextConfig",
    "KeywordConfig",
    "LedgerConfig",
    "RetrievalConfig",
    "StoreConfig",
    # Checkpoint
    "CheckpointSnapshot",
    "TurnEntry",
    # Tools and parts
    "ToolCall",
    "ToolResult",
    "TextPart",
    "ToolCallPart",
    "ToolResultPart",
    "MessagePart",
    # Messages
    "Role",
    "RawLogEvent",
    "ReconciledMessage",
    "ContextMessage",
    "FingerprintedMessage",
    "DeletionFingerprint",
    "ConversationMemory",
    # Options
    "RetrievalOptions",
    "now_ms",
]
