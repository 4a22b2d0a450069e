"""chatledger persistence layer."""

from chatledger.store.ledger import (
    DuplicateIDError,
    LedgerStore,
    LedgerStoreError,
    SessionRecord,
)
from chatledger.store.pool import StorePool
from chatledger.store.protocols import (
    CheckpointReader,
    KeywordExtractor,
    MessageLog,
    SessionStore,
)

__all__ = [
    "CheckpointReader",
    "DuplicateIDError",
    "KeywordExtractor",
    "LedgerStore",
    "LedgerStoreError",
    "MessageLog",
    "SessionRecord",
    "SessionStore",
    "StorePool",
]
