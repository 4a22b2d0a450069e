"""Collaborator interfaces consumed by the reconciliation and retrieval core.

:class:`~chatledger.store.ledger.LedgerStore` implements every store protocol
here; the protocols exist so a caller can plug in, for example, a checkpoint
reader backed directly by the agent runtime instead of the SQLite copy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from chatledger.models.checkpoint import CheckpointSnapshot
from chatledger.models.message import RawLogEvent

if TYPE_CHECKING:
    from chatledger.store.ledger import SessionRecord


@runtime_checkable
class CheckpointReader(Protocol):
    async def get_latest(self, session_id: str) -> CheckpointSnapshot | None: ...


@runtime_checkable
class MessageLog(Protocol):
    async def append(self, event: RawLogEvent) -> RawLogEvent: ...

    async def query_ordered(self, session_id: str) -> list[RawLogEvent]: ...


@runtime_checkable
class SessionStore(Protocol):
    async def get_session(self, session_id: str) -> SessionRecord | None: ...

    async def create_session(self, session_id: str) -> SessionRecord: ...

    async def set_title(self, session_id: str, title: str) -> None: ...

    async def set_keywords(self, session_id: str, keywords: list[str]) -> None: ...

    async def touch(self, session_id: str) -> None: ...


@runtime_checkable
class KeywordExtractor(Protocol):
    """External extraction collaborator (normally a model call). May raise."""

    async def extract(self, text: str) -> list[str]: ...
