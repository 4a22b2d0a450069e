"""Core message, part and view models for chatledger."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

Role = Literal["system", "user", "assistant"]


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


# ── Tool Models ────────────────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """A tool invocation requested by an assistant turn."""

    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """The output of a tool invocation, keyed by the originating call id."""

    id: str = ""
    name: str = ""
    output: Any = None


# ── Part Models ────────────────────────────────────────────────────────────────


class TextPart(BaseModel):
    """A plain text fragment of an assistant turn."""

    type: Literal["text"] = "text"
    content: str = ""


class ToolCallPart(BaseModel):
    """A tool call fragment, in emission order within the turn."""

    type: Literal["tool_call"] = "tool_call"
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPart(BaseModel):
    """A tool result fragment, in emission order within the turn."""

    type: Literal["tool_result"] = "tool_result"
    id: str = ""
    name: str = ""
    output: Any = None


# Discriminated union keyed on ``type``.
MessagePart = Annotated[
    TextPart | ToolCallPart | ToolResultPart,
    Field(discriminator="type"),
]


# ── Stored Log Event ───────────────────────────────────────────────────────────


class RawLogEvent(BaseModel):
    """
    One record of the serving layer's append-only message log.

    When ``parts`` is non-empty it is the authoritative, emission-ordered view
    of the turn, including results of delegated tool calls that never reach
    the agent runtime's checkpoint.
    """

    id: str
    """ULID-based sortable ID, e.g. ``evt_01JXYZ6K3MNPQR4STUVWXYZ01``."""
    session_id: str
    role: Role
    content: str = ""
    name: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    parts: list[MessagePart] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    timestamp: int = Field(default_factory=now_ms)
    """Unix millisecond timestamp."""


# ── Derived Views ──────────────────────────────────────────────────────────────


class ReconciledMessage(BaseModel):
    """
    A canonical conversation message derived from checkpoint + log.

    Never stored. ``timestamp`` may be synthetic (snapshot time plus the
    entry's position in the snapshot).
    """

    role: Role
    content: str = ""
    name: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    parts: list[MessagePart] = Field(default_factory=list)
    timestamp: int = 0

    @property
    def pending_tool_calls(self) -> list[ToolCall]:
        """Tool calls that have no matching result yet."""
        resolved = {r.id for r in self.tool_results}
        return [c for c in self.tool_calls if c.id not in resolved]


class ContextMessage(BaseModel):
    """Model-context view of a message. Tool fields are intentionally absent."""

    role: Role
    content: str = ""
    name: str | None = None
    timestamp: int | None = None


class FingerprintedMessage(BaseModel):
    """A reconciled message together with its soft-deletion fingerprint."""

    message: ReconciledMessage
    fingerprint: str
    index: int
    """Position of the message in the full reconciled history."""


class DeletionFingerprint(BaseModel):
    """Membership record that hides a logically-equivalent message from views."""

    session_id: str
    fingerprint: str
    timestamp: int = Field(default_factory=now_ms)


class ConversationMemory(BaseModel):
    """System prompts plus reconciled history, ready to seed an agent."""

    session_id: str
    system: list[str] = Field(default_factory=list)
    messages: list[ReconciledMessage] = Field(default_factory=list)


# ── Options ────────────────────────────────────────────────────────────────────


class RetrievalOptions(BaseModel):
    """
    Parameters for a sliding-window retrieval.

    ``None`` for ``window_size`` / ``max_messages`` means "use the configured
    default" (see :class:`~chatledger.models.config.RetrievalConfig`).
    """

    keywords: list[str] | None = None
    match_all: bool = False
    window_size: int | None = Field(default=None, ge=0)
    max_messages: int | None = Field(default=None, ge=1)
