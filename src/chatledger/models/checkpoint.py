"""Agent-runtime checkpoint models.

The runtime's serialized state is not trusted: every entry field is typed
loosely here and coerced by :mod:`chatledger.reconcile.reconciler`, which must
never raise on partially-written input.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

_logger = structlog.get_logger("chatledger.models.checkpoint")


class TurnEntry(BaseModel):
    """
    A single entry of the runtime's ordered turn list.

    ``kind`` is one of ``human``, ``system``, ``ai`` or ``tool``; it is also
    accepted under the key ``type`` (the runtime's own field name).
    """

    model_config = ConfigDict(extra="ignore")

    kind: Any = Field(default=None, validation_alias=AliasChoices("kind", "type"))
    content: Any = None
    tool_calls: Any = None
    """List of ``{id, name, args}`` (or ``input``) dicts on ``ai`` entries."""
    tool_call_id: Any = None
    """Originating call id on ``tool`` entries."""
    id: Any = None
    name: Any = None


class CheckpointSnapshot(BaseModel):
    """The latest recorded state of one session. One timestamp for all entries."""

    ts: int = 0
    """Unix millisecond timestamp of the snapshot."""
    entries: list[TurnEntry] = Field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any) -> CheckpointSnapshot | None:
        """
        Leniently build a snapshot from a runtime checkpoint payload.

        Accepts ``{"ts": ..., "entries": [...]}`` or the runtime's own
        ``{"ts": ..., "channel_values": {"messages": [...]}}`` layout. ``ts``
        may be epoch milliseconds (int/float/numeric string) or an ISO-8601
        string. Entries that are not mappings become empty entries, which the
        reconciler skips.

        Returns:
            The snapshot, or ``None`` when ``raw`` is not a mapping.
        """
        if not isinstance(raw, dict):
            return None

        items = raw.get("entries")
        if items is None:
            channel_values = raw.get("channel_values")
            if isinstance(channel_values, dict):
                items = channel_values.get("messages")
        if items is None:
            items = raw.get("messages")
        if not isinstance(items, list):
            items = []

        entries: list[TurnEntry] = []
        for item in items:
            if isinstance(item, dict):
                entries.append(TurnEntry.model_validate(item))
            else:
                entries.append(TurnEntry())

        return cls(ts=_coerce_ts(raw.get("ts")), entries=entries)


def _coerce_ts(value: Any) -> int:
    """Coerce a snapshot timestamp into epoch milliseconds (0 when unusable)."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            return int(float(text))
        except ValueError:
            pass
        try:
            return int(datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            _logger.warning("checkpoint_ts_unparseable", ts=text)
    return 0
