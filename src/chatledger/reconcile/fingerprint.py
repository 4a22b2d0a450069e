"""Stable message fingerprints for soft deletion."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Collection, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel

if TYPE_CHECKING:
    from chatledger.models.message import RawLogEvent, ReconciledMessage

_logger = structlog.get_logger("chatledger.fingerprint")


def fingerprint(session_id: str, message: Any, position: int | None = None) -> str:
    """
    Compute the soft-deletion fingerprint of a message.

    The digest covers the logical message only: role, content, tool calls,
    tool results, parts, the timestamp floored to the second and the optional
    ``position`` that disambiguates otherwise identical repeated messages.

    Args:
        session_id: Owning session.
        message: A ``ReconciledMessage``, any pydantic model or a mapping.
        position: Index of the message in the full history, if known.

    Returns:
        A SHA-256 hex digest, or ``"{session_id}:{role}:{content[:32]}"`` when
        the canonical form cannot be serialised.
    """
    fields = _as_mapping(message)
    role = _text(fields.get("role"))
    content = _text(fields.get("content"))

    canonical = {
        "session_id": session_id,
        "role": role,
        "content": content,
        "tool_calls": [
            {"id": _text(c.get("id")), "name": _text(c.get("name")), "input": c.get("input")}
            for c in _mapping_list(fields.get("tool_calls"))
        ],
        "tool_results": [
            {"id": _text(r.get("id")), "name": _text(r.get("name")), "output": r.get("output")}
            for r in _mapping_list(fields.get("tool_results"))
        ],
        "parts": [_canonical_part(p) for p in _mapping_list(fields.get("parts"))],
        "ts_floor_seconds": _floor_seconds(fields.get("timestamp")),
        "position": position,
    }
    try:
        payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        _logger.warning("fingerprint_degraded", session_id=session_id, error=str(exc))
        return f"{session_id}:{role}:{content[:32]}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _as_mapping(message: Any) -> Mapping[str, Any]:
    if isinstance(message, BaseModel):
        return message.model_dump()
    if isinstance(message, Mapping):
        return message
    return {}


def _mapping_list(value: Any) -> list[Mapping[str, Any]]:
    if not isinstance(value, list):
        return []
    items: list[Mapping[str, Any]] = []
    for item in value:
        if isinstance(item, BaseModel):
            items.append(item.model_dump())
        elif isinstance(item, Mapping):
            items.append(item)
    return items


def _canonical_part(part: Mapping[str, Any]) -> dict[str, Any]:
    kind = _text(part.get("type"))
    if kind == "tool_call":
        body = part.get("input")
    elif kind == "tool_result":
        body = part.get("output")
    else:
        body = part.get("content")
    return {"type": kind, "id": _text(part.get("id")), "name": _text(part.get("name")), "content": body}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _floor_seconds(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value) // 1000


def hidden_log_events(
    session_id: str,
    history: Sequence[ReconciledMessage],
    log_events: Sequence[RawLogEvent],
    deleted: Collection[str],
) -> set[str]:
    """
    IDs of log events whose reconciled counterpart has been soft-deleted.

    The k-th log event of a role corresponds to the k-th reconciled message of
    that role, the same ordinal mapping the reconciler uses for assistant
    turns. Events beyond the reconciled count are hidden when their role and
    content equal a deleted message and no visible message has that body.

    Args:
        session_id: Owning session.
        history: The full reconciled history (fingerprint positions index it).
        log_events: The session's log in log order.
        deleted: The session's deleted-fingerprint set.
    """
    if not deleted:
        return set()

    flags_by_role: dict[str, list[bool]] = {}
    deleted_bodies: set[tuple[str, str]] = set()
    visible_bodies: set[tuple[str, str]] = set()
    for index, message in enumerate(history):
        is_deleted = fingerprint(session_id, message, index) in deleted
        flags_by_role.setdefault(message.role, []).append(is_deleted)
        (deleted_bodies if is_deleted else visible_bodies).add((message.role, message.content))
    orphan_bodies = deleted_bodies - visible_bodies

    hidden: set[str] = set()
    seen: dict[str, int] = {}
    for event in log_events:
        ordinal = seen.get(event.role, 0)
        seen[event.role] = ordinal + 1
        flags = flags_by_role.get(event.role, [])
        if ordinal < len(flags):
            if flags[ordinal]:
                hidden.add(event.id)
        elif (event.role, event.content) in orphan_bodies:
            hidden.add(event.id)
    return hidden
