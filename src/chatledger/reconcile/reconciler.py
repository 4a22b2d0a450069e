"""Checkpoint + message-log reconciliation.

``reconcile()`` is a pure function of its two inputs. It never touches the
store, never reads the clock and never raises on malformed checkpoint data,
so calling it twice on the same inputs yields identical output.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from chatledger.models.checkpoint import CheckpointSnapshot, TurnEntry
from chatledger.models.message import (
    MessagePart,
    RawLogEvent,
    ReconciledMessage,
    Role,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolResult,
    ToolResultPart,
)

_logger = structlog.get_logger("chatledger.reconciler")

_KIND_TO_ROLE: dict[str, Role] = {
    "human": "user",
    "system": "system",
    "ai": "assistant",
}


@dataclass
class _Chunk:
    """One emitted checkpoint entry, before assistant runs are coalesced."""

    role: Role
    content: str
    name: str | None
    timestamp: int
    tool_calls: list[ToolCall] = field(default_factory=list)
    results: dict[str, ToolResult] = field(default_factory=dict)


def reconcile(
    snapshot: CheckpointSnapshot | None,
    log_events: Sequence[RawLogEvent],
    *,
    exclude_roles: Iterable[str] | None = None,
    limit: int | None = None,
) -> list[ReconciledMessage]:
    """
    Merge the latest checkpoint and the message log into one ordered history.

    The checkpoint decides which messages exist. The log only enriches
    assistant turns, matched by position: the k-th assistant message pairs
    with the k-th assistant log record regardless of timestamps.

    Args:
        snapshot: Latest checkpoint for the session, or ``None``.
        log_events: The session's log records in log order.
        exclude_roles: Roles to drop from the output.
        limit: When positive, keep only the last ``limit`` messages.

    Returns:
        Messages sorted by timestamp (stable). Empty when there is no snapshot.
    """
    if snapshot is None:
        return []

    chunks, checkpoint_results = _flatten(snapshot)
    messages = _coalesce(chunks)
    messages = _enrich_from_log(messages, log_events)
    messages = _complete_pairing(messages, _result_index(checkpoint_results, log_events))

    if exclude_roles:
        excluded = set(exclude_roles)
        messages = [m for m in messages if m.role not in excluded]

    messages.sort(key=lambda m: m.timestamp)
    if limit is not None and limit > 0:
        messages = messages[-limit:]
    return messages


# ── Flatten + classify ─────────────────────────────────────────────────────────


def _flatten(snapshot: CheckpointSnapshot) -> tuple[list[_Chunk], list[ToolResult]]:
    chunks: list[_Chunk] = []
    pending: dict[str, ToolResult] = {}
    seen_results: list[ToolResult] = []

    for seq, entry in enumerate(snapshot.entries):
        timestamp = snapshot.ts + seq
        kind = entry.kind if isinstance(entry.kind, str) else None

        if kind == "tool":
            result = _tool_entry_result(entry)
            if result is not None:
                pending[result.id] = result
                seen_results.append(result)
            continue

        role = _KIND_TO_ROLE.get(kind or "")
        if role is None:
            _logger.debug("checkpoint_entry_skipped", position=seq, kind=repr(entry.kind))
            continue

        chunk = _Chunk(
            role=role,
            content=extract_text(entry.content),
            name=_as_str(entry.name) or None,
            timestamp=timestamp,
        )
        if role == "assistant":
            chunk.tool_calls = normalize_tool_calls(entry.tool_calls)
            _attach_results(chunk, pending)
        chunks.append(chunk)

    # Results that arrived after the call they answer
    for chunk in chunks:
        if chunk.role == "assistant":
            _attach_results(chunk, pending)

    return chunks, seen_results


def _tool_entry_result(entry: TurnEntry) -> ToolResult | None:
    call_id = _as_str(entry.tool_call_id) or _as_str(entry.id)
    if not call_id:
        return None
    return ToolResult(id=call_id, name=_as_str(entry.name), output=extract_text(entry.content))


def _attach_results(chunk: _Chunk, pending: dict[str, ToolResult]) -> None:
    for call in chunk.tool_calls:
        if not call.id or call.id in chunk.results or call.id not in pending:
            continue
        result = pending.pop(call.id)
        if not result.name:
            result = result.model_copy(update={"name": call.name})
        chunk.results[call.id] = result


def extract_text(content: Any) -> str:
    """
    Extract display text from a checkpoint ``content`` value.

    Strings pass through. Lists of ``{"type": "text", "text": ...}`` blocks
    (or bare strings) are joined with newlines. Anything else is JSON-encoded,
    and ``""`` is returned when even that fails.
    """
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    if isinstance(content, list):
        texts: list[str] = []
        for block in content:
            if isinstance(block, str):
                texts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    texts.append(text)
        texts = [t for t in texts if t]
        if texts:
            return "\n".join(texts)
    try:
        return json.dumps(content, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


def normalize_tool_calls(raw: Any) -> list[ToolCall]:
    """
    Normalize runtime tool calls to ``ToolCall`` models.

    ``id`` comes from ``id`` or ``tool_call_id``; ``input`` from ``args`` or
    ``input``. JSON-string arguments are decoded; anything that is not a
    mapping becomes ``{}``. Non-mapping items are skipped.
    """
    if not isinstance(raw, list):
        return []
    calls: list[ToolCall] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        call_id = _as_str(item.get("id")) or _as_str(item.get("tool_call_id"))
        args = item.get("args")
        if args is None:
            args = item.get("input")
        calls.append(ToolCall(id=call_id, name=_as_str(item.get("name")), input=_coerce_input(args)))
    return calls


def _coerce_input(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    if not isinstance(value, dict):
        return {}
    return {str(k): v for k, v in value.items()}


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


# ── Turn coalescing ────────────────────────────────────────────────────────────


def _coalesce(chunks: list[_Chunk]) -> list[ReconciledMessage]:
    messages: list[ReconciledMessage] = []
    group: list[_Chunk] = []

    for chunk in chunks:
        if chunk.role == "assistant":
            group.append(chunk)
            continue
        if group:
            messages.append(_merge_assistant_run(group))
            group = []
        messages.append(
            ReconciledMessage(
                role=chunk.role,
                content=chunk.content,
                name=chunk.name,
                timestamp=chunk.timestamp,
            )
        )
    if group:
        messages.append(_merge_assistant_run(group))
    return messages


def _merge_assistant_run(group: list[_Chunk]) -> ReconciledMessage:
    texts: list[str] = []
    parts: list[MessagePart] = []
    calls: list[ToolCall] = []
    results: list[ToolResult] = []
    call_ids: set[str] = set()
    result_ids: set[str] = set()
    name: str | None = None

    for chunk in group:
        name = chunk.name or name
        if chunk.content:
            texts.append(chunk.content)
            parts.append(TextPart(content=chunk.content))
        for call in chunk.tool_calls:
            if call.id:
                if call.id in call_ids:
                    continue
                call_ids.add(call.id)
            calls.append(call)
            parts.append(ToolCallPart(id=call.id, name=call.name, input=call.input))
        for call in chunk.tool_calls:
            result = chunk.results.get(call.id)
            if result is None or result.id in result_ids:
                continue
            result_ids.add(result.id)
            results.append(result)
            parts.append(ToolResultPart(id=result.id, name=result.name, output=result.output))

    return ReconciledMessage(
        role="assistant",
        content=texts[0] if len(texts) == 1 else "\n\n".join(texts),
        name=name,
        tool_calls=calls,
        tool_results=results,
        parts=parts,
        timestamp=group[-1].timestamp,
    )


# ── Log enrichment ─────────────────────────────────────────────────────────────


def _enrich_from_log(
    messages: list[ReconciledMessage], log_events: Sequence[RawLogEvent]
) -> list[ReconciledMessage]:
    stored = [e for e in log_events if e.role == "assistant"]
    positions = [i for i, m in enumerate(messages) if m.role == "assistant"]

    if stored and len(stored) != len(positions):
        _logger.warning(
            "log_checkpoint_count_mismatch",
            checkpoint_assistant_count=len(positions),
            log_assistant_count=len(stored),
        )

    enriched = list(messages)
    for position, event in zip(positions, stored):
        enriched[position] = _apply_log_record(enriched[position], event)
    return enriched


def _apply_log_record(message: ReconciledMessage, event: RawLogEvent) -> ReconciledMessage:
    if event.parts:
        # Stored parts are authoritative for ordering and content.
        calls = list(event.tool_calls)
        results = list(event.tool_results)
        call_ids = {c.id for c in calls}
        result_ids = {r.id for r in results}
        for part in event.parts:
            if isinstance(part, ToolCallPart) and part.id not in call_ids:
                call_ids.add(part.id)
                calls.append(ToolCall(id=part.id, name=part.name, input=part.input))
            elif isinstance(part, ToolResultPart) and part.id not in result_ids:
                result_ids.add(part.id)
                results.append(ToolResult(id=part.id, name=part.name, output=part.output))
        return message.model_copy(
            update={"parts": list(event.parts), "tool_calls": calls, "tool_results": results}
        )

    calls = list(message.tool_calls)
    results = list(message.tool_results)
    parts = list(message.parts)
    call_ids = {c.id for c in calls}
    result_ids = {r.id for r in results}
    for call in event.tool_calls:
        if call.id not in call_ids:
            call_ids.add(call.id)
            calls.append(call)
            parts.append(ToolCallPart(id=call.id, name=call.name, input=call.input))
    for result in event.tool_results:
        if result.id not in result_ids:
            result_ids.add(result.id)
            results.append(result)
            parts.append(ToolResultPart(id=result.id, name=result.name, output=result.output))
    return message.model_copy(update={"parts": parts, "tool_calls": calls, "tool_results": results})


# ── Pairing completion ─────────────────────────────────────────────────────────


def _result_index(
    checkpoint_results: list[ToolResult], log_events: Sequence[RawLogEvent]
) -> dict[str, ToolResult]:
    """Every tool result present in either source, first occurrence wins."""
    index: dict[str, ToolResult] = {}
    for result in checkpoint_results:
        index.setdefault(result.id, result)
    for event in log_events:
        for result in event.tool_results:
            index.setdefault(result.id, result)
        for part in event.parts:
            if isinstance(part, ToolResultPart):
                index.setdefault(part.id, ToolResult(id=part.id, name=part.name, output=part.output))
    index.pop("", None)
    return index


def _complete_pairing(
    messages: list[ReconciledMessage], index: dict[str, ToolResult]
) -> list[ReconciledMessage]:
    if not index:
        return messages

    completed = list(messages)
    for position, message in enumerate(completed):
        if message.role != "assistant" or not message.tool_calls:
            continue
        have = {r.id for r in message.tool_results}
        missing = [c for c in message.tool_calls if c.id and c.id not in have and c.id in index]
        if not missing:
            continue

        results = list(message.tool_results)
        parts = list(message.parts)
        for call in missing:
            if call.id in have:
                continue
            have.add(call.id)
            result = index[call.id]
            if not result.name:
                result = result.model_copy(update={"name": call.name})
            results.append(result)
            parts.append(ToolResultPart(id=result.id, name=result.name, output=result.output))
        completed[position] = message.model_copy(update={"tool_results": results, "parts": parts})
    return completed
