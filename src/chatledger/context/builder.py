"""Model input assembly from reconciled history."""

from __future__ import annotations

import json
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from chatledger.models.config import ContextConfig
from chatledger.models.message import ContextMessage, ReconciledMessage, ToolCall
from chatledger.retrieval.window import SlidingWindowRetriever


@dataclass
class BuiltContext:
    """Chat messages ready for ``litellm.acompletion(messages=...)``."""

    messages: list[dict[str, Any]]
    source: list[ReconciledMessage | ContextMessage]
    composed: bool
    """True when the history was long enough to be capped by keyword retrieval."""


class ModelContextBuilder:
    """
    Turns reconciled history into the message list sent to the model.

    Rules:
    1. Short histories are replayed whole, tool round-trips included.
    2. Long histories are replaced by recent messages plus a keyword window
       (see :meth:`SlidingWindowRetriever.compose_context`); that view has no
       tool fields, so only text is replayed.
    3. A tool call is replayed only when its tool is allowed and it has a
       result. Calls go out in batches of ``tool_call_batch_size``, each
       followed by its ``tool`` messages. The turn's text rides on the first
       batch only.
    """

    def __init__(self, retriever: SlidingWindowRetriever, config: ContextConfig | None = None) -> None:
        self._retriever = retriever
        self._config = config or ContextConfig()
        self._logger = structlog.get_logger("chatledger.context_builder")

    async def build(
        self,
        session_id: str,
        history: Sequence[ReconciledMessage],
        *,
        keywords: Sequence[str] | None = None,
        allowed_tools: Collection[str] | None = None,
        exclude_ids: Collection[str] = (),
    ) -> BuiltContext:
        """
        Build model input for the next turn.

        Args:
            session_id: Session the history belongs to.
            history: Full reconciled history, oldest first.
            keywords: Query keywords for retrieval; session keywords when empty.
            allowed_tools: Tool names that may be replayed. ``None`` allows all.
            exclude_ids: Log event IDs kept out of keyword retrieval.
        """
        source: list[ReconciledMessage | ContextMessage]
        composed = len(history) > self._retriever.short_session_threshold
        if composed:
            source = list(
                await self._retriever.compose_context(
                    session_id, history, keywords, self._config, exclude_ids=exclude_ids
                )
            )
        else:
            source = list(history)

        messages = self.to_llm_messages(source, allowed_tools)
        self._logger.debug(
            "model_context_built",
            session_id=session_id,
            history=len(history),
            source=len(source),
            messages=len(messages),
            composed=composed,
        )
        return BuiltContext(messages=messages, source=source, composed=composed)

    def to_llm_messages(
        self,
        messages: Sequence[ReconciledMessage | ContextMessage],
        allowed_tools: Collection[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Convert messages into litellm chat messages."""
        out: list[dict[str, Any]] = []
        for message in messages:
            if message.role != "assistant" or not isinstance(message, ReconciledMessage):
                out.append(self._plain(message.role, message.content, message.name))
                continue

            outputs = {r.id: r.output for r in message.tool_results}
            calls = [
                c
                for c in message.tool_calls
                if c.id in outputs and (allowed_tools is None or c.name in allowed_tools)
            ]
            if not calls:
                out.append(self._plain("assistant", message.content, message.name))
                continue

            size = self._config.tool_call_batch_size
            for start in range(0, len(calls), size):
                batch = calls[start : start + size]
                assistant = self._plain(
                    "assistant", message.content if start == 0 else "", message.name
                )
                assistant["tool_calls"] = [self._tool_call(c) for c in batch]
                out.append(assistant)
                for call in batch:
                    out.append(
                        {
                            "role": "tool",
                            "tool_call_id": call.id,
                            "content": _render_output(outputs[call.id]),
                        }
                    )
        return out

    @staticmethod
    def _plain(role: str, content: str, name: str | None) -> dict[str, Any]:
        message: dict[str, Any] = {"role": role, "content": content}
        if name:
            message["name"] = name
        return message

    @staticmethod
    def _tool_call(call: ToolCall) -> dict[str, Any]:
        return {
            "id": call.id,
            "type": "function",
            "function": {"name": call.name, "arguments": json.dumps(call.input, default=str)},
        }


def _render_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, default=str, ensure_ascii=False)
