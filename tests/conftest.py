"""Shared fixtures for chatledger tests."""

from __future__ import annotations

import itertools
from typing import Any

import pytest
import pytest_asyncio

from chatledger.events.bus import EventBus, LedgerEvent
from chatledger.models.checkpoint import CheckpointSnapshot, TurnEntry
from chatledger.models.config import LedgerConfig, StoreConfig
from chatledger.models.message import MessagePart, RawLogEvent, ToolCall, ToolResult
from chatledger.store.ledger import LedgerStore
from chatledger.store.pool import StorePool

_event_counter = itertools.count()


@pytest.fixture(autouse=True)
def mock_llm_env(monkeypatch):
    """Never reach a real model from tests."""
    monkeypatch.setenv("CHATLEDGER_MOCK_LLM", "1")


@pytest.fixture
def config(tmp_path):
    """LedgerConfig with a temp database path."""
    return LedgerConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool):
    """Initialized LedgerStore backed by a temp SQLite database (pool-managed)."""
    s = LedgerStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[LedgerEvent, dict[str, Any]]] = []

    def _collect(event: LedgerEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def session_id(store):
    """A pre-created session ID in the store."""
    sid = "sess_TEST01"
    await store.create_session(sid)
    return sid


class StaticExtractor:
    """KeywordExtractor returning a fixed answer (or raising it, if an exception)."""

    def __init__(self, answer: Any) -> None:
        self.answer = answer
        self.calls: list[str] = []

    async def extract(self, text: str) -> list[str]:
        self.calls.append(text)
        if isinstance(self.answer, BaseException):
            raise self.answer
        return self.answer


def make_event(
    session_id: str,
    role: str = "user",
    content: str = "",
    *,
    event_id: str | None = None,
    timestamp: int = 1_000,
    keywords: list[str] | None = None,
    tool_calls: list[ToolCall] | None = None,
    tool_results: list[ToolResult] | None = None,
    parts: list[MessagePart] | None = None,
) -> RawLogEvent:
    """Helper to create a test RawLogEvent."""
    return RawLogEvent(
        id=event_id or f"evt_{next(_event_counter):06d}",
        session_id=session_id,
        role=role,
        content=content,
        timestamp=timestamp,
        keywords=keywords or [],
        tool_calls=tool_calls or [],
        tool_results=tool_results or [],
        parts=parts or [],
    )


def make_snapshot(ts: int, *entries: dict[str, Any]) -> CheckpointSnapshot:
    """Helper to create a CheckpointSnapshot from raw entry dicts."""
    return CheckpointSnapshot(ts=ts, entries=[TurnEntry.model_validate(e) for e in entries])


def human(text: str) -> dict[str, Any]:
    return {"type": "human", "content": text}


def ai(text: str = "", tool_calls: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {"type": "ai", "content": text}
    if tool_calls is not None:
        entry["tool_calls"] = tool_calls
    return entry


def tool(call_id: str, output: str, name: str | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {"type": "tool", "tool_call_id": call_id, "content": output}
    if name is not None:
        entry["name"] = name
    return entry
