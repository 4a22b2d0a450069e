"""Tests for keyword extraction, reindexing and the reindex scheduler."""

from __future__ import annotations

import asyncio

from chatledger.events.bus import LedgerEvent
from chatledger.models.config import KeywordConfig
from chatledger.retrieval.keywords import (
    KeywordIndexer,
    LiteLLMKeywordExtractor,
    ReindexScheduler,
    fallback_keywords,
    parse_keyword_reply,
)
from tests.conftest import StaticExtractor, make_event


class SlowExtractor:
    async def extract(self, text: str) -> list[str]:
        await asyncio.sleep(5)
        return ["never"]


class TestFallbackKeywords:
    def test_mixed_latin_and_cjk(self):
        """Latin tokens are lower-cased and CJK runs kept whole."""
        assert fallback_keywords("Hello world 你好世界") == ["hello", "world", "你好世界"]

    def test_stopwords_and_short_tokens_removed(self):
        assert fallback_keywords("The cat and a dog is in the box") == ["cat", "dog", "box"]

    def test_single_cjk_character_dropped(self):
        assert fallback_keywords("我 爱 python-3 编程") == ["python-3", "编程"]

    def test_deduplicated_first_seen_order(self):
        assert fallback_keywords("Deploy deploy DEPLOY api") == ["deploy", "api"]

    def test_extra_stopwords(self):
        assert fallback_keywords("please deploy", extra_stopwords=["please"]) == ["deploy"]

    def test_empty(self):
        assert fallback_keywords("") == []


class TestParseKeywordReply:
    def test_commas_and_newlines(self):
        assert parse_keyword_reply("apple, fruit\nred,, apple ") == ["apple", "fruit", "red"]


class TestLiteLLMKeywordExtractor:
    async def test_mock_mode_returns_empty(self):
        """With mock mode on, no request is made."""
        extractor = LiteLLMKeywordExtractor(KeywordConfig())
        assert await extractor.extract("anything") == []


class TestKeywordIndexerExtract:
    async def test_uses_extractor_answer(self, store):
        extractor = StaticExtractor(["Apple", " fruit ", "Apple", ""])
        indexer = KeywordIndexer(store, extractor)
        assert await indexer.extract("I like apples") == ["Apple", "fruit"]

    async def test_failure_falls_back(self, store):
        """An extractor error yields the deterministic fallback."""
        indexer = KeywordIndexer(store, StaticExtractor(RuntimeError("model down")))
        assert await indexer.extract("Hello world 你好世界") == ["hello", "world", "你好世界"]

    async def test_empty_answer_falls_back(self, store):
        indexer = KeywordIndexer(store, StaticExtractor([]))
        assert await indexer.extract("Kubernetes rollout") == ["kubernetes", "rollout"]

    async def test_malformed_answer_falls_back(self, store):
        indexer = KeywordIndexer(store, StaticExtractor("not a list"))
        assert await indexer.extract("Kubernetes rollout") == ["kubernetes", "rollout"]

    async def test_timeout_falls_back(self, store):
        indexer = KeywordIndexer(store, SlowExtractor(), KeywordConfig(timeout_seconds=0.01))
        assert await indexer.extract("slow path") == ["slow", "path"]

    async def test_blank_text_skips_extractor(self, store):
        extractor = StaticExtractor(["x"])
        indexer = KeywordIndexer(store, extractor)
        assert await indexer.extract("   ") == []
        assert extractor.calls == []

    async def test_default_extractor_in_mock_mode(self, store):
        """The default litellm extractor falls back to rules in mock mode."""
        indexer = KeywordIndexer(store)
        assert await indexer.extract("Database migration") == ["database", "migration"]


class TestReindexSession:
    async def test_fills_missing_keywords(self, store, session_id, event_bus):
        """Events without keywords are indexed; indexed ones are left alone."""
        await store.append(make_event(session_id, "user", "Deploy the billing service"))
        await store.append(make_event(session_id, "assistant", "Done", keywords=["kept"]))
        indexer = KeywordIndexer(store, StaticExtractor(RuntimeError("down")), event_bus=event_bus)

        count = await indexer.reindex_session(session_id)

        assert count == 1
        events = await store.query_ordered(session_id)
        assert events[0].keywords == ["deploy", "billing", "service"]
        assert events[1].keywords == ["kept"]

    async def test_session_keywords_from_recent_events(self, store, session_id, event_bus):
        """Session keywords come from the newest events, newest first."""
        for i, word in enumerate(["alpha", "bravo", "charlie"]):
            await store.append(make_event(session_id, "user", word, timestamp=1_000 + i))
        indexer = KeywordIndexer(
            store,
            StaticExtractor(RuntimeError("down")),
            KeywordConfig(session_sample_size=2),
            event_bus,
        )

        await indexer.reindex_session(session_id)

        session = await store.get_session(session_id)
        assert session.keywords == ["charlie", "bravo"]
        completed = [p for e, p in event_bus.collected if e == LedgerEvent.REINDEX_COMPLETED]
        assert completed == [
            {"session_id": session_id, "events_indexed": 3, "session_keywords": ["charlie", "bravo"]}
        ]

    async def test_empty_session(self, store, session_id):
        indexer = KeywordIndexer(store, StaticExtractor(["x"]))
        assert await indexer.reindex_session(session_id) == 0
        session = await store.get_session(session_id)
        assert session.keywords == []

    async def test_repeated_runs_converge(self, store, session_id):
        """Running twice leaves the same state as running once."""
        await store.append(make_event(session_id, "user", "cache invalidation"))
        indexer = KeywordIndexer(store, StaticExtractor(RuntimeError("down")))
        await indexer.reindex_session(session_id)
        first = await store.query_ordered(session_id)
        assert await indexer.reindex_session(session_id) == 0
        assert await store.query_ordered(session_id) == first


class FlakyIndexer:
    """Stands in for KeywordIndexer; records calls and can fail or block."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[str] = []
        self.release = asyncio.Event()
        self.release.set()

    async def reindex_session(self, session_id: str) -> int:
        self.calls.append(session_id)
        await self.release.wait()
        if self.fail:
            raise RuntimeError("store unavailable")
        return 1


class TestReindexScheduler:
    async def test_runs_in_background(self):
        indexer = FlakyIndexer()
        scheduler = ReindexScheduler(indexer)  # type: ignore[arg-type]
        assert scheduler.schedule("s1") is True
        await scheduler.wait_for_pending()
        assert indexer.calls == ["s1"]
        assert scheduler.is_pending("s1") is False

    async def test_requests_coalesce_into_one_rerun(self):
        """Requests during a running job collapse into a single follow-up."""
        indexer = FlakyIndexer()
        indexer.release.clear()
        scheduler = ReindexScheduler(indexer)  # type: ignore[arg-type]

        assert scheduler.schedule("s1") is True
        await asyncio.sleep(0)
        assert scheduler.schedule("s1") is False
        assert scheduler.schedule("s1") is False
        indexer.release.set()
        await scheduler.wait_for_pending()

        assert indexer.calls == ["s1", "s1"]

    async def test_sessions_run_independently(self):
        indexer = FlakyIndexer()
        scheduler = ReindexScheduler(indexer)  # type: ignore[arg-type]
        scheduler.schedule("s1")
        scheduler.schedule("s2")
        await scheduler.wait_for_pending()
        assert sorted(indexer.calls) == ["s1", "s2"]

    async def test_failure_published_not_raised(self, event_bus):
        """Failures are swallowed at the task boundary and published."""
        scheduler = ReindexScheduler(FlakyIndexer(fail=True), event_bus)  # type: ignore[arg-type]
        scheduler.schedule("s1")
        await scheduler.wait_for_pending()
        assert event_bus.collected == [
            (LedgerEvent.REINDEX_FAILED, {"session_id": "s1", "error": "store unavailable"})
        ]

    async def test_can_reschedule_after_completion(self):
        indexer = FlakyIndexer()
        scheduler = ReindexScheduler(indexer)  # type: ignore[arg-type]
        scheduler.schedule("s1")
        await scheduler.wait_for_pending()
        assert scheduler.schedule("s1") is True
        await scheduler.wait_for_pending()
        assert indexer.calls == ["s1", "s1"]
