"""Keyword extraction, per-session reindexing and its background scheduler."""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

import structlog
from jinja2 import Template

from chatledger.events.bus import EventBus, LedgerEvent
from chatledger.models.config import KeywordConfig

if TYPE_CHECKING:
    from chatledger.store.ledger import LedgerStore
    from chatledger.store.protocols import KeywordExtractor

STOPWORDS: frozenset[str] = frozenset(
    {
        "the", "and", "for", "with", "that", "this", "from", "have", "has",
        "are", "was", "were", "is", "of", "to", "in", "on", "at", "by", "it",
        "be", "a", "an", "or", "as", "but", "not", "can", "could", "should",
        "would", "will", "do", "does", "did",
    }
)  # fmt: skip

_LATIN_TOKEN = re.compile(r"[a-z][a-z0-9-]+")
_CJK_RUN = re.compile(r"[\u4e00-\u9fa5]{2,}")
_REPLY_SEPARATOR = re.compile(r"[,\n]")

_SYSTEM_PROMPT = (
    "You are an advanced keyword extraction and expansion tool. Your goal is to "
    "identify the core subject and intent of the user input, and then generate a "
    "list of keywords that includes:\n"
    "1. The core entities/concepts explicitly mentioned.\n"
    "2. Synonyms or closely related terms.\n"
    "3. Broader categories or specific attributes (e.g., if input is \"Apple\", "
    "include \"Red\", \"Fruit\", \"Rosaceae\", \"Technology\", \"iPhone\" depending "
    "on context).\n\n"
    "IMPORTANT: ALL KEYWORDS MUST BE IN ENGLISH ONLY, regardless of the input language.\n\n"
    "Return ONLY the keywords separated by commas. No explanation."
)

_USER_TEMPLATE = Template("<text>\n{{ text }}\n</text>")


def fallback_keywords(text: str, extra_stopwords: Iterable[str] = ()) -> list[str]:
    """
    Rule-based keyword extraction. Deterministic and never raises.

    Lower-cased Latin tokens of two or more characters (minus stopwords),
    then runs of two or more CJK ideographs kept whole. Duplicates are
    removed keeping first-seen order.
    """
    if not text:
        return []
    stopwords = STOPWORDS | frozenset(extra_stopwords)
    latin = [t for t in _LATIN_TOKEN.findall(text.lower()) if t not in stopwords]
    return _dedupe([*latin, *_CJK_RUN.findall(text)])


def _dedupe(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def parse_keyword_reply(reply: str) -> list[str]:
    """Split a comma/newline separated model reply into unique keywords."""
    return _dedupe(k.strip() for k in _REPLY_SEPARATOR.split(reply) if k.strip())


class LiteLLMKeywordExtractor:
    """
    Default :class:`~chatledger.store.protocols.KeywordExtractor` backed by litellm.

    With ``CHATLEDGER_MOCK_LLM=1`` no request is made and an empty list is
    returned, which sends callers down the rule-based fallback.
    """

    def __init__(self, config: KeywordConfig) -> None:
        self._config = config

    async def extract(self, text: str) -> list[str]:
        if os.environ.get("CHATLEDGER_MOCK_LLM") == "1":
            return []

        import litellm

        response = await litellm.acompletion(
            model=self._config.model,
            messages=[
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": _USER_TEMPLATE.render(text=text)},
            ],
            temperature=self._config.temperature,
        )
        return parse_keyword_reply(response.choices[0].message.content or "")


class KeywordIndexer:
    """
    Computes and persists message and session keywords.

    ``extract()`` tries the injected extractor within
    ``KeywordConfig.timeout_seconds`` and falls back to
    :func:`fallback_keywords` on failure, timeout or an empty answer.
    Persistence is upsert-only, so concurrent or repeated reindex runs
    converge to the same state.
    """

    def __init__(
        self,
        store: LedgerStore,
        extractor: KeywordExtractor | None = None,
        config: KeywordConfig | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._store = store
        self._config = config or KeywordConfig()
        self._extractor = extractor or LiteLLMKeywordExtractor(self._config)
        self._event_bus = event_bus
        self._logger = structlog.get_logger("chatledger.keywords")

    async def extract(self, text: str) -> list[str]:
        """Return unique keywords for ``text``; ``[]`` for blank input. Never raises."""
        if not text or not text.strip():
            return []

        try:
            reply = await asyncio.wait_for(
                self._extractor.extract(text), timeout=self._config.timeout_seconds
            )
        except TimeoutError:
            self._logger.warning(
                "keyword_extractor_timeout", timeout_seconds=self._config.timeout_seconds
            )
        except Exception as exc:
            self._logger.warning("keyword_extractor_failed", error=str(exc))
        else:
            if isinstance(reply, list):
                keywords = _dedupe(k.strip() for k in reply if isinstance(k, str) and k.strip())
                if keywords:
                    return keywords
            self._logger.debug("keyword_extractor_empty")

        return fallback_keywords(text, self._config.extra_stopwords)

    async def reindex_session(self, session_id: str) -> int:
        """
        Fill in missing event keywords, then refresh the session keywords.

        Session keywords are extracted from the content of the most recent
        ``session_sample_size`` events, newest first, joined with newlines.

        Returns:
            Number of events that were (re)indexed.
        """
        log = self._logger.bind(session_id=session_id)

        count = 0
        for event in await self._store.events_missing_keywords(session_id):
            keywords = await self.extract(event.content)
            await self._store.set_event_keywords(event.id, keywords)
            count += 1

        session_keywords: list[str] = []
        recent = await self._store.recent_events(session_id, self._config.session_sample_size)
        if recent:
            session_keywords = await self.extract("\n".join(e.content for e in recent))
            await self._store.set_keywords(session_id, session_keywords)

        log.info("reindex_completed", events_indexed=count, session_keywords=len(session_keywords))
        if self._event_bus is not None:
            self._event_bus.publish(
                LedgerEvent.REINDEX_COMPLETED,
                {
                    "session_id": session_id,
                    "events_indexed": count,
                    "session_keywords": session_keywords,
                },
            )
        return count


class ReindexScheduler:
    """
    Runs reindex jobs in the background, off the request path.

    At most one job runs per session. A request that arrives while a job is
    running is coalesced into a single follow-up run. Failures are logged and
    published as ``REINDEX_FAILED``; they never reach the caller.

    Example::

        scheduler = ReindexScheduler(indexer, event_bus)
        scheduler.schedule(session_id)      # returns immediately
        await scheduler.wait_for_pending()  # at shutdown
    """

    def __init__(self, indexer: KeywordIndexer, event_bus: EventBus | None = None) -> None:
        self._indexer = indexer
        self._event_bus = event_bus
        self._running: dict[str, asyncio.Task[None]] = {}
        self._rerun: set[str] = set()
        self._logger = structlog.get_logger("chatledger.reindex")

    def schedule(self, session_id: str) -> bool:
        """
        Request a reindex of ``session_id``. Must be called from a running loop.

        Returns:
            True if a new job was started, False if the request was coalesced
            into the job already running for this session.
        """
        task = self._running.get(session_id)
        if task is not None and not task.done():
            self._rerun.add(session_id)
            return False
        self._running[session_id] = asyncio.create_task(self._run(session_id))
        return True

    def is_pending(self, session_id: str) -> bool:
        task = self._running.get(session_id)
        return task is not None and not task.done()

    async def wait_for_pending(self) -> None:
        """Await every scheduled job, including coalesced follow-ups."""
        while self._running:
            tasks = list(self._running.values())
            await asyncio.gather(*tasks, return_exceptions=True)
            for session_id, task in list(self._running.items()):
                if task.done():
                    del self._running[session_id]

    async def _run(self, session_id: str) -> None:
        try:
            while True:
                self._rerun.discard(session_id)
                try:
                    await self._indexer.reindex_session(session_id)
                except Exception as exc:
                    self._logger.exception("reindex_failed", session_id=session_id, error=str(exc))
                    if self._event_bus is not None:
                        self._event_bus.publish(
                            LedgerEvent.REINDEX_FAILED,
                            {"session_id": session_id, "error": str(exc)},
                        )
                if session_id not in self._rerun:
                    break
        finally:
            if self._running.get(session_id) is asyncio.current_task():
                del self._running[session_id]
