"""Keyword indexing and sliding-window retrieval."""

from chatledger.retrieval.keywords import (
    STOPWORDS,
    KeywordIndexer,
    LiteLLMKeywordExtractor,
    ReindexScheduler,
    fallback_keywords,
    parse_keyword_reply,
)
from chatledger.retrieval.window import SlidingWindowRetriever, to_context_message

__all__ = [
    "STOPWORDS",
    "KeywordIndexer",
    "LiteLLMKeywordExtractor",
    "ReindexScheduler",
    "SlidingWindowRetriever",
    "fallback_keywords",
    "parse_keyword_reply",
    "to_context_message",
]
