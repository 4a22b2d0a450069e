"""Configuration models for chatledger stores and components."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.chatledger/ledger.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class RetrievalConfig(BaseModel):
    """Defaults for the keyword sliding-window retriever."""

    window_size: int = Field(
        default=3,
        ge=0,
        le=50,
        description="Messages included on each side of a keyword hit.",
    )

    max_messages: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Upper bound on messages returned by a single window query.",
    )

    short_session_threshold: int = Field(
        default=30,
        ge=0,
        description=(
            "Sessions with at most this many messages skip keyword retrieval "
            "and return their most recent messages instead."
        ),
    )

    short_session_recent: int = Field(
        default=20,
        ge=1,
        description="How many recent messages a short session returns.",
    )


class ContextConfig(BaseModel):
    """Configuration for composing model input on long conversations."""

    recent_messages: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Most recent reconciled messages always fed to the model.",
    )

    retrieved_window_size: int = Field(
        default=2,
        ge=0,
        le=50,
        description="Window size for the keyword retrieval half of the context.",
    )

    retrieved_max_messages: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Maximum keyword-retrieved messages merged into the context.",
    )

    tool_call_batch_size: int = Field(
        default=5,
        ge=1,
        le=64,
        description="Tool calls emitted per assistant message when replaying history.",
    )


class KeywordConfig(BaseModel):
    """Configuration for keyword extraction and session reindexing."""

    model: str = Field(
        default="deepseek/deepseek-chat",
        description="litellm model string used by the default keyword extractor.",
    )

    temperature: float = Field(default=0.1, ge=0.0, le=2.0)

    timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-call budget for the extractor before falling back to rules.",
    )

    session_sample_size: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Most recent log events used to compute session-level keywords.",
    )

    extra_stopwords: list[str] = Field(
        default_factory=list,
        description="Additional lower-case stopwords for the rule-based fallback.",
    )

    @model_validator(mode="after")
    def normalize_stopwords(self) -> KeywordConfig:
        self.extra_stopwords = [w.strip().lower() for w in self.extra_stopwords if w.strip()]
        return self


class LedgerConfig(BaseModel):
    """
    Top-level configuration for a ConversationLedger.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = LedgerConfig(
            store=StoreConfig(db_path="/var/lib/chat/ledger.db"),
            retrieval=RetrievalConfig(window_size=2),
            keywords=KeywordConfig(model="openai/gpt-4o-mini"),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    keywords: KeywordConfig = Field(default_factory=KeywordConfig)

    @classmethod
    def default(cls) -> LedgerConfig:
        """Return a config instance with all defaults."""
        return cls()
