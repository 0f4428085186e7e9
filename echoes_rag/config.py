"""Configuration management for echoes-rag.

Loads settings from environment variables with sensible defaults.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from echoes_rag.errors import ConfigurationError

ELLIPSIS = "..."


class ProviderName(str, Enum):
    """Closed set of embedding provider variants."""

    E5_SMALL = "e5-small"
    E5_LARGE = "e5-large"
    GEMINI = "gemini"
    OPENAI = "openai"

    @classmethod
    def parse(cls, value: "str | ProviderName") -> "ProviderName":
        if isinstance(value, ProviderName):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            supported = ", ".join(repr(p.value) for p in cls)
            raise ConfigurationError(
                f"Unknown embedding provider: {value!r}. Supported: {supported}"
            ) from None


@dataclass(frozen=True)
class ContentRetention:
    """How much chapter text is kept alongside the vector.

    ``max_length=None`` keeps the full text; otherwise the stored content is
    cut to ``max_length`` characters and marked with an ellipsis.
    """

    max_length: int | None = None

    @classmethod
    def full(cls) -> "ContentRetention":
        return cls(None)

    @classmethod
    def excerpt(cls, max_length: int) -> "ContentRetention":
        if max_length < 1:
            raise ConfigurationError(f"Excerpt length must be positive, got {max_length}")
        return cls(max_length)

    @classmethod
    def parse(cls, value: str) -> "ContentRetention":
        """Parse ``"full"`` or ``"excerpt:<n>"``."""
        value = value.strip().lower()
        if value in ("", "full"):
            return cls.full()
        kind, _, length = value.partition(":")
        if kind == "excerpt" and length.isdigit():
            return cls.excerpt(int(length))
        raise ConfigurationError(
            f"Unknown content retention policy: {value!r}. Use 'full' or 'excerpt:<length>'"
        )

    def apply(self, content: str) -> str:
        if self.max_length is None or len(content) <= self.max_length:
            return content
        return content[: self.max_length] + ELLIPSIS


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class RAGConfig:
    """Retrieval engine configuration."""

    provider: ProviderName = ProviderName.E5_SMALL
    gemini_api_key: str = ""
    openai_api_key: str = ""
    vector_store_backend: str = "sqlite"  # "sqlite", "chroma"
    persist_location: str = "./data/echoes_rag.db"  # file, directory, or http(s) URL
    collection_name: str = "echoes_timeline"
    max_results: int = 10
    context_max_chapters: int = 5
    content_retention: ContentRetention = field(default_factory=ContentRetention.full)
    overfetch_factor: int = 3
    mention_search_limit: int = 1000
    character_cache_size: int = 1024
    ner_model: str = "Davlan/bert-base-multilingual-cased-ner-hrl"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.provider = ProviderName.parse(self.provider)
        if self.vector_store_backend not in ("sqlite", "chroma"):
            raise ConfigurationError(
                f"Unknown vector store backend: {self.vector_store_backend!r}. "
                f"Supported: 'sqlite', 'chroma'"
            )
        if self.overfetch_factor < 2:
            raise ConfigurationError("overfetch_factor must be at least 2")
        if self.max_results < 1 or self.context_max_chapters < 1:
            raise ConfigurationError("Result limits must be positive")
        if self.character_cache_size < 0:
            raise ConfigurationError(
                f"character_cache_size must be zero or positive, got {self.character_cache_size}"
            )

    def api_key_for(self, provider: ProviderName) -> str:
        if provider is ProviderName.GEMINI:
            return self.gemini_api_key
        if provider is ProviderName.OPENAI:
            return self.openai_api_key
        return ""

    @classmethod
    def from_env(cls) -> "RAGConfig":
        return cls(
            provider=ProviderName.parse(os.getenv("ECHOES_RAG_PROVIDER", "e5-small")),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            vector_store_backend=os.getenv("ECHOES_RAG_STORE", "sqlite"),
            persist_location=os.getenv("ECHOES_RAG_PERSIST", "./data/echoes_rag.db"),
            collection_name=os.getenv("ECHOES_RAG_COLLECTION", "echoes_timeline"),
            max_results=_env_int("ECHOES_RAG_MAX_RESULTS", 10),
            context_max_chapters=_env_int("ECHOES_RAG_CONTEXT_CHAPTERS", 5),
            content_retention=ContentRetention.parse(os.getenv("ECHOES_RAG_RETENTION", "full")),
            overfetch_factor=_env_int("ECHOES_RAG_OVERFETCH", 3),
            character_cache_size=_env_int("ECHOES_RAG_CACHE_SIZE", 1024),
            ner_model=os.getenv("ECHOES_RAG_NER_MODEL", "Davlan/bert-base-multilingual-cased-ner-hrl"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
