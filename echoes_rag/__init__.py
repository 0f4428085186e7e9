"""
echoes-rag: semantic retrieval of narrative chapters.

Chapters are embedded, tagged with the characters they mention, and ranked
against free-text queries with timeline/arc/POV/character filters.
"""

from __future__ import annotations

from echoes_rag.config import ContentRetention, ProviderName, RAGConfig
from echoes_rag.errors import (
    ConfigurationError,
    ExtractionError,
    ProviderError,
    RAGError,
    StorageError,
    ValidationError,
)
from echoes_rag.models import Chapter, ChapterMetadata, SearchFilters, SearchResult
from echoes_rag.rag.search import RAGSystem

__version__ = "0.1.0"

__all__ = [
    "Chapter",
    "ChapterMetadata",
    "ConfigurationError",
    "ContentRetention",
    "ExtractionError",
    "ProviderError",
    "ProviderName",
    "RAGConfig",
    "RAGError",
    "RAGSystem",
    "SearchFilters",
    "SearchResult",
    "StorageError",
    "ValidationError",
]
