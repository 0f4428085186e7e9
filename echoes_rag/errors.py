"""
Exception hierarchy for the retrieval engine.

Every error raised by echoes-rag derives from RAGError so callers can catch
the whole family at once, or pick out the specific failure they care about.
"""

from __future__ import annotations


class RAGError(Exception):
    """Base exception for retrieval engine errors."""

    pass


class ConfigurationError(RAGError):
    """Unknown provider/backend name, or a required credential is missing."""

    pass


class ProviderError(RAGError):
    """Embedding backend call failed or returned malformed vectors."""

    pass


class ExtractionError(RAGError):
    """Named-entity backend unavailable or failed."""

    pass


class ValidationError(RAGError):
    """Input rejected before it reaches a backend (empty text, missing vector, ...)."""

    pass


class StorageError(RAGError):
    """Persistence backend I/O failure."""

    pass
