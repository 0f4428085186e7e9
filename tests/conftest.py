"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.embedding    — Requires the multilingual-e5-small model to load
    @pytest.mark.ner          — Requires the transformers NER model to load
    @pytest.mark.integration  — Implies both

Run stringent tests:
    pytest -m embedding               # only real embedding model tests
    pytest -m "not integration"       # skip model-backed tests (fast CI)
"""

from typing import Optional

import pytest

from echoes_rag.config import RAGConfig
from echoes_rag.models import Chapter, ChapterMetadata
from echoes_rag.rag.embedding_provider import EmbeddingProvider, MockEmbeddingProvider
from echoes_rag.rag.vector_store import SQLiteVectorStore


def _embedding_model_available() -> bool:
    """Check if multilingual-e5-small can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer("intfloat/multilingual-e5-small")
        vec = model.encode(["query: test"])
        return vec.shape[1] == 384
    except Exception:
        return False


def _ner_model_available() -> bool:
    try:
        from transformers import pipeline

        pipeline("token-classification", model="Davlan/bert-base-multilingual-cased-ner-hrl")
        return True
    except Exception:
        return False


# Cache the checks at module level so they run once per session
_EMBEDDING_OK: Optional[bool] = None
_NER_OK: Optional[bool] = None


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: requires real models (downloads)")
    config.addinivalue_line("markers", "embedding: requires multilingual-e5-small available")
    config.addinivalue_line("markers", "ner: requires the transformers NER model available")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose model requirements are not met."""
    global _EMBEDDING_OK, _NER_OK

    wants_embedding = any("embedding" in i.keywords or "integration" in i.keywords for i in items)
    wants_ner = any("ner" in i.keywords or "integration" in i.keywords for i in items)

    # Only evaluate once, and only when a selected test needs the model
    if _EMBEDDING_OK is None and wants_embedding:
        _EMBEDDING_OK = _embedding_model_available()
    if _NER_OK is None and wants_ner:
        _NER_OK = _ner_model_available()

    skip_embedding = pytest.mark.skip(reason="Embedding model not available (multilingual-e5-small)")
    skip_ner = pytest.mark.skip(reason="NER model not available")

    for item in items:
        needs_embedding = "embedding" in item.keywords or "integration" in item.keywords
        needs_ner = "ner" in item.keywords or "integration" in item.keywords
        if needs_embedding and not _EMBEDDING_OK:
            item.add_marker(skip_embedding)
        if needs_ner and not _NER_OK:
            item.add_marker(skip_ner)


# ── Test doubles ─────────────────────────────────────────────────────────────


class TableEmbeddingProvider(EmbeddingProvider):
    """Looks vectors up in a fixed table; unknown text raises KeyError."""

    name = "table"

    def __init__(self, table: dict[str, list[float]]) -> None:
        super().__init__()
        self.table = table
        self.calls: list[list[str]] = []

    async def _embed_texts(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.table[t] for t in texts]


def make_chapter(
    chapter_id: str,
    content: str,
    timeline: str = "anima",
    arc: str = "beginning",
    pov: str = "nic",
    characters: Optional[list[str]] = None,
) -> Chapter:
    return Chapter(
        id=chapter_id,
        content=content,
        metadata=ChapterMetadata(
            timeline_name=timeline,
            arc_name=arc,
            pov=pov,
            title=chapter_id,
            words=len(content.split()),
            character_names=characters,
        ),
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def embedder():
    """Deterministic hash-based embedding provider."""
    return MockEmbeddingProvider(dim=64)


@pytest.fixture
def store():
    """In-memory exact-scan vector store."""
    return SQLiteVectorStore(":memory:")


@pytest.fixture
def config():
    return RAGConfig(provider="e5-small", vector_store_backend="sqlite", persist_location=":memory:")
