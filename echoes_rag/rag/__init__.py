"""
Retrieval subsystem: embedding providers, character extraction, vector
stores, and the RAGSystem that composes them.
"""

from __future__ import annotations

from echoes_rag.rag.character_extractor import CharacterExtractor, NERBackend, TransformersNERBackend
from echoes_rag.rag.embedding_provider import EmbeddingProvider, build_embedding_provider
from echoes_rag.rag.search import RAGSystem
from echoes_rag.rag.vector_store import ChromaVectorStore, SQLiteVectorStore, VectorStore, build_vector_store

__all__ = [
    "CharacterExtractor",
    "ChromaVectorStore",
    "EmbeddingProvider",
    "NERBackend",
    "RAGSystem",
    "SQLiteVectorStore",
    "TransformersNERBackend",
    "VectorStore",
    "build_embedding_provider",
    "build_vector_store",
]
