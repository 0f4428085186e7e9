"""
Abstract vector store interface with SQLite and Chroma backends.

Two backend shapes:
- SQLiteVectorStore: embedded exact-scan engine (stdlib sqlite3 + numpy).
  Scores every stored chapter with cosine similarity.
- ChromaVectorStore: dedicated vector index, embedded or client/server.
  Chroma reports distances, which are converted to similarities here.

Whatever the backend, results leave the store sanitized, scored so that
higher is better, and sorted by (-similarity, id).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import numpy as np

from echoes_rag.config import RAGConfig
from echoes_rag.errors import ConfigurationError, StorageError, ValidationError
from echoes_rag.models import ChapterMetadata, SearchResult, StoredRecord
from echoes_rag.rag.lazy import LazyResource
from echoes_rag.rag.similarity import (
    cosine_similarities,
    distance_to_similarity,
    rank,
    sanitize_vector,
)

LOG = logging.getLogger("rag.vector_store")


class VectorStore(ABC):
    """
    Abstract interface for chapter vector storage and similarity search.

    Implementations persist (id, vector, content, metadata) records and
    rank them against a query vector.
    """

    @abstractmethod
    async def upsert(self, records: list[StoredRecord]) -> None:
        """Insert or replace records by id."""

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """Delete a record by id. Unknown ids are ignored."""

    @abstractmethod
    async def search(self, query_vector: list[float], candidate_limit: int) -> list[SearchResult]:
        """Return up to ``candidate_limit`` records, best first."""

    @abstractmethod
    async def count(self) -> int:
        """Return the number of records in the store."""

    async def close(self) -> None:
        """Release resources. Override if needed."""
        pass

    @staticmethod
    def _prepare(records: list[StoredRecord]) -> list[StoredRecord]:
        """Validate vectors and replace non-finite components before a write."""
        prepared: list[StoredRecord] = []
        dim: int | None = None
        for record in records:
            if record.vector is None or len(record.vector) == 0:
                raise ValidationError(f"Chapter {record.id} missing embedding")
            if dim is None:
                dim = len(record.vector)
            elif len(record.vector) != dim:
                raise ValidationError(
                    f"Chapter {record.id} has {len(record.vector)} dimensions, expected {dim}"
                )
            prepared.append(
                StoredRecord(
                    id=record.id,
                    vector=sanitize_vector(record.vector),
                    content=record.content,
                    metadata=record.metadata,
                )
            )
        return prepared


def _metadata_json(metadata: ChapterMetadata) -> str:
    return metadata.model_dump_json(by_alias=True)


def _metadata_from_json(raw: str) -> ChapterMetadata:
    return ChapterMetadata.model_validate_json(raw)


# ── SQLite exact scan ────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS vectors (
    id TEXT PRIMARY KEY,
    embedding TEXT NOT NULL,
    metadata TEXT NOT NULL,
    content TEXT NOT NULL
);

-- Single row: the vector length every record must share
CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SQLiteVectorStore(VectorStore):
    """
    Embedded exact-scan store on SQLite.

    Vectors are kept as JSON arrays; search loads every row and ranks with
    numpy. The connection opens on first use and is shared by the worker
    threads behind a lock.

    An approximate index could replace the scan here once the corpus
    outgrows it, as long as it returns the same top results.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn = LazyResource(f"sqlite:{self._db_path}", self._connect)

    def _connect(self) -> sqlite3.Connection:
        try:
            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            if self._db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA_SQL)
            conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"Cannot open vector store at {self._db_path}: {exc}") from exc
        LOG.info("SQLite vector store at %s", self._db_path)
        return conn

    async def _run(self, fn, *args):
        conn = await self._conn.get()

        def _locked():
            with self._lock:
                try:
                    return fn(conn, *args)
                except sqlite3.Error as exc:
                    conn.rollback()
                    raise StorageError(f"SQLite vector store error: {exc}") from exc

        return await asyncio.to_thread(_locked)

    # ── Writes ────────────────────────────────────────────────────────

    async def upsert(self, records: list[StoredRecord]) -> None:
        if not records:
            return
        prepared = self._prepare(records)
        await self._run(self._upsert_sync, prepared)

    @staticmethod
    def _upsert_sync(conn: sqlite3.Connection, records: list[StoredRecord]) -> None:
        dim = len(records[0].vector)
        row = conn.execute("SELECT value FROM store_meta WHERE key = 'dimension'").fetchone()
        if row is None:
            conn.execute("INSERT INTO store_meta (key, value) VALUES ('dimension', ?)", (str(dim),))
        elif int(row[0]) != dim:
            raise ValidationError(f"Store holds {row[0]}-dimensional vectors, got {dim}")

        conn.executemany(
            "INSERT INTO vectors (id, embedding, metadata, content) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET "
            "embedding = excluded.embedding, metadata = excluded.metadata, content = excluded.content",
            [(r.id, json.dumps(r.vector), _metadata_json(r.metadata), r.content) for r in records],
        )
        conn.commit()

    async def delete(self, record_id: str) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM vectors WHERE id = ?", (record_id,))
            conn.commit()

        await self._run(_delete)

    # ── Reads ─────────────────────────────────────────────────────────

    async def search(self, query_vector: list[float], candidate_limit: int) -> list[SearchResult]:
        if candidate_limit <= 0:
            return []
        query = sanitize_vector(query_vector)
        rows = await self._run(
            lambda conn: conn.execute("SELECT id, embedding, metadata, content FROM vectors").fetchall()
        )
        if not rows:
            return []

        matrix = np.asarray([json.loads(r[1]) for r in rows], dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != len(query):
            raise ValidationError(
                f"Query has {len(query)} dimensions, store holds {matrix.shape[-1]}"
            )
        scores = cosine_similarities(query, matrix)

        by_id = {r[0]: r for r in rows}
        top = rank([(r[0], float(s)) for r, s in zip(rows, scores)], candidate_limit)
        return [
            SearchResult(
                id=rid,
                metadata=_metadata_from_json(by_id[rid][2]),
                content=by_id[rid][3],
                similarity=score,
            )
            for rid, score in top
        ]

    async def count(self) -> int:
        row = await self._run(lambda conn: conn.execute("SELECT COUNT(*) FROM vectors").fetchone())
        return int(row[0])

    async def close(self) -> None:
        conn = self._conn.peek()
        if conn is not None:
            with self._lock:
                conn.close()


# ── Chroma ───────────────────────────────────────────────────────────────────


class ChromaVectorStore(VectorStore):
    """
    Chroma-backed vector store.

    Supports three modes, picked from ``location``:

    1. ``http://host:port`` — client/server against a running Chroma service
    2. a directory path — embedded PersistentClient
    3. ``None`` — ephemeral in-memory client (tests)

    The collection uses the ``l2`` space; Chroma's distances are converted
    with ``1 / (1 + distance)``. Chroma only accepts scalar metadata, so the
    full chapter metadata travels as a JSON string.
    """

    def __init__(self, collection_name: str = "echoes_timeline", location: str | None = None) -> None:
        self._collection_name = collection_name
        self._location = location
        self._collection = LazyResource(f"chroma:{collection_name}", self._connect)

    def _connect(self) -> Any:
        import chromadb

        location = self._location
        try:
            if location and location.startswith(("http://", "https://")):
                from urllib.parse import urlparse

                url = urlparse(location)
                client = chromadb.HttpClient(
                    host=url.hostname or "localhost",
                    port=url.port or 8000,
                    ssl=url.scheme == "https",
                )
                LOG.info("Chroma: connected to %s", location)
            elif location:
                Path(location).mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=location)
                LOG.info("Chroma: persistent at %s", location)
            else:
                client = chromadb.EphemeralClient()
                LOG.info("Chroma: ephemeral (in-memory)")
            return client.get_or_create_collection(
                name=self._collection_name,
                metadata={"hnsw:space": "l2"},
            )
        except Exception as exc:
            raise StorageError(f"Cannot open Chroma collection {self._collection_name!r}: {exc}") from exc

    async def _run(self, fn, *args):
        collection = await self._collection.get()
        try:
            return await asyncio.to_thread(fn, collection, *args)
        except (StorageError, ValidationError):
            raise
        except Exception as exc:
            raise StorageError(f"Chroma error: {exc}") from exc

    async def upsert(self, records: list[StoredRecord]) -> None:
        if not records:
            return
        prepared = self._prepare(records)
        dim = len(prepared[0].vector)

        def _upsert(col: Any) -> None:
            stored = self._stored_dimension(col)
            if stored is not None and stored != dim:
                raise ValidationError(f"Store holds {stored}-dimensional vectors, got {dim}")
            col.upsert(
                ids=[r.id for r in prepared],
                embeddings=[r.vector for r in prepared],
                documents=[r.content for r in prepared],
                metadatas=[self._flat_metadata(r.metadata) for r in prepared],
            )

        await self._run(_upsert)

    @staticmethod
    def _stored_dimension(col: Any) -> int | None:
        """Vector length of any stored record, or None for an empty collection."""
        got = col.get(limit=1, include=["embeddings"])
        embeddings = got.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return len(embeddings[0])

    @staticmethod
    def _flat_metadata(metadata: ChapterMetadata) -> dict[str, Any]:
        flat: dict[str, Any] = {"chapter_json": _metadata_json(metadata)}
        for key in ("timeline_name", "arc_name", "pov"):
            value = getattr(metadata, key)
            if value is not None:
                flat[key] = value
        return flat

    async def delete(self, record_id: str) -> None:
        await self._run(lambda col: col.delete(ids=[record_id]))

    async def search(self, query_vector: list[float], candidate_limit: int) -> list[SearchResult]:
        if candidate_limit <= 0:
            return []
        query = sanitize_vector(query_vector)

        def _query(col: Any) -> Any:
            n = min(candidate_limit, col.count())
            if n == 0:
                return None
            stored = self._stored_dimension(col)
            if stored is not None and stored != len(query):
                raise ValidationError(f"Query has {len(query)} dimensions, store holds {stored}")
            return col.query(
                query_embeddings=[query],
                n_results=n,
                include=["documents", "metadatas", "distances"],
            )

        results = await self._run(_query)
        if not results or not results["ids"]:
            return []

        ids = results["ids"][0]
        distances = results["distances"][0]
        documents = results["documents"][0]
        metadatas = results["metadatas"][0]
        by_id = {rid: (doc, meta) for rid, doc, meta in zip(ids, documents, metadatas)}
        top = rank([(rid, distance_to_similarity(d)) for rid, d in zip(ids, distances)], candidate_limit)
        return [
            SearchResult(
                id=rid,
                metadata=_metadata_from_json(by_id[rid][1]["chapter_json"]),
                content=by_id[rid][0] or "",
                similarity=score,
            )
            for rid, score in top
        ]

    async def count(self) -> int:
        return await self._run(lambda col: col.count())


def build_vector_store(config: RAGConfig) -> VectorStore:
    """
    Factory: create the VectorStore named by ``config.vector_store_backend``.

    Raises:
        ConfigurationError: Unknown backend
    """
    backend = config.vector_store_backend
    if backend == "sqlite":
        return SQLiteVectorStore(config.persist_location)
    if backend == "chroma":
        return ChromaVectorStore(
            collection_name=config.collection_name,
            location=config.persist_location or None,
        )
    raise ConfigurationError(
        f"Unknown vector store backend: {backend!r}. Supported: 'sqlite', 'chroma'"
    )
