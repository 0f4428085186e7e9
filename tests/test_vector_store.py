"""Tests for rag.vector_store — SQLite exact scan, Chroma backend, factory."""

import math
from uuid import uuid4

import pytest

from echoes_rag.config import RAGConfig
from echoes_rag.errors import ConfigurationError, ValidationError
from echoes_rag.models import ChapterMetadata, StoredRecord
from echoes_rag.rag.vector_store import SQLiteVectorStore, build_vector_store


def _record(rid, vector, content="text", timeline="anima"):
    return StoredRecord(
        id=rid,
        vector=vector,
        content=content,
        metadata=ChapterMetadata(timeline_name=timeline, title=rid),
    )


class TestSQLiteVectorStore:
    @pytest.mark.asyncio
    async def test_upsert_and_count(self, store):
        await store.upsert([_record("ch1", [1.0, 0.0, 0.0]), _record("ch2", [0.0, 1.0, 0.0])])
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_upsert_replaces_without_growing(self, store):
        await store.upsert([_record("ch1", [1.0, 0.0, 0.0], content="old", timeline="alpha")])
        await store.upsert([_record("ch1", [0.0, 1.0, 0.0], content="new", timeline="beta")])

        assert await store.count() == 1
        results = await store.search([0.0, 1.0, 0.0], 5)
        assert results[0].id == "ch1"
        assert results[0].content == "new"
        assert results[0].metadata.timeline_name == "beta"
        assert results[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_reference_vectors(self, store):
        await store.upsert([_record("ch1", [1.0, 0.0, 0.0])])

        same = await store.search([1.0, 0.0, 0.0], 1)
        orthogonal = await store.search([0.0, 1.0, 0.0], 1)
        opposite = await store.search([-1.0, 0.0, 0.0], 1)

        assert same[0].similarity == pytest.approx(1.0)
        assert orthogonal[0].similarity == pytest.approx(0.0)
        assert not math.isnan(opposite[0].similarity)
        assert opposite[0].similarity == pytest.approx(-1.0)

    @pytest.mark.asyncio
    async def test_search_sorted_and_limited(self, store):
        await store.upsert(
            [
                _record("a", [1.0, 0.0]),
                _record("b", [0.7, 0.7]),
                _record("c", [0.0, 1.0]),
                _record("d", [-1.0, 0.0]),
            ]
        )
        results = await store.search([1.0, 0.1], 3)
        assert len(results) == 3
        scores = [r.similarity for r in results]
        assert scores == sorted(scores, reverse=True)
        assert [r.id for r in results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_ties_broken_by_id(self, store):
        await store.upsert([_record("z", [1.0, 0.0]), _record("m", [1.0, 0.0]), _record("a", [1.0, 0.0])])
        first = [r.id for r in await store.search([1.0, 0.0], 3)]
        second = [r.id for r in await store.search([1.0, 0.0], 3)]
        assert first == ["a", "m", "z"]
        assert first == second

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.upsert([_record("ch1", [1.0, 0.0]), _record("ch2", [0.0, 1.0])])
        await store.delete("ch1")

        assert await store.count() == 1
        for query in ([1.0, 0.0], [0.0, 1.0], [-1.0, -1.0]):
            assert "ch1" not in [r.id for r in await store.search(query, 10)]

    @pytest.mark.asyncio
    async def test_delete_unknown_is_noop(self, store):
        await store.delete("missing")
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_empty_search(self, store):
        assert await store.search([1.0, 0.0], 5) == []

    @pytest.mark.asyncio
    async def test_nan_sanitized_before_write(self, store):
        await store.upsert([_record("bad", [float("nan"), 1.0, float("inf")]), _record("ok", [1.0, 0.0, 0.0])])
        results = await store.search([0.0, 1.0, 0.0], 2)

        assert all(not math.isnan(r.similarity) for r in results)
        assert results[0].id == "bad"
        assert results[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_huge_vectors_score_true_cosine(self, store):
        await store.upsert([_record("big", [1e200, 0.0]), _record("ok", [1.0, 0.1])])
        results = await store.search([1e200, 0.0], 2)

        assert [r.id for r in results] == ["big", "ok"]
        assert results[0].similarity == pytest.approx(1.0)
        assert results[1].similarity == pytest.approx(1.0 / math.sqrt(1.01))

    @pytest.mark.asyncio
    async def test_missing_vector_rejected(self, store):
        with pytest.raises(ValidationError, match="missing embedding"):
            await store.upsert([_record("ch1", None)])

    @pytest.mark.asyncio
    async def test_dimension_mismatch_rejected(self, store):
        await store.upsert([_record("ch1", [1.0, 0.0, 0.0])])
        with pytest.raises(ValidationError):
            await store.upsert([_record("ch2", [1.0, 0.0])])
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch_rejected(self, store):
        await store.upsert([_record("ch1", [1.0, 0.0, 0.0])])
        with pytest.raises(ValidationError):
            await store.search([1.0, 0.0], 1)

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        db = tmp_path / "nested" / "vectors.db"
        first = SQLiteVectorStore(db)
        await first.upsert([_record("ch1", [1.0, 0.0], content="kept")])
        await first.close()

        second = SQLiteVectorStore(db)
        results = await second.search([1.0, 0.0], 1)
        assert results[0].content == "kept"
        await second.close()


class TestChromaVectorStore:
    @pytest.fixture
    def chroma_store(self):
        pytest.importorskip("chromadb")
        from echoes_rag.rag.vector_store import ChromaVectorStore

        return ChromaVectorStore(collection_name=f"test_{uuid4().hex[:8]}")

    @pytest.mark.asyncio
    async def test_search_normalizes_distance(self, chroma_store):
        await chroma_store.upsert([_record("ch1", [1.0, 0.0, 0.0]), _record("ch2", [0.0, 1.0, 0.0])])
        results = await chroma_store.search([1.0, 0.0, 0.0], 2)

        assert [r.id for r in results] == ["ch1", "ch2"]
        assert results[0].similarity == pytest.approx(1.0)
        assert all(0.0 < r.similarity <= 1.0 for r in results)
        assert results[0].metadata.timeline_name == "anima"

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, chroma_store):
        await chroma_store.upsert([_record("ch1", [1.0, 0.0], content="old")])
        await chroma_store.upsert([_record("ch1", [0.0, 1.0], content="new")])
        assert await chroma_store.count() == 1
        results = await chroma_store.search([0.0, 1.0], 1)
        assert results[0].content == "new"

    @pytest.mark.asyncio
    async def test_delete_and_empty(self, chroma_store):
        assert await chroma_store.search([1.0, 0.0], 5) == []
        await chroma_store.upsert([_record("ch1", [1.0, 0.0])])
        await chroma_store.delete("ch1")
        assert await chroma_store.count() == 0

    @pytest.mark.asyncio
    async def test_dimension_mismatch_rejected(self, chroma_store):
        await chroma_store.upsert([_record("ch1", [1.0, 0.0, 0.0])])
        with pytest.raises(ValidationError, match="3-dimensional"):
            await chroma_store.upsert([_record("ch2", [1.0, 0.0])])
        assert await chroma_store.count() == 1

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch_rejected(self, chroma_store):
        await chroma_store.upsert([_record("ch1", [1.0, 0.0, 0.0])])
        with pytest.raises(ValidationError):
            await chroma_store.search([1.0, 0.0], 1)


class TestFactory:
    def test_build_sqlite(self):
        store = build_vector_store(RAGConfig(vector_store_backend="sqlite", persist_location=":memory:"))
        assert isinstance(store, SQLiteVectorStore)

    def test_unknown_backend_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown vector store backend"):
            RAGConfig(vector_store_backend="nonexistent")
