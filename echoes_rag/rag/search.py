"""
Chapter retrieval engine.

Ingest: chapter → character extraction (if names absent) → embedding →
vector store upsert.
Query: embed query → over-fetch candidates → metadata/character filters →
truncate to the requested limit.
"""

from __future__ import annotations

import logging

from echoes_rag.config import RAGConfig
from echoes_rag.errors import ExtractionError, ValidationError
from echoes_rag.models import Chapter, SearchFilters, SearchResult, StoredRecord
from echoes_rag.rag.character_extractor import CharacterExtractor, TransformersNERBackend
from echoes_rag.rag.embedding_provider import EmbeddingProvider, build_embedding_provider
from echoes_rag.rag.filters import apply_filters
from echoes_rag.rag.vector_store import VectorStore, build_vector_store

LOG = logging.getLogger("rag.search")


class RAGSystem:
    """
    Semantic search over narrative chapters.

    Usage::

        rag = RAGSystem.from_config(RAGConfig.from_env())
        await rag.add_batch(chapters)
        results = await rag.search(
            "first meeting in London",
            SearchFilters(timeline="anima", characters=["nic"]),
            limit=5,
        )
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        vector_store: VectorStore,
        character_extractor: CharacterExtractor | None = None,
        config: RAGConfig | None = None,
    ) -> None:
        self._embed = embedding_provider
        self._store = vector_store
        self._extractor = character_extractor
        self._config = config or RAGConfig()

    @classmethod
    def from_config(cls, config: RAGConfig) -> "RAGSystem":
        """Wire provider, store and extractor from configuration.

        Raises ConfigurationError for an unknown provider/backend or a
        missing API key. Models and connections load on first use.
        """
        return cls(
            embedding_provider=build_embedding_provider(config),
            vector_store=build_vector_store(config),
            character_extractor=CharacterExtractor(
                TransformersNERBackend(config.ner_model),
                cache_size=config.character_cache_size,
            ),
            config=config,
        )

    # ── Ingestion ─────────────────────────────────────────────────────

    async def add(self, chapter: Chapter) -> None:
        await self.add_batch([chapter])

    async def add_batch(self, chapters: list[Chapter]) -> None:
        """
        Embed and store chapters with one provider call and one store write.

        Fail-fast: if validation or embedding fails, nothing from the batch
        is persisted.
        """
        if not chapters:
            return
        seen: set[str] = set()
        for chapter in chapters:
            if chapter.id in seen:
                raise ValidationError(f"Duplicate chapter id in batch: {chapter.id!r}")
            seen.add(chapter.id)

        with_names = [await self._with_characters(c) for c in chapters]
        embedded = await self._embed.embed_batch(with_names)

        retention = self._config.content_retention
        records = [
            StoredRecord(
                id=c.id,
                vector=c.vector,
                content=retention.apply(c.content),
                metadata=c.metadata,
            )
            for c in embedded
        ]
        await self._store.upsert(records)
        LOG.info("Indexed %d chapter(s)", len(records))

    async def _with_characters(self, chapter: Chapter) -> Chapter:
        if chapter.metadata.character_names is not None:
            return chapter
        names: list[str] = []
        if self._extractor is not None:
            try:
                names = await self._extractor.extract_characters(chapter.content)
            except ExtractionError as exc:
                LOG.warning("Character extraction failed for %s, storing no names: %s", chapter.id, exc)
        metadata = chapter.metadata.model_copy(update={"character_names": names})
        return chapter.model_copy(update={"metadata": metadata})

    async def delete(self, chapter_id: str) -> None:
        await self._store.delete(chapter_id)

    # ── Queries ───────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
    ) -> list[SearchResult]:
        """Return up to ``limit`` chapters matching ``filters``, most similar first."""
        limit = self._config.max_results if limit is None else limit
        if limit < 1:
            raise ValidationError(f"limit must be positive, got {limit}")
        query_vec = await self._embed.embed(query)
        return await self._ranked(query_vec, filters, limit)

    async def get_context(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
    ) -> list[SearchResult]:
        """Same as ``search`` with a smaller default limit, for prompt context."""
        if limit is None:
            limit = self._config.context_max_chapters
        return await self.search(query, filters, limit)

    async def get_character_mentions(self, name: str) -> list[str]:
        """Names that share a chapter with ``name``, excluding ``name`` itself."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Character name must not be empty")
        results = await self.search(
            name,
            SearchFilters(characters=[name]),
            limit=self._config.mention_search_limit,
        )
        target = name.casefold()
        mentions: dict[str, str] = {}
        for result in results:
            for other in result.metadata.character_names or []:
                key = other.casefold()
                if key != target and key not in mentions:
                    mentions[key] = other
        return sorted(mentions.values(), key=str.casefold)

    async def _ranked(
        self,
        query_vec: list[float],
        filters: SearchFilters | None,
        limit: int,
    ) -> list[SearchResult]:
        # Filters run after ranking, so fetch more than asked for and widen
        # until enough survive or the store has nothing left.
        candidate_limit = max(limit * self._config.overfetch_factor, limit + 1)
        while True:
            candidates = await self._store.search(query_vec, candidate_limit)
            results = apply_filters(candidates, filters)
            if len(results) >= limit or len(candidates) < candidate_limit:
                break
            LOG.debug(
                "Only %d/%d candidates passed filters; widening to %d",
                len(results),
                len(candidates),
                candidate_limit * 2,
            )
            candidate_limit *= 2
        return results[:limit]

    async def count(self) -> int:
        return await self._store.count()

    async def close(self) -> None:
        await self._embed.close()
        await self._store.close()
