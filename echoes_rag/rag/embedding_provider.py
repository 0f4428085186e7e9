"""
Embedding provider abstraction with local and remote backends.

Local multilingual-e5 models run through sentence-transformers; Gemini and
OpenAI are reached over HTTP with httpx. Every backend goes through the same
EmbeddingProvider front door, which validates input, enforces a constant
vector dimension, and turns backend failures into ProviderError.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
from abc import ABC, abstractmethod
from typing import Any

import httpx

from echoes_rag.config import ProviderName, RAGConfig
from echoes_rag.errors import ConfigurationError, ProviderError, ValidationError
from echoes_rag.models import Chapter
from echoes_rag.rag.lazy import LazyResource

LOG = logging.getLogger("rag.embedding_provider")


class EmbeddingProvider(ABC):
    """Abstract interface for text → embedding vector conversion.

    Subclasses implement ``_embed_texts``; the public methods here own the
    contract every backend shares.
    """

    name: str = "abstract"

    def __init__(self) -> None:
        self._dim: int | None = None

    @abstractmethod
    async def _embed_texts(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        """Return one vector per input text, in input order."""
        ...

    def dimension(self) -> int | None:
        """Embedding dimensionality, known after the first successful call."""
        return self._dim

    async def embed(self, text: str) -> list[float]:
        """Embed a search query."""
        _require_text(text, "query")
        vectors = await self._call([text], is_query=True)
        return vectors[0]

    async def embed_batch(self, chapters: list[Chapter]) -> list[Chapter]:
        """Return copies of ``chapters`` with ``vector`` attached, in the same order.

        Fail-fast: one backend failure aborts the whole batch.
        """
        if not chapters:
            return []
        for chapter in chapters:
            _require_text(chapter.content, f"chapter {chapter.id!r} content")
        vectors = await self._call([c.content for c in chapters], is_query=False)
        return [c.model_copy(update={"vector": v}) for c, v in zip(chapters, vectors)]

    async def close(self) -> None:
        """Release backend resources. Override if needed."""
        pass

    async def _call(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        try:
            vectors = await self._embed_texts(texts, is_query=is_query)
        except (ProviderError, ValidationError):
            raise
        except Exception as exc:
            raise ProviderError(f"{self.name} embedding failed: {exc}") from exc

        if len(vectors) != len(texts):
            raise ProviderError(
                f"{self.name} returned {len(vectors)} vectors for {len(texts)} texts"
            )
        for vec in vectors:
            self._check_dimension(len(vec))
        return [list(map(float, v)) for v in vectors]

    def _check_dimension(self, dim: int) -> None:
        if dim == 0:
            raise ProviderError(f"{self.name} returned an empty vector")
        if self._dim is None:
            self._dim = dim
        elif dim != self._dim:
            raise ProviderError(
                f"{self.name} dimension changed from {self._dim} to {dim}; refusing to mix vector sizes"
            )


def _require_text(text: str, what: str) -> None:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError(f"Cannot embed empty {what}")


class LocalE5EmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    Models: intfloat/multilingual-e5-small (384 dims) or -large (1024 dims).
    E5 expects ``query: `` / ``passage: `` prefixes; vectors are normalized.
    The model loads on first use.
    """

    def __init__(self, size: str = "small") -> None:
        super().__init__()
        if size not in ("small", "large"):
            raise ConfigurationError(f"Unknown e5 model size: {size!r}")
        self.name = f"e5-{size}"
        self._model_name = f"intfloat/multilingual-e5-{size}"
        self._model = LazyResource(self._model_name, self._load_model)

    def _load_model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        LOG.info("Loading embedding model: %s", self._model_name)
        return SentenceTransformer(self._model_name)

    async def _embed_texts(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        model = await self._model.get()
        prefix = "query: " if is_query else "passage: "
        embeddings = await asyncio.to_thread(
            model.encode,
            [prefix + t for t in texts],
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [e.tolist() for e in embeddings]


class _HTTPEmbeddingProvider(EmbeddingProvider):
    """Shared plumbing for HTTP embedding APIs."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__()
        if not api_key:
            raise ConfigurationError(f"API key required for {self.name} embeddings.")
        self._api_key = api_key
        self._model_name = model
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def _post(self, path: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        resp = await self._client.post(path, json=payload, headers=headers)
        if resp.status_code != 200:
            raise ProviderError(f"{self.name} API error {resp.status_code}: {resp.text[:300]}")
        return resp.json()

    async def close(self) -> None:
        await self._client.aclose()


class GeminiEmbeddingProvider(_HTTPEmbeddingProvider):
    """Google Generative Language embeddings (text-embedding-004, 768 dims)."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-004",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(api_key, model, base_url, timeout, transport)

    async def _embed_texts(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        model = f"models/{self._model_name}"
        task = "RETRIEVAL_QUERY" if is_query else "RETRIEVAL_DOCUMENT"
        data = await self._post(
            f"/{model}:batchEmbedContents",
            {
                "requests": [
                    {"model": model, "content": {"parts": [{"text": t}]}, "taskType": task}
                    for t in texts
                ]
            },
            headers={"x-goog-api-key": self._api_key},
        )
        return [e["values"] for e in data.get("embeddings", [])]


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """OpenAI embeddings (text-embedding-3-small, 1536 dims)."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(api_key, model, base_url, timeout, transport)

    async def _embed_texts(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        data = await self._post(
            "/embeddings",
            {"model": self._model_name, "input": texts},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        # The API may return items out of order; "index" is authoritative.
        items = sorted(data.get("data", []), key=lambda d: d["index"])
        return [d["embedding"] for d in items]


class MockEmbeddingProvider(EmbeddingProvider):
    """Mock embedding provider for testing.

    Produces deterministic unit vectors from a hash of the text, so identical
    texts embed identically and distinct texts almost never collide.
    """

    name = "mock"

    def __init__(self, dim: int = 384) -> None:
        super().__init__()
        self._fixed_dim = dim

    async def _embed_texts(self, texts: list[str], *, is_query: bool) -> list[list[float]]:
        return [self._text_to_vec(t) for t in texts]

    def _text_to_vec(self, text: str) -> list[float]:
        h = hashlib.sha512(text.encode()).digest()
        raw = [((h[i % len(h)] + i * 37) % 256) / 255.0 - 0.5 for i in range(self._fixed_dim)]
        norm = math.sqrt(sum(x * x for x in raw))
        return [x / norm for x in raw] if norm > 0 else raw


def build_embedding_provider(config: RAGConfig) -> EmbeddingProvider:
    """
    Factory: create the EmbeddingProvider named by ``config.provider``.

    Raises:
        ConfigurationError: Unknown provider, or missing API key for a remote one
    """
    provider = ProviderName.parse(config.provider)
    if provider is ProviderName.E5_SMALL:
        return LocalE5EmbeddingProvider("small")
    if provider is ProviderName.E5_LARGE:
        return LocalE5EmbeddingProvider("large")
    if provider is ProviderName.GEMINI:
        return GeminiEmbeddingProvider(api_key=config.api_key_for(provider))
    if provider is ProviderName.OPENAI:
        return OpenAIEmbeddingProvider(api_key=config.api_key_for(provider))
    raise ConfigurationError(f"Unknown embedding provider: {provider!r}")
