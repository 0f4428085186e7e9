"""
Character (person name) extraction via named-entity recognition.

A token-classification model tags the text; person entities are cleaned,
case-folded and deduplicated. Results are memoized per text in a bounded
LRU cache owned by the extractor instance.
"""

from __future__ import annotations

import asyncio
import logging
import re
import zlib
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from echoes_rag.errors import ExtractionError
from echoes_rag.rag.lazy import LazyResource

LOG = logging.getLogger("rag.character_extractor")

DEFAULT_NER_MODEL = "Davlan/bert-base-multilingual-cased-ner-hrl"

_NON_LETTER = re.compile(r"[^\w\s]|[\d_]")
_MIN_NAME_LENGTH = 3


@dataclass(frozen=True)
class EntityToken:
    """One tagged span from a NER backend."""

    entity_type: str
    token: str
    confidence: float


class NERBackend(ABC):
    """Abstract token classifier."""

    @abstractmethod
    async def recognize(self, text: str) -> list[EntityToken]:
        ...


class TransformersNERBackend(NERBackend):
    """Hugging Face transformers ``token-classification`` pipeline, loaded on first use."""

    def __init__(self, model_name: str = DEFAULT_NER_MODEL) -> None:
        self._model_name = model_name
        self._pipeline = LazyResource(model_name, self._load)

    def _load(self) -> Any:
        from transformers import pipeline

        LOG.info("Loading NER model: %s", self._model_name)
        return pipeline("token-classification", model=self._model_name)

    async def recognize(self, text: str) -> list[EntityToken]:
        ner = await self._pipeline.get()
        raw = await asyncio.to_thread(ner, text)
        return [
            EntityToken(
                entity_type=str(e.get("entity") or e.get("entity_group") or ""),
                token=str(e.get("word", "")),
                confidence=float(e.get("score", 0.0)),
            )
            for e in raw
        ]


def clean_name(token: str) -> str:
    """Strip the sub-word marker and anything that is not a letter or space."""
    if token.startswith("##"):
        token = token[2:]
    return _NON_LETTER.sub("", token).strip()


def text_key(text: str) -> tuple[int, int]:
    """Cheap non-cryptographic cache key."""
    return zlib.crc32(text.encode("utf-8")), len(text)


class CharacterExtractor:
    """
    Extract person names from narrative text.

    Usage::

        extractor = CharacterExtractor(TransformersNERBackend(), cache_size=1024)
        names = await extractor.extract_characters("Nic met Alex in London.")
    """

    def __init__(self, backend: NERBackend | None = None, cache_size: int = 1024) -> None:
        if cache_size < 0:
            raise ValueError("cache_size must be >= 0")
        self._backend = backend or TransformersNERBackend()
        self._cache_size = cache_size
        self._cache: OrderedDict[tuple[int, int], list[str]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._cache)

    async def extract_characters(self, text: str) -> list[str]:
        if not text or not text.strip():
            return []

        key = text_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self.hits += 1
            return list(cached)
        self.misses += 1

        try:
            entities = await self._backend.recognize(text)
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"NER backend failed: {exc}") from exc

        names = self._people(entities)
        self._remember(key, names)
        return list(names)

    @staticmethod
    def _people(entities: list[EntityToken]) -> list[str]:
        seen: set[str] = set()
        names: list[str] = []
        for entity in entities:
            if "PER" not in entity.entity_type:
                continue
            name = clean_name(entity.token).casefold()
            if len(name) < _MIN_NAME_LENGTH or name in seen:
                continue
            seen.add(name)
            names.append(name)
        return names

    def _remember(self, key: tuple[int, int], names: list[str]) -> None:
        if self._cache_size == 0:
            return
        self._cache[key] = names
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
