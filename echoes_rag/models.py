from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ChapterMetadata(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timeline_name: Optional[str] = None
    arc_name: Optional[str] = None
    episode_number: int = 0
    part_number: int = 0
    number: int = 0
    pov: Optional[str] = None
    title: str = ""
    date: Optional[str] = None
    excerpt: str = ""
    location: str = ""
    words: int = 0
    characters: int = 0
    characters_no_spaces: int = 0
    paragraphs: int = 0
    sentences: int = 0
    reading_time_minutes: int = 0
    character_names: Optional[List[str]] = None

    @field_validator("character_names")
    @classmethod
    def _dedupe_names(cls, names: Optional[List[str]]) -> Optional[List[str]]:
        if names is None:
            return None
        return dedupe_names(names)


class Chapter(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    content: str
    metadata: ChapterMetadata = Field(default_factory=ChapterMetadata)
    vector: Optional[List[float]] = None


def dedupe_names(names: List[str]) -> List[str]:
    """Drop blank and case-insensitive duplicate names, keeping first-seen order."""
    seen: set[str] = set()
    out: List[str] = []
    for name in names:
        name = name.strip()
        key = name.casefold()
        if not name or key in seen:
            continue
        seen.add(key)
        out.append(name)
    return out


@dataclass
class SearchFilters:
    """Optional constraints applied to ranked candidates."""

    timeline: Optional[str] = None
    arc: Optional[str] = None
    pov: Optional[str] = None
    characters: List[str] = field(default_factory=list)
    all_characters: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.timeline or self.arc or self.pov or self.characters)


@dataclass
class StoredRecord:
    """A chapter as persisted by a VectorStore."""

    id: str
    vector: Optional[List[float]]
    content: str
    metadata: ChapterMetadata


@dataclass
class SearchResult:
    """A single ranked chapter."""

    id: str
    metadata: ChapterMetadata
    content: str
    similarity: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "metadata": self.metadata.model_dump(mode="json", by_alias=True),
            "content": self.content,
            "similarity": self.similarity,
        }
