"""Metadata and character filters applied to ranked candidates."""

from __future__ import annotations

from echoes_rag.models import ChapterMetadata, SearchFilters, SearchResult


def matches_characters(metadata: ChapterMetadata, wanted: list[str], require_all: bool) -> bool:
    """Case-insensitive character membership; an empty ``wanted`` always matches."""
    if not wanted:
        return True
    present = {n.casefold() for n in (metadata.character_names or [])}
    hits = [name.casefold() in present for name in wanted]
    return all(hits) if require_all else any(hits)


def matches(metadata: ChapterMetadata, filters: SearchFilters | None) -> bool:
    if filters is None:
        return True
    if filters.timeline and metadata.timeline_name != filters.timeline:
        return False
    if filters.arc and metadata.arc_name != filters.arc:
        return False
    if filters.pov and metadata.pov != filters.pov:
        return False
    return matches_characters(metadata, filters.characters, filters.all_characters)


def apply_filters(results: list[SearchResult], filters: SearchFilters | None) -> list[SearchResult]:
    """Keep results satisfying every active filter, preserving rank order."""
    if filters is None or filters.is_empty:
        return list(results)
    return [r for r in results if matches(r.metadata, filters)]
