from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from pydantic import TypeAdapter
from pydantic import ValidationError as ModelValidationError

from echoes_rag.config import RAGConfig
from echoes_rag.errors import RAGError
from echoes_rag.models import Chapter, SearchFilters
from echoes_rag.rag.search import RAGSystem

LOG = logging.getLogger("echoes_rag")

_CHAPTERS = TypeAdapter(list[Chapter])


def _load_chapters(path: Path) -> list[Chapter]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = [raw]
    return _CHAPTERS.validate_python(raw)


def _filters(args: argparse.Namespace) -> Optional[SearchFilters]:
    filters = SearchFilters(
        timeline=args.timeline,
        arc=args.arc,
        pov=args.pov,
        characters=list(args.character or []),
        all_characters=args.all_characters,
    )
    return None if filters.is_empty else filters


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="echoes-rag", description="Semantic search over narrative chapters.")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", help="Index chapters from a JSON file (one object or a list).")
    add.add_argument("file", type=Path)

    for name in ("search", "context"):
        p = sub.add_parser(name, help=f"{name.capitalize()} chapters relevant to a query.")
        p.add_argument("query")
        p.add_argument("--timeline")
        p.add_argument("--arc")
        p.add_argument("--pov")
        p.add_argument("--character", action="append", help="Repeat for several names.")
        p.add_argument("--all-characters", action="store_true", help="Require every --character.")
        p.add_argument("--limit", type=int)

    delete = sub.add_parser("delete", help="Remove a chapter by id.")
    delete.add_argument("id")

    mentions = sub.add_parser("mentions", help="Characters appearing alongside NAME.")
    mentions.add_argument("name")
    return parser


async def _run(args: argparse.Namespace, config: RAGConfig) -> Any:
    rag = RAGSystem.from_config(config)
    try:
        if args.command == "add":
            chapters = _load_chapters(args.file)
            await rag.add_batch(chapters)
            return {"indexed": len(chapters), "total": await rag.count()}
        if args.command in ("search", "context"):
            op = rag.search if args.command == "search" else rag.get_context
            results = await op(args.query, _filters(args), args.limit)
            return [r.to_dict() for r in results]
        if args.command == "delete":
            await rag.delete(args.id)
            return {"deleted": args.id}
        if args.command == "mentions":
            return await rag.get_character_mentions(args.name)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await rag.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = RAGConfig.from_env()
    except RAGError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        payload = asyncio.run(_run(args, config))
    except (RAGError, ModelValidationError, OSError, json.JSONDecodeError) as exc:
        LOG.error("%s failed: %s", args.command, exc)
        return 1
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
