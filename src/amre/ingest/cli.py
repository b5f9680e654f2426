from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from typing import List

from amre.cli_support import configure_cli
from amre.config import get_settings
from amre.engine import MemoryEngine
from amre.ingest.loaders import DEFAULT_EXCLUDE_DIRS, DEFAULT_TEXT_EXTS, discover_files, normalize_exts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest text files into AMRE as knowledge entries")
    parser.add_argument("paths", nargs="*", default=["."], help="Files or directories to ingest")
    parser.add_argument("--user", required=True, help="Owner of the ingested entries")
    parser.add_argument("--ext", nargs="*", default=None, help="Allowed extensions, e.g. .md .txt")
    parser.add_argument("--exclude", nargs="*", default=None, help="Additional directory names to exclude")
    parser.add_argument("--chunk-size", type=int, default=1200, help="Chunk size in characters")
    parser.add_argument("--chunk-overlap", type=int, default=200, help="Chunk overlap in characters")
    parser.add_argument("--max-bytes", type=int, default=2_000_000, help="Skip files larger than this size")
    parser.add_argument("--include-hidden", action="store_true", help="Include hidden files and folders")
    parser.add_argument("--category", default="document", help="Category for the new entries")
    parser.add_argument("--importance", type=float, default=0.5, help="Importance in [0, 1]")
    parser.add_argument("--tag", action="append", default=[], help="Extra tag (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="List discovered files and exit")
    return parser


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_cli()

    allowed_exts = normalize_exts(args.ext) if args.ext is not None else set(DEFAULT_TEXT_EXTS)
    excludes = set(DEFAULT_EXCLUDE_DIRS) | {d.lower() for d in (args.exclude or [])}

    if args.dry_run:
        files = discover_files(
            args.paths, allowed_exts=allowed_exts, exclude_dirs=excludes,
            include_hidden=args.include_hidden,
        )
        print(f"discovered={len(files)}")
        for path in files:
            print(path)
        return 0

    result = asyncio.run(_ingest(args, allowed_exts, excludes))
    if result is None:
        return 1
    print(json.dumps(asdict(result), indent=2, default=str))
    return 1 if result.errors else 0


async def _ingest(args: argparse.Namespace, allowed_exts, excludes):
    engine = MemoryEngine(get_settings())
    if not await engine.start():
        return None
    try:
        return await engine.ingest_paths(
            args.user,
            args.paths,
            allowed_exts=allowed_exts,
            exclude_dirs=excludes,
            chunk_size=args.chunk_size,
            chunk_overlap=args.chunk_overlap,
            max_bytes=args.max_bytes,
            include_hidden=args.include_hidden,
            category=args.category,
            importance=args.importance,
            tags=args.tag,
        )
    finally:
        await engine.stop()


if __name__ == "__main__":
    raise SystemExit(main())
