from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict, is_dataclass
from typing import Any, List

from amre.cli_support import configure_cli
from amre.config import get_settings
from amre.engine import MemoryEngine
from amre.models import SourceType


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AMRE maintenance jobs")
    sub = parser.add_subparsers(dest="job", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--batch-size", type=int, default=None, help="Entries per batch")
    common.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    common.add_argument("--user", default=None, help="Restrict the job to one user id")
    common.add_argument("--deadline", type=float, default=None, help="Soft deadline in seconds")

    backfill = sub.add_parser("backfill", parents=[common], help="Embed entries that have no vector")
    backfill.add_argument(
        "--source", choices=[s.value for s in SourceType], default=None,
        help="Only backfill entries of this source type",
    )

    dedup = sub.add_parser("dedup", parents=[common], help="Merge near-duplicate entries")
    dedup.add_argument("--threshold", type=float, default=None, help="Cosine similarity threshold")

    sub.add_parser("reap", parents=[common], help="Delete expired entries and flag orphans")
    sub.add_parser("cycle", parents=[common], help="Run backfill, dedup and reap in order")

    purge = sub.add_parser("purge-orphans", help="Delete entries previously flagged as orphans")
    purge.add_argument("entry_ids", nargs="+", help="Entry ids reported by a reap run")
    return parser


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_cli()
    report = asyncio.run(_run(args))
    if report is None:
        return 1
    print(json.dumps(_jsonable(report), indent=2, default=str))
    return 0


async def _run(args: argparse.Namespace) -> Any:
    engine = MemoryEngine(get_settings())
    if not await engine.start():
        return None
    try:
        if args.job == "purge-orphans":
            return {"purged": await engine.purge_orphans(args.entry_ids)}
        return await engine.run_maintenance(
            job=args.job,
            batch_size=args.batch_size,
            dry_run=args.dry_run,
            user_id=args.user,
            threshold=getattr(args, "threshold", None),
            source_type=getattr(args, "source", None),
            deadline_sec=args.deadline,
        )
    finally:
        await engine.stop()


def _jsonable(report: Any) -> Any:
    return asdict(report) if is_dataclass(report) else report


if __name__ == "__main__":
    raise SystemExit(main())
