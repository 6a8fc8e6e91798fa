#!/usr/bin/env python3
"""Run sync, tagging and maintenance passes from the command line.

Usage:
  python -m adotracker.scripts.run_sync sync --project MyProject
  python -m adotracker.scripts.run_sync import --from-date 2024-01-01 --batch-size 500
  python -m adotracker.scripts.run_sync tag --batch-size 50
  python -m adotracker.scripts.run_sync retag --mode lowConfidence --threshold 0.8 --estimate
  python -m adotracker.scripts.run_sync purge-excluded
"""
from __future__ import annotations

import argparse
import asyncio
import json
from typing import Optional, Sequence

from pydantic import ValidationError

from adotracker.connectors import AzureDevOpsClient
from adotracker.db import connection, migrations
from adotracker.errors import TrackerError
from adotracker.models import RetagCriteria
from adotracker.pipeline.service import TrackerService
from adotracker.tagging import build_tag_generator


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _retag_criteria(args: argparse.Namespace) -> RetagCriteria:
    return RetagCriteria(
        mode=args.mode,
        confidenceThreshold=args.threshold,
        fromDate=args.from_date,
        toDate=args.to_date,
        projectName=args.project or None,
        preserveHierarchyTags=not args.drop_hierarchy,
    )


async def _run(args: argparse.Namespace) -> int:
    db = await connection.get_connection()
    await migrations.run_migrations(db)
    tracker = TrackerService.build(db, AzureDevOpsClient(), build_tag_generator())
    try:
        if args.command == "sync":
            run = await tracker.sync(args.project or None, from_date=args.from_date, max_items=args.max_items, trigger="cli")
            _print(run.model_dump())
            return 0 if run.status == "success" else 1
        if args.command == "import":
            run = await tracker.import_historical(
                args.project or None,
                from_date=args.from_date,
                to_date=args.to_date,
                batch_size=args.batch_size,
            )
            _print(run.model_dump())
            return 0 if run.status == "success" else 1
        if args.command == "tag":
            run = await tracker.drain_pending_tags(batch_size=args.batch_size, concurrency=args.concurrency)
            _print(run.model_dump())
            return 0
        if args.command == "retag":
            criteria = args.criteria
            if args.estimate:
                _print((await tracker.estimate_retag(criteria)).model_dump())
            else:
                _print((await tracker.execute_retag(criteria)).model_dump())
            return 0
        if args.command == "status":
            _print((await tracker.get_sync_status()).model_dump())
            _print((await tracker.get_stats()).model_dump())
            return 0
        if args.command == "purge-excluded":
            _print(await tracker.purge_excluded_types())
            return 0
    except TrackerError as exc:
        print(f"error: {exc}")
        return 1
    finally:
        await tracker.shutdown()
        await connection.close_connection()
    return 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="ADO Tracker pipeline commands")
    sub = parser.add_subparsers(dest="command", required=True)

    sync_p = sub.add_parser("sync", help="Incremental sync from Azure DevOps")
    sync_p.add_argument("--project", default="", help="Project name (default: ADOTRACKER_ADO_PROJECT)")
    sync_p.add_argument("--from-date", default=None)
    sync_p.add_argument("--max-items", type=int, default=None)

    import_p = sub.add_parser("import", help="Historical backfill")
    import_p.add_argument("--project", default="")
    import_p.add_argument("--from-date", default=None)
    import_p.add_argument("--to-date", default=None)
    import_p.add_argument("--batch-size", type=int, default=500)

    tag_p = sub.add_parser("tag", help="Tag one batch of the pending queue")
    tag_p.add_argument("--batch-size", type=int, default=None)
    tag_p.add_argument("--concurrency", type=int, default=None)

    retag_p = sub.add_parser("retag", help="Re-tag items selected by criteria")
    retag_p.add_argument("--mode", default="untagged")
    retag_p.add_argument("--threshold", type=float, default=None)
    retag_p.add_argument("--from-date", default=None)
    retag_p.add_argument("--to-date", default=None)
    retag_p.add_argument("--project", default="")
    retag_p.add_argument("--drop-hierarchy", action="store_true", help="Do not keep hierarchy tags")
    retag_p.add_argument("--estimate", action="store_true", help="Only print how many items would be re-tagged")

    sub.add_parser("status", help="Show last sync and store statistics")
    sub.add_parser("purge-excluded", help="Delete items of excluded types and their links")

    args = parser.parse_args(argv)
    if args.command == "retag":
        # Reject bad criteria before touching the store.
        try:
            args.criteria = _retag_criteria(args)
        except ValidationError as exc:
            print(f"error: invalid retag criteria: {exc}")
            return 1
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
