"""
Collapse duplicate KashFlow documents and backfill missing uuids.

Dry run (default, writes nothing):

    python -m kfsync.scripts.dedup_migration

Apply:

    python -m kfsync.scripts.dedup_migration --apply

Stop the API/worker syncs first. Safe to re-run: a second run finds no
duplicate groups and nothing to backfill.
"""
import argparse
import asyncio
import json
import logging
import sys

from kfsync.core.config import settings
from kfsync.core.mongo import close_mongo_client, get_database, redact_mongo_uri
from kfsync.services.dedup import COLLECTIONS, run_dedup

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logging.getLogger("pymongo").setLevel(logging.WARNING)
logger = logging.getLogger("dedup_migration")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--apply", action="store_true", help="delete duplicates and write uuids")
    parser.add_argument(
        "--collection", action="append", choices=COLLECTIONS, dest="collections",
        help="limit to one collection (repeatable); default all",
    )
    parser.add_argument("--actions", action="store_true", help="print every action as JSON lines")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    dry_run = not args.apply
    logger.info(
        "Starting dedup (%s) on db=%s uri=%s",
        "dry run" if dry_run else "APPLY", settings.mongo_db_name, redact_mongo_uri(settings.resolved_mongo_uri()),
    )
    try:
        result = await run_dedup(get_database(), dry_run=dry_run, collections=tuple(args.collections or COLLECTIONS))
    finally:
        await close_mongo_client()

    for name, stats in result.collections.items():
        logger.info(
            "── %-10s groups=%d  deleted=%d  backfilled=%d", name, stats.groups, stats.deleted, stats.backfilled
        )
    if args.actions:
        for action in result.actions:
            print(json.dumps(action.as_dict(), default=str))

    if result.total_groups == 0 and result.total_backfilled == 0:
        logger.info("Nothing to do: no duplicate groups and every document has a uuid.")
    elif dry_run:
        logger.info("Dry run only. Re-run with --apply to write these changes.")
    return 0


def main(argv=None) -> int:
    return asyncio.run(_run(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
