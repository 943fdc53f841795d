#!/usr/bin/env python3
# migrate.py — run ONCE to move legacy industrial-station documents
# (one doc per station with an ever-growing history array) into the
# metadata / current / day-bucket trio the live pipeline writes.
#
# Re-running is safe: buckets whose content hash already matches are skipped.

import argparse
import logging
import sys

import db
from load import store_migrated_station
from scheduler import setup_logging
from transform import migrate_station_document

logger = logging.getLogger(__name__)


def migrate(source_collection=db.STATION_LEGACY, dry_run=False, quality="migrated"):
    stats = {"stations": 0, "errors": 0, "buckets": 0, "buckets_written": 0,
             "buckets_unchanged": 0, "measurements": 0}
    for old in db.get_collection(source_collection).find({}):
        try:
            migrated = migrate_station_document(old, quality=quality)
        except Exception as e:
            stats["errors"] += 1
            logger.error(f"  ❌ {old.get('key', old.get('_id'))}: {e}", exc_info=True)
            continue

        stats["stations"] += 1
        stats["buckets"] += len(migrated["buckets"])
        stats["measurements"] += sum(b["count"] for b in migrated["buckets"])
        if dry_run:
            logger.info(f"  {migrated['metadata']['key']}: {len(migrated['buckets'])} buckets (dry run)")
            continue
        outcome = store_migrated_station(migrated)
        stats["buckets_written"] += outcome["buckets_written"]
        stats["buckets_unchanged"] += outcome["buckets_unchanged"]
        logger.info(f"  {migrated['metadata']['key']}: {outcome['buckets_written']} buckets written, "
                    f"{outcome['buckets_unchanged']} unchanged")

    logger.info(f"Migration complete — {stats}")
    return stats


def main(argv=None):
    parser = argparse.ArgumentParser(description="Migrate legacy station history into day buckets")
    parser.add_argument("--source", default=db.STATION_LEGACY, help="legacy collection name")
    parser.add_argument("--dry-run", action="store_true", help="transform only, write nothing")
    parser.add_argument("--quality", default="migrated", help="quality tag for migrated measurements")
    args = parser.parse_args(argv)

    setup_logging()
    stats = migrate(args.source, dry_run=args.dry_run, quality=args.quality)
    return 1 if stats["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
