#!/usr/bin/env python3
# run_now.py — manual trigger for one pipeline, outside the scheduler.
#
#   python run_now.py hodautieng
#   python run_now.py tide_realtime --force
#   python run_now.py --check          # document counts per collection

import argparse
import json
import logging
import sys

import db
import pipeline
from scheduler import setup_logging, pipeline_functions

logger = logging.getLogger(__name__)

COLLECTIONS = [
    db.RESERVOIR_LEVEL, db.RESERVOIR_INFLOW, db.RESERVOIR_OUTFLOW, db.RESERVOIR_FORECAST,
    db.TIDE_FORECAST, db.TIDE_REALTIME, db.STATION_METADATA, db.STATION_CURRENT,
    db.STATION_BUCKETS, db.TRI_AN, db.MEKONG,
]


def check_data():
    counts = {name: db.get_collection(name).count_documents({}) for name in COLLECTIONS}
    for name, n in counts.items():
        logger.info(f"  {name:<24} {n}")
    return counts


def main(argv=None):
    state = pipeline.TideRealtimeState()
    names = sorted(pipeline_functions(state))

    parser = argparse.ArgumentParser(description="Run one ETL pipeline now")
    parser.add_argument("pipeline", nargs="?", choices=names)
    parser.add_argument("--force", action="store_true",
                        help="tide_realtime only: bypass the call gate and replace stored readings")
    parser.add_argument("--check", action="store_true", help="print document counts and exit")
    args = parser.parse_args(argv)

    setup_logging()
    if args.check:
        check_data()
        return 0
    if not args.pipeline:
        parser.error("choose a pipeline or --check")

    if args.pipeline == "tide_realtime":
        result = pipeline.run_tide_realtime_all(state, force=args.force)
    else:
        result = pipeline_functions(state)[args.pipeline]()
    print(json.dumps({"success": result["success"], "message": result["message"]}, ensure_ascii=False))
    return 0 if result["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
