# setup_target.py
# Run ONCE to create the unique indexes every collection relies on.
# Safe to re-run — create_index is a no-op when the index already exists.
# After this, the scheduler fills the collections continuously.

import logging

from pymongo import ASCENDING, DESCENDING

import db
from scheduler import setup_logging

logger = logging.getLogger(__name__)

# collection → [(keys, options)]
# The unique keys are the natural identities the loaders upsert / replace by.
INDEXES = {
    db.RESERVOIR_LEVEL:   [([("timestamp", ASCENDING)], {"unique": True})],
    db.RESERVOIR_INFLOW:  [([("timestamp", ASCENDING)], {"unique": True})],
    db.RESERVOIR_OUTFLOW: [([("timestamp", ASCENDING)], {"unique": True})],
    db.RESERVOIR_FORECAST: [
        ([("hc_uuid", ASCENDING), ("parameter_type", ASCENDING),
          ("timestamp", ASCENDING), ("data_source", ASCENDING)], {"unique": True}),
        ([("parameter_type", ASCENDING), ("data_source", ASCENDING), ("timestamp", DESCENDING)], {}),
    ],
    db.TIDE_FORECAST: [([("date", ASCENDING), ("location", ASCENDING)], {"unique": True})],
    db.TIDE_REALTIME: [
        ([("station_code", ASCENDING), ("timestamp", ASCENDING)], {"unique": True}),
        ([("station_code", ASCENDING), ("timestamp", DESCENDING)], {}),
    ],
    db.STATION_METADATA: [([("key", ASCENDING)], {"unique": True})],
    db.STATION_CURRENT:  [([("station_key", ASCENDING)], {"unique": True})],
    db.STATION_BUCKETS: [
        ([("station_key", ASCENDING), ("bucket_date", ASCENDING)], {"unique": True}),
        ([("bucket_date", ASCENDING)], {}),
    ],
    db.TRI_AN: [([("time", ASCENDING)], {"unique": True})],
    db.MEKONG: [([("date_gmt", ASCENDING), ("station_code", ASCENDING)], {"unique": True})],
}


def setup(database=None):
    database = database if database is not None else db.get_db()
    created = []
    try:
        for collection, specs in INDEXES.items():
            for keys, options in specs:
                name = database[collection].create_index(keys, **options)
                created.append(f"{collection}.{name}")
        logger.info("✅ Indexes created successfully")
        for name in created:
            logger.info(f"   → {name}")
    except Exception as e:
        logger.error(f"❌ Index setup failed: {e}")
        raise
    return created


if __name__ == "__main__":
    setup_logging()
    setup()
