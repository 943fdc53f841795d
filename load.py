# load.py — writes normalized records to MongoDB
# Each function explains exactly WHY it replaces vs upserts vs appends.

import logging

from pymongo import UpdateOne, DESCENDING

import db
from timeutils import now_vn, to_store, vn_day_start
from transform import content_hash

logger = logging.getLogger(__name__)


class ReplaceError(Exception):
    """
    A full replace failed AFTER its delete went through.
    The collection (or scope) is empty until the next successful cycle.
    """

    def __init__(self, message, collection, scope, deleted):
        super().__init__(message)
        self.collection = collection
        self.scope      = scope
        self.deleted    = deleted


def _stamp():
    return to_store(now_vn())


def _strip_id(doc):
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


def replace_all(collection, records, scope=None):
    """
    FULL REPLACE — delete everything (or everything in `scope`), then bulk insert.
    Why: these upstreams return the whole authoritative series for the window
         every time, so there is nothing to merge — replacing keeps the collection
         identical to the last good response.

    `scope` is a filter like {"station_code": "CDO"} for collections shared by
    several stations; every record must match it, and only that slice is deleted.

    Delete and insert are not atomic. A failure before the delete leaves the
    collection untouched (the store's own exception propagates); a failure after
    it raises ReplaceError and is logged CRITICAL.
    """
    if not records:
        raise ValueError(f"{collection}: refusing to replace with an empty record set")
    scope = scope or {}
    for r in records:
        for k, v in scope.items():
            if r.get(k) != v:
                raise ValueError(f"{collection}: record outside replace scope {scope}: {k}={r.get(k)!r}")

    col = db.get_collection(collection)
    deleted = col.delete_many(scope).deleted_count
    try:
        stamp = _stamp()
        docs = [dict(r, created_at=stamp, updated_at=stamp) for r in records]
        inserted = len(col.insert_many(docs, ordered=False).inserted_ids)
    except Exception as e:
        logger.critical(
            f"🚨 {collection}{' ' + str(scope) if scope else ''}: deleted {deleted} docs but insert failed — "
            f"collection is EMPTY until the next successful cycle: {e}"
        )
        raise ReplaceError(f"insert after delete failed: {e}", collection, scope, deleted) from e

    stored = col.count_documents(scope)
    if stored != inserted:
        logger.warning(f"  {collection}: inserted {inserted} but {stored} now stored in scope {scope}")
    logger.info(f"  {collection}: {deleted} deleted, {inserted} inserted")
    return {"deleted": deleted, "inserted": inserted, "old_records": deleted, "new_records": inserted}


def upsert_many(collection, records, key_fields):
    """
    UPSERT by natural key — one bulk_write, unordered.
    Why: series that overlap between cycles (forecasts re-issued every hour,
         realtime tide readings) must update in place, never duplicate.
    created_at is only written on insert.
    """
    if not records:
        return {"upserted": 0, "modified": 0, "matched": 0}
    stamp = _stamp()
    ops = []
    for r in records:
        key = {k: r[k] for k in key_fields}
        ops.append(UpdateOne(
            key,
            {"$set": dict(r, updated_at=stamp), "$setOnInsert": {"created_at": stamp}},
            upsert=True,
        ))
    result = db.get_collection(collection).bulk_write(ops, ordered=False)
    summary = {
        "upserted": result.upserted_count,
        "modified": result.modified_count,
        "matched":  result.matched_count,
    }
    logger.info(f"  {collection}: {summary['upserted']} inserted, {summary['modified']} updated")
    return summary


def insert_if_absent(collection, record, key_fields):
    """
    INSERT-ONLY upsert ($setOnInsert).
    Why: a scraped row for a given time never changes once published — the first
         capture wins and later scrapes of the same time are no-ops.
    Returns True when a new document was created.
    """
    key = {k: record[k] for k in key_fields}
    result = db.get_collection(collection).update_one(
        key, {"$setOnInsert": dict(record, created_at=_stamp())}, upsert=True
    )
    created = result.upserted_id is not None
    logger.info(f"  {collection}: {'1 row inserted' if created else 'already stored, skipped'}")
    return created


def recent_values(collection, scope, field, limit):
    """Values of `field` on the newest `limit` docs in scope (newest by that field)."""
    cursor = (db.get_collection(collection)
              .find(scope, {field: 1, "_id": 0})
              .sort(field, DESCENDING)
              .limit(limit))
    return {doc[field] for doc in cursor if field in doc}


def read_snapshot(collection, scope, sort_field, limit):
    """Newest `limit` docs in scope, newest first, without _id."""
    cursor = (db.get_collection(collection)
              .find(scope)
              .sort(sort_field, DESCENDING)
              .limit(limit))
    return [_strip_id(d) for d in cursor]


# ── Industrial stations: metadata / current / day buckets ─────

def append_measurements(station_key, measurements):
    """
    APPEND into day buckets keyed by (station_key, bucket_date).
    Why: one document per station holding its whole history grows without bound
         and eventually hits the 16 MB document limit. One bucket per GMT+7 day
         caps each document at a day of readings.
    Existing entries are never removed. Returns number of buckets touched.
    """
    by_day = {}
    for m in measurements:
        by_day.setdefault(vn_day_start(m["timestamp"]), []).append(m)

    col = db.get_collection(db.STATION_BUCKETS)
    stamp = _stamp()
    for bucket_date in sorted(by_day):
        entries = by_day[bucket_date]
        col.update_one(
            {"station_key": station_key, "bucket_date": bucket_date},
            {
                "$push":        {"measurements": {"$each": entries}},
                "$inc":         {"count": len(entries)},
                "$set":         {"updated_at": stamp},
                "$setOnInsert": {"created_at": stamp, "compressed": False, "archived": False},
            },
            upsert=True,
        )
    return len(by_day)


def upsert_station(station, measurement):
    """
    One industrial station reading → current + metadata + bucket.

    Skip rule: if the stored current reading is at least as new AND its raw
    parameter map is identical, nothing is written. A newer reading with an
    identical payload is still an update.

    Returns "skipped", "inserted" or "updated".
    """
    key = station["key"]
    current_col = db.get_collection(db.STATION_CURRENT)
    existing = current_col.find_one({"station_key": key})
    if existing is not None and existing.get("received_at") is not None:
        not_newer = station["received_at"] <= existing["received_at"]
        if not_newer and existing.get("raw_data") == station["measuring_logs"]:
            logger.debug(f"  {key}: reading at {station['received_at']} already stored, skipped")
            return "skipped"

    stamp = _stamp()
    current_col.update_one(
        {"station_key": key},
        {"$set": {
            "received_at": station["received_at"],
            "data":        measurement["data"],
            "raw_data":    station["measuring_logs"],
            "updated_at":  stamp,
        }},
        upsert=True,
    )
    db.get_collection(db.STATION_METADATA).update_one(
        {"key": key},
        {
            "$set": {
                "name":         station.get("name"),
                "address":      station.get("address"),
                "map_location": station.get("map_location"),
                "province":     station.get("province"),
                "station_type": station.get("station_type"),
                "parameters":   station.get("parameters", []),
                "updated_at":   stamp,
            },
            "$setOnInsert": {"created_at": stamp, "is_active": True},
        },
        upsert=True,
    )
    append_measurements(key, [measurement])
    return "inserted" if existing is None else "updated"


def store_migrated_station(migrated):
    """
    Write one migrate_station_document() result.
    Buckets whose stored data_hash already matches are left alone, so the
    migration can be re-run safely. A bucket that differs gets the union of
    stored and migrated entries (by timestamp), re-counted and re-hashed.
    Returns {"buckets_written", "buckets_unchanged"}.
    """
    meta = migrated["metadata"]
    stamp = _stamp()
    db.get_collection(db.STATION_METADATA).update_one(
        {"key": meta["key"]},
        {"$set": dict(meta, updated_at=stamp), "$setOnInsert": {"created_at": stamp}},
        upsert=True,
    )
    if migrated["current"] is not None:
        current = migrated["current"]
        current_col = db.get_collection(db.STATION_CURRENT)
        stored = current_col.find_one({"station_key": current["station_key"]})
        if stored is None or stored.get("received_at") is None or stored["received_at"] < current["received_at"]:
            current_col.update_one({"station_key": current["station_key"]},
                                   {"$set": dict(current, updated_at=stamp)}, upsert=True)

    col = db.get_collection(db.STATION_BUCKETS)
    written = unchanged = 0
    for bucket in migrated["buckets"]:
        key = {"station_key": bucket["station_key"], "bucket_date": bucket["bucket_date"]}
        stored = col.find_one(key)
        if stored is not None and stored.get("data_hash") == bucket["data_hash"]:
            unchanged += 1
            continue
        merged = {m["timestamp"]: m for m in (stored or {}).get("measurements", [])}
        for m in bucket["measurements"]:
            merged.setdefault(m["timestamp"], m)
        measurements = [merged[t] for t in sorted(merged)]
        col.update_one(
            key,
            {
                "$set": {
                    "measurements": measurements,
                    "count":        len(measurements),
                    "data_hash":    content_hash(measurements),
                    "updated_at":   stamp,
                },
                "$setOnInsert": {"created_at": stamp, "compressed": False, "archived": False},
            },
            upsert=True,
        )
        written += 1
    return {"buckets_written": written, "buckets_unchanged": unchanged}


def delete_older_than(collection, field, cutoff, scope=None):
    """Delete docs in scope whose `field` is before `cutoff` (aware or stored datetime)."""
    if cutoff.tzinfo is not None:
        cutoff = to_store(cutoff)
    query = dict(scope or {})
    query[field] = {"$lt": cutoff}
    deleted = db.get_collection(collection).delete_many(query).deleted_count
    logger.info(f"  🧹 {collection}: {deleted} docs older than {cutoff} removed")
    return deleted
