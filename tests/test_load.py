from datetime import datetime, timedelta

import pytest

import db
from load import (
    ReplaceError, replace_all, upsert_many, insert_if_absent, recent_values, read_snapshot,
    append_measurements, upsert_station, store_migrated_station,
)
from timeutils import VN_TZ, to_store
from transform import build_measurement, migrate_station_document, normalize_stations

LOGS = {"pH": {"key": "pH", "name": "pH", "unit": "", "value": 7.1, "statusDevice": 0, "warningLevel": "GOOD"}}


def vn(*args):
    return datetime(*args, tzinfo=VN_TZ)


def level_records(values):
    return [
        {"timestamp": to_store(vn(2025, 7, 1, h, 0)), "display_time": f"{h}:00", "level": v, "unit": "m"}
        for h, v in enumerate(values)
    ]


def keys(collection, *fields):
    return sorted(tuple(d[f] for f in fields) for d in collection.find({}))


class _InsertFails:
    """Collection stand-in whose insert step blows up after a real delete."""

    def __init__(self, real):
        self.real = real

    def delete_many(self, *args, **kwargs):
        return self.real.delete_many(*args, **kwargs)

    def insert_many(self, *args, **kwargs):
        raise RuntimeError("write rejected")


class TestReplaceAll:

    def test_replace_twice_with_same_input_is_idempotent(self, mongo):
        records = level_records([24.1, 24.2, 24.3])

        first = replace_all(db.RESERVOIR_LEVEL, records)
        after_first = keys(mongo[db.RESERVOIR_LEVEL], "timestamp", "level")
        second = replace_all(db.RESERVOIR_LEVEL, records)
        after_second = keys(mongo[db.RESERVOIR_LEVEL], "timestamp", "level")

        assert after_first == after_second
        assert len(after_second) == 3
        assert first["deleted"] == 0 and first["inserted"] == 3
        assert second["deleted"] == 3 and second["inserted"] == 3

    def test_replace_drops_rows_missing_from_new_response(self, mongo):
        replace_all(db.RESERVOIR_LEVEL, level_records([1, 2, 3]))
        replace_all(db.RESERVOIR_LEVEL, level_records([9]))
        assert mongo[db.RESERVOIR_LEVEL].count_documents({}) == 1

    def test_scoped_replace_leaves_other_scopes_alone(self, mongo):
        cdo = [{"date_gmt": datetime(2025, 7, 1), "val": 1.0, "station_code": "CDO"}]
        tch = [{"date_gmt": datetime(2025, 7, 1), "val": 2.0, "station_code": "TCH"}]
        replace_all(db.MEKONG, cdo, scope={"station_code": "CDO"})
        replace_all(db.MEKONG, tch, scope={"station_code": "TCH"})

        result = replace_all(db.MEKONG, cdo, scope={"station_code": "CDO"})

        assert result["deleted"] == 1
        assert mongo[db.MEKONG].count_documents({"station_code": "TCH"}) == 1
        assert mongo[db.MEKONG].count_documents({}) == 2

    def test_record_outside_scope_is_rejected_before_delete(self, mongo):
        replace_all(db.MEKONG, [{"date_gmt": datetime(2025, 7, 1), "val": 1.0, "station_code": "CDO"}],
                    scope={"station_code": "CDO"})

        with pytest.raises(ValueError):
            replace_all(db.MEKONG, [{"date_gmt": datetime(2025, 7, 2), "val": 1.0, "station_code": "TCH"}],
                        scope={"station_code": "CDO"})

        assert mongo[db.MEKONG].count_documents({}) == 1

    def test_empty_input_is_rejected(self, mongo):
        replace_all(db.RESERVOIR_LEVEL, level_records([1]))
        with pytest.raises(ValueError):
            replace_all(db.RESERVOIR_LEVEL, [])
        assert mongo[db.RESERVOIR_LEVEL].count_documents({}) == 1

    def test_failure_after_delete_is_reported_as_replace_error(self, mongo, monkeypatch):
        replace_all(db.RESERVOIR_LEVEL, level_records([1, 2]))
        monkeypatch.setattr(db, "get_collection", lambda name: _InsertFails(mongo[name]))

        with pytest.raises(ReplaceError) as exc:
            replace_all(db.RESERVOIR_LEVEL, level_records([3, 4]))

        assert exc.value.deleted == 2
        assert mongo[db.RESERVOIR_LEVEL].count_documents({}) == 0


class TestUpserts:

    def test_upsert_many_updates_in_place(self, mongo):
        rows = [{"station_code": "S", "timestamp": 1, "water_level": 10.0},
                {"station_code": "S", "timestamp": 2, "water_level": 11.0}]
        first = upsert_many(db.TIDE_REALTIME, rows, ("station_code", "timestamp"))
        created = mongo[db.TIDE_REALTIME].find_one({"timestamp": 1})["created_at"]

        rows[0]["water_level"] = 10.5
        second = upsert_many(db.TIDE_REALTIME, rows, ("station_code", "timestamp"))

        assert first["upserted"] == 2
        assert second["upserted"] == 0
        assert mongo[db.TIDE_REALTIME].count_documents({}) == 2
        doc = mongo[db.TIDE_REALTIME].find_one({"timestamp": 1})
        assert doc["water_level"] == 10.5
        assert doc["created_at"] == created

    def test_upsert_many_with_nothing_is_a_no_op(self, mongo):
        assert upsert_many(db.TIDE_REALTIME, [], ("station_code", "timestamp"))["upserted"] == 0

    def test_insert_if_absent_never_overwrites(self, mongo):
        t = to_store(vn(2025, 7, 1, 7, 0))
        assert insert_if_absent(db.TRI_AN, {"time": t, "htl": 62.0}, ("time",)) is True
        assert insert_if_absent(db.TRI_AN, {"time": t, "htl": 99.0}, ("time",)) is False
        assert mongo[db.TRI_AN].count_documents({}) == 1
        assert mongo[db.TRI_AN].find_one({})["htl"] == 62.0

    def test_recent_values_and_snapshot(self, mongo):
        upsert_many(db.TIDE_REALTIME, [{"station_code": "S", "timestamp": t} for t in range(10)],
                    ("station_code", "timestamp"))
        upsert_many(db.TIDE_REALTIME, [{"station_code": "X", "timestamp": 100}], ("station_code", "timestamp"))

        assert recent_values(db.TIDE_REALTIME, {"station_code": "S"}, "timestamp", 3) == {7, 8, 9}
        snapshot = read_snapshot(db.TIDE_REALTIME, {"station_code": "S"}, "timestamp", 2)
        assert [d["timestamp"] for d in snapshot] == [9, 8]
        assert "_id" not in snapshot[0]


class TestDayBuckets:

    def test_fifty_readings_over_three_local_days(self, mongo):
        start = vn(2025, 7, 1, 0, 30)
        measurements = [
            build_measurement(to_store(start + timedelta(minutes=85 * i)), LOGS)
            for i in range(50)
        ]

        touched = append_measurements("ST01", measurements)

        buckets = list(mongo[db.STATION_BUCKETS].find({"station_key": "ST01"}))
        assert touched == 3
        assert len(buckets) == 3
        assert sum(b["count"] for b in buckets) == 50
        assert sum(len(b["measurements"]) for b in buckets) == 50

    def test_appending_never_removes_entries(self, mongo):
        t = to_store(vn(2025, 7, 1, 8, 0))
        append_measurements("ST01", [build_measurement(t, LOGS)])
        append_measurements("ST01", [build_measurement(t + timedelta(hours=1), LOGS)])

        bucket = mongo[db.STATION_BUCKETS].find_one({"station_key": "ST01"})
        assert bucket["count"] == 2
        assert len(bucket["measurements"]) == 2


class TestUpsertStation:

    def setup_method(self):
        self.received = to_store(vn(2025, 7, 1, 10, 0))

    def station(self, received, logs=LOGS):
        return {"key": "ST01", "name": "Trạm 1", "received_at": received, "measuring_logs": logs}

    def test_same_reading_twice_is_written_once(self, mongo):
        first = upsert_station(self.station(self.received), build_measurement(self.received, LOGS))
        second = upsert_station(self.station(self.received), build_measurement(self.received, LOGS))

        assert (first, second) == ("inserted", "skipped")
        assert mongo[db.STATION_CURRENT].count_documents({}) == 1
        bucket = mongo[db.STATION_BUCKETS].find_one({"station_key": "ST01"})
        assert bucket["count"] == 1
        assert len(bucket["measurements"]) == 1
        assert mongo[db.STATION_METADATA].find_one({"key": "ST01"})["name"] == "Trạm 1"

    def test_sub_millisecond_reading_time_is_still_a_duplicate(self, mongo):
        raw = {"data": [{"key": "ST01", "name": "Trạm 1", "measuringLogs": LOGS,
                         "receivedAt": "2025-07-01T10:00:00.123456+07:00"}]}
        outcomes = []
        for _ in range(2):
            station = normalize_stations(raw)[0]
            outcomes.append(upsert_station(station, build_measurement(station["received_at"], LOGS)))

        assert outcomes == ["inserted", "skipped"]
        assert mongo[db.STATION_BUCKETS].find_one({"station_key": "ST01"})["count"] == 1

    def test_newer_reading_with_identical_payload_still_updates(self, mongo):
        later = self.received + timedelta(minutes=5)
        upsert_station(self.station(self.received), build_measurement(self.received, LOGS))

        outcome = upsert_station(self.station(later), build_measurement(later, LOGS))

        assert outcome == "updated"
        assert mongo[db.STATION_CURRENT].find_one({"station_key": "ST01"})["received_at"] == later
        assert mongo[db.STATION_BUCKETS].find_one({"station_key": "ST01"})["count"] == 2

    def test_same_time_with_changed_payload_updates(self, mongo):
        changed = {"pH": dict(LOGS["pH"], value=6.8)}
        upsert_station(self.station(self.received), build_measurement(self.received, LOGS))

        outcome = upsert_station(self.station(self.received, changed), build_measurement(self.received, changed))

        assert outcome == "updated"
        assert mongo[db.STATION_CURRENT].find_one({"station_key": "ST01"})["raw_data"] == changed


class TestStoreMigrated:

    def test_rerun_leaves_buckets_unchanged(self, mongo):
        legacy = {
            "key": "ST01",
            "name": "Trạm 1",
            "currentData": {"receivedAt": datetime(2025, 7, 2, 3, 0), "measuringLogs": LOGS},
            "history": [
                {"timestamp": datetime(2025, 7, 1, 3, 0), "measuringLogs": LOGS},
                {"timestamp": datetime(2025, 7, 2, 3, 0), "measuringLogs": LOGS},
            ],
        }
        migrated = migrate_station_document(legacy)

        first = store_migrated_station(migrated)
        second = store_migrated_station(migrated)

        assert first == {"buckets_written": 2, "buckets_unchanged": 0}
        assert second == {"buckets_written": 0, "buckets_unchanged": 2}
        assert mongo[db.STATION_BUCKETS].count_documents({}) == 2
        assert mongo[db.STATION_CURRENT].find_one({"station_key": "ST01"})["received_at"] == datetime(2025, 7, 2, 3, 0)
