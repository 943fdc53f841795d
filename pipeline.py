# pipeline.py — ties extract → transform → load together, one function per source
# Every run_* function returns {"success", "message", "stats"} and never raises:
# a bad cycle is logged and reported, the scheduler moves on to the next tick.

import logging
import time
from datetime import timedelta

import db
from config import (
    FORECAST_PARAMETERS, FORECAST_PARAMETER_PAUSE_SEC, FORECAST_HDT_UUID,
    TIDE_FORECAST_LOCATIONS, TIDE_REALTIME_STATIONS, MEKONG_STATIONS,
    TIDE_CALL_EVERY_HOURS, TIDE_CALL_WINDOW_MINUTES, TIDE_MIN_INTERVAL_HOURS,
    TIDE_ERROR_THRESHOLD, TIDE_ERROR_BACKOFF_HOURS, TIDE_MERGE_WINDOW, TIDE_SAVE_CAP,
    FORECAST_RETENTION_DAYS, FORECAST_FRESHNESS_HOURS,
)
from extract import (
    fetch_reservoir, fetch_forecast, fetch_tide_forecast, fetch_tide_realtime,
    fetch_stations, fetch_mekong, fetch_reservoir_table,
)
from transform import (
    normalize_reservoir_level, normalize_reservoir_inflow, normalize_reservoir_outflow,
    normalize_forecast, normalize_tide_forecast, normalize_tide_realtime, tide_range,
    normalize_stations, extract_parameters, build_measurement,
    parse_js_array, normalize_mekong, normalize_reservoir_row,
)
from load import (
    ReplaceError, replace_all, upsert_many, insert_if_absent,
    recent_values, read_snapshot, upsert_station, delete_older_than,
)
from timeutils import now_vn, as_vn, to_store, get_date_range

logger = logging.getLogger(__name__)


def _result(success, message, **stats):
    return {"success": success, "message": message, "stats": stats}


def _failure(label, e, **stats):
    logger.error(f"  ❌ {label} failed: {e}", exc_info=True)
    return _result(False, f"{label} failed: {e}", error=str(e), **stats)


# ── Reservoir level / inflow / outflow (full replace) ─────────

def _run_full_replace(label, parameter, normalize, collection, now=None, **http_options):
    try:
        raw = fetch_reservoir(parameter, now, **http_options)
        records = normalize(raw)
        outcome = replace_all(collection, records)
    except ReplaceError as e:
        # Delete went through, insert didn't — distinguish from "collection untouched"
        return _failure(label, e, deleted=e.deleted, inserted=0, collection_empty=True)
    except Exception as e:
        return _failure(label, e, inserted=0)
    return _result(
        True, f"{label}: {outcome['inserted']} records replaced",
        deleted=outcome["deleted"],
        inserted=outcome["inserted"],
        new_records=outcome["new_records"],
        date_range=get_date_range(records, "timestamp"),
    )


def run_reservoir_level(now=None, **http_options):
    return _run_full_replace("Reservoir level", "MUCNUOCHO", normalize_reservoir_level,
                             db.RESERVOIR_LEVEL, now, **http_options)


def run_reservoir_inflow(now=None, **http_options):
    return _run_full_replace("Reservoir inflow", "QDEN", normalize_reservoir_inflow,
                             db.RESERVOIR_INFLOW, now, **http_options)


def run_reservoir_outflow(now=None, **http_options):
    return _run_full_replace("Reservoir outflow", "LUULUONGXA", normalize_reservoir_outflow,
                             db.RESERVOIR_OUTFLOW, now, **http_options)


def run_hodautieng(now=None, **http_options):
    """
    Level, inflow and outflow of the same reservoir, one after the other.
    Each step is isolated; the job counts as a success if any step succeeded.
    """
    cycle_start = time.time()
    logger.info("─" * 60)
    logger.info("Reservoir cycle starting")

    results = {
        "level":   run_reservoir_level(now, **http_options),
        "inflow":  run_reservoir_inflow(now, **http_options),
        "outflow": run_reservoir_outflow(now, **http_options),
    }
    succeeded = sum(1 for r in results.values() if r["success"])
    total = sum(r["stats"].get("inserted", 0) for r in results.values())

    elapsed = round(time.time() - cycle_start, 2)
    logger.info(f"Reservoir cycle complete — {succeeded}/{len(results)} sources, {total} records in {elapsed}s")
    return _result(succeeded > 0, f"{succeeded}/{len(results)} reservoir sources succeeded",
                   success_count=succeeded, total_records=total, results=results)


# ── Reservoir forecast (observed + projected, upsert) ─────────

FORECAST_KEY = ("hc_uuid", "parameter_type", "timestamp", "data_source")


def run_forecast_parameter(parameter_type, now=None, **http_options):
    now = as_vn(now) if now is not None else now_vn()
    label = f"Forecast {parameter_type}"
    try:
        raw = fetch_forecast(parameter_type, now, **http_options)
        records = normalize_forecast(raw, parameter_type, FORECAST_HDT_UUID, now)
        outcome = upsert_many(db.RESERVOIR_FORECAST, records, FORECAST_KEY)
    except Exception as e:
        return _failure(label, e, total_records=0)
    realtime = sum(1 for r in records if r["data_source"] == "realtime")
    return _result(
        True, f"{label}: {len(records)} records",
        total_records=len(records),
        realtime_records=realtime,
        forecast_records=len(records) - realtime,
        upserted=outcome["upserted"],
        modified=outcome["modified"],
    )


def run_reservoir_forecast(now=None, parameters=None, sleep=time.sleep, **http_options):
    """All forecast parameters in sequence, pausing between calls to go easy on the upstream."""
    parameters = parameters or FORECAST_PARAMETERS
    results, errors = {}, []
    for i, parameter_type in enumerate(parameters):
        if i:
            sleep(FORECAST_PARAMETER_PAUSE_SEC)
        results[parameter_type] = run_forecast_parameter(parameter_type, now, **http_options)
        if not results[parameter_type]["success"]:
            errors.append(f"{parameter_type}: {results[parameter_type]['stats'].get('error')}")

    successful = len(parameters) - len(errors)
    total = sum(r["stats"].get("total_records", 0) for r in results.values())
    logger.info(f"  Forecast: {successful}/{len(parameters)} parameters, {total} records")
    return _result(successful > 0, f"{successful}/{len(parameters)} forecast parameters succeeded",
                   successful=successful, failed=len(errors), total_records=total,
                   parameter_results=results, errors=errors)


def run_forecast_cleanup(days_to_keep=FORECAST_RETENTION_DAYS, now=None):
    """Daily retention pass: observed rows older than `days_to_keep` go, projected rows stay."""
    now = as_vn(now) if now is not None else now_vn()
    cutoff = now - timedelta(days=days_to_keep)
    try:
        deleted = delete_older_than(db.RESERVOIR_FORECAST, "timestamp", cutoff,
                                    scope={"data_source": {"$ne": "forecast"}})
    except Exception as e:
        return _failure("Forecast cleanup", e, deleted=0)
    return _result(True, f"Forecast cleanup: {deleted} records older than {days_to_keep} days removed",
                   deleted=deleted, cutoff=cutoff)


def run_forecast_health(now=None):
    """Healthy when the reservoir wrote forecast rows within the last couple of hours."""
    now = as_vn(now) if now is not None else now_vn()
    since = now - timedelta(hours=FORECAST_FRESHNESS_HOURS)
    try:
        recent = db.get_collection(db.RESERVOIR_FORECAST).count_documents(
            {"hc_uuid": FORECAST_HDT_UUID, "timestamp": {"$gte": to_store(since)}}
        )
    except Exception as e:
        return _failure("Forecast health check", e, recent_records=0)
    if recent:
        logger.info(f"  💚 Forecast health: {recent} records in the last {FORECAST_FRESHNESS_HOURS}h")
        return _result(True, f"Forecast data is fresh ({recent} recent records)", recent_records=recent)
    logger.warning(f"  ⚠️ Forecast health: no records in the last {FORECAST_FRESHNESS_HOURS}h")
    return _result(False, f"No forecast data in the last {FORECAST_FRESHNESS_HOURS}h", recent_records=0)


# ── Tide forecast (full replace per location) ─────────────────

def run_tide_forecast_location(location, **http_options):
    label = f"Tide forecast {location}"
    try:
        raw = fetch_tide_forecast(location, **http_options)
        records = normalize_tide_forecast(raw, location)
        outcome = replace_all(db.TIDE_FORECAST, records, scope={"location": location})
    except ReplaceError as e:
        return _failure(label, e, deleted=e.deleted, data_points=0, collection_empty=True)
    except Exception as e:
        return _failure(label, e, data_points=0)
    return _result(
        True, f"{label}: {outcome['inserted']} points",
        location=location,
        data_points=outcome["inserted"],
        deleted=outcome["deleted"],
        date_range=get_date_range(records, "date"),
        tide_range=tide_range(records),
    )


def run_tide_forecast(locations=None, **http_options):
    locations = locations or TIDE_FORECAST_LOCATIONS
    results = {loc: run_tide_forecast_location(loc, **http_options) for loc in locations}
    succeeded = sum(1 for r in results.values() if r["success"])
    return _result(succeeded > 0, f"{succeeded}/{len(locations)} tide locations refreshed",
                   results=results, locations=list_tide_locations())


def list_tide_locations():
    """Distinct locations currently stored — what the read API offers as choices."""
    return sorted(db.get_collection(db.TIDE_FORECAST).distinct("location"))


# ── Tide realtime (rate-limited, cache-served) ────────────────

class TideRealtimeState:
    """
    Per-station call bookkeeping for the realtime tide upstream.

    Owned by the scheduler and handed to run_tide_realtime() on every tick.
    The upstream is only called:
      - the first time a station is seen, or
      - at a clock-aligned hour (GMT+7 hour % 3 == 0, minutes 0-5) when at least
        6 h have passed since the last call,
    and never within 12 h of the last call once more than 3 consecutive errors
    have piled up. Otherwise the last stored snapshot is served.
    """

    def __init__(self, clock=now_vn):
        self.clock = clock
        self.last_call_time = {}
        self.error_count = {}

    def is_scheduled_time(self, now):
        now = as_vn(now)
        return now.hour % TIDE_CALL_EVERY_HOURS == 0 and 0 <= now.minute <= TIDE_CALL_WINDOW_MINUTES

    def should_call(self, station_code, now=None):
        now = as_vn(now) if now is not None else self.clock()
        last = self.last_call_time.get(station_code)
        errors = self.error_count.get(station_code, 0)

        if errors > TIDE_ERROR_THRESHOLD and last is not None:
            if now - last < timedelta(hours=TIDE_ERROR_BACKOFF_HOURS):
                logger.info(f"  {station_code}: {errors} consecutive errors, backing off")
                return False
        if last is None:
            return True
        if self.is_scheduled_time(now):
            return now - last >= timedelta(hours=TIDE_MIN_INTERVAL_HOURS)
        return False

    def record_success(self, station_code, now=None):
        self.last_call_time[station_code] = as_vn(now) if now is not None else self.clock()
        self.error_count[station_code] = 0

    def record_failure(self, station_code):
        self.error_count[station_code] = self.error_count.get(station_code, 0) + 1
        logger.warning(f"  {station_code}: error count now {self.error_count[station_code]}")

    def next_scheduled_call(self, now=None):
        now = as_vn(now) if now is not None else self.clock()
        top = now.replace(minute=0, second=0, microsecond=0)
        step = TIDE_CALL_EVERY_HOURS
        hours_ahead = step - (top.hour % step)
        return top + timedelta(hours=hours_ahead)

    def status(self, now=None):
        stations = set(self.last_call_time) | set(self.error_count)
        return {
            code: {
                "last_call_time":      self.last_call_time.get(code),
                "error_count":         self.error_count.get(code, 0),
                "is_healthy":          self.error_count.get(code, 0) <= TIDE_ERROR_THRESHOLD,
                "next_scheduled_call": self.next_scheduled_call(now),
            }
            for code in sorted(stations)
        }


def _tide_scope(station_code):
    return {"station_code": station_code}


def run_tide_realtime(state, station_code, force=False, now=None, **http_options):
    """
    One station, one tick.

    force=False: honour the call gate. When the gate says no, serve the stored
                 snapshot (source "cache"). When it says yes, fetch and upsert only
                 the readings not already among the newest stored (source "api").
    force=True:  skip the gate, fetch, and replace the station's whole stored set
                 (source "force_refresh").
    An upstream failure bumps the error counter and serves the newest stored
    readings (source "cache_fallback"), reported as a failure.
    """
    now = as_vn(now) if now is not None else state.clock()
    scope = _tide_scope(station_code)
    label = f"Tide realtime {station_code}"

    if not force and not state.should_call(station_code, now):
        try:
            snapshot = read_snapshot(db.TIDE_REALTIME, scope, "timestamp", TIDE_SAVE_CAP)
        except Exception as e:
            return _failure(label, e, source="error", records=0)
        last = state.last_call_time.get(station_code)
        logger.info(f"  {label}: serving {len(snapshot)} stored readings (last call {last})")
        return _result(True, f"{label}: served from cache", source="cache",
                       records=len(snapshot), new_records=0, last_update=last, data=snapshot)

    try:
        raw = fetch_tide_realtime(station_code, **http_options)
        records = normalize_tide_realtime(raw, station_code)
        if force:
            outcome = replace_all(db.TIDE_REALTIME, records[-TIDE_SAVE_CAP:], scope=scope)
            new_records = outcome["inserted"]
        else:
            window = records[-TIDE_MERGE_WINDOW:]
            known = recent_values(db.TIDE_REALTIME, scope, "timestamp", TIDE_MERGE_WINDOW)
            fresh = [r for r in window if r["timestamp"] not in known][-TIDE_SAVE_CAP:]
            upsert_many(db.TIDE_REALTIME, fresh, ("station_code", "timestamp"))
            new_records = len(fresh)
    except Exception as e:
        state.record_failure(station_code)
        if force:
            return _failure(label, e, source="error", records=0, new_records=0)
        logger.error(f"  ❌ {label} upstream failed, falling back to stored readings: {e}", exc_info=True)
        try:
            snapshot = read_snapshot(db.TIDE_REALTIME, scope, "timestamp", TIDE_MERGE_WINDOW)
        except Exception as cache_error:
            return _failure(label, cache_error, source="error", records=0, new_records=0)
        return _result(False, f"{label} failed: {e}", source="cache_fallback", error=str(e),
                       records=len(snapshot), new_records=0,
                       last_update=state.last_call_time.get(station_code), data=snapshot)

    state.record_success(station_code, now)
    source = "force_refresh" if force else "api"
    logger.info(f"  {label}: {len(records)} readings fetched, {new_records} new ({source})")
    return _result(True, f"{label}: {new_records} new readings", source=source,
                   records=len(records), new_records=new_records, last_update=now)


def tide_realtime_stations():
    """Configured stations plus any station already present in the store."""
    stored = db.get_collection(db.TIDE_REALTIME).distinct("station_code")
    return sorted(set(TIDE_REALTIME_STATIONS) | set(s for s in stored if s))


def run_tide_realtime_all(state, stations=None, force=False, now=None, **http_options):
    try:
        stations = stations or tide_realtime_stations()
    except Exception as e:
        logger.warning(f"  Could not list stored tide stations, using configured ones: {e}")
        stations = list(TIDE_REALTIME_STATIONS)
    results = {code: run_tide_realtime(state, code, force, now, **http_options) for code in stations}
    succeeded = sum(1 for r in results.values() if r["success"])
    for code, r in results.items():
        logger.info(f"    {code}: {r['stats'].get('new_records', 0)} new ({r['stats'].get('source')})")
    status = state.status(now)
    for code, s in status.items():
        if not s["is_healthy"]:
            logger.warning(f"  ⚠️ {code}: {s['error_count']} consecutive errors, "
                           f"last good call {s['last_call_time']}")
    return _result(succeeded > 0, f"{succeeded}/{len(stations)} tide stations ok",
                   results=results, status=status)


# ── Industrial stations (upsert + day buckets) ────────────────

def run_stations(**http_options):
    label = "Industrial stations"
    try:
        stations = normalize_stations(fetch_stations(**http_options))
    except Exception as e:
        return _failure(label, e, processed=0)

    tally = {"inserted": 0, "updated": 0, "skipped": 0, "errors": 0}
    for station in stations:
        try:
            logs = station["measuring_logs"]
            outcome = upsert_station(
                dict(station, parameters=extract_parameters(logs)),
                build_measurement(station["received_at"], logs),
            )
            tally[outcome] += 1
        except Exception as e:
            tally["errors"] += 1
            logger.error(f"  ❌ Station {station['key']} failed: {e}", exc_info=True)

    written = tally["inserted"] + tally["updated"]
    logger.info(f"  {label}: {written} written, {tally['skipped']} unchanged, {tally['errors']} errors")
    return _result(tally["errors"] < len(stations),
                   f"{label}: {written} written, {tally['skipped']} unchanged",
                   processed=len(stations), **tally)


# ── Reservoir table scrape (insert-only) ──────────────────────

def run_reservoir_table(reservoir_name="Trị An", now=None, **http_options):
    now = as_vn(now) if now is not None else now_vn()
    label = f"Reservoir table {reservoir_name}"
    try:
        rows = fetch_reservoir_table(now, **http_options)
        record = normalize_reservoir_row(rows, reservoir_name, now)
        if record is None:
            return _result(False, f"{label}: no usable row on page", inserted=0)
        created = insert_if_absent(db.TRI_AN, record, ("time",))
    except Exception as e:
        return _failure(label, e, inserted=0)
    return _result(True, f"{label}: {'new reading stored' if created else 'reading already stored'}",
                   inserted=int(created), time=record["time"])


# ── Mekong (full replace per station) ─────────────────────────

def run_mekong_station(code, name, url, **http_options):
    label = f"Mekong {name}"
    try:
        records = normalize_mekong(parse_js_array(fetch_mekong(url, **http_options)), code, name)
        outcome = replace_all(db.MEKONG, records, scope={"station_code": code})
    except ReplaceError as e:
        return _failure(label, e, deleted=e.deleted, data_points=0, collection_empty=True)
    except Exception as e:
        return _failure(label, e, data_points=0)
    return _result(True, f"{label}: {outcome['inserted']} points", station_code=code,
                   data_points=outcome["inserted"], deleted=outcome["deleted"],
                   date_range=get_date_range(records, "date_gmt"))


def run_mekong(stations=None, **http_options):
    stations = stations or MEKONG_STATIONS
    results = {code: run_mekong_station(code, name, url, **http_options) for code, name, url in stations}
    succeeded = sum(1 for r in results.values() if r["success"])
    total = sum(r["stats"].get("data_points", 0) for r in results.values())
    return _result(succeeded > 0, f"{succeeded}/{len(stations)} Mekong stations refreshed",
                   success_count=succeeded, total_data_points=total, results=results)
