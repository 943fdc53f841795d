# transform.py — all normalization logic: upstream shape → fixed record schema
# Every function here is pure. Records that cannot be normalized are dropped with a
# warning; only a response with nothing usable in it raises NormalizationError.

import json
import math
import re
import hashlib
import logging
from datetime import datetime

from config import CALIBRATION_OFFSETS_CM
from timeutils import (
    parse_timestamp, parse_dotnet_date, to_store, from_store, as_vn, now_vn,
    format_vn_display, vn_day_start,
)

logger = logging.getLogger(__name__)


class NormalizationError(Exception):
    """Upstream response had no usable array, or nothing in it survived normalization."""


def safe_get(data, key):
    """Safely extract a key from a dict (handles None and non-dict values)."""
    if isinstance(data, dict):
        return data.get(key)
    return None


def safe_numeric(val):
    """Convert to a finite float or None. Booleans are not numbers here."""
    if val is None or isinstance(val, bool):
        return None
    try:
        num = float(val)
    except (ValueError, TypeError):
        return None
    return num if math.isfinite(num) else None


def to_num(text):
    """Scraped cell → float. Accepts a decimal comma; anything else is 0."""
    num = safe_numeric(str(text).strip().replace(",", ".")) if text is not None else None
    return num if num is not None else 0.0


# ── Candidate extractors ──────────────────────────────────────
# Upstreams name the same quantity differently per parameter type, so each
# parameter gets an ordered list of (name, extractor). First non-None wins.

def numeric_field(name):
    return name, lambda row: safe_numeric(safe_get(row, name))


def time_field(name):
    return name, lambda row: parse_timestamp(safe_get(row, name))


VALUE_EXTRACTORS = {
    "MUCNUOCHO": [numeric_field(n) for n in ("mucnuocho", "value", "giatri", "val", "data")],
    "QDEN":      [numeric_field(n) for n in ("qden", "qvao", "value", "giatri", "val", "data")],
}
DEFAULT_VALUE_EXTRACTORS = [numeric_field(n) for n in ("value", "giatri", "val", "data")]

TIME_EXTRACTORS = [time_field(n) for n in ("data_thoigian", "timestamp", "time", "thoigian", "ngay")]


def value_extractors(parameter_type):
    return VALUE_EXTRACTORS.get(parameter_type, DEFAULT_VALUE_EXTRACTORS)


def first_match(row, extractors):
    """Run extractors in order; return (field_name, value) of the first hit or (None, None)."""
    for name, extract in extractors:
        value = extract(row)
        if value is not None:
            return name, value
    return None, None


def require_rows(raw, *fields):
    """
    Return the first non-empty list found under any of `fields`.
    Why: one API family nests rows under dtDataTable, another under dtData —
         absence of a non-empty array is a normalization failure, not a crash.
    """
    for f in fields:
        rows = safe_get(raw, f)
        if isinstance(rows, list) and rows:
            return rows
    raise NormalizationError(f"Response has no non-empty array under {' / '.join(fields)}")


def _survivors(records, dropped, label):
    if dropped:
        logger.warning(f"  {label}: dropped {dropped} unparseable rows")
    if not records:
        raise NormalizationError(f"{label}: no records survived normalization")
    return records


# ── Reservoir level / inflow / outflow ────────────────────────

def _reservoir_series(raw, fields, parameter_type, value_key, unit, label):
    rows = require_rows(raw, *fields)
    records, dropped = [], 0
    for row in rows:
        _, ts = first_match(row, TIME_EXTRACTORS)
        _, value = first_match(row, value_extractors(parameter_type))
        if ts is None or value is None:
            dropped += 1
            continue
        records.append({
            "timestamp":    to_store(ts),
            "display_time": safe_get(row, "data_thoigian_hienthi") or format_vn_display(ts),
            value_key:      value,
            "unit":         unit,
        })
    return _survivors(_dedupe(records, "timestamp"), dropped, label)


def normalize_reservoir_level(raw):
    return _reservoir_series(raw, ("dtDataTable", "dtData"), "MUCNUOCHO", "level", "m", "reservoir level")


def normalize_reservoir_inflow(raw):
    return _reservoir_series(raw, ("dtDataTable", "dtData"), "QDEN", "rate", "m³/s", "reservoir inflow")


def normalize_reservoir_outflow(raw):
    """
    Outflow rows carry the total discharge plus its three splits.
    Spillway and hydropower are often null upstream — kept as None, not 0.
    """
    rows = require_rows(raw, "dtData", "dtDataTable")
    records, dropped = [], 0
    for row in rows:
        _, ts = first_match(row, TIME_EXTRACTORS)
        discharge = safe_numeric(safe_get(row, "luuluongxa"))
        if ts is None or discharge is None:
            dropped += 1
            continue
        records.append({
            "timestamp":    to_store(ts),
            "display_time": safe_get(row, "data_thoigian_hienthi") or format_vn_display(ts),
            "discharge":    discharge,
            "gate":         safe_numeric(safe_get(row, "luuluongcong")),
            "spillway":     safe_numeric(safe_get(row, "luuluongtran")),
            "hydropower":   safe_numeric(safe_get(row, "luuluongthuydien")),
            "unit":         "m³/s",
        })
    return _survivors(_dedupe(records, "timestamp"), dropped, "reservoir outflow")


def _dedupe(records, *key_fields):
    """Last row wins for a repeated key, order of first appearance kept."""
    seen = {}
    for r in records:
        seen[tuple(r[k] for k in key_fields)] = r
    return list(seen.values())


# ── Reservoir forecast (observed + projected in one response) ─

def normalize_forecast(raw, parameter_type, hc_uuid, now=None):
    """
    One response, two arrays: dtDataQuanTrac (observed) and dtDataDuBao (projected).
    Each row is tagged data_source="realtime"|"forecast"; forecast rows also get
    forecast_horizon = hours ahead of `now`, rounded, never negative.
    """
    now = as_vn(now) if now is not None else now_vn()
    sections = (("realtime", safe_get(raw, "dtDataQuanTrac")), ("forecast", safe_get(raw, "dtDataDuBao")))
    if not any(isinstance(rows, list) and rows for _, rows in sections):
        raise NormalizationError("Response has no non-empty dtDataQuanTrac / dtDataDuBao")

    records, dropped = [], 0
    for data_source, rows in sections:
        for row in rows or []:
            _, ts = first_match(row, TIME_EXTRACTORS)
            _, value = first_match(row, value_extractors(parameter_type))
            if ts is None or value is None:
                dropped += 1
                continue
            horizon = 0
            if data_source == "forecast":
                hours_ahead = (ts - now).total_seconds() / 3600
                horizon = max(0, math.floor(hours_ahead + 0.5))  # .5 rounds up
            records.append({
                "hc_uuid":          hc_uuid,
                "parameter_type":   parameter_type,
                "timestamp":        to_store(ts),
                "value":            value,
                "data_source":      data_source,
                "forecast_horizon": horizon,
                "raw_data":         row,
            })
    records = _dedupe(records, "hc_uuid", "parameter_type", "timestamp", "data_source")
    return _survivors(records, dropped, f"forecast {parameter_type}")


# ── Tide forecast ─────────────────────────────────────────────

def normalize_tide_forecast(raw, location):
    """
    Body: {"message": "", "data": "{'Time': [...], 'data': [...]}"}
    `data` is a single-quoted pseudo-JSON string with two parallel arrays.
    A non-empty message is the upstream telling us it failed.
    """
    message = safe_get(raw, "message")
    if message:
        raise NormalizationError(f"Tide forecast upstream error: {message}")
    payload = safe_get(raw, "data")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload.replace("'", '"'))
        except ValueError as e:
            raise NormalizationError(f"Tide forecast data is not parseable: {e}")
    times = safe_get(payload, "Time") or []
    values = safe_get(payload, "data") or []
    if not times or not values:
        raise NormalizationError("Tide forecast response has no Time/data arrays")
    if len(times) != len(values):
        raise NormalizationError(
            f"Tide forecast {location}: {len(times)} times vs {len(values)} values"
        )

    records, dropped = [], 0
    for t, v in zip(times, values):
        ts = parse_timestamp(t)
        tide = safe_numeric(v)
        if ts is None or tide is None:
            dropped += 1
            continue
        records.append({"date": to_store(ts), "tide": tide, "location": location})
    return _survivors(_dedupe(records, "date", "location"), dropped, f"tide forecast {location}")


def tide_range(records):
    if not records:
        return None
    tides = [r["tide"] for r in records]
    return {"min": min(tides), "max": max(tides)}


# ── Tide realtime ─────────────────────────────────────────────

def apply_calibration(station_code, value_cm):
    """Fixed per-station offset (cm). Stations without one pass through unchanged."""
    return round(value_cm + CALIBRATION_OFFSETS_CM.get(station_code, 0.0), 3)


def normalize_tide_realtime(raw, station_code, station_name=None):
    """
    Body: [{"ThoiGian": "/Date(1718000000000)/", "GiaTri": 1.23}, ...] — metres.
    Output is cm, calibrated, deduplicated by epoch and sorted oldest first.
    """
    if not isinstance(raw, list) or not raw:
        raise NormalizationError("Tide realtime response is not a non-empty array")

    by_epoch, dropped = {}, 0
    for row in raw:
        millis = parse_dotnet_date(safe_get(row, "ThoiGian"))
        metres = safe_numeric(safe_get(row, "GiaTri"))
        if millis is None or metres is None:
            dropped += 1
            continue
        ts = parse_timestamp(millis)
        by_epoch[millis] = {
            "station_code": station_code,
            "station_name": station_name,
            "timestamp":    millis,
            "utc":          to_store(ts),
            "vietnam_time": format_vn_display(ts),
            "water_level":  apply_calibration(station_code, metres * 100),
            "unit":         "cm",
            "data_type":    "real",
            "status":       "active",
        }
    records = [by_epoch[k] for k in sorted(by_epoch)]
    return _survivors(records, dropped, f"tide realtime {station_code}")


# ── Mekong (JavaScript array literal feed) ────────────────────

_UNQUOTED_KEY = re.compile(r'([{,]\s*)([A-Za-z_]\w*)\s*:')
_TRAILING_COMMA = re.compile(r",\s*([\]}])")


def parse_js_array(text):
    """
    The Mekong feed returns a JS array literal: unquoted keys, trailing commas.
    Coerce it to JSON and parse.
    """
    if not isinstance(text, str):
        raise NormalizationError("Mekong response is not text")
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end == -1:
        raise NormalizationError("Mekong response has no array")
    body = text[start:end + 1]
    body = _TRAILING_COMMA.sub(r"\1", body)
    body = _UNQUOTED_KEY.sub(r'\1"\2":', body)
    try:
        rows = json.loads(body)
    except ValueError as e:
        raise NormalizationError(f"Mekong array is not parseable: {e}")
    if not isinstance(rows, list):
        raise NormalizationError("Mekong payload is not an array")
    return rows


def normalize_mekong(rows, station_code, station_name):
    if not rows:
        raise NormalizationError(f"Mekong {station_name}: empty array")
    records, dropped = [], 0
    for row in rows:
        ts = parse_timestamp(safe_get(row, "date_gmt"))
        val = safe_numeric(safe_get(row, "val"))
        if ts is None or val is None:
            dropped += 1
            continue
        records.append({
            "date_gmt":     to_store(ts),
            "val":          val,
            "ft":           safe_numeric(safe_get(row, "ft")),
            "as":           safe_numeric(safe_get(row, "as")),
            "av":           safe_numeric(safe_get(row, "av")),
            "P":            safe_numeric(safe_get(row, "P")),
            "line_color":   safe_get(row, "lineColor") or "#0066FF",
            "station_code": station_code,
            "station_name": station_name,
            "data_type":    "mekong",
        })
    return _survivors(_dedupe(records, "date_gmt", "station_code"), dropped, f"Mekong {station_name}")


# ── Reservoir table scrape (Trị An) ───────────────────────────

RESERVOIR_SLUGS = {
    "Tuyên Quang": "tuyen_quang", "Lai Châu": "lai_chau", "Bản Chát": "ban_chat",
    "Huội Quảng": "huoi_quang", "Sơn La": "son_la", "Hòa Bình": "hoa_binh",
    "Thác Bà": "thac_ba", "Trung Sơn": "trung_son", "Bản Vẽ": "ban_ve",
    "Quảng Trị": "quang_tri", "A Vương": "a_vuong", "Sông Bung 2": "song_bung_2",
    "Vĩnh Sơn A": "vinh_son_a", "Sông Bung 4": "song_bung_4", "Vĩnh Sơn B": "vinh_son_b",
    "Vĩnh Sơn C": "vinh_son_c", "Sông Tranh 2": "song_tranh_2", "Sông Ba Hạ": "song_ba_ha",
    "Sông Hinh": "song_hinh", "Thượng Kon Tum": "thuong_kon_tum", "Pleikrông": "pleikrong",
    "Ialy": "ialy", "Sê San 3": "se_san_3", "Sê San 3A": "se_san_3a", "Sê San 4": "se_san_4",
    "Kanak": "kanak", "An Khê": "an_khe", "Srêpốk 3": "srepok_3", "Buôn Kuốp": "buon_kuop",
    "Buôn Tua Srah": "buon_tua_srah", "Đồng Nai 3": "dong_nai_3", "Đồng Nai 4": "dong_nai_4",
    "Đơn Dương": "don_duong", "Đại Ninh": "dai_ninh", "Hàm Thuận": "ham_thuan",
    "Đa Mi": "da_mi", "Trị An": "tri_an", "Thác Mơ": "thac_mo",
}

_HOUR_TOKEN = re.compile(r"^(\d{1,2}):(\d{2})$")
_DAY_TOKEN  = re.compile(r"^(\d{1,2})/(\d{1,2})$")


def parse_reservoir_time(text, now):
    """
    "Thời điểm" cells look like "7:00 18/10" — no year. Use the current GMT+7 year,
    or last year when that month hasn't happened yet (a December reading read in January).
    """
    if not isinstance(text, str):
        return None
    hour = minute = day = month = None
    for token in text.split():
        m = _HOUR_TOKEN.match(token)
        if m and hour is None:
            hour, minute = int(m.group(1)), int(m.group(2))
        m = _DAY_TOKEN.match(token)
        if m and day is None:
            day, month = int(m.group(1)), int(m.group(2))
    if hour is None or day is None:
        return None
    now = as_vn(now)
    year = now.year - 1 if month > now.month else now.year
    try:
        return now.replace(year=year, month=month, day=day, hour=hour, minute=minute,
                           second=0, microsecond=0)
    except ValueError:
        return None


def normalize_reservoir_row(rows, reservoir_name, now):
    """
    Pick the row for `reservoir_name` out of the scraped table and convert it.
    Returns None when the reservoir or its time cell is missing — the page is
    routinely mid-update, that is not an error.
    """
    row = next((r for r in rows if reservoir_name in (r.get("Tên hồ") or "")), None)
    if row is None:
        logger.warning(f"  reservoir table: no row for {reservoir_name}")
        return None
    ts = parse_reservoir_time(row.get("Thời điểm"), now)
    if ts is None:
        logger.warning(f"  reservoir table: unparseable time {row.get('Thời điểm')!r}")
        return None

    qxt, qxm = to_num(row.get("Qxt")), to_num(row.get("Qxm"))
    sum_qx = to_num(row.get("sumQx")) or round(qxt + qxm, 3)
    return {
        "reservoir": RESERVOIR_SLUGS.get(reservoir_name, reservoir_name),
        "time":      to_store(ts),
        "htl":       to_num(row.get("Htl")),
        "hdbt":      to_num(row.get("Hdbt")),
        "hc":        to_num(row.get("Hc")),
        "qve":       to_num(row.get("Qve")),
        "sumQx":     sum_qx,
        "qxt":       qxt,
        "qxm":       qxm,
        "ncxs":      to_num(row.get("Ncxs")),
        "ncxm":      to_num(row.get("Ncxm")),
    }


# ── Industrial stations ───────────────────────────────────────

def transform_measuring_logs(logs):
    """{param: {value, unit, warningLevel, statusDevice}} — limits live in metadata."""
    out = {}
    for key, entry in (logs or {}).items():
        if not isinstance(entry, dict):
            continue
        out[key] = {
            "value":        entry.get("value"),
            "unit":         entry.get("unit"),
            "warningLevel": entry.get("warningLevel"),
            "statusDevice": entry.get("statusDevice"),
        }
    return out


def extract_parameters(logs):
    """Parameter catalogue for the metadata document."""
    return [
        {
            "key":      entry.get("key", key),
            "name":     entry.get("name", key),
            "unit":     entry.get("unit"),
            "maxLimit": entry.get("maxLimit"),
            "minLimit": entry.get("minLimit"),
            "dataType": "number",
        }
        for key, entry in (logs or {}).items()
        if isinstance(entry, dict)
    ]


def build_measurement(timestamp, logs, quality="good"):
    """One bucket entry. Live ingestion and migration both build entries here."""
    return {"timestamp": timestamp, "data": transform_measuring_logs(logs), "quality": quality}


def normalize_stations(raw):
    """
    Body: {"data": [{key, name, address, mapLocation, province, stationType,
                     receivedAt, measuringLogs}, ...]}
    """
    rows = require_rows(raw, "data")
    stations, dropped = [], 0
    for row in rows:
        key = safe_get(row, "key")
        received = parse_timestamp(safe_get(row, "receivedAt"))
        if not key or received is None:
            dropped += 1
            continue
        stations.append({
            "key":            key,
            "name":           row.get("name"),
            "address":        row.get("address"),
            "map_location":   row.get("mapLocation"),
            "province":       row.get("province"),
            "station_type":   row.get("stationType"),
            "received_at":    to_store(received),
            "measuring_logs": row.get("measuringLogs") or {},
        })
    return _survivors(stations, dropped, "industrial stations")


def content_hash(measurements):
    """md5 over [{t, d}] — identical bucket content hashes identically."""
    compact = [
        {"t": m["timestamp"].isoformat() if isinstance(m["timestamp"], datetime) else m["timestamp"],
         "d": m["data"]}
        for m in measurements
    ]
    return hashlib.md5(json.dumps(compact, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def _legacy_time(value):
    if isinstance(value, datetime) and value.tzinfo is None:
        return from_store(value)
    return parse_timestamp(value)


def migrate_station_document(old, quality="migrated"):
    """
    Legacy station document → {metadata, current, buckets}.

    Legacy shape: {key, name, address, mapLocation, province, stationType,
                   currentData: {receivedAt, measuringLogs},
                   history: [{timestamp, measuringLogs}, ...]}

    History entries are grouped by GMT+7 calendar day, ordered by time, and
    each bucket carries count and a content hash so re-running the migration
    over the same input produces the same buckets.
    """
    key = old.get("key")
    if not key:
        raise ValueError("legacy station document has no key")

    current_src = old.get("currentData") or {}
    latest_logs = current_src.get("measuringLogs") or {}
    metadata = {
        "key":          key,
        "name":         old.get("name"),
        "address":      old.get("address"),
        "map_location": old.get("mapLocation"),
        "province":     old.get("province"),
        "station_type": old.get("stationType"),
        "parameters":   extract_parameters(latest_logs),
        "is_active":    True,
    }

    current = None
    received = _legacy_time(current_src.get("receivedAt"))
    if received is not None:
        current = {
            "station_key": key,
            "received_at": to_store(received),
            "data":        transform_measuring_logs(latest_logs),
            "raw_data":    latest_logs,
        }

    days, skipped = {}, 0
    for entry in old.get("history") or []:
        ts = _legacy_time(entry.get("timestamp"))
        if ts is None:
            skipped += 1
            continue
        days.setdefault(vn_day_start(ts), []).append(
            build_measurement(to_store(ts), entry.get("measuringLogs"), quality)
        )
    if skipped:
        logger.warning(f"  migration {key}: skipped {skipped} history entries without a usable timestamp")

    buckets = []
    for bucket_date in sorted(days):
        measurements = sorted(days[bucket_date], key=lambda m: m["timestamp"])
        buckets.append({
            "station_key":  key,
            "bucket_date":  bucket_date,
            "measurements": measurements,
            "count":        len(measurements),
            "data_hash":    content_hash(measurements),
        })
    return {"metadata": metadata, "current": current, "buckets": buckets}
