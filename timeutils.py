# timeutils.py — GMT+7 clock, upstream wire formats and date-range helpers
# Upstream APIs speak local Vietnam time (no DST). The store keeps naive UTC datetimes,
# which is what pymongo hands back on read.

import math
import re
import logging
from datetime import datetime, timedelta, timezone
from dateutil import parser as dateparser

logger = logging.getLogger(__name__)

VN_TZ = timezone(timedelta(hours=7), "GMT+7")

WIRE_FORMAT   = "%Y-%m-%d %H:%M:%S"   # strptime accepts the non-padded variant too
_SLASH_DATE   = re.compile(r"^\s*\d{1,2}/\d{1,2}/\d{4}(\s+\d{1,2}:\d{2}(:\d{2})?)?\s*$")
_DOTNET_DATE  = re.compile(r"/Date\((-?\d+)\)/")


def now_vn():
    return datetime.now(VN_TZ)


def as_vn(dt):
    """Naive datetimes are read as GMT+7 wall time."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=VN_TZ)
    return dt.astimezone(VN_TZ)


def to_store(dt):
    """
    Aware datetime → naive UTC, the form persisted in every collection.
    Truncated to milliseconds, the precision the store keeps, so a value read
    back compares equal to the one that was written.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=VN_TZ)
    dt = dt.replace(microsecond=dt.microsecond // 1000 * 1000)
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def from_store(dt):
    """Naive UTC datetime read back from the store → aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def format_wire(dt):
    """
    Upstream request format: "YYYY-M-D H:m:s", no zero padding, GMT+7.
    e.g. 2025-07-05 08:03:09+07:00 → "2025-7-5 8:3:9"
    """
    dt = as_vn(dt)
    return f"{dt.year}-{dt.month}-{dt.day} {dt.hour}:{dt.minute}:{dt.second}"


def parse_wire(text):
    return datetime.strptime(text.strip(), WIRE_FORMAT).replace(tzinfo=VN_TZ)


def format_vn_display(dt):
    """Localized display string, e.g. "14:00:00 18/10/2026"."""
    return as_vn(dt).strftime("%H:%M:%S %d/%m/%Y")


def format_query_time(dt):
    """DD/MM/YYYY HH:mm — the query-string format the reservoir table page expects."""
    return as_vn(dt).strftime("%d/%m/%Y %H:%M")


def default_range(days=3, now=None):
    """(start, end) lookback window ending now, both GMT+7."""
    end = as_vn(now) if now is not None else now_vn()
    return end - timedelta(days=days), end


def parse_timestamp(value):
    """
    Accepts what the upstreams actually send and returns an aware datetime, or None.
      - datetime (naive = GMT+7)
      - int/float epoch milliseconds
      - "/Date(1718000000000)/"
      - ISO-8601 ("2025-07-01T10:00:00", with or without offset)
      - "D/M/YYYY HH:mm" local time
      - "YYYY-M-D H:m:s" wire format
    Never raises — callers drop the record and log.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return as_vn(value)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    millis = parse_dotnet_date(text)
    if millis is not None:
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)

    if _SLASH_DATE.match(text):
        try:
            return as_vn(dateparser.parse(text, dayfirst=True))
        except (ValueError, OverflowError):
            return None

    try:
        return as_vn(dateparser.isoparse(text))
    except (ValueError, OverflowError):
        pass
    try:
        return parse_wire(text)
    except ValueError:
        return None


def parse_dotnet_date(text):
    """"/Date(ms)/" → int ms, or None."""
    if not isinstance(text, str):
        return None
    match = _DOTNET_DATE.search(text)
    return int(match.group(1)) if match else None


def vn_day_start(dt):
    """Start of the GMT+7 calendar day containing dt, as a stored (naive UTC) datetime."""
    local = as_vn(dt) if dt.tzinfo is not None else from_store(dt).astimezone(VN_TZ)
    return to_store(local.replace(hour=0, minute=0, second=0, microsecond=0))


def get_date_range(records, field):
    """
    Min/max of `field` over records. Returns None when nothing parses.
    total_days is ceil((end - start) / 1 day).
    """
    dates = []
    for r in records:
        raw = r.get(field) if isinstance(r, dict) else None
        if isinstance(raw, datetime) and raw.tzinfo is None:
            parsed = from_store(raw)
        else:
            parsed = parse_timestamp(raw)
        if parsed is not None:
            dates.append(parsed)
    if not dates:
        return None
    start, end = min(dates), max(dates)
    return {
        "start":      start,
        "end":        end,
        "start_iso":  start.isoformat(),
        "end_iso":    end.isoformat(),
        "total_days": math.ceil((end - start).total_seconds() / 86400),
    }


def next_aligned_run(now_ts, interval_sec, offset_sec=0):
    """
    Next epoch second that falls on a multiple of interval_sec on the GMT+7 wall clock,
    so 3600 fires at :00 and 10800 fires at 00:00, 03:00, 06:00 ... local.
    offset_sec shifts the slots: (86400, 7200) fires daily at 02:00 local.
    """
    shift = 7 * 3600 - offset_sec
    local = now_ts + shift
    return (math.floor(local / interval_sec) + 1) * interval_sec - shift
