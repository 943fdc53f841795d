# extract.py — talks to the upstream APIs (read-only)
# Builds each source's request payload and returns the raw decoded body.
# No normalization happens here; see transform.py.

import logging
from datetime import timedelta

from bs4 import BeautifulSoup
from bs4.dammit import EncodingDetector

from config import (
    API_URL_HODAUTIENG, API_URL_FORECAST_HODAUTIENG, API_URL_FORECAST,
    API_URL_TIDE_REALTIME, API_URL_BINH_DUONG, URL_TRI_AN,
    HODAUTIENG_UUID, FORECAST_HDT_UUID,
    HODAUTIENG_LOOKBACK_DAYS, FORECAST_REALTIME_DAYS, FORECAST_HORIZON_DAYS,
)
from http_client import call_with_retry
from timeutils import now_vn, as_vn, default_range, format_wire, format_query_time

logger = logging.getLogger(__name__)

PARAMETER_NAMES = {
    "MUCNUOCHO":  "Mực nước hồ",
    "QDEN":       "Dòng chảy đến hồ",
    "LUULUONGXA": "Tổng lưu lượng ra khỏi hồ",
}

ALL_HOURS = ",".join(f"{h:02d}" for h in range(24))


def build_reservoir_payload(parameter, now=None, hc_uuid=HODAUTIENG_UUID):
    """
    Realtime window request for the reservoir API: last 3 days up to now, GMT+7.
    LUULUONGXA (outflow) uses a different envelope — it also asks for a 3-day
    projection end, the current day and every hour of the day.
    """
    start, end = default_range(HODAUTIENG_LOOKBACK_DAYS, now)
    if parameter == "LUULUONGXA":
        data = {
            "hc_uuid":   hc_uuid,
            "tents":     PARAMETER_NAMES[parameter],
            "mats":      parameter,
            "mact":      "",
            "tungay":    format_wire(start),
            "denngay":   format_wire(end),
            "denngaydb": format_wire(end + timedelta(days=3)),
            "ngayht":    format_wire(end),
            "nguondb":   "2",
            "gioht":     ALL_HOURS,
            "tansuat":   60,
        }
    else:
        data = {
            "hc_uuid":   hc_uuid,
            "tents":     PARAMETER_NAMES[parameter],
            "mats":      parameter,
            "tungay":    format_wire(start),
            "denngay":   format_wire(end),
            "namdulieu": str(end.year),
            "namht":     end.year,
            "cua":       "",
            "mact":      hc_uuid,
        }
    return {"data": data, "token": ""}


def build_forecast_payload(parameter_type, now=None, station_uuid=FORECAST_HDT_UUID):
    """
    Observed window (now-1 day → now) plus forecast window (now → now+3 days)
    in one request. The response splits them into two arrays.
    """
    now = as_vn(now) if now is not None else now_vn()
    return {
        "data": {
            "hc_uuid":   station_uuid,
            "tents":     PARAMETER_NAMES.get(parameter_type, PARAMETER_NAMES["MUCNUOCHO"]),
            "mats":      parameter_type,
            "tungay":    format_wire(now - timedelta(days=FORECAST_REALTIME_DAYS)),
            "denngay":   format_wire(now),
            "tungaydb":  format_wire(now),
            "denngaydb": format_wire(now + timedelta(days=FORECAST_HORIZON_DAYS)),
            "tansuat":   60,
            "nguondb":   "2",
            "mact":      station_uuid,
            "kichban":   "0",
        },
        "token": "",
    }


def fetch_reservoir(parameter, now=None, **http_options):
    payload = build_reservoir_payload(parameter, now)
    logger.info(f"  Fetching {parameter}: {payload['data']['tungay']} → {payload['data']['denngay']}")
    return call_with_retry(API_URL_HODAUTIENG, payload, profile="hodautieng", **http_options)


def fetch_forecast(parameter_type, now=None, **http_options):
    payload = build_forecast_payload(parameter_type, now)
    d = payload["data"]
    logger.info(f"  Fetching forecast {parameter_type}: observed {d['tungay']} → {d['denngay']}, "
                f"forecast {d['tungaydb']} → {d['denngaydb']}")
    return call_with_retry(API_URL_FORECAST_HODAUTIENG, payload, profile="hodautieng", **http_options)


def fetch_tide_forecast(location, **http_options):
    url = f"{API_URL_FORECAST.rstrip('/')}/{location}"
    logger.info(f"  Fetching tide forecast for {location}")
    return call_with_retry(url, method="GET", profile="default", **http_options)


def fetch_tide_realtime(station_code, **http_options):
    if not API_URL_TIDE_REALTIME:
        raise ValueError("API_URL_TIDE_REALTIME is not configured")
    logger.info(f"  Fetching realtime tide for {station_code}")
    return call_with_retry(API_URL_TIDE_REALTIME, {}, params={"stationcode": station_code},
                           profile="tide_realtime", **http_options)


def fetch_stations(**http_options):
    logger.info("  Fetching industrial station logs")
    return call_with_retry(API_URL_BINH_DUONG, method="GET", profile="default", **http_options)


def fetch_mekong(url, **http_options):
    """The Mekong feed is a JavaScript literal, not JSON — returned as text."""
    if not url:
        raise ValueError("Mekong station URL is not configured")
    return call_with_retry(url, method="GET", expect="text", profile="default", **http_options)


def fetch_reservoir_table(now=None, **http_options):
    """The EVN reservoir page, rendered for `now` (GMT+7). Fetched as bytes, decoded by the parser."""
    now = as_vn(now) if now is not None else now_vn()
    html = call_with_retry(URL_TRI_AN, method="GET", params={"td": format_query_time(now)},
                           expect="bytes", profile="fast", **http_options)
    return parse_reservoir_table(html)


def _decode_page(raw):
    """The page's own <meta charset> wins; the EVN site serves UTF-8 when it declares nothing."""
    encoding = EncodingDetector.find_declared_encoding(raw, is_html=True) or "utf-8"
    try:
        return raw.decode(encoding, errors="replace")
    except LookupError:
        logger.warning(f"  reservoir table: unknown charset {encoding!r}, reading as UTF-8")
        return raw.decode("utf-8", errors="replace")


def parse_reservoir_table(html):
    """
    First table.tblgridtd on the page → list of {header: cell text}.
    Accepts the raw bytes of the page or already-decoded text.
    The "ΣQx" header is renamed "sumQx" so it can be used as a plain key.
    """
    if isinstance(html, bytes):
        html = _decode_page(html)
    soup = BeautifulSoup(html, "html.parser")
    table = soup.select_one("table.tblgridtd")
    if table is None:
        logger.warning("  reservoir table: table.tblgridtd not found on page")
        return []

    grid = []
    for tr in table.find_all("tr"):
        cells = [c.get_text(strip=True) for c in tr.find_all(["td", "th"])]
        if cells:
            grid.append(cells)
    if len(grid) < 2:
        return []

    headers = ["sumQx" if h == "ΣQx" else h for h in grid[0]]
    return [dict(zip(headers, row)) for row in grid[1:]]
