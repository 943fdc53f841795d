# config.py — all connection settings, upstream URLs and station ids in one place
import os
from dotenv import load_dotenv
load_dotenv()


def _csv(name, default):
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


# ── Document store (MongoDB) ──────────────────────────────────
MONGO_URI        = os.getenv("MONGO_URI", "mongodb://127.0.0.1:27017/project-water-level-forecast")
MONGO_DB         = os.getenv("MONGO_DB", "project-water-level-forecast")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

# ── Upstream endpoints ────────────────────────────────────────
API_URL_HODAUTIENG          = os.getenv("API_URL_HODAUTIENG",
                                        "https://hodautieng.vn/jaxrs/QuanTracHoChua/getDataQuanTracMobile")
API_URL_FORECAST_HODAUTIENG = os.getenv("API_URL_FORECAST_HODAUTIENG", API_URL_HODAUTIENG)
API_URL_FORECAST            = os.getenv("API_URL_FORECAST", "https://marinemekong.com/admin/api/station_get")
API_URL_TIDE_REALTIME       = os.getenv("API_URL_TIDE_REALTIME", "")
API_URL_BINH_DUONG          = os.getenv(
    "API_URL_BINH_DUONG",
    "https://thongtinmoitruong.quantracbinhduong.vn/api/station-auto-logs?stationType=5f55a0292fd98d0011cf5809",
)
URL_TRI_AN                  = os.getenv("URL_TRI_AN",
                                        "https://hochuathuydien.evn.com.vn/PageHoChuaThuyDienEmbedEVN.aspx")
URL_API_MEKONG_CHAU_DOC     = os.getenv("URL_API_MEKONG_CHAU_DOC", "")
URL_API_MEKONG_TAN_CHAU     = os.getenv("URL_API_MEKONG_TAN_CHAU", "")

HTTP_USER_AGENT = "Hydrology-Dashboard/1.0"

# ── Station / location identifiers ────────────────────────────
HODAUTIENG_UUID   = os.getenv("HODAUTIENG_UUID", "613bbcf5-212e-43c5-9ef8-69016787454f")
FORECAST_HDT_UUID = os.getenv("STATIONUUID_FORECAST_HDT", HODAUTIENG_UUID)

VUNG_TAU_STATION       = "4EC7BBAF-44E7-4DFA-BAED-4FB1217FBDA8"
TIDE_REALTIME_STATIONS = _csv("TIDE_REALTIME_STATIONS", VUNG_TAU_STATION)
TIDE_FORECAST_LOCATIONS = _csv("TIDE_FORECAST_LOCATIONS", "VUNGTAU")

MEKONG_STATIONS = [
    # (code, name, url)
    ("CDO", "ChauDoc", URL_API_MEKONG_CHAU_DOC),
    ("TCH", "TanChau", URL_API_MEKONG_TAN_CHAU),
]

# Added to the cm value at normalization time
CALIBRATION_OFFSETS_CM = {
    VUNG_TAU_STATION: -288.5,
}

# ── Retry profiles (ms) ───────────────────────────────────────
RETRYABLE_STATUS     = (408, 429, 500, 502, 503, 504)

RETRY_PROFILES = {
    "default":       {"max_retries": 3, "timeout_ms": 30000, "base_delay_ms": 1000, "max_delay_ms": 10000},
    "hodautieng":    {"max_retries": 3, "timeout_ms": 30000, "base_delay_ms": 1000, "max_delay_ms": 10000},
    "fast":          {"max_retries": 2, "timeout_ms": 15000, "base_delay_ms": 500,  "max_delay_ms": 5000},
    "aggressive":    {"max_retries": 5, "timeout_ms": 60000, "base_delay_ms": 2000, "max_delay_ms": 30000},
    "tide_realtime": {"max_retries": 3, "timeout_ms": 10000, "base_delay_ms": 1000, "max_delay_ms": 10000},
}
JITTER_RATIO = 0.3

# ── Windows ───────────────────────────────────────────────────
HODAUTIENG_LOOKBACK_DAYS   = 3
FORECAST_REALTIME_DAYS     = 1
FORECAST_HORIZON_DAYS      = 3
FORECAST_PARAMETERS        = ["MUCNUOCHO", "QDEN"]
FORECAST_PARAMETER_PAUSE_SEC = 2

# ── Tide realtime call policy ─────────────────────────────────
TIDE_CALL_EVERY_HOURS     = 3     # hour of day (GMT+7) must be divisible by this
TIDE_CALL_WINDOW_MINUTES  = 5     # ...and minute within [0, 5]
TIDE_MIN_INTERVAL_HOURS   = 6
TIDE_ERROR_THRESHOLD      = 3     # more than this many straight errors → back off
TIDE_ERROR_BACKOFF_HOURS  = 12
TIDE_MERGE_WINDOW         = 50
TIDE_SAVE_CAP             = 100

# ── Schedules: (interval seconds, startup delay seconds[, slot offset seconds]) ──
SCHEDULES = {
    "hodautieng":          (int(os.getenv("HODAUTIENG_INTERVAL_SEC", "3600")), 10),
    "reservoir_forecast":  (int(os.getenv("FORECAST_INTERVAL_SEC", "3600")), 10),
    "tide_forecast":       (int(os.getenv("TIDE_FORECAST_INTERVAL_SEC", "3600")), 20),
    "tide_realtime":       (int(os.getenv("TIDE_REALTIME_INTERVAL_SEC", "10800")), 5),
    "binh_duong":          (int(os.getenv("BINH_DUONG_INTERVAL_SEC", "1800")), 15),
    "tri_an":              (int(os.getenv("TRI_AN_INTERVAL_SEC", "60")), 30),
    "mekong":              (int(os.getenv("MEKONG_INTERVAL_SEC", "3600")), 15),
    "forecast_cleanup":    (86400, 60, 2 * 3600),   # daily at 02:00 GMT+7
    "forecast_health":     (1800, 60),
}
MAX_CONSECUTIVE_FAILURES = 10

# ── Forecast housekeeping ─────────────────────────────────────
FORECAST_RETENTION_DAYS = int(os.getenv("FORECAST_RETENTION_DAYS", "365"))
FORECAST_FRESHNESS_HOURS = 2

# ── Logging ───────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE  = os.getenv("LOG_FILE", "hydro_etl.log")
