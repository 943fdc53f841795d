# db.py — manages the shared MongoDB client and collection handles
import logging
from pymongo import MongoClient
from config import MONGO_URI, MONGO_DB, MONGO_TIMEOUT_MS

logger = logging.getLogger(__name__)

# ── Collection names ──────────────────────────────────────────
RESERVOIR_LEVEL    = "mucnuocho"
RESERVOIR_INFLOW   = "qden"
RESERVOIR_OUTFLOW  = "luuluongxa"
RESERVOIR_FORECAST = "forecast_data"
TIDE_FORECAST      = "tides"
TIDE_REALTIME      = "tide_realy_data"
STATION_METADATA   = "station_metadata_v2"
STATION_CURRENT    = "current_data_v2"
STATION_BUCKETS    = "timeseries_buckets_v2"
STATION_LEGACY     = "binhduongs"
TRI_AN             = "trians"
MEKONG             = "mekong_data"

# One client per process — pymongo pools connections internally and is thread-safe
_client = None


def get_client():
    global _client
    if _client is None:
        _client = MongoClient(MONGO_URI, serverSelectionTimeoutMS=MONGO_TIMEOUT_MS)
        logger.info("MongoDB client created")
    return _client


def get_db():
    """Database handle every module writes through. Tests patch this."""
    return get_client()[MONGO_DB]


def get_collection(name):
    return get_db()[name]


def ping():
    """Raise if the store is unreachable (pymongo connects lazily)."""
    get_client().admin.command("ping")


def close():
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB client closed")
