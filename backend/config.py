"""
backend/config.py

Environment-based settings, read once at import time.

    OUTBREAK_DB_PATH        DuckDB file (":memory:" keeps everything in-process)
    DEFAULT_HORIZON_MONTHS  months forecast when the caller does not say
    MAX_HORIZON_MONTHS      upper bound accepted by the API
    FORECAST_WORKERS        thread-pool size for the per-disease fan-out
    DAY_PATTERN_LIMIT       top-N historical days turned into dated predictions
    SEED_SAMPLE_DATA        "1" loads backend/sample_data.py into an empty store
    LOG_LEVEL               root logging level for the API process
"""

import os

DB_PATH                = os.getenv("OUTBREAK_DB_PATH", ":memory:")
DEFAULT_HORIZON_MONTHS = int(os.getenv("DEFAULT_HORIZON_MONTHS", "3"))
MAX_HORIZON_MONTHS     = int(os.getenv("MAX_HORIZON_MONTHS", "60"))
FORECAST_WORKERS       = int(os.getenv("FORECAST_WORKERS", "4"))
DAY_PATTERN_LIMIT      = int(os.getenv("DAY_PATTERN_LIMIT", "5"))
SEED_SAMPLE_DATA       = os.getenv("SEED_SAMPLE_DATA", "0").strip().lower() in {"1", "true", "yes"}
LOG_LEVEL              = os.getenv("LOG_LEVEL", "INFO").upper()
