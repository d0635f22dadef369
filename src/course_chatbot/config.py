from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
CACHE_DIR = DATA_DIR / "cache"            # downloaded dataset copies land here

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Course Catalog Chatbot"
APP_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Dataset source
#
# The catalog is one (optionally gzip-compressed) JSON document of providers.
# It is streamed once per process; nothing is persisted between runs.
#   - PROVIDERS_DATA_PATH: local file to stream
#   - PROVIDERS_DATA_URL:  optional remote copy, downloaded into CACHE_DIR
#   - DATA_ARRAY_KEY:      when the root is an object, the key whose array
#                          holds the providers (e.g. {"records": [...]})
# ---------------------------------------------------------------------------

PROVIDERS_DATA_PATH = Path(
    os.getenv("PROVIDERS_DATA_PATH", str(DATA_DIR / "providers_with_courses.json")).strip()
)
PROVIDERS_DATA_URL = os.getenv("PROVIDERS_DATA_URL", "").strip()
DATA_ARRAY_KEY = os.getenv("DATA_ARRAY_KEY", "records").strip() or "records"

DOWNLOAD_TIMEOUT_SECONDS = _env_int("DOWNLOAD_TIMEOUT_SECONDS", 120)

# ---------------------------------------------------------------------------
# Query layer
# ---------------------------------------------------------------------------

# LRU entries kept for previously expanded queries
QUERY_CACHE_CAPACITY = _env_int("QUERY_CACHE_CAPACITY", 200)

# Rows returned to the conversational layer when the caller does not say
DEFAULT_MAX_RESULTS = _env_int("DEFAULT_MAX_RESULTS", 20)

# How many ranked candidates are kept per query (and per cache entry).
# COUNT / AVG / MIN / MAX work over this many candidates at most.
RANKING_DEPTH = _env_int("RANKING_DEPTH", 500)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
