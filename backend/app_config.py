"""
Claims Insight — environment configuration and logging setup.

Values come from backend/.env (if present) and the process environment.
Every numeric setting has a default; a malformed value falls back to it.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default


# ── Storage ──
SUPABASE_URL = os.environ.get('SUPABASE_URL')
SUPABASE_KEY = os.environ.get('SUPABASE_SERVICE_KEY')
STORAGE_CONFIGURED = bool(SUPABASE_URL and SUPABASE_KEY)

# ── Catalog ──
CATALOG_TTL_SECONDS = _env_int('CATALOG_TTL_SECONDS', 300)  # 5 minutes

# Every external fetch (catalog refresh, daily series) is bounded by this
FETCH_TIMEOUT_SECONDS = _env_float('FETCH_TIMEOUT_SECONDS', 10.0)

# ── Validation ──
MAX_TIME_RANGE_DAYS = _env_int('MAX_TIME_RANGE_DAYS', 730)
MAX_RESULT_LIMIT = _env_int('MAX_RESULT_LIMIT', 10000)
DEFAULT_TIME_RANGE_DAYS = _env_int('DEFAULT_TIME_RANGE_DAYS', 30)

# ── Anomaly detection ──
ANOMALY_LOOKBACK_DAYS = _env_int('ANOMALY_LOOKBACK_DAYS', 30)
ANOMALY_Z_THRESHOLD = _env_float('ANOMALY_Z_THRESHOLD', 2.0)
ANOMALY_CONCURRENCY = _env_int('ANOMALY_CONCURRENCY', 4)

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


def configure_logging(level: str | None = None) -> None:
    """Install the process-wide log format. Safe to call more than once."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
