"""
Engine configuration.
Every deployment-tunable threshold, weight and cap is read from the environment here.
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Tuple

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/reunite.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Embedding configuration
EMBEDDING_DIM = int(os.getenv("EMBEDDING_DIM", "512"))
# JSON map of region name -> [start, end) slice used for score attribution
EMBEDDING_REGIONS = os.getenv("EMBEDDING_REGIONS", "")

# Similarity index configuration
INDEX_PROVIDER = os.getenv("INDEX_PROVIDER", "hnsw")  # hnsw|flat|memory
INDEX_SEGMENT_SIZE = int(os.getenv("INDEX_SEGMENT_SIZE", "50000"))
INDEX_SEGMENT_DIR = os.getenv("INDEX_SEGMENT_DIR", "./data/segments")
HNSW_M = int(os.getenv("HNSW_M", "32"))
HNSW_EF_CONSTRUCTION = int(os.getenv("HNSW_EF_CONSTRUCTION", "200"))
HNSW_EF_SEARCH = int(os.getenv("HNSW_EF_SEARCH", "128"))  # recall/latency knob
INDEX_OVERSAMPLE = int(os.getenv("INDEX_OVERSAMPLE", "4"))
# Share of retired rows at which a sealed segment is rebuilt without them
INDEX_COMPACT_RATIO = float(os.getenv("INDEX_COMPACT_RATIO", "0.2"))

# Degraded-mode linear scan
FALLBACK_SCAN_LIMIT = int(os.getenv("FALLBACK_SCAN_LIMIT", "50000"))
FALLBACK_SCAN_DEADLINE_MS = int(os.getenv("FALLBACK_SCAN_DEADLINE_MS", "750"))

# Match resolver configuration
MATCH_SIMILARITY_FLOOR = float(os.getenv("MATCH_SIMILARITY_FLOOR", "0.6"))
WEIGHT_SIMILARITY = float(os.getenv("WEIGHT_SIMILARITY", "0.7"))
WEIGHT_GEO_TEMPORAL = float(os.getenv("WEIGHT_GEO_TEMPORAL", "0.2"))
WEIGHT_SOURCE_RELIABILITY = float(os.getenv("WEIGHT_SOURCE_RELIABILITY", "0.1"))
GEO_SCALE_KM = float(os.getenv("GEO_SCALE_KM", "50"))
TIME_SCALE_HOURS = float(os.getenv("TIME_SCALE_HOURS", "168"))
SOURCE_RELIABILITY = os.getenv("SOURCE_RELIABILITY", "")  # JSON map source -> [0, 1]
DUPLICATE_SIMILARITY_FLOOR = float(os.getenv("DUPLICATE_SIMILARITY_FLOOR", "0.95"))
DUPLICATE_MAX_DISTANCE_M = float(os.getenv("DUPLICATE_MAX_DISTANCE_M", "25000"))

# Privacy gate
LEGAL_ORDER_DEADLINE_SEC = float(os.getenv("LEGAL_ORDER_DEADLINE_SEC", "5"))
CONSENT_APPROVAL_ENABLED = os.getenv("CONSENT_APPROVAL_ENABLED", "true").lower() == "true"
CONSENT_APPROVAL_TIMEOUT_SEC = int(os.getenv("CONSENT_APPROVAL_TIMEOUT_SEC", "259200"))

# Geo-alert dispatcher
ALERT_FANOUT_CAP = int(os.getenv("ALERT_FANOUT_CAP", "2000"))
ALERT_DEFAULT_RADIUS_M = float(os.getenv("ALERT_DEFAULT_RADIUS_M", "5000"))
ALERT_SUPPRESSION_WINDOW_SEC = int(os.getenv("ALERT_SUPPRESSION_WINDOW_SEC", "21600"))
ALERT_BATCH_SIZE = int(os.getenv("ALERT_BATCH_SIZE", "500"))
ALERT_MAX_IN_FLIGHT = int(os.getenv("ALERT_MAX_IN_FLIGHT", "4"))
DISASTER_BATCHES_PER_SEC = float(os.getenv("DISASTER_BATCHES_PER_SEC", "2"))
TRANSPORT_PROVIDER = os.getenv("TRANSPORT_PROVIDER", "log")  # log|webhook
TRANSPORT_WEBHOOK_URL = os.getenv("TRANSPORT_WEBHOOK_URL", "")
TRANSPORT_DEADLINE_SEC = float(os.getenv("TRANSPORT_DEADLINE_SEC", "10"))
TRANSPORT_MAX_ATTEMPTS = int(os.getenv("TRANSPORT_MAX_ATTEMPTS", "5"))
TRANSPORT_BACKOFF_BASE_SEC = float(os.getenv("TRANSPORT_BACKOFF_BASE_SEC", "0.5"))
TRANSPORT_BACKOFF_MAX_SEC = float(os.getenv("TRANSPORT_BACKOFF_MAX_SEC", "30"))

# Key management (local stand-in for the external KMS)
KEY_MASTER_SECRET = os.getenv("KEY_MASTER_SECRET", "development_master_secret_change_in_production")
KEY_ACTIVE_REF = os.getenv("KEY_ACTIVE_REF", "k1")

# Audit ledger
LEDGER_CHECKPOINT_INTERVAL = int(os.getenv("LEDGER_CHECKPOINT_INTERVAL", "1000"))

# Heartbeat (periodic integrity self-checks)
HEARTBEAT_ENABLED = os.getenv("HEARTBEAT_ENABLED", "false").lower() == "true"
LEDGER_VERIFY_INTERVAL_SEC = int(os.getenv("LEDGER_VERIFY_INTERVAL_SEC", "300"))
CHECKPOINT_INTERVAL_SEC = int(os.getenv("CHECKPOINT_INTERVAL_SEC", "900"))
CONSENT_EXPIRY_INTERVAL_SEC = int(os.getenv("CONSENT_EXPIRY_INTERVAL_SEC", "600"))
HEARTBEAT_FAILURE_THRESHOLD = int(os.getenv("HEARTBEAT_FAILURE_THRESHOLD", "3"))

VERSION = "1.0.0"

DEFAULT_SOURCE_RELIABILITY = {
    "case": 1.0,
    "tip": 0.6,
    "osint": 0.4,
}


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_resolver_weights() -> Dict[str, float]:
    """Weights of the composite confidence signals."""
    return {
        "similarity": WEIGHT_SIMILARITY,
        "geo_temporal": WEIGHT_GEO_TEMPORAL,
        "source_reliability": WEIGHT_SOURCE_RELIABILITY,
    }


def get_source_reliability() -> Dict[str, float]:
    """Reliability weight per signal source, deployment overrides merged over defaults."""
    reliability = dict(DEFAULT_SOURCE_RELIABILITY)
    if SOURCE_RELIABILITY:
        reliability.update({k: float(v) for k, v in json.loads(SOURCE_RELIABILITY).items()})
    return reliability


def get_embedding_regions(dimension: int = None) -> Dict[str, Tuple[int, int]]:
    """
    Region layout of the embedding vector used for feature attribution.

    Without an explicit layout the vector is split into four equal quarters.
    """
    dimension = dimension or EMBEDDING_DIM
    if EMBEDDING_REGIONS:
        raw = json.loads(EMBEDDING_REGIONS)
        return {name: (int(bounds[0]), int(bounds[1])) for name, bounds in raw.items()}

    names = ["upper_face", "periocular", "mid_face", "lower_face"]
    step = max(1, dimension // len(names))
    regions = {}
    for i, name in enumerate(names):
        start = i * step
        end = dimension if i == len(names) - 1 else min(dimension, (i + 1) * step)
        if start < end:
            regions[name] = (start, end)
    return regions


def validate_config() -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    if EMBEDDING_DIM < 1:
        issues.append("EMBEDDING_DIM must be >= 1")

    if INDEX_PROVIDER not in ["hnsw", "flat", "memory"]:
        issues.append(f"Invalid INDEX_PROVIDER: {INDEX_PROVIDER}")

    if not 0.0 < INDEX_COMPACT_RATIO <= 1.0:
        issues.append("INDEX_COMPACT_RATIO must be within (0, 1]")

    if not 0.0 <= MATCH_SIMILARITY_FLOOR <= 1.0:
        issues.append("MATCH_SIMILARITY_FLOOR must be within [0, 1]")

    if not 0.0 <= DUPLICATE_SIMILARITY_FLOOR <= 1.0:
        issues.append("DUPLICATE_SIMILARITY_FLOOR must be within [0, 1]")

    weights = get_resolver_weights()
    if any(w < 0 for w in weights.values()) or sum(weights.values()) <= 0:
        issues.append("Resolver weights must be non-negative with a positive sum")

    if ALERT_FANOUT_CAP < 1:
        issues.append("ALERT_FANOUT_CAP must be >= 1")

    if ALERT_MAX_IN_FLIGHT < 1:
        issues.append("ALERT_MAX_IN_FLIGHT must be >= 1")

    if TRANSPORT_MAX_ATTEMPTS < 1:
        issues.append("TRANSPORT_MAX_ATTEMPTS must be >= 1")

    if TRANSPORT_PROVIDER == "webhook" and not TRANSPORT_WEBHOOK_URL:
        issues.append("TRANSPORT_PROVIDER=webhook requires TRANSPORT_WEBHOOK_URL")

    if KEY_MASTER_SECRET == "development_master_secret_change_in_production" and not debug_enabled():
        issues.append("KEY_MASTER_SECRET is using the development default")

    return issues
