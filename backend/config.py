import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("BOOTHSCAN_DB_PATH", BASE_DIR / "database" / "boothscan.db"))
QUEUE_DB_PATH = Path(os.getenv("BOOTHSCAN_QUEUE_DB_PATH", BASE_DIR / "database" / "offline_queue.db"))
LOG_LEVEL = os.getenv("BOOTHSCAN_LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_FILE = os.getenv("BOOTHSCAN_LOG_FILE", "").strip() or None


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_store_mode(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized == "remote":
        return "remote"
    return "local"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("BOOTHSCAN_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("BOOTHSCAN_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("BOOTHSCAN_CORS_ALLOW_HEADERS"),
    ["Content-Type", "Accept", "X-Device-Id"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("BOOTHSCAN_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("BOOTHSCAN_ENABLE_DEBUG_ENDPOINTS"), False)

# Authoritative store: "local" commits into DB_PATH, "remote" posts to STORE_URL.
STORE_MODE = _parse_store_mode(os.getenv("BOOTHSCAN_STORE_MODE"))
STORE_URL = os.getenv("BOOTHSCAN_STORE_URL", "http://127.0.0.1:8000").strip().rstrip("/")
COMMIT_TIMEOUT_SECONDS = max(0.1, float(os.getenv("BOOTHSCAN_COMMIT_TIMEOUT_SECONDS", "3")))
COMMIT_WORKERS = max(1, int(os.getenv("BOOTHSCAN_COMMIT_WORKERS", "4")))

# Classification
SCAN_COOLDOWN_SECONDS = max(0, int(os.getenv("BOOTHSCAN_SCAN_COOLDOWN_SECONDS", "300")))
SCAN_GRACE_MINUTES = max(0, int(os.getenv("BOOTHSCAN_SCAN_GRACE_MINUTES", "0")))

# Offline queue
DEDUP_BUCKET_SECONDS = max(1, int(os.getenv("BOOTHSCAN_DEDUP_BUCKET_SECONDS", "60")))
QUEUE_CAPACITY = max(1, int(os.getenv("BOOTHSCAN_QUEUE_CAPACITY", "500")))

# Background sync
SYNC_ENABLED = _parse_bool(os.getenv("BOOTHSCAN_SYNC_ENABLED"), True)
SYNC_INTERVAL_SECONDS = max(1, int(os.getenv("BOOTHSCAN_SYNC_INTERVAL_SECONDS", "15")))
SYNC_MAX_ATTEMPTS = max(1, int(os.getenv("BOOTHSCAN_SYNC_MAX_ATTEMPTS", "8")))
SYNC_BACKOFF_BASE_SECONDS = max(0.1, float(os.getenv("BOOTHSCAN_SYNC_BACKOFF_BASE_SECONDS", "2")))
SYNC_BACKOFF_MAX_SECONDS = max(
    SYNC_BACKOFF_BASE_SECONDS,
    float(os.getenv("BOOTHSCAN_SYNC_BACKOFF_MAX_SECONDS", "300")),
)
SYNC_BACKOFF_JITTER_RATIO = min(1.0, max(0.0, float(os.getenv("BOOTHSCAN_SYNC_BACKOFF_JITTER_RATIO", "0.2"))))
