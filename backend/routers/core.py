from fastapi import APIRouter, HTTPException

from backend.config import (
    COMMIT_TIMEOUT_SECONDS,
    DB_PATH,
    DEDUP_BUCKET_SECONDS,
    ENABLE_DEBUG_ENDPOINTS,
    QUEUE_CAPACITY,
    QUEUE_DB_PATH,
    SCAN_COOLDOWN_SECONDS,
    SCAN_GRACE_MINUTES,
    STORE_MODE,
    SYNC_BACKOFF_BASE_SECONDS,
    SYNC_BACKOFF_MAX_SECONDS,
    SYNC_ENABLED,
    SYNC_INTERVAL_SECONDS,
    SYNC_MAX_ATTEMPTS,
)
from backend.session_config import SESSION_CONFIG_PRESETS

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath():
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH), "queue_db_path": str(QUEUE_DB_PATH)}


@router.get("/config/scanning")
def scanning_config():
    return {
        "store_mode": STORE_MODE,
        "commit_timeout_seconds": COMMIT_TIMEOUT_SECONDS,
        "scan_cooldown_seconds": SCAN_COOLDOWN_SECONDS,
        "scan_grace_minutes": SCAN_GRACE_MINUTES,
        "dedup_bucket_seconds": DEDUP_BUCKET_SECONDS,
        "queue_capacity": QUEUE_CAPACITY,
        "sync_enabled": SYNC_ENABLED,
        "sync_interval_seconds": SYNC_INTERVAL_SECONDS,
        "sync_max_attempts": SYNC_MAX_ATTEMPTS,
        "sync_backoff_base_seconds": SYNC_BACKOFF_BASE_SECONDS,
        "sync_backoff_max_seconds": SYNC_BACKOFF_MAX_SECONDS,
        "session_presets": sorted(SESSION_CONFIG_PRESETS),
    }
