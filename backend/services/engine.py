import logging
from dataclasses import dataclass
from pathlib import Path

from backend import config
from backend.models import AuthoritativeStore
from backend.registration_index import RegistrationIndex
from backend.services.ingest import ScanIngestService
from backend.services.sync import SyncManager
from backend.store_client import HttpAuthoritativeStore
from database import db
from database.queue import OfflineScanQueue
from database.store import SqliteAuthoritativeStore

logger = logging.getLogger(__name__)


@dataclass
class ScanEngine:
    index: RegistrationIndex
    queue: OfflineScanQueue
    store: AuthoritativeStore
    ingest: ScanIngestService
    sync: SyncManager

    def close(self) -> None:
        self.sync.stop()
        self.ingest.close()
        if isinstance(self.store, HttpAuthoritativeStore):
            self.store.close()
        self.queue.close()


def build_store(mode: str | None = None) -> AuthoritativeStore:
    selected = mode or config.STORE_MODE
    if selected == "remote":
        logger.info("Committing scans to remote store at %s", config.STORE_URL)
        return HttpAuthoritativeStore(config.STORE_URL, timeout=config.COMMIT_TIMEOUT_SECONDS)
    return SqliteAuthoritativeStore(db.DB_PATH)


def build_engine(
    *,
    store: AuthoritativeStore | None = None,
    queue_path: Path | str | None = None,
) -> ScanEngine:
    """Assemble index, queue, store, ingest and sync from the current config."""
    index = RegistrationIndex(loader=db.load_event_snapshot)
    index.refresh()

    queue = OfflineScanQueue(
        queue_path or config.QUEUE_DB_PATH,
        capacity=config.QUEUE_CAPACITY,
        max_attempts=config.SYNC_MAX_ATTEMPTS,
        backoff_base_seconds=config.SYNC_BACKOFF_BASE_SECONDS,
        backoff_max_seconds=config.SYNC_BACKOFF_MAX_SECONDS,
        jitter_ratio=config.SYNC_BACKOFF_JITTER_RATIO,
    )
    active_store = store or build_store()
    sync = SyncManager(queue, active_store, interval=config.SYNC_INTERVAL_SECONDS)
    ingest = ScanIngestService(
        index,
        queue,
        active_store,
        commit_timeout=config.COMMIT_TIMEOUT_SECONDS,
        cooldown_seconds=config.SCAN_COOLDOWN_SECONDS,
        grace_minutes=config.SCAN_GRACE_MINUTES,
        bucket_seconds=config.DEDUP_BUCKET_SECONDS,
        workers=config.COMMIT_WORKERS,
    )
    return ScanEngine(index=index, queue=queue, store=active_store, ingest=ingest, sync=sync)
