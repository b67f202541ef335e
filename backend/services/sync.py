import logging
import threading
from datetime import datetime
from typing import Callable

from backend.config import SYNC_INTERVAL_SECONDS
from backend.errors import NetworkError
from backend.models import AuthoritativeStore, CommitResult, PendingScanRecord
from database.queue import OfflineScanQueue

logger = logging.getLogger(__name__)


class SyncManager:
    """
    Drains the offline queue into the authoritative store.

    Runs in a daemon thread every `interval` seconds and immediately after
    `notify_reconnect()`. Records replay the mutation computed when they were
    classified, in FIFO order; a network failure or a record still backing off
    ends the cycle so later records never overtake earlier ones.
    """

    def __init__(
        self,
        queue: OfflineScanQueue,
        store: AuthoritativeStore,
        *,
        interval: float = SYNC_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.queue = queue
        self.store = store
        self.interval = interval
        self._clock = clock
        self._run_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._status = {
            "state": "idle",          # idle | running | stopped
            "last_run_at": None,      # ISO string
            "last_error": None,
            "committed": 0,
            "already_applied": 0,
            "rejected": 0,
            "failed": 0,
            "cycles": 0,
        }

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="scan-sync", daemon=True)
        self._thread.start()
        logger.info("Sync manager started (interval %ss)", self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        with self._status_lock:
            self._status["state"] = "stopped"
        logger.info("Sync manager stopped")

    def notify_reconnect(self) -> None:
        self._wake.set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Sync cycle crashed")
            self._wake.wait(timeout=self.interval)
            self._wake.clear()

    # -----------------------------
    # One cycle
    # -----------------------------
    def run_once(self, now: datetime | None = None) -> dict:
        """
        Commit every eligible record once. Returns this cycle's counters.
        Concurrent callers wait for the running cycle instead of overlapping it.
        """
        with self._run_lock:
            moment = now or self._clock()
            with self._status_lock:
                self._status["state"] = "running"

            summary = {"committed": 0, "already_applied": 0, "rejected": 0, "failed": 0, "skipped": 0}
            last_error: str | None = None
            try:
                records = self.queue.drain()
                for position, record in enumerate(records):
                    if record.next_retry_at > moment:
                        # Later records wait behind one that is still backing off.
                        summary["skipped"] = len(records) - position
                        break

                    try:
                        result = self._commit(record)
                    except NetworkError as exc:
                        self.queue.record_failure(record.dedup_key, str(exc), now=moment)
                        summary["failed"] += 1
                        last_error = str(exc)
                        logger.info("Sync paused, store unreachable: %s", exc)
                        break

                    if result["status"] == "rejected":
                        self.queue.mark_for_review(record.dedup_key, result["reason"] or "rejected by store")
                        summary["rejected"] += 1
                        continue

                    self.queue.remove(record.dedup_key)
                    key = "committed" if result["status"] == "applied" else "already_applied"
                    summary[key] += 1
            finally:
                with self._status_lock:
                    self._status["state"] = "idle" if not self._stop.is_set() else "stopped"
                    self._status["last_run_at"] = moment.isoformat(timespec="seconds")
                    self._status["last_error"] = last_error
                    self._status["cycles"] += 1
                    for key in ("committed", "already_applied", "rejected", "failed"):
                        self._status[key] += summary[key]

            if summary["committed"] or summary["already_applied"] or summary["rejected"]:
                logger.info(
                    "Sync cycle: %d committed, %d already applied, %d rejected, %d pending",
                    summary["committed"],
                    summary["already_applied"],
                    summary["rejected"],
                    self.queue.pending_count(),
                )
            return summary

    def _commit(self, record: PendingScanRecord) -> CommitResult:
        try:
            return self.store.commit(record.dedup_key, record.mutation)
        except NetworkError:
            raise
        except Exception as exc:
            # Counted as a failed attempt; repeated failures park the record.
            logger.exception("Store commit failed for %s", record.dedup_key[:12])
            raise NetworkError(f"Store commit failed: {exc}") from exc

    def get_status(self) -> dict:
        with self._status_lock:
            status = dict(self._status)
        status["pending"] = self.queue.pending_count()
        status["manual_review"] = len(self.queue.list_manual_review())
        return status
