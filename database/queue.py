import json
import logging
import random
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from backend.classifier import compute_dedup_key
from backend.config import (
    QUEUE_CAPACITY,
    QUEUE_DB_PATH,
    SYNC_BACKOFF_BASE_SECONDS,
    SYNC_BACKOFF_JITTER_RATIO,
    SYNC_BACKOFF_MAX_SECONDS,
    SYNC_MAX_ATTEMPTS,
)
from backend.errors import QuotaError
from backend.models import MutationRequest, PendingScanRecord, Scan, ScanOutcome, ScanTarget

logger = logging.getLogger(__name__)

OFFLINE_QUEUE_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "002_offline_queue.sql"

_COLUMNS = """
    dedup_key, scan_id, attendee_id, target_kind, target_id, device_id,
    client_timestamp, outcome_json, mutation_json, attempts, next_retry_at,
    last_error, needs_review, created_at
"""


def compute_backoff(
    attempts: int,
    *,
    base_seconds: float = SYNC_BACKOFF_BASE_SECONDS,
    max_seconds: float = SYNC_BACKOFF_MAX_SECONDS,
    jitter_ratio: float = SYNC_BACKOFF_JITTER_RATIO,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay for the given attempt count, capped, plus up to `jitter_ratio` extra."""
    exponent = max(0, attempts - 1)
    delay = min(max_seconds, base_seconds * (2 ** min(exponent, 32)))
    if jitter_ratio > 0:
        delay += (rng or random).uniform(0, delay * jitter_ratio)
    return delay


def _utc_sort_key(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


class OfflineScanQueue:
    """
    Durable local queue of scans whose authoritative commit has not been
    acknowledged. One row per dedup key; survives process restarts.

    Records that exhaust their attempts (or are rejected by the store) stay in
    the table with `needs_review` set until an operator requeues them.
    """

    def __init__(
        self,
        path: Path | str = QUEUE_DB_PATH,
        *,
        capacity: int = QUEUE_CAPACITY,
        max_attempts: int = SYNC_MAX_ATTEMPTS,
        backoff_base_seconds: float = SYNC_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = SYNC_BACKOFF_MAX_SECONDS,
        jitter_ratio: float = SYNC_BACKOFF_JITTER_RATIO,
        rng: random.Random | None = None,
    ):
        self.path = Path(path)
        self.capacity = capacity
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.executescript(OFFLINE_QUEUE_MIGRATION_FILE.read_text(encoding="utf-8"))

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -----------------------------
    # Row mapping
    # -----------------------------
    @staticmethod
    def _record_from_row(row) -> PendingScanRecord:
        scan = Scan(
            id=str(row[1]),
            attendee_id=str(row[2]),
            target=ScanTarget(kind=row[3], id=str(row[4])),
            device_id=str(row[5]),
            client_timestamp=datetime.fromisoformat(row[6]),
        )
        return PendingScanRecord(
            dedup_key=str(row[0]),
            scan=scan,
            outcome=json.loads(row[7]),
            mutation=json.loads(row[8]),
            attempts=int(row[9]),
            next_retry_at=datetime.fromisoformat(row[10]),
            last_error=row[11],
            needs_review=bool(row[12]),
            created_at=datetime.fromisoformat(row[13]),
        )

    def _fetch(self, dedup_key: str) -> PendingScanRecord | None:
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM pending_scans WHERE dedup_key = ?",
            (dedup_key,),
        ).fetchone()
        return self._record_from_row(row) if row else None

    # -----------------------------
    # Operations
    # -----------------------------
    def enqueue(
        self,
        scan: Scan,
        outcome: ScanOutcome,
        mutation: MutationRequest,
        *,
        now: datetime | None = None,
    ) -> PendingScanRecord:
        """
        Persist a scan for later commit. An existing record with the same dedup
        key is returned unchanged. Raises QuotaError when the queue is full.
        """
        dedup_key = outcome.get("dedup_key") or compute_dedup_key(scan)
        created = now or datetime.now()

        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                existing = self._fetch(dedup_key)
                if existing is not None:
                    self._conn.execute("COMMIT")
                    return existing

                (count,) = self._conn.execute("SELECT COUNT(*) FROM pending_scans").fetchone()
                if count >= self.capacity:
                    raise QuotaError(self.capacity)

                self._conn.execute(
                    f"""
                    INSERT INTO pending_scans ({_COLUMNS}, client_ts_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, NULL, 0, ?, ?)
                    """,
                    (
                        dedup_key,
                        scan.id,
                        scan.attendee_id,
                        scan.target.kind,
                        scan.target.id,
                        scan.device_id,
                        scan.client_timestamp.isoformat(),
                        json.dumps(dict(outcome)),
                        json.dumps(dict(mutation)),
                        created.isoformat(),
                        created.isoformat(),
                        _utc_sort_key(scan.client_timestamp),
                    ),
                )
                record = self._fetch(dedup_key)
                if record is None:
                    raise sqlite3.DatabaseError(f"Queued scan {dedup_key} could not be read back")
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

        logger.info("Queued scan %s (%s) for later sync", scan.id, dedup_key[:12])
        return record

    def drain(self) -> list[PendingScanRecord]:
        """Retryable records, oldest client timestamp first, then insertion order."""
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM pending_scans
                WHERE needs_review = 0
                ORDER BY client_ts_utc, seq
                """
            ).fetchall()
        return [self._record_from_row(row) for row in rows]

    def get(self, dedup_key: str) -> PendingScanRecord | None:
        with self._lock:
            return self._fetch(dedup_key)

    def remove(self, dedup_key: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM pending_scans WHERE dedup_key = ?", (dedup_key,))
        return cur.rowcount > 0

    def record_failure(self, dedup_key: str, error: str, *, now: datetime | None = None) -> PendingScanRecord | None:
        """Count a failed attempt and schedule the next one; park after max attempts."""
        moment = now or datetime.now()
        with self._lock:
            record = self._fetch(dedup_key)
            if record is None:
                return None

            attempts = record.attempts + 1
            needs_review = attempts >= self.max_attempts
            delay = compute_backoff(
                attempts,
                base_seconds=self.backoff_base_seconds,
                max_seconds=self.backoff_max_seconds,
                jitter_ratio=self.jitter_ratio,
                rng=self._rng,
            )
            next_retry_at = moment + timedelta(seconds=delay)
            self._conn.execute(
                """
                UPDATE pending_scans
                SET attempts = ?,
                    next_retry_at = ?,
                    last_error = ?,
                    needs_review = ?
                WHERE dedup_key = ?
                """,
                (attempts, next_retry_at.isoformat(), error, 1 if needs_review else 0, dedup_key),
            )
            updated = self._fetch(dedup_key)

        if needs_review:
            logger.warning(
                "Scan %s parked for manual review after %d attempts: %s",
                record.scan.id,
                attempts,
                error,
            )
        return updated

    def mark_for_review(self, dedup_key: str, reason: str) -> PendingScanRecord | None:
        with self._lock:
            self._conn.execute(
                """
                UPDATE pending_scans
                SET needs_review = 1,
                    last_error = ?
                WHERE dedup_key = ?
                """,
                (reason, dedup_key),
            )
            record = self._fetch(dedup_key)
        if record is not None:
            logger.warning("Scan %s needs manual review: %s", record.scan.id, reason)
        return record

    def requeue(self, dedup_key: str, *, now: datetime | None = None) -> PendingScanRecord | None:
        """Operator action: put a parked record back into the retry rotation."""
        moment = now or datetime.now()
        with self._lock:
            self._conn.execute(
                """
                UPDATE pending_scans
                SET needs_review = 0,
                    attempts = 0,
                    last_error = NULL,
                    next_retry_at = ?
                WHERE dedup_key = ?
                """,
                (moment.isoformat(), dedup_key),
            )
            return self._fetch(dedup_key)

    def pending_count(self) -> int:
        with self._lock:
            (count,) = self._conn.execute("SELECT COUNT(*) FROM pending_scans WHERE needs_review = 0").fetchone()
        return int(count)

    def list_manual_review(self) -> list[PendingScanRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_COLUMNS}
                FROM pending_scans
                WHERE needs_review = 1
                ORDER BY client_ts_utc, seq
                """
            ).fetchall()
        return [self._record_from_row(row) for row in rows]
