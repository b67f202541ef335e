import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Callable

from backend.classifier import ScanCooldownCache, classify_scan, compute_dedup_key
from backend.config import (
    COMMIT_TIMEOUT_SECONDS,
    COMMIT_WORKERS,
    DEDUP_BUCKET_SECONDS,
    SCAN_COOLDOWN_SECONDS,
    SCAN_GRACE_MINUTES,
)
from backend.errors import NetworkError, QuotaError
from backend.models import (
    AuthoritativeStore,
    CommitResult,
    MutationRequest,
    Scan,
    ScanOutcome,
    ScanTarget,
)
from backend.registration_index import RegistrationIndex
from database.queue import OfflineScanQueue

logger = logging.getLogger(__name__)


class ScanIngestService:
    """
    submit_scan: classify locally, try the authoritative commit with a bounded
    timeout, fall back to the offline queue. The caller always gets the
    classification back; only persistence is deferred.
    """

    def __init__(
        self,
        index: RegistrationIndex,
        queue: OfflineScanQueue,
        store: AuthoritativeStore,
        *,
        cooldown: ScanCooldownCache | None = None,
        commit_timeout: float = COMMIT_TIMEOUT_SECONDS,
        cooldown_seconds: int = SCAN_COOLDOWN_SECONDS,
        grace_minutes: int = SCAN_GRACE_MINUTES,
        bucket_seconds: int = DEDUP_BUCKET_SECONDS,
        workers: int = COMMIT_WORKERS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.index = index
        self.queue = queue
        self.store = store
        self.cooldown = cooldown or ScanCooldownCache(retention_seconds=cooldown_seconds)
        self.commit_timeout = commit_timeout
        self.cooldown_seconds = cooldown_seconds
        self.grace_minutes = grace_minutes
        self.bucket_seconds = bucket_seconds
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan-commit")

    def close(self) -> None:
        # In-flight commits are abandoned, not awaited.
        self._executor.shutdown(wait=False, cancel_futures=True)

    def submit_scan(
        self,
        attendee_id: str,
        target: ScanTarget,
        device_id: str,
        client_timestamp: datetime | None = None,
    ) -> ScanOutcome:
        """
        Raises ValidationError / ConfigError from classification; never raises
        for persistence problems.
        """
        stamp = client_timestamp or self._clock()
        if stamp.tzinfo is not None:
            # Schedules are stored in local event time.
            stamp = stamp.astimezone().replace(tzinfo=None)
        scan = Scan(
            id=str(uuid.uuid4()),
            attendee_id=(attendee_id or "").strip(),
            target=target,
            device_id=device_id,
            client_timestamp=stamp,
        )
        classification = classify_scan(
            scan,
            self.index,
            now=scan.client_timestamp,
            cooldown=self.cooldown,
            cooldown_seconds=self.cooldown_seconds,
            grace_minutes=self.grace_minutes,
            bucket_seconds=self.bucket_seconds,
        )
        mutation = classification.mutation
        if classification.replayed or mutation is None:
            logger.info("Cooldown replay for %s at %s", scan.attendee_id, target.as_key())
            return dict(classification.outcome)  # type: ignore[return-value]

        outcome: ScanOutcome = dict(classification.outcome)  # type: ignore[assignment]
        dedup_key = outcome["dedup_key"] or compute_dedup_key(scan, bucket_seconds=self.bucket_seconds)

        self._apply_locally(mutation)
        self._persist(scan, outcome, mutation, dedup_key)

        if outcome["success"]:
            self.cooldown.remember(scan, outcome, scan.client_timestamp)

        logger.info(
            "Scan %s: %s -> %s (%s)%s",
            scan.id,
            scan.attendee_id,
            target.as_key(),
            outcome["status"],
            " offline" if outcome["was_offline"] else "",
        )
        return outcome

    def _apply_locally(self, mutation: MutationRequest) -> None:
        session_id = mutation["session_id"]
        if not session_id:
            return
        if mutation["action"] == "mark_attended":
            attendee_id = mutation["attendee_id"]
            if self.index.mark_attended(attendee_id, session_id) == "ineligible":
                logger.info("Registration %s/%s is not Registered; left unchanged", attendee_id, session_id)
        elif mutation["action"] == "create_walk_in":
            self.index.record_walk_in(mutation["attendee_id"], session_id, mutation["booth_id"])

    def _commit(self, dedup_key: str, mutation: MutationRequest) -> CommitResult:
        future = self._executor.submit(self.store.commit, dedup_key, mutation)
        try:
            return future.result(timeout=self.commit_timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise NetworkError(f"Commit did not finish within {self.commit_timeout}s") from exc
        except NetworkError:
            raise
        except Exception as exc:
            # Unexpected store failures are retried like outages.
            logger.exception("Store commit failed for %s", dedup_key[:12])
            raise NetworkError(f"Store commit failed: {exc}") from exc

    def _persist(self, scan: Scan, outcome: ScanOutcome, mutation: MutationRequest, dedup_key: str) -> None:
        try:
            result = self._commit(dedup_key, mutation)
        except NetworkError as exc:
            logger.warning("Commit failed for scan %s, queueing offline: %s", scan.id, exc)
            outcome["was_offline"] = True
            self._enqueue(scan, outcome, mutation)
            return

        if result["status"] == "rejected":
            reason = result["reason"] or "rejected by store"
            logger.warning("Store rejected scan %s: %s", scan.id, reason)
            if self._enqueue(scan, outcome, mutation):
                self.queue.mark_for_review(dedup_key, reason)

    def _enqueue(self, scan: Scan, outcome: ScanOutcome, mutation: MutationRequest) -> bool:
        try:
            self.queue.enqueue(scan, outcome, mutation, now=self._clock())
        except QuotaError as exc:
            logger.warning("Offline queue full, scan %s not persisted: %s", scan.id, exc.message)
            outcome["warning"] = exc.message
            return False
        return True
