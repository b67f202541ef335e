from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from backend.deps import get_engine
from backend.errors import ConfigError, ValidationError
from backend.models import PendingScanRecord, ScanTarget
from backend.services.engine import ScanEngine

router = APIRouter()


class ScanSubmit(BaseModel):
    attendee_id: str
    booth_id: str | None = None
    session_id: str | None = None
    device_id: str | None = None
    client_timestamp: datetime | None = None


def serialize_pending(record: PendingScanRecord) -> dict:
    return {
        "dedup_key": record.dedup_key,
        "scan_id": record.scan.id,
        "attendee_id": record.scan.attendee_id,
        "target_kind": record.scan.target.kind,
        "target_id": record.scan.target.id,
        "device_id": record.scan.device_id,
        "client_timestamp": record.scan.client_timestamp.isoformat(),
        "status": record.outcome.get("status"),
        "action": record.mutation.get("action"),
        "attempts": record.attempts,
        "next_retry_at": record.next_retry_at.isoformat(timespec="seconds"),
        "last_error": record.last_error,
        "needs_review": record.needs_review,
        "created_at": record.created_at.isoformat(timespec="seconds"),
    }


@router.post("/scans")
def submit_scan(
    payload: ScanSubmit,
    x_device_id: str | None = Header(default=None),
    engine: ScanEngine = Depends(get_engine),
):
    attendee_id = payload.attendee_id.strip()
    if not attendee_id:
        raise HTTPException(status_code=400, detail="attendee_id is required.")

    device_id = (payload.device_id or x_device_id or "").strip()
    if not device_id:
        raise HTTPException(status_code=400, detail="device_id is required (body or X-Device-Id header).")

    try:
        target = ScanTarget.from_ids(payload.booth_id, payload.session_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        return engine.ingest.submit_scan(attendee_id, target, device_id, payload.client_timestamp)
    except ValidationError as exc:
        raise HTTPException(status_code=404, detail=exc.message)
    except ConfigError as exc:
        raise HTTPException(status_code=409, detail=exc.message)


@router.get("/scans/pending")
def pending_scans(engine: ScanEngine = Depends(get_engine)):
    records = engine.queue.drain()
    return {
        "pending_count": engine.queue.pending_count(),
        "rows": [serialize_pending(r) for r in records],
    }


@router.get("/scans/review")
def review_scans(engine: ScanEngine = Depends(get_engine)):
    rows = [serialize_pending(r) for r in engine.queue.list_manual_review()]
    return {"total": len(rows), "rows": rows}
