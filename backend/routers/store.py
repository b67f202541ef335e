from typing import cast

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.deps import get_engine
from backend.errors import NetworkError
from backend.models import MutationRequest
from backend.services.engine import ScanEngine
from database.store import SqliteAuthoritativeStore

router = APIRouter()

ALLOWED_ACTIONS: set[str] = {"mark_attended", "create_walk_in", "record_only"}
ALLOWED_SCAN_STATUSES: set[str] = {"EXPECTED", "WRONG_BOOTH", "WALK_IN", "OUT_OF_SCHEDULE"}


class MutationPayload(BaseModel):
    action: str
    scan_id: str
    attendee_id: str
    booth_id: str | None = None
    session_id: str | None = None
    device_id: str
    client_timestamp: str
    scan_status: str


class CommitPayload(BaseModel):
    dedup_key: str
    mutation: MutationPayload


@router.post("/store/commit")
def commit(payload: CommitPayload, engine: ScanEngine = Depends(get_engine)):
    if not isinstance(engine.store, SqliteAuthoritativeStore):
        raise HTTPException(status_code=404, detail="This deployment does not host the authoritative store.")

    dedup_key = payload.dedup_key.strip()
    if not dedup_key:
        raise HTTPException(status_code=400, detail="dedup_key is required.")
    if payload.mutation.action not in ALLOWED_ACTIONS:
        raise HTTPException(status_code=400, detail="Invalid mutation action.")
    if payload.mutation.scan_status not in ALLOWED_SCAN_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid scan status.")

    mutation = cast(MutationRequest, payload.mutation.model_dump())
    try:
        return engine.store.commit(dedup_key, mutation)
    except NetworkError as exc:
        raise HTTPException(status_code=503, detail=exc.message)
