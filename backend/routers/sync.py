from fastapi import APIRouter, Depends

from backend.deps import get_engine
from backend.services.engine import ScanEngine

router = APIRouter()


@router.get("/sync/status")
def sync_status(engine: ScanEngine = Depends(get_engine)):
    return engine.sync.get_status()


@router.post("/sync/run")
def sync_run(engine: ScanEngine = Depends(get_engine)):
    summary = engine.sync.run_once()
    engine.sync.notify_reconnect()
    return {"ok": True, "message": "Sync cycle completed", **summary}
