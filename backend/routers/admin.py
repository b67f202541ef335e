from fastapi import APIRouter, Depends, HTTPException

from backend.deps import get_engine
from backend.routers.scans import serialize_pending
from backend.services.engine import ScanEngine

router = APIRouter()


@router.post("/admin/index/refresh")
def refresh_index(engine: ScanEngine = Depends(get_engine)):
    engine.index.refresh()
    return {
        "ok": True,
        "message": "Registration index reloaded",
        "refreshed_at": engine.index.refreshed_at.isoformat(timespec="seconds") if engine.index.refreshed_at else None,
    }


@router.post("/admin/queue/{dedup_key}/requeue")
def requeue_scan(dedup_key: str, engine: ScanEngine = Depends(get_engine)):
    record = engine.queue.requeue(dedup_key)
    if record is None:
        raise HTTPException(status_code=404, detail="Queued scan not found.")
    engine.sync.notify_reconnect()
    return {"ok": True, "record": serialize_pending(record)}


@router.get("/admin/occupancy")
def occupancy(engine: ScanEngine = Depends(get_engine)):
    rows = []
    for booth_id, count in sorted(engine.index.occupancy_snapshot().items()):
        booth = engine.index.get_booth(booth_id)
        capacity = booth.capacity if booth else None
        rows.append(
            {
                "booth_id": booth_id,
                "booth_name": booth.display_name if booth else booth_id,
                "attended": count,
                "capacity": capacity,
                "at_capacity": capacity is not None and count >= capacity,
            }
        )
    return {"rows": rows}
