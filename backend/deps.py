from fastapi import HTTPException, Request

from backend.services.engine import ScanEngine


def get_engine(request: Request) -> ScanEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Scan engine is not ready.")
    return engine
