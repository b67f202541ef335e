import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import config
from backend.logging_config import setup_logging
from backend.routers import admin, core, scans, store, sync
from backend.services.engine import build_engine
from database.db import create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    create_tables()
    engine = build_engine()
    app.state.engine = engine
    if config.SYNC_ENABLED:
        engine.sync.start()
    logger.info("Boothscan API ready (store mode: %s)", config.STORE_MODE)
    try:
        yield
    finally:
        engine.close()
        app.state.engine = None


app = FastAPI(title="Boothscan API", lifespan=lifespan)

# -----------------------------
# CORS (scanner UI dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=config.CORS_ALLOW_CREDENTIALS,
    allow_methods=config.CORS_ALLOW_METHODS,
    allow_headers=config.CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(scans.router)
app.include_router(sync.router)
app.include_router(admin.router)
app.include_router(store.router)
