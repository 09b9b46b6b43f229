import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kfsync.core.config import settings
from kfsync.core.mongo import close_mongo_client, ensure_kashflow_indexes, get_database
from kfsync.core.redis import SyncLock
from kfsync.routers import dedup, health, sync
from kfsync.services.progress import SyncProgress
from kfsync.services.runs import SyncRunner

logging.basicConfig(
    level=getattr(logging, settings.api_log_level.upper()),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logging.getLogger("pymongo").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = None
    if settings.mongo_enabled:
        db = get_database()
        await ensure_kashflow_indexes(db)
    else:
        logger.warning("MongoDB not configured; syncs will run in fetch-only mode")

    app.state.progress = SyncProgress()
    app.state.runner = SyncRunner(settings, db, app.state.progress, SyncLock())
    yield
    await close_mongo_client()


app = FastAPI(
    title="KashFlow Sync API",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

# ─── CORS ──────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "development" else [],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept"],
)

# ─── Routers ──────────────────────────────────
app.include_router(health.router)
app.include_router(sync.router, prefix="/api/v1")
app.include_router(dedup.router, prefix="/api/v1")
