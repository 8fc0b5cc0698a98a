from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import ensure_config_dir, get_log_level_from_env, get_settings, log_config_status
from database import init_db
from log_utils import configure_logging
from routers import epg, playlists, settings
from routers import tasks as tasks_router
from task_engine import start_engine, stop_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_log_level_from_env())
    ensure_config_dir()
    log_config_status()
    init_db()
    # Registers the background tasks with the engine
    import tasks  # noqa: F401

    get_settings()
    await start_engine()
    logger.info("Playlist sync service started")
    try:
        yield
    finally:
        await stop_engine()
        logger.info("Playlist sync service stopped")


app = FastAPI(
    title="Playlist Sync",
    description="IPTV playlist import and EPG mapping",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(playlists.router)
app.include_router(epg.router)
app.include_router(settings.router)
app.include_router(tasks_router.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "playlist-sync"}

