import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from umami_sync.core.config import get_settings
from umami_sync.core.database import close_db, init_db
from umami_sync.api import config, sync
from umami_sync.services.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    await init_db()
    start_scheduler()
    yield
    # Shutdown
    stop_scheduler()
    await close_db()


# Create FastAPI application
app = FastAPI(
    title="Umami Sync",
    description="Syncs Umami session ids and visitor analytics onto user records",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(sync.router)
