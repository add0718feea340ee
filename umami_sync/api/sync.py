"""Sync API endpoints."""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from umami_sync.core.config import get_settings
from umami_sync.core.database import get_db, get_session_factory
from umami_sync.models.sync_log import SyncLog
from umami_sync.services import scheduler
from umami_sync.services.diagnostics import check_configured_connections, get_sync_status
from umami_sync.services.watermark import WatermarkStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncResponse(BaseModel):
    message: str


class PartitionStatusResponse(BaseModel):
    lastSyncAt: datetime | None = None
    lastDaySynced: str | None = None
    sessionsProcessed: int | None = None
    errorCount: int = 0


class SyncStatusResponse(BaseModel):
    lastSuccessfulSyncAt: datetime | None
    lastSessionSyncAt: datetime | None
    lastAnalyticsSyncAt: datetime | None
    partitionStatus: dict[str, PartitionStatusResponse]


class ConnectionsResponse(BaseModel):
    database: bool
    api: bool
    store: bool
    website_ids: list[str]


class SyncLogResponse(BaseModel):
    id: int
    trigger: str
    sync_kind: str | None
    window_start: datetime | None
    window_end: datetime | None
    started_at: datetime
    completed_at: datetime | None
    status: str
    details: dict[str, Any] | None
    error_message: str | None

    class Config:
        from_attributes = True


async def _run_sync_in_background():
    """Background task to run a manual sync."""
    try:
        await scheduler.run_sync_job("manual")
    except Exception as e:
        # Already recorded in sync_log by run_sync_job
        logger.error(f"Manual sync failed: {e}")


@router.post("/run", response_model=SyncResponse)
async def run_sync(background_tasks: BackgroundTasks):
    """Trigger a full sync in the background."""
    background_tasks.add_task(_run_sync_in_background)
    return SyncResponse(message="Umami sync started")


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)):
    """Current watermark document."""
    return await get_sync_status(WatermarkStore(session_factory))


@router.get("/connections", response_model=ConnectionsResponse)
async def sync_connections(session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)):
    """Test connectivity to the Umami database, the Umami API and the user store."""
    return await check_configured_connections(get_settings(), session_factory)


@router.get("/runs", response_model=list[SyncLogResponse])
async def sync_runs(
    limit: int = Query(default=10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Most recent sync runs, newest first."""
    result = await db.execute(
        select(SyncLog)
        .order_by(desc(SyncLog.started_at))
        .limit(limit)
    )
    return result.scalars().all()
