"""Singleton watermark document for the Umami sync."""

from umami_sync.core.clock import utcnow
from sqlalchemy import Column, DateTime, JSON, String

from umami_sync.core.database import Base

GLOBAL_WATERMARK_ID = "global"


class SyncWatermark(Base):
    """Last successful sync instant plus per-website status.

    ``partition_status`` maps website id to a dict with ``lastSyncAt``,
    ``lastDaySynced``, ``sessionsProcessed`` and ``errorCount``.
    """

    __tablename__ = "sync_watermark"

    id = Column(String, primary_key=True, default=GLOBAL_WATERMARK_ID)
    last_successful_sync_at = Column(DateTime, nullable=True)
    last_session_sync_at = Column(DateTime, nullable=True)
    last_analytics_sync_at = Column(DateTime, nullable=True)
    partition_status = Column(JSON, nullable=False, default=dict)
    lease_owner = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
