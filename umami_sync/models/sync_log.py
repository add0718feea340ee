"""Sync log model for tracking sync runs."""

from umami_sync.core.clock import utcnow
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from umami_sync.core.database import Base


class SyncLog(Base):
    """Log of orchestrator runs."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trigger = Column(String, nullable=False)  # "scheduled", "manual"
    sync_kind = Column(String, nullable=True)  # "initial", "incremental"
    window_start = Column(DateTime, nullable=True)
    window_end = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False)  # "success", "partial", "failed"
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
