"""Decides which time window a sync run covers."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from umami_sync.services.watermark import WatermarkStore

logger = logging.getLogger(__name__)


class SyncKind(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime
    kind: SyncKind


class SyncWindowPlanner:
    """Plans ``[start, end)`` from the persisted watermark.

    Incremental windows reach back ``sync_buffer_hours`` before the last
    successful sync so late rows are picked up; updates are idempotent.
    """

    def __init__(self, watermarks: WatermarkStore, initial_sync_days: int = 7, sync_buffer_hours: int = 12):
        self.watermarks = watermarks
        self.initial_sync_days = initial_sync_days
        self.sync_buffer_hours = sync_buffer_hours

    async def plan(self, now: datetime) -> SyncWindow:
        watermark = await self.watermarks.read()
        last_sync = watermark.last_successful_sync_at

        if last_sync is None:
            start = now - timedelta(days=self.initial_sync_days)
            logger.info(
                f"Initial sync detected - syncing last {self.initial_sync_days} days "
                f"({start.date().isoformat()} to {now.date().isoformat()})"
            )
            return SyncWindow(start=start, end=now, kind=SyncKind.INITIAL)

        start = last_sync - timedelta(hours=self.sync_buffer_hours)
        logger.info(
            f"Incremental sync from {start.isoformat()} "
            f"(last sync {last_sync.isoformat()} minus {self.sync_buffer_hours}h buffer) to {now.isoformat()}"
        )
        return SyncWindow(start=start, end=now, kind=SyncKind.INCREMENTAL)
