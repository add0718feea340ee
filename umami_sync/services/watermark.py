"""Persistence for the sync watermark singleton."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from umami_sync.core.clock import parse_timestamp, utcnow
from umami_sync.models.sync_state import GLOBAL_WATERMARK_ID, SyncWatermark

logger = logging.getLogger(__name__)


@dataclass
class PartitionStatus:
    """Per-website sync status. Fields stay None until first written."""
    last_sync_at: Optional[datetime] = None
    last_day_synced: Optional[str] = None
    sessions_processed: Optional[int] = None
    error_count: int = 0

    def to_document(self) -> dict[str, Any]:
        return {
            "lastSyncAt": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "lastDaySynced": self.last_day_synced,
            "sessionsProcessed": self.sessions_processed,
            "errorCount": self.error_count,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "PartitionStatus":
        last_sync = doc.get("lastSyncAt")
        return cls(
            last_sync_at=parse_timestamp(last_sync) if last_sync else None,
            last_day_synced=doc.get("lastDaySynced"),
            sessions_processed=doc.get("sessionsProcessed"),
            error_count=int(doc.get("errorCount") or 0),
        )


@dataclass
class Watermark:
    last_successful_sync_at: Optional[datetime] = None
    last_session_sync_at: Optional[datetime] = None
    last_analytics_sync_at: Optional[datetime] = None
    partition_status: dict[str, PartitionStatus] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "lastSuccessfulSyncAt": iso(self.last_successful_sync_at),
            "lastSessionSyncAt": iso(self.last_session_sync_at),
            "lastAnalyticsSyncAt": iso(self.last_analytics_sync_at),
            "partitionStatus": {
                website_id: status.to_document()
                for website_id, status in self.partition_status.items()
            },
        }


class WatermarkStore:
    """Read-modify-write access to the single ``global`` watermark row.

    Every mutation opens its own session. Read-modify-write mutations are
    serialized so concurrently running partitions don't overwrite each
    other's status.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._lock = asyncio.Lock()

    async def _get_or_create(self, session: AsyncSession) -> SyncWatermark:
        """Load the singleton, inserting it first if it does not exist yet."""
        row = await session.get(SyncWatermark, GLOBAL_WATERMARK_ID)
        if row is not None:
            return row

        session.add(SyncWatermark(id=GLOBAL_WATERMARK_ID, partition_status={}))
        try:
            await session.flush()
        except IntegrityError:
            # Created by someone else in the meantime; last writer wins
            await session.rollback()
        return await session.get(SyncWatermark, GLOBAL_WATERMARK_ID, populate_existing=True)

    async def read(self) -> Watermark:
        """Return the current watermark, or an empty one if none was written."""
        async with self.session_factory() as session:
            row = await session.get(SyncWatermark, GLOBAL_WATERMARK_ID)

        if row is None:
            return Watermark()

        return Watermark(
            last_successful_sync_at=row.last_successful_sync_at,
            last_session_sync_at=row.last_session_sync_at,
            last_analytics_sync_at=row.last_analytics_sync_at,
            partition_status={
                website_id: PartitionStatus.from_document(doc or {})
                for website_id, doc in (row.partition_status or {}).items()
            },
        )

    async def upsert_partition_status(self, website_id: str, status: PartitionStatus) -> None:
        """Replace the status of one website."""
        async with self._lock, self.session_factory() as session:
            row = await self._get_or_create(session)
            statuses = dict(row.partition_status or {})
            statuses[website_id] = status.to_document()
            row.partition_status = statuses
            row.updated_at = utcnow()
            await session.commit()

        logger.debug(f"Updated sync status for website {website_id}: {status.sessions_processed} sessions")

    async def increment_partition_error(self, website_id: str) -> int:
        """Add one to a website's error count and return the new value."""
        async with self._lock, self.session_factory() as session:
            row = await self._get_or_create(session)
            statuses = dict(row.partition_status or {})
            doc = dict(statuses.get(website_id) or {})
            doc["errorCount"] = int(doc.get("errorCount") or 0) + 1
            statuses[website_id] = doc
            row.partition_status = statuses
            row.updated_at = utcnow()
            await session.commit()

        logger.debug(f"Error count for website {website_id} is now {doc['errorCount']}")
        return doc["errorCount"]

    async def advance_global_watermark(self, instant: datetime) -> None:
        """Record ``instant`` as the start of the last fully successful run."""
        async with self._lock, self.session_factory() as session:
            row = await self._get_or_create(session)
            row.last_successful_sync_at = instant
            row.last_session_sync_at = instant
            row.last_analytics_sync_at = instant
            row.updated_at = utcnow()
            await session.commit()

        logger.info(f"Updated last successful sync timestamp to {instant.isoformat()}")

    async def acquire_lease(self, owner: str, now: datetime, ttl: timedelta) -> bool:
        """
        Try to take the single-flight lease for a sync run.

        Succeeds only if no lease is held or the held lease has expired.
        """
        async with self.session_factory() as session:
            await self._get_or_create(session)
            await session.commit()

            result = await session.execute(
                update(SyncWatermark)
                .where(
                    SyncWatermark.id == GLOBAL_WATERMARK_ID,
                    or_(
                        SyncWatermark.lease_owner.is_(None),
                        SyncWatermark.lease_expires_at.is_(None),
                        SyncWatermark.lease_expires_at < now,
                    ),
                )
                .values(lease_owner=owner, lease_expires_at=now + ttl)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        acquired = result.rowcount == 1
        if acquired:
            logger.debug(f"Sync lease acquired by {owner} until {(now + ttl).isoformat()}")
        return acquired

    async def release_lease(self, owner: str) -> None:
        """Release the lease if ``owner`` still holds it."""
        async with self.session_factory() as session:
            await session.execute(
                update(SyncWatermark)
                .where(SyncWatermark.id == GLOBAL_WATERMARK_ID, SyncWatermark.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.debug(f"Sync lease released by {owner}")
