"""Sync orchestration - plans the window, then runs session and analytics sync."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from umami_sync.core.clock import utcnow
from umami_sync.core.config import Settings
from umami_sync.services.planner import SyncWindow, SyncWindowPlanner
from umami_sync.services.umami_api import UmamiApiClient
from umami_sync.services.umami_db import UmamiSessionSource
from umami_sync.services.users import CorrelationResult, UserCorrelator
from umami_sync.services.watermark import PartitionStatus, WatermarkStore

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    PLANNING = "planning"
    SESSION_SYNC = "session_sync"
    ANALYTICS_SYNC = "analytics_sync"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


class SessionCorrelationError(Exception):
    """Raised when a non-empty session batch matched no user at all."""
    pass


class SyncAlreadyRunningError(Exception):
    """Raised when another run holds the sync lease."""
    pass


@dataclass
class SessionSyncResult:
    fetched: int = 0
    filtered_out: int = 0
    correlation: CorrelationResult = field(default_factory=CorrelationResult)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "filtered_out": self.filtered_out,
            **self.correlation.to_dict(),
        }


@dataclass
class PartitionResult:
    website_id: str
    success: bool
    sessions_processed: int = 0
    matched: int = 0
    unmatched: int = 0
    failed: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "website_id": self.website_id,
            "success": self.success,
            "sessions_processed": self.sessions_processed,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "failed": self.failed,
            "error": self.error,
        }


@dataclass
class SyncRunResult:
    started_at: datetime
    phase: SyncPhase = SyncPhase.PLANNING
    failed_phase: Optional[SyncPhase] = None
    window: Optional[SyncWindow] = None
    sessions: Optional[SessionSyncResult] = None
    partitions: list[PartitionResult] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.phase == SyncPhase.DONE

    @property
    def failed_partitions(self) -> list[str]:
        return [p.website_id for p in self.partitions if not p.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "phase": self.phase.value,
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "window": {
                "start": self.window.start.isoformat(),
                "end": self.window.end.isoformat(),
                "kind": self.window.kind.value,
            } if self.window else None,
            "sessions": self.sessions.to_dict() if self.sessions else None,
            "partitions": [p.to_dict() for p in self.partitions],
            "error": self.error,
        }


class SyncRunError(Exception):
    """A run failed before finalizing. ``result`` holds what was done."""

    def __init__(self, message: str, result: SyncRunResult):
        super().__init__(message)
        self.result = result


PartitionWorker = Callable[[str], Awaitable[PartitionResult]]


class SequentialPartitionRunner:
    """Processes websites one after another."""

    async def run(self, website_ids: Sequence[str], worker: PartitionWorker) -> list[PartitionResult]:
        results = []
        for website_id in website_ids:
            results.append(await worker(website_id))
        return results


class ConcurrentPartitionRunner:
    """Processes up to ``max_concurrency`` websites at once, keeping input order."""

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    async def run(self, website_ids: Sequence[str], worker: PartitionWorker) -> list[PartitionResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(website_id: str) -> PartitionResult:
            async with semaphore:
                return await worker(website_id)

        return list(await asyncio.gather(*(_bounded(w) for w in website_ids)))


class SyncService:
    """Orchestrates syncing Umami sessions and analytics onto user records."""

    def __init__(
        self,
        source: UmamiSessionSource,
        api: UmamiApiClient,
        correlator: UserCorrelator,
        watermarks: WatermarkStore,
        website_ids: Sequence[str],
        initial_sync_days: int = 7,
        sync_buffer_hours: int = 12,
        lease_ttl: timedelta = timedelta(minutes=30),
        runner=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.api = api
        self.correlator = correlator
        self.watermarks = watermarks
        self.website_ids = list(website_ids)
        self.planner = SyncWindowPlanner(watermarks, initial_sync_days, sync_buffer_hours)
        self.lease_ttl = lease_ttl
        self.runner = runner or SequentialPartitionRunner()
        self.clock = clock

    async def run(self) -> SyncRunResult:
        """
        Run one full sync.

        Returns the run result when the watermark was advanced. Raises
        SyncRunError if planning, session sync, authentication or
        finalizing fails, and SyncAlreadyRunningError if another run holds
        the lease.
        """
        # Anchor the next window to when this run started scanning
        started_at = self.clock()
        run_id = uuid.uuid4().hex
        result = SyncRunResult(started_at=started_at)

        try:
            acquired = await self.watermarks.acquire_lease(run_id, started_at, self.lease_ttl)
        except Exception as e:
            result.failed_phase = SyncPhase.PLANNING
            result.phase = SyncPhase.FAILED
            result.error = str(e)
            result.completed_at = self.clock()
            logger.error(f"Umami sync could not acquire the sync lease: {e}")
            raise SyncRunError(f"Sync failed during {SyncPhase.PLANNING.value}: {e}", result) from e

        if not acquired:
            raise SyncAlreadyRunningError("Another Umami sync run holds the lease")

        logger.info("Umami sync process started")

        try:
            result.window = await self.planner.plan(started_at)

            result.phase = SyncPhase.SESSION_SYNC
            result.sessions = await self.sync_session_ids(result.window)

            result.phase = SyncPhase.ANALYTICS_SYNC
            result.partitions = await self.sync_analytics(result.window)

            result.phase = SyncPhase.FINALIZING
            await self.watermarks.advance_global_watermark(started_at)

            result.phase = SyncPhase.DONE
        except Exception as e:
            result.failed_phase = result.phase
            result.phase = SyncPhase.FAILED
            result.error = str(e)
            logger.error(f"Umami sync process failed during {result.failed_phase.value}: {e}")
            raise SyncRunError(f"Sync failed during {result.failed_phase.value}: {e}", result) from e
        finally:
            result.completed_at = self.clock()
            try:
                await self.watermarks.release_lease(run_id)
            except Exception as e:
                logger.error(f"Failed to release sync lease {run_id}: {e}")

        if result.failed_partitions:
            logger.warning(f"Umami sync completed with failed websites: {result.failed_partitions}")
        else:
            logger.info("Umami sync process completed successfully")
        return result

    async def sync_session_ids(self, window: SyncWindow) -> SessionSyncResult:
        """Copy Umami session ids onto users matched by identity."""
        logger.info("Session ID sync started")

        sessions = await self.source.fetch_sessions_since(window.start)
        result = SessionSyncResult(fetched=len(sessions))

        if not sessions:
            logger.info("No new sessions found for sync")
            return result

        configured = set(self.website_ids)
        filtered = [s for s in sessions if s.website_id in configured]
        result.filtered_out = len(sessions) - len(filtered)

        if result.filtered_out:
            unknown = sorted({s.website_id for s in sessions if s.website_id not in configured})
            logger.info(
                f"Dropped {result.filtered_out} of {len(sessions)} sessions from unconfigured websites: {unknown}"
            )

        if not filtered:
            logger.info("No sessions found from configured websites")
            return result

        result.correlation = await self.correlator.correlate_sessions(filtered)

        if result.correlation.matched == 0:
            raise SessionCorrelationError(
                f"No users were updated with session IDs ({len(filtered)} sessions checked)"
            )

        logger.info(f"Session ID sync completed: {result.correlation.matched} users updated")
        return result

    async def sync_analytics(self, window: SyncWindow) -> list[PartitionResult]:
        """Fetch analytics for every configured website and apply it to users."""
        logger.info(
            f"Analytics data sync started for {window.start.isoformat()} to {window.end.isoformat()}"
        )

        try:
            # One login for all websites
            await self.api.authenticate()
            results = await self.runner.run(
                self.website_ids,
                lambda website_id: self._sync_partition(website_id, window),
            )
        finally:
            self.api.clear_token()

        total_sessions = sum(r.sessions_processed for r in results)
        total_matched = sum(r.matched for r in results)
        logger.info(
            f"Analytics data sync completed: {total_sessions} sessions, {total_matched} users updated, "
            f"{len(results)} websites ({sum(1 for r in results if not r.success)} failed)"
        )
        return results

    async def _sync_partition(self, website_id: str, window: SyncWindow) -> PartitionResult:
        """Sync one website. Errors are recorded against that website only."""
        try:
            records = await self.api.fetch_all_sessions(website_id, window.start, window.end)
            correlation = await self.correlator.correlate_analytics(records)

            await self.watermarks.upsert_partition_status(
                website_id,
                PartitionStatus(
                    last_sync_at=self.clock(),
                    last_day_synced=window.end.date().isoformat(),
                    sessions_processed=len(records),
                    error_count=0,
                ),
            )

            logger.info(
                f"Website {website_id} sync completed: {len(records)} sessions, "
                f"{correlation.matched} matched, {correlation.unmatched} unmatched, {correlation.failed} failed"
            )
            return PartitionResult(
                website_id=website_id,
                success=True,
                sessions_processed=len(records),
                matched=correlation.matched,
                unmatched=correlation.unmatched,
                failed=correlation.failed,
            )
        except Exception as e:
            logger.error(f"Failed to sync website {website_id} during analytics sync: {e}")
            try:
                await self.watermarks.increment_partition_error(website_id)
            except Exception as inc_err:
                logger.error(f"Failed to increment error count for website {website_id}: {inc_err}")
            return PartitionResult(website_id=website_id, success=False, error=str(e))


def build_source(settings: Settings) -> UmamiSessionSource:
    return UmamiSessionSource(
        settings.umami_db_url,
        pool_size=settings.umami_db_pool_size,
        connect_timeout=settings.umami_db_connect_timeout,
        ssl=settings.umami_db_ssl,
    )


def build_api(settings: Settings) -> UmamiApiClient:
    return UmamiApiClient(
        settings.umami_api_base_url,
        settings.umami_api_username,
        settings.umami_api_password,
        page_size=settings.api_page_size,
        max_pages=settings.api_max_pages,
        timeout=settings.umami_api_timeout,
    )


@asynccontextmanager
async def open_sync_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[SyncService]:
    """Build a SyncService from settings and release its clients afterwards."""
    source = build_source(settings)
    api = build_api(settings)

    if settings.partition_concurrency > 1:
        runner = ConcurrentPartitionRunner(settings.partition_concurrency)
    else:
        runner = SequentialPartitionRunner()

    try:
        yield SyncService(
            source,
            api,
            UserCorrelator(session_factory),
            WatermarkStore(session_factory),
            settings.website_ids,
            initial_sync_days=settings.initial_sync_days,
            sync_buffer_hours=settings.sync_buffer_hours,
            lease_ttl=timedelta(minutes=settings.sync_lease_ttl_minutes),
            runner=runner,
        )
    finally:
        await api.close()
        await source.close()
