"""Read-only access to the Umami PostgreSQL database."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, String, bindparam, text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from umami_sync.core.clock import as_naive_utc

logger = logging.getLogger(__name__)

SESSIONS_SINCE_QUERY = (
    text(
        """
        SELECT session_id, website_id, created_at, distinct_id
        FROM session
        WHERE created_at >= :start
        ORDER BY created_at ASC
        """
    )
    .bindparams(bindparam("start", type_=DateTime(timezone=True)))
    .columns(session_id=String, website_id=String, created_at=DateTime(timezone=True), distinct_id=String)
)


class SourceUnavailable(Exception):
    """Raised when the Umami database cannot be reached or queried."""
    pass


@dataclass
class SessionRecord:
    """A session row from Umami. ``identity`` is the distinct id, if any."""
    session_id: str
    website_id: str
    created_at: datetime
    identity: Optional[str]


class UmamiSessionSource:
    """Async reader for the Umami ``session`` table.

    The connection pool is created on first use and released by ``close()``.
    """

    def __init__(
        self,
        url: str | URL,
        pool_size: int = 10,
        connect_timeout: float = 2.0,
        ssl: bool = False,
    ):
        self.url = make_url(url)
        self.pool_size = pool_size
        self.connect_timeout = connect_timeout
        self.ssl = ssl
        self.engine: Optional[AsyncEngine] = None

    def _get_engine(self) -> AsyncEngine:
        """Get or create the async engine."""
        if self.engine is None:
            kwargs = {"pool_pre_ping": True}
            if self.url.get_backend_name() == "postgresql":
                kwargs["pool_size"] = self.pool_size
                kwargs["connect_args"] = {"timeout": self.connect_timeout}
                if self.ssl:
                    kwargs["connect_args"]["ssl"] = "require"
            self.engine = create_async_engine(self.url, **kwargs)
        return self.engine

    async def close(self):
        """Dispose of the connection pool."""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            logger.info("Umami database connection pool closed")

    async def fetch_sessions_since(self, start: datetime) -> list[SessionRecord]:
        """
        Get sessions created at or after ``start``, oldest first.

        Raises:
            SourceUnavailable: if the connection or the query fails.
        """
        try:
            async with self._get_engine().connect() as conn:
                # created_at is timestamptz; bind the naive UTC start as an aware value
                result = await conn.execute(
                    SESSIONS_SINCE_QUERY, {"start": as_naive_utc(start).replace(tzinfo=timezone.utc)}
                )
                rows = result.all()
        except Exception as e:
            logger.error(f"Error querying Umami sessions since {start.isoformat()}: {e}")
            raise SourceUnavailable(f"Failed to query Umami sessions: {e}") from e

        sessions = [
            SessionRecord(
                session_id=str(row.session_id),
                website_id=str(row.website_id),
                created_at=as_naive_utc(row.created_at),
                identity=row.distinct_id,
            )
            for row in rows
        ]
        logger.debug(f"Fetched {len(sessions)} Umami sessions since {start.isoformat()}")
        return sessions

    async def test_connection(self) -> bool:
        """Return True if a trivial query succeeds."""
        try:
            async with self._get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Umami database connection test successful")
            return True
        except Exception as e:
            logger.error(f"Umami database connection test failed: {e}")
            return False
