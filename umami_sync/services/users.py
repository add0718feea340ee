"""Correlation of Umami sessions and analytics onto existing user records."""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from umami_sync.core.clock import utcnow
from umami_sync.models.database import User
from umami_sync.services.umami_api import AnalyticsRecord
from umami_sync.services.umami_db import SessionRecord

logger = logging.getLogger(__name__)


def normalize_identity(identity: str) -> str:
    """User emails are stored lower-cased; match them the same way."""
    return identity.strip().lower()


@dataclass
class CorrelationResult:
    """Outcome of applying a batch of rows to user records."""
    total: int = 0
    matched: int = 0
    unmatched: int = 0
    failed: int = 0
    unmatched_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "failed": self.failed,
        }


class UserCorrelator:
    """Applies session ids (by identity) and analytics (by session id) to users.

    Updates are issued one record at a time; the store never creates users.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def set_session_id_by_identity(self, identity: str, session_id: str) -> int:
        """Set ``session_id`` on the user whose email matches. Returns rows matched."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.email == normalize_identity(identity))
                .values(session_id=session_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount

    async def set_analytics_by_session_id(self, record: AnalyticsRecord) -> int:
        """Store the analytics snapshot on the user holding this session id."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(User)
                .where(User.session_id == record.session_id)
                .values(umami_analytics=record.to_snapshot(), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount

    async def correlate_sessions(self, sessions: Iterable[SessionRecord]) -> CorrelationResult:
        """Apply session rows sequentially; anonymous or unknown identities are unmatched."""
        result = CorrelationResult()

        for row in sessions:
            result.total += 1
            if not row.identity:
                result.unmatched += 1
                result.unmatched_ids.append(row.session_id)
                continue

            try:
                matched = await self.set_session_id_by_identity(row.identity, row.session_id)
            except Exception as e:
                logger.error(f"Failed to update session {row.session_id} for user {row.identity}: {e}")
                result.failed += 1
                continue

            if matched:
                result.matched += 1
            else:
                result.unmatched += 1
                result.unmatched_ids.append(row.session_id)

        logger.info(
            f"Session correlation: {result.matched} matched, {result.unmatched} unmatched, "
            f"{result.failed} failed of {result.total}"
        )
        return result

    async def correlate_analytics(self, records: Iterable[AnalyticsRecord]) -> CorrelationResult:
        """Apply analytics records sequentially, matching users by session id."""
        result = CorrelationResult()

        for record in records:
            result.total += 1
            try:
                matched = await self.set_analytics_by_session_id(record)
            except Exception as e:
                logger.error(f"Failed to update analytics for session {record.session_id}: {e}")
                result.failed += 1
                continue

            if matched:
                result.matched += 1
            else:
                result.unmatched += 1
                result.unmatched_ids.append(record.session_id)

        if result.unmatched_ids:
            logger.debug(f"Sessions with no matching user: {result.unmatched_ids}")
        return result
