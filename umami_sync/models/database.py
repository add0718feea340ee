from umami_sync.core.clock import utcnow
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    JSON,
    String,
)
from umami_sync.core.database import Base


class User(Base):
    """User record owned by the main application.

    The sync engine only ever updates ``session_id`` and ``umami_analytics``
    on rows that already exist.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, index=True)  # stored lower-cased
    session_id = Column(String, nullable=True, index=True)
    umami_analytics = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
