"""Single-flight lock record for fleet-wide operations."""
from sqlalchemy import Column, String, DateTime

from app.core.database import Base


class SyncLock(Base):
    """
    One row per named lock.

    holder_id is NULL when the lock is free. A held lock whose heartbeat_at is
    older than the configured max age is stale and may be taken over.
    """
    __tablename__ = "sync_locks"

    name = Column(String(100), primary_key=True)
    holder_id = Column(String(100), nullable=True)
    acquired_at = Column(DateTime(timezone=True), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)
