"""
Connection session model used for device estimation.

A session approximates one device: it is opened when a key shows traffic and
closed after a period of inactivity. Sessions are never edited by admins.
"""
from sqlalchemy import Column, Integer, BigInteger, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from app.core.database import Base


class ConnectionSession(Base):
    """Inferred activity window for an access key."""
    __tablename__ = "connection_sessions"

    id = Column(Integer, primary_key=True, index=True)
    access_key_id = Column(
        Integer, ForeignKey("access_keys.id", ondelete="CASCADE"), nullable=False, index=True
    )
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_active_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    bytes_used = Column(BigInteger, default=0, nullable=False)

    access_key = relationship("AccessKey", back_populates="sessions")
