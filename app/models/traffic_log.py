"""Traffic log model (down-sampled usage deltas for charts)."""
from sqlalchemy import Column, Integer, BigInteger, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from app.core.database import Base


class TrafficLog(Base):
    """Append-only usage delta sample. Not the authoritative counter."""
    __tablename__ = "traffic_logs"

    id = Column(Integer, primary_key=True, index=True)
    access_key_id = Column(
        Integer, ForeignKey("access_keys.id", ondelete="CASCADE"), nullable=False, index=True
    )
    bytes_used = Column(BigInteger, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False, index=True)

    access_key = relationship("AccessKey", back_populates="traffic_logs")
