"""Access key model and its enums."""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, Enum, ForeignKey, UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from app.core.database import Base


class KeyStatus(str, enum.Enum):
    """Lifecycle states of an access key."""
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DEPLETED = "DEPLETED"
    DISABLED = "DISABLED"


class ExpirationType(str, enum.Enum):
    """How a key's expiry date is determined."""
    NEVER = "NEVER"
    FIXED_DATE = "FIXED_DATE"
    DURATION_FROM_CREATION = "DURATION_FROM_CREATION"
    START_ON_FIRST_USE = "START_ON_FIRST_USE"


class DataLimitResetStrategy(str, enum.Enum):
    """Period after which a key's data usage starts again from zero."""
    NEVER = "NEVER"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class AccessKey(Base):
    """A proxy-access credential issued on exactly one remote server."""
    __tablename__ = "access_keys"
    __table_args__ = (
        UniqueConstraint("server_id", "remote_key_id", name="uq_access_keys_server_remote_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    server_id = Column(Integer, ForeignKey("servers.id", ondelete="CASCADE"), nullable=False, index=True)
    remote_key_id = Column(String(100), nullable=False)

    name = Column(String(100), nullable=False, index=True)
    email = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # Secret material returned by the remote server
    access_url = Column(Text, nullable=True)
    method = Column(String(50), nullable=True)

    status = Column(Enum(KeyStatus), nullable=False, default=KeyStatus.ACTIVE, index=True)

    # Usage accounting
    used_bytes = Column(BigInteger, nullable=False, default=0)
    usage_offset = Column(BigInteger, nullable=False, default=0)  # signed
    data_limit_bytes = Column(BigInteger, nullable=True)
    data_limit_reset_strategy = Column(
        Enum(DataLimitResetStrategy), nullable=False, default=DataLimitResetStrategy.NEVER
    )
    last_data_limit_reset_at = Column(DateTime(timezone=True), nullable=True)

    # Expiration
    expiration_type = Column(Enum(ExpirationType), nullable=False, default=ExpirationType.NEVER)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    duration_days = Column(Integer, nullable=True)

    # Activity
    first_used_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    estimated_devices = Column(Integer, nullable=False, default=0)
    peak_devices = Column(Integer, nullable=False, default=0)

    # Set when an admin disables the key (remote key is deleted at that moment)
    disabled_at = Column(DateTime(timezone=True), nullable=True)
    disabled_remote_key_id = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    server = relationship("Server", back_populates="access_keys")
    sessions = relationship("ConnectionSession", back_populates="access_key", cascade="all, delete-orphan")
    traffic_logs = relationship("TrafficLog", back_populates="access_key", cascade="all, delete-orphan")
