"""Archived key model."""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Text, Enum
from sqlalchemy.sql import func
import enum

from app.core.database import Base
from app.models.access_key import KeyStatus, ExpirationType


class ArchiveReason(str, enum.Enum):
    """Why a key left active management."""
    EXPIRED = "EXPIRED"
    DEPLETED = "DEPLETED"
    DELETED = "DELETED"
    DISABLED = "DISABLED"


class ArchivedKey(Base):
    """
    Frozen snapshot of an access key.

    Holds no foreign keys: the original key and even its server may be gone.
    Purged once delete_after has passed.
    """
    __tablename__ = "archived_keys"

    id = Column(Integer, primary_key=True, index=True)
    original_key_id = Column(Integer, nullable=False, index=True)
    remote_key_id = Column(String(100), nullable=False)

    name = Column(String(100), nullable=False, index=True)
    email = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    server_name = Column(String(100), nullable=False, index=True)
    server_location = Column(String(100), nullable=True)
    access_url = Column(Text, nullable=True)

    data_limit_bytes = Column(BigInteger, nullable=True)
    used_bytes = Column(BigInteger, nullable=False, default=0)
    expiration_type = Column(Enum(ExpirationType), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    duration_days = Column(Integer, nullable=True)

    archive_reason = Column(Enum(ArchiveReason), nullable=False, index=True)
    original_status = Column(Enum(KeyStatus), nullable=False)

    first_used_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    key_created_at = Column(DateTime(timezone=True), nullable=True)

    archived_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    delete_after = Column(DateTime(timezone=True), nullable=False, index=True)
