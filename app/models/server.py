"""Remote VPN management server model."""
from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


class Server(Base):
    """A registered remote management endpoint that issues access keys."""
    __tablename__ = "servers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    location = Column(String(100), nullable=True)
    country_code = Column(String(2), nullable=True)

    # Remote endpoint and the SHA-256 fingerprint of its self-signed certificate
    api_url = Column(String(500), nullable=False, unique=True)
    api_cert_sha256 = Column(String(95), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Written only by sync
    metrics_enabled = Column(Boolean, default=False, nullable=False)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    remote_server_id = Column(String(100), nullable=True)
    remote_version = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    # Local cascade only; remote keys are never touched when a server is removed
    access_keys = relationship("AccessKey", back_populates="server", cascade="all, delete-orphan")
