"""Schemas for server management."""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field


class ServerCreateRequest(BaseModel):
    """Request schema for registering a remote server."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    api_url: str = Field(..., min_length=1, max_length=500, description="Management API URL including the secret path")
    api_cert_sha256: str = Field(..., min_length=1, max_length=95, description="SHA-256 fingerprint of the server certificate")
    location: Optional[str] = Field(None, max_length=100)
    country_code: Optional[str] = Field(None, min_length=2, max_length=2)
    is_active: bool = True


class ServerUpdateRequest(BaseModel):
    """Request schema for updating a server. Only fields that are sent are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    api_url: Optional[str] = Field(None, min_length=1, max_length=500)
    api_cert_sha256: Optional[str] = Field(None, min_length=1, max_length=95)
    location: Optional[str] = Field(None, max_length=100)
    country_code: Optional[str] = Field(None, min_length=2, max_length=2)
    is_active: Optional[bool] = None


class ServerResponse(BaseModel):
    """Response schema for server. The management URL is never returned."""
    id: int
    name: str
    location: Optional[str] = None
    country_code: Optional[str] = None
    is_active: bool
    metrics_enabled: bool
    last_sync_at: Optional[datetime] = None
    remote_server_id: Optional[str] = None
    remote_version: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ServerDetailResponse(ServerResponse):
    """Server with key counts."""
    key_count: int = 0
    active_key_count: int = 0
    total_used_bytes: int = 0


class ServerListResponse(BaseModel):
    items: List[ServerResponse]
    total: int


class ConnectionTestResponse(BaseModel):
    success: bool
    remote_server_id: Optional[str] = None
    version: Optional[str] = None
    metrics_enabled: Optional[bool] = None
    error: Optional[str] = None
