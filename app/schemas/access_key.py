"""Schemas for access key management."""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, model_validator

from app.models.access_key import KeyStatus, ExpirationType, DataLimitResetStrategy


class KeyCreateRequest(BaseModel):
    """Request schema for issuing a new access key on a server."""
    server_id: int
    name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    method: Optional[str] = Field(None, max_length=50, description="Cipher method requested from the remote server")
    data_limit_bytes: Optional[int] = Field(None, ge=0)
    data_limit_reset_strategy: DataLimitResetStrategy = DataLimitResetStrategy.NEVER
    expiration_type: ExpirationType = ExpirationType.NEVER
    expires_at: Optional[datetime] = None
    duration_days: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def check_expiration(self):
        if self.expiration_type == ExpirationType.FIXED_DATE and self.expires_at is None:
            raise ValueError("expires_at is required for FIXED_DATE expiration")
        if self.expiration_type in (ExpirationType.DURATION_FROM_CREATION, ExpirationType.START_ON_FIRST_USE) \
                and not self.duration_days:
            raise ValueError(f"duration_days is required for {self.expiration_type.value} expiration")
        return self


class KeyUpdateRequest(BaseModel):
    """
    Request schema for updating a key.

    Only fields present in the request body are applied; sending null for
    data_limit_bytes removes the limit.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None
    data_limit_bytes: Optional[int] = Field(None, ge=0)
    data_limit_reset_strategy: Optional[DataLimitResetStrategy] = None
    expiration_type: Optional[ExpirationType] = None
    expires_at: Optional[datetime] = None
    duration_days: Optional[int] = Field(None, ge=1)


class KeyResponse(BaseModel):
    """Response schema for an access key."""
    id: int
    server_id: int
    remote_key_id: str
    name: str
    email: Optional[str] = None
    notes: Optional[str] = None
    access_url: Optional[str] = None
    method: Optional[str] = None
    status: KeyStatus
    used_bytes: int
    data_limit_bytes: Optional[int] = None
    data_limit_reset_strategy: DataLimitResetStrategy
    last_data_limit_reset_at: Optional[datetime] = None
    expiration_type: ExpirationType
    expires_at: Optional[datetime] = None
    duration_days: Optional[int] = None
    first_used_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    estimated_devices: int
    peak_devices: int
    disabled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class KeyListResponse(BaseModel):
    items: List[KeyResponse]
    total: int


class KeyStatsResponse(BaseModel):
    """Counts per status and total usage."""
    total: int
    by_status: Dict[str, int]
    total_used_bytes: int


class ConnectionSessionResponse(BaseModel):
    id: int
    started_at: datetime
    last_active_at: datetime
    ended_at: Optional[datetime] = None
    is_active: bool
    bytes_used: int

    model_config = {"from_attributes": True}


class BulkKeyRequest(BaseModel):
    key_ids: List[int] = Field(..., min_length=1, max_length=500)


class BulkOperationError(BaseModel):
    key_id: int
    error: str


class BulkOperationResponse(BaseModel):
    success: int
    failed: int
    errors: List[BulkOperationError] = []
