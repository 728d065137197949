"""Schemas for archived keys."""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel

from app.models.access_key import KeyStatus, ExpirationType
from app.models.archived_key import ArchiveReason


class ArchivedKeyResponse(BaseModel):
    id: int
    original_key_id: int
    remote_key_id: str
    name: str
    email: Optional[str] = None
    notes: Optional[str] = None
    server_name: str
    server_location: Optional[str] = None
    data_limit_bytes: Optional[int] = None
    used_bytes: int
    expiration_type: ExpirationType
    expires_at: Optional[datetime] = None
    duration_days: Optional[int] = None
    archive_reason: ArchiveReason
    original_status: KeyStatus
    first_used_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    key_created_at: Optional[datetime] = None
    archived_at: datetime
    delete_after: datetime

    model_config = {"from_attributes": True}


class ArchivedKeyListResponse(BaseModel):
    items: List[ArchivedKeyResponse]
    total: int


class ArchiveStatsResponse(BaseModel):
    total: int
    by_reason: Dict[str, int]
    total_used_bytes: int


class ArchiveCleanupResponse(BaseModel):
    deleted: int
