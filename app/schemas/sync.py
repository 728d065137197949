"""Schemas for sync results and lock status."""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel


class ServerSyncResultResponse(BaseModel):
    server_id: int
    server_name: str
    success: bool
    error: Optional[str] = None
    keys_synced: int = 0
    status_changes: int = 0
    counter_resets: int = 0
    missing_remote_keys: int = 0
    discovered_keys: int = 0
    archived: int = 0
    metrics_available: bool = False
    duration_ms: int = 0
    transitions: Dict[str, int] = {}

    model_config = {"from_attributes": True}


class FleetSyncResponse(BaseModel):
    results: List[ServerSyncResultResponse]
    synced_at: datetime

    model_config = {"from_attributes": True}


class SyncStatusResponse(BaseModel):
    is_locked: bool
    holder_id: Optional[str] = None
    locked_for_seconds: Optional[int] = None

    model_config = {"from_attributes": True}
