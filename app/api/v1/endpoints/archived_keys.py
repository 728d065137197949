"""
Archived key endpoints.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from app.core.auth import APIClient, require_api_key
from app.core.database import get_db
from app.models.archived_key import ArchiveReason
from app.schemas.archived_key import (
    ArchivedKeyResponse,
    ArchivedKeyListResponse,
    ArchiveStatsResponse,
    ArchiveCleanupResponse,
)
from app.services import archive_service

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=ArchivedKeyListResponse)
async def list_archived_keys(
    reason: Optional[ArchiveReason] = Query(None, description="Filter by archive reason"),
    search: Optional[str] = Query(None, max_length=100, description="Match name, email or server name"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    items, total = archive_service.list_archived_keys(db, reason, search, limit, offset)
    return ArchivedKeyListResponse(
        items=[ArchivedKeyResponse.model_validate(a) for a in items],
        total=total,
    )


@router.get("/stats", response_model=ArchiveStatsResponse)
async def get_archive_stats(
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    return ArchiveStatsResponse(**archive_service.archive_stats(db))


@router.post("/cleanup", response_model=ArchiveCleanupResponse)
async def cleanup_archived_keys(
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """Permanently delete archives whose retention period has passed."""
    return ArchiveCleanupResponse(deleted=archive_service.cleanup_expired_archives(db))


@router.delete("/{archived_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_archived_key(
    archived_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    if not archive_service.delete_archived_key(db, archived_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Archived key with id {archived_id} not found"
        )
