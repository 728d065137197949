"""
Access key management endpoints.

Endpoints that call a remote server are plain functions so FastAPI runs them
in its threadpool instead of blocking the event loop.
"""
import logging
from typing import Optional, List
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session

from app.core.auth import APIClient, require_api_key
from app.core.database import get_db
from app.models.access_key import KeyStatus
from app.models.server import Server
from app.schemas.access_key import (
    KeyCreateRequest,
    KeyUpdateRequest,
    KeyResponse,
    KeyListResponse,
    KeyStatsResponse,
    ConnectionSessionResponse,
    BulkKeyRequest,
    BulkOperationResponse,
)
from app.services import key_service
from app.services.key_service import KeyNotFoundError, KeyOperationError
from app.services.key_state_machine import InvalidTransitionError
from app.services.outline_client import OutlineApiError, get_client_factory

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_key_or_404(db: Session, key_id: int):
    try:
        return key_service.get_key(db, key_id)
    except KeyNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _operation_error(e: Exception) -> HTTPException:
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/", response_model=KeyListResponse)
async def list_keys(
    server_id: Optional[int] = Query(None, description="Filter by server"),
    key_status: Optional[KeyStatus] = Query(None, alias="status", description="Filter by status"),
    search: Optional[str] = Query(None, max_length=100, description="Match name or email"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    items, total = key_service.list_keys(db, server_id, key_status, search, limit, offset)
    return KeyListResponse(items=[KeyResponse.model_validate(k) for k in items], total=total)


@router.get("/stats", response_model=KeyStatsResponse)
async def get_key_stats(
    server_id: Optional[int] = Query(None),
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """Counts per status and the total of used bytes."""
    return KeyStatsResponse(**key_service.key_stats(db, server_id))


@router.post("/", response_model=KeyResponse, status_code=status.HTTP_201_CREATED)
def create_key(
    request: KeyCreateRequest,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """Issue a new key on a server."""
    server = db.query(Server).filter(Server.id == request.server_id).first()
    if not server:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Server with id {request.server_id} not found"
        )
    try:
        key = key_service.create_key(db, server, client_factory(server), request)
        return KeyResponse.model_validate(key)
    except (KeyOperationError, OutlineApiError) as e:
        raise _operation_error(e)
    except Exception as e:
        logger.error(f"Error creating key: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create key"
        )


@router.post("/bulk/disable", response_model=BulkOperationResponse)
def bulk_disable_keys(
    request: BulkKeyRequest,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    result = key_service.bulk_operation(db, request.key_ids, client_factory, key_service.disable_key)
    return BulkOperationResponse(success=result.success, failed=result.failed, errors=result.errors)


@router.post("/bulk/enable", response_model=BulkOperationResponse)
def bulk_enable_keys(
    request: BulkKeyRequest,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    result = key_service.bulk_operation(db, request.key_ids, client_factory, key_service.enable_key)
    return BulkOperationResponse(success=result.success, failed=result.failed, errors=result.errors)


@router.post("/bulk/delete", response_model=BulkOperationResponse)
def bulk_delete_keys(
    request: BulkKeyRequest,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """Archive and remove keys; each key is handled independently."""
    result = key_service.bulk_operation(db, request.key_ids, client_factory, key_service.delete_key)
    return BulkOperationResponse(success=result.success, failed=result.failed, errors=result.errors)


@router.get("/{key_id}", response_model=KeyResponse)
async def get_key(
    key_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    return KeyResponse.model_validate(_get_key_or_404(db, key_id))


@router.patch("/{key_id}", response_model=KeyResponse)
def update_key(
    key_id: int,
    request: KeyUpdateRequest,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """Update a key. Only fields present in the body are applied."""
    key = _get_key_or_404(db, key_id)
    changes = {name: getattr(request, name) for name in request.model_fields_set}
    try:
        key = key_service.update_key(db, key, client_factory(key.server), changes)
    except (KeyOperationError, OutlineApiError) as e:
        raise _operation_error(e)
    return KeyResponse.model_validate(key)


@router.post("/{key_id}/disable", response_model=KeyResponse)
def disable_key(
    key_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    key = _get_key_or_404(db, key_id)
    try:
        key = key_service.disable_key(db, key, client_factory(key.server))
    except (KeyOperationError, InvalidTransitionError, OutlineApiError) as e:
        raise _operation_error(e)
    return KeyResponse.model_validate(key)


@router.post("/{key_id}/enable", response_model=KeyResponse)
def enable_key(
    key_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    key = _get_key_or_404(db, key_id)
    try:
        key = key_service.enable_key(db, key, client_factory(key.server))
    except (KeyOperationError, InvalidTransitionError, OutlineApiError) as e:
        raise _operation_error(e)
    return KeyResponse.model_validate(key)


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_key(
    key_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """Archive the key and remove it. The remote delete is best effort."""
    key = _get_key_or_404(db, key_id)
    try:
        remote_client = client_factory(key.server)
    except OutlineApiError as e:
        logger.warning(f"Server of key {key_id} unreachable, archiving without remote delete: {e}")
        remote_client = None
    try:
        key_service.delete_key(db, key, remote_client)
    except Exception as e:
        logger.error(f"Error deleting key {key_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete key"
        )


@router.get("/{key_id}/sessions", response_model=List[ConnectionSessionResponse])
async def get_key_sessions(
    key_id: int,
    limit: int = Query(50, ge=1, le=500),
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """Inferred connection sessions of a key, newest first."""
    _get_key_or_404(db, key_id)
    return [ConnectionSessionResponse.model_validate(s) for s in key_service.key_sessions(db, key_id, limit)]
