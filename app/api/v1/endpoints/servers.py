"""
Server management and sync endpoints.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.auth import APIClient, require_api_key
from app.core.database import get_db, get_session_factory
from app.models.access_key import AccessKey, KeyStatus
from app.models.server import Server
from app.schemas.server import (
    ServerCreateRequest,
    ServerUpdateRequest,
    ServerResponse,
    ServerDetailResponse,
    ServerListResponse,
    ConnectionTestResponse,
)
from app.schemas.sync import FleetSyncResponse, ServerSyncResultResponse, SyncStatusResponse
from app.services.fleet_sync import run_fleet_sync, run_in_thread
from app.services.outline_client import OutlineApiError, get_client_factory
from app.services.server_sync_service import ServerNotFoundError, sync_server_by_id
from app.services.sync_lock import get_lock_status

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_server_or_404(db: Session, server_id: int) -> Server:
    server = db.query(Server).filter(Server.id == server_id).first()
    if not server:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Server with id {server_id} not found"
        )
    return server


# Sync routes are declared before /{server_id} so the literal paths win


@router.post("/sync-all", response_model=FleetSyncResponse)
async def sync_all_servers(
    client: APIClient = Depends(require_api_key),
    session_factory=Depends(get_session_factory),
    client_factory=Depends(get_client_factory),
):
    """
    Sync every active server.

    Returns one result per server. Responds 409 with a Retry-After header
    while another sync holds the fleet lock.
    """
    result = await run_fleet_sync(session_factory, client_factory)
    return FleetSyncResponse(
        results=[ServerSyncResultResponse.model_validate(r) for r in result.results],
        synced_at=result.synced_at,
    )


@router.get("/sync-status", response_model=SyncStatusResponse)
async def get_sync_status(
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """Whether a fleet sync currently holds the lock."""
    return SyncStatusResponse.model_validate(get_lock_status(db))


@router.get("/", response_model=ServerListResponse)
async def list_servers(
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """List registered servers."""
    query = db.query(Server)
    if is_active is not None:
        query = query.filter(Server.is_active.is_(is_active))
    servers = query.order_by(Server.name.asc()).all()
    return ServerListResponse(
        items=[ServerResponse.model_validate(s) for s in servers],
        total=len(servers),
    )


@router.post("/", response_model=ServerResponse, status_code=status.HTTP_201_CREATED)
async def create_server(
    request: ServerCreateRequest,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    """
    Register a server.

    The management API is contacted first; a server that cannot be reached
    with the given URL and fingerprint is rejected.
    """
    existing = db.query(Server).filter(Server.api_url == request.api_url).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A server with this API URL is already registered"
        )

    server = Server(**request.model_dump())
    try:
        info = await run_in_thread(client_factory(server).get_server_info)
    except OutlineApiError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Could not connect to server: {e}"
        )

    try:
        server.remote_server_id = info.server_id
        server.remote_version = info.version
        server.metrics_enabled = info.metrics_enabled
        db.add(server)
        db.commit()
        db.refresh(server)
        logger.info(f"Registered server {server.id} ('{server.name}')")
        return ServerResponse.model_validate(server)
    except Exception as e:
        logger.error(f"Error registering server: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to register server"
        )


@router.get("/{server_id}", response_model=ServerDetailResponse)
async def get_server(
    server_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    server = _get_server_or_404(db, server_id)
    key_count, total_used = (
        db.query(func.count(AccessKey.id), func.coalesce(func.sum(AccessKey.used_bytes), 0))
        .filter(AccessKey.server_id == server_id)
        .one()
    )
    active_count = (
        db.query(func.count(AccessKey.id))
        .filter(AccessKey.server_id == server_id, AccessKey.status == KeyStatus.ACTIVE)
        .scalar()
    )
    detail = ServerResponse.model_validate(server).model_dump()
    detail.update(key_count=key_count, active_key_count=active_count or 0, total_used_bytes=int(total_used or 0))
    return ServerDetailResponse(**detail)


@router.patch("/{server_id}", response_model=ServerResponse)
async def update_server(
    server_id: int,
    request: ServerUpdateRequest,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """Update a server. Only fields present in the body are changed."""
    try:
        server = _get_server_or_404(db, server_id)
        for field_name in request.model_fields_set:
            value = getattr(request, field_name)
            if value is None and field_name in ("name", "api_url", "api_cert_sha256", "is_active"):
                continue
            setattr(server, field_name, value)
        db.commit()
        db.refresh(server)
        logger.info(f"Updated server {server_id}: {', '.join(sorted(request.model_fields_set))}")
        return ServerResponse.model_validate(server)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating server: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update server"
        )


@router.delete("/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    server_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
):
    """
    Remove a server and all of its keys locally.

    Keys on the remote server are left untouched.
    """
    try:
        server = _get_server_or_404(db, server_id)
        db.delete(server)
        db.commit()
        logger.info(f"Deleted server {server_id} and its local keys")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error deleting server: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete server"
        )


@router.post("/{server_id}/test", response_model=ConnectionTestResponse)
async def test_server_connection(
    server_id: int,
    client: APIClient = Depends(require_api_key),
    db: Session = Depends(get_db),
    client_factory=Depends(get_client_factory),
):
    server = _get_server_or_404(db, server_id)
    try:
        info = await run_in_thread(client_factory(server).get_server_info)
    except OutlineApiError as e:
        return ConnectionTestResponse(success=False, error=str(e))
    return ConnectionTestResponse(
        success=True,
        remote_server_id=info.server_id,
        version=info.version,
        metrics_enabled=info.metrics_enabled,
    )


@router.post("/{server_id}/sync", response_model=ServerSyncResultResponse)
async def sync_single_server(
    server_id: int,
    client: APIClient = Depends(require_api_key),
    session_factory=Depends(get_session_factory),
    client_factory=Depends(get_client_factory),
):
    """
    Run one reconciliation pass for a single server.

    Does not take the fleet lock. Remote keys created outside keyfleet are
    imported.
    """
    try:
        result = await run_in_thread(sync_server_by_id, session_factory, client_factory, server_id, True)
    except ServerNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return ServerSyncResultResponse.model_validate(result)
