"""
Health check endpoint for monitoring.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.config import settings
from app.models.server import Server
from app.scheduler import scheduler
from app.services.sync_lock import get_lock_status

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(db: Session = Depends(get_db)):
    """
    Liveness plus fleet overview.

    Returns 503 if the database cannot be queried.
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
        active_servers = db.query(func.count(Server.id)).filter(Server.is_active.is_(True)).scalar()
        last_sync_at = db.query(func.max(Server.last_sync_at)).scalar()
        lock = get_lock_status(db)
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection failed"
        )

    return {
        "ok": True,
        "db": True,
        "environment": settings.APP_ENV,
        "active_servers": active_servers or 0,
        "last_sync_at": last_sync_at,
        "sync_running": lock.is_locked,
        "scheduler_running": scheduler.running,
    }
