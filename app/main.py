"""
Main FastAPI application entry point.
"""
import logging
import os
import uuid
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import text

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.database import engine, Base, SessionLocal
from app.core.logging_config import setup_logging
from app.api.v1.router import api_router
from app.middleware.request_logging import RequestLoggingMiddleware
from app.scheduler import setup_scheduler, shutdown_scheduler
from app.services.outline_client import create_outline_client
from app.services.sync_lock import SyncAlreadyRunningError

# Register all models with Base.metadata before create_all()
from app import models  # noqa: F401

setup_logging()
logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """alembic upgrade head when DATABASE_URL is set, create_all otherwise."""
    if os.getenv("DATABASE_URL"):
        try:
            from alembic.config import Config
            from alembic import command

            logger.info("[MIGRATION] DATABASE_URL detected, running Alembic migrations")
            command.upgrade(Config("alembic.ini"), "head")
            logger.info("[MIGRATION] Alembic migrations completed (or already up-to-date)")
            return
        except Exception as e:
            trace_id = str(uuid.uuid4())
            logger.warning(f"[MIGRATION] [{trace_id}] Alembic migration failed: {e}. Falling back to create_all")
            logger.debug(f"[MIGRATION] [{trace_id}] Migration error details:", exc_info=True)

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created/verified successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: schema, connectivity check, scheduler. Shutdown: stop scheduler."""
    logger.info(f"Starting up {settings.APP_NAME} API...")
    run_migrations()

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            logger.info("Database connectivity verified")
        finally:
            db.close()
    except Exception as e:
        trace_id = str(uuid.uuid4())
        logger.error(f"[{trace_id}] Database connectivity test failed: {e}", exc_info=True)

    if settings.SCHEDULER_ENABLED:
        setup_scheduler(SessionLocal, create_outline_client)
    else:
        logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    shutdown_scheduler()
    logger.info(f"Shutting down {settings.APP_NAME} API...")


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Usage reconciliation and lifecycle management for access keys across remote VPN servers",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(SyncAlreadyRunningError)
async def sync_already_running_handler(request: Request, exc: SyncAlreadyRunningError):
    """A fleet operation already holds the lock: 409 with retry guidance."""
    retry_after = exc.retry_after_seconds
    return JSONResponse(
        status_code=409,
        headers={"Retry-After": str(retry_after)},
        content={
            "detail": "A fleet sync is already running",
            "holder_id": exc.holder_id,
            "held_for_seconds": exc.held_for_seconds,
            "retry_after_seconds": retry_after,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors with trace_id."""
    trace_id = getattr(request.state, "trace_id", str(uuid.uuid4()))

    logger.error(
        f"[{trace_id}] Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )

    if isinstance(exc, SQLAlchemyError):
        error_detail = "Database error: check DATABASE_URL / migrations"
        error_type = "DatabaseError"
    elif isinstance(exc, HTTPException):
        raise exc
    else:
        error_detail = str(exc) if settings.DEBUG else "Internal Server Error"
        error_type = type(exc).__name__

    return JSONResponse(
        status_code=500,
        content={
            "detail": error_detail,
            "trace_id": trace_id,
            "error": error_type,
        },
    )


@app.get("/")
async def root():
    return {
        "message": f"{settings.APP_NAME} API",
        "version": "1.0.0",
        "docs": "/docs",
    }
