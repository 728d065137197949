"""
Database configuration and session management.

Uses SQLAlchemy 2.x style with DeclarativeBase.
"""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from app.core.config import get_settings

settings = get_settings()

# DATABASE_URL > PG* vars > docker-compose > SQLite
database_url = settings.sqlalchemy_database_uri

# Sync passes run in worker threads, so SQLite connections must be shareable
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(
    database_url,
    pool_pre_ping=not database_url.startswith("sqlite"),
    echo=settings.DEBUG,
    connect_args=connect_args,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.x style."""
    pass


def get_db():
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """
    Dependency returning the session factory.

    Fleet sync opens one session per server pass (each in its own worker
    thread), so it needs the factory rather than a single request session.
    """
    return SessionLocal


@contextmanager
def atomic(session: Session):
    """
    Commit everything done inside the block as one unit.

    Commits on normal exit; rolls back and re-raises on any exception.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
