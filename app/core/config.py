"""
Application configuration settings.

Central configuration module using Pydantic BaseSettings with environment variable support.
Loads from .env file and environment variables.
"""
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file if it exists (python-dotenv)
env_path = Path(".env")
if env_path.exists():
    load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App settings
    APP_NAME: str = "Keyfleet"
    APP_ENV: str = Field(default="local")
    DEBUG: bool = Field(default=False)

    # Database settings - generic connection string (highest priority)
    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Database connection URL",
    )

    # Postgres raw vars (PG*)
    PGUSER: Optional[str] = None
    PGPASSWORD: Optional[str] = None
    PGHOST: Optional[str] = None
    PGPORT: Optional[str] = None
    PGDATABASE: Optional[str] = None

    # Local docker-compose Postgres settings
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_HOST: Optional[str] = None
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "keyfleet"

    @property
    def sqlalchemy_database_uri(self) -> str:
        """
        Build SQLAlchemy database URI with priority:
        1. DATABASE_URL
        2. PG* vars
        3. Local docker-compose Postgres (POSTGRES_*)
        4. SQLite (local development)
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        if self.PGUSER and self.PGHOST and self.PGDATABASE:
            password = quote_plus(self.PGPASSWORD or "")
            port = self.PGPORT or "5432"
            return f"postgresql+psycopg2://{self.PGUSER}:{password}@{self.PGHOST}:{port}/{self.PGDATABASE}"

        if os.getenv("POSTGRES_HOST") and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            password = quote_plus(self.POSTGRES_PASSWORD)
            return (
                f"postgresql+psycopg2://"
                f"{self.POSTGRES_USER}:{password}@"
                f"{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        return "sqlite:///./keyfleet.db"

    # CORS settings
    CORS_ORIGINS: Union[str, List[str]] = Field(
        default='["http://localhost:3000", "http://localhost:8000"]',
    )

    @field_validator("CORS_ORIGINS")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from string or list."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    # Logging
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # API Authentication
    API_KEY: Optional[str] = Field(
        default=None,
        description="Static API key for admin operations. Leave empty to disable authentication.",
    )

    # Remote server access
    REMOTE_REQUEST_TIMEOUT_SECONDS: float = Field(
        default=30.0,
        description="Per-request timeout for calls to remote VPN management APIs",
    )

    # Fleet sync
    SYNC_MAX_CONCURRENCY: int = Field(default=5, ge=1, description="Servers synced in parallel")
    SYNC_LOCK_MAX_AGE_SECONDS: int = Field(
        default=300,
        description="A fleet sync lock without heartbeat for this long is considered stale",
    )
    TRAFFIC_LOG_MIN_BYTES: int = Field(
        default=100 * 1024,
        description="Minimum delta written to the traffic log (down-sampling threshold)",
    )

    # Device estimation (heuristic, tunable)
    TRAFFIC_NOISE_THRESHOLD_BYTES: int = Field(default=100)
    SESSION_INACTIVITY_TIMEOUT_SECONDS: int = Field(default=300)

    # Archive
    ARCHIVE_RETENTION_DAYS: int = Field(default=90, description="Days an archived key is kept")

    # Scheduler
    SCHEDULER_ENABLED: bool = Field(default=True)
    FLEET_SYNC_INTERVAL_SECONDS: int = Field(default=60, ge=10)
    LIMIT_RESET_INTERVAL_MINUTES: int = Field(default=60, ge=1)
    ARCHIVE_CLEANUP_HOUR: int = Field(default=3, ge=0, le=23)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
