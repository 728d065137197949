"""
API key authentication for admin endpoints.
"""
import hmac
import logging
from typing import Optional
from fastapi import HTTPException, status, Security
from fastapi.security import APIKeyHeader

from app.core.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class APIClient:
    """Authenticated caller of the admin API."""
    def __init__(self, source: str):
        self.source = source  # "static" or "anonymous"


def require_api_key(api_key: Optional[str] = Security(api_key_header)) -> APIClient:
    """
    Dependency that checks the X-API-Key header against settings.API_KEY.

    If API_KEY is not configured, authentication is disabled (local dev and tests).

    Raises:
        HTTPException: 401 if the key is missing or does not match
    """
    if not settings.API_KEY or settings.API_KEY.strip() == "":
        logger.debug("API_KEY not configured - authentication is disabled")
        return APIClient(source="anonymous")

    if not api_key:
        logger.warning("API key missing from request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not hmac.compare_digest(api_key, settings.API_KEY):
        logger.warning("Invalid API key attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return APIClient(source="static")
