"""
API v1 router.
"""
from fastapi import APIRouter

from app.api.v1.endpoints import health, servers, keys, archived_keys

api_router = APIRouter()

# Health check endpoint (no prefix, so it's /api/v1/health)
api_router.include_router(health.router, tags=["health"])

api_router.include_router(servers.router, prefix="/servers", tags=["servers"])
api_router.include_router(keys.router, prefix="/keys", tags=["keys"])
api_router.include_router(archived_keys.router, prefix="/archived-keys", tags=["archived-keys"])
