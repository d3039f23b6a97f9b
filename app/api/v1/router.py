"""
API v1 router.
"""
from fastapi import APIRouter

from app.api.v1.endpoints import api_keys, health

api_router = APIRouter()

# Health check endpoint (no prefix, so it's /api/v1/health)
api_router.include_router(health.router, tags=["health"])

api_router.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
