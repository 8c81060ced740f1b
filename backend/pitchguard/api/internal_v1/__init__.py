"""
Internal API v1 package - operator endpoints only
"""

from fastapi import APIRouter

from .security import router as security_router

# Create internal API router
internal_api_router = APIRouter()

# Include gate monitoring and moderation routes
internal_api_router.include_router(security_router, prefix="/security", tags=["internal-security"])
