"""
API v1 Router
"""

from fastapi import APIRouter

from app.api.v1 import auth, users

router = APIRouter()

# Include all endpoint routers
router.include_router(auth.router)
router.include_router(users.router)

__all__ = ["router"]
