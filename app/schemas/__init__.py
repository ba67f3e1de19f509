"""
Pydantic schemas for API responses and requests
"""

from app.models.user import UserBase  # Re-export from models
from app.schemas.auth import (
    LoginRequest,
    MfaRequiredResponse,
    MfaVerifyRequest,
    TokenResponse,
)
from app.schemas.user import (
    CurrentUserResponse,
    UserResponse,
    UserRolesResponse,
)

__all__ = [
    # Auth schemas
    "LoginRequest",
    "TokenResponse",
    "MfaRequiredResponse",
    "MfaVerifyRequest",
    # User schemas
    "UserBase",
    "UserResponse",
    "CurrentUserResponse",
    "UserRolesResponse",
]
