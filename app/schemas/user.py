"""
Pydantic schemas for User endpoints
"""

from pydantic import BaseModel

from app.models.user import UserBase
from app.schemas.base import UTCDatetime, UTCDatetimeOptional


class UserResponse(UserBase):
    """Schema for user response - what API returns"""

    user_id: int
    created_at: UTCDatetime
    last_login_at: UTCDatetimeOptional = None
    active: bool
    email_confirmed: bool
    mfa_enabled: bool
    is_deleted: bool

    # Allow Pydantic to read from SQLAlchemy model attributes (not just dicts)
    model_config = {"from_attributes": True}


class CurrentUserResponse(UserResponse):
    """
    Schema for the authenticated user's own account.

    Adds role names and the password-change flag from the access token.
    """

    roles: list[str]
    requires_password_change: bool


class UserRolesResponse(BaseModel):
    user_id: int
    roles: list[str]
