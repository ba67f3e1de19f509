"""
Authentication schemas for request/response validation.

This module defines Pydantic models for authentication-related API operations:
- Login credentials and MFA challenge responses
- Token responses
- TOTP enrollment, backup codes and trusted devices
- Registration and password flows

Password strength is checked by the services (WEAK_PASSWORD), not here, so
that it is reported with a stable error code instead of a validation error.
"""

from pydantic import BaseModel, EmailStr, Field

from app.schemas.base import UTCDatetime, UTCDatetimeOptional


class LoginRequest(BaseModel):
    """Request schema for user login."""

    username_or_email: str = Field(..., min_length=1, max_length=120)
    password: str = Field(..., min_length=1, max_length=255)  # Allow any length for existing users
    remember_me: bool = False
    trusted_device_token: str | None = Field(
        default=None, description="Trusted-device token (optional if using cookies)"
    )


class TokenResponse(BaseModel):
    """Response schema for successful authentication."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Access token expiration time in seconds from now")
    access_token_expires_at: UTCDatetime
    refresh_token_expires_at: UTCDatetime
    requires_password_change: bool = False
    trusted_device_token: str | None = None


class MfaRequiredResponse(BaseModel):
    """Password accepted; a second factor is needed to finish signing in."""

    mfa_required: bool = True
    challenge_token: str
    delivery_hint: str
    expires_at: UTCDatetime


class MfaVerifyRequest(BaseModel):
    """Request schema for TOTP or backup-code verification."""

    challenge_token: str = Field(..., min_length=1, max_length=255)
    code: str = Field(..., min_length=1, max_length=32)
    trust_device: bool = False


class RefreshRequest(BaseModel):
    """
    Request schema for token refresh (optional body for non-cookie flow).

    When using HTTPOnly cookies, the refresh token is sent automatically.
    This schema allows for alternative flows where refresh token is in body.
    """

    refresh_token: str | None = Field(
        default=None, description="Refresh token (optional if using cookies)"
    )


class TotpSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TotpConfirmRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


class MfaDisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=255)


class BackupCodesResponse(BaseModel):
    codes: list[str]


class TrustedDeviceResponse(BaseModel):
    """A remembered device as shown to its owner."""

    id: int
    device_name: str | None = None
    ip_address: str | None = None
    created_at: UTCDatetime
    expires_at: UTCDatetime
    last_used_at: UTCDatetimeOptional = None

    model_config = {"from_attributes": True}


class RegisterRequest(BaseModel):
    """Request schema for starting registration."""

    email: EmailStr


class RegisterCompleteRequest(BaseModel):
    """Request schema for finishing registration with the emailed token."""

    token: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_.-]+$")
    password: str = Field(..., min_length=1, max_length=255)


class PasswordChangeRequest(BaseModel):
    """Request schema for password change."""

    current_password: str = Field(..., min_length=1, max_length=255)  # Allow any length for current
    new_password: str = Field(..., min_length=1, max_length=255)


class ForgotPasswordRequest(BaseModel):
    """Request schema for forgot password."""

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request schema for password reset with token."""

    token: str = Field(..., min_length=1, max_length=255)
    new_password: str = Field(..., min_length=1, max_length=255)


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
